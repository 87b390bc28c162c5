from django.utils import timezone

from order_processing.errors import ConcurrentModification, NotFound, WorkflowValidationError
from order_processing.models import Order, OrderProcessing, WeightTransfer


def lock_order(order_or_pk):
    pk = getattr(order_or_pk, "pk", order_or_pk)
    try:
        return Order.objects.select_for_update().get(pk=pk)
    except Order.DoesNotExist:
        raise NotFound(f"Order {pk} does not exist.")


def lock_processing(processing_or_pk, expected_version=None):
    """Re-read a processing row under a row lock.

    When ``expected_version`` is given (a client echoing the version it
    last saw) a mismatch is reported as a concurrent modification.
    """
    pk = getattr(processing_or_pk, "pk", processing_or_pk)
    try:
        processing = (
            OrderProcessing.objects.select_for_update()
            .select_related("order", "work_stage")
            .get(pk=pk)
        )
    except OrderProcessing.DoesNotExist:
        raise NotFound(f"Processing record {pk} does not exist.")
    if expected_version in (None, ""):
        return processing
    try:
        expected_version = int(expected_version)
    except (TypeError, ValueError):
        raise WorkflowValidationError(f"'{expected_version}' is not a valid version.")
    if expected_version != processing.version:
        raise ConcurrentModification(
            expected_version=expected_version, current_version=processing.version
        )
    return processing


def lock_transfer(transfer_or_pk):
    pk = getattr(transfer_or_pk, "pk", transfer_or_pk)
    try:
        return (
            WeightTransfer.objects.select_for_update()
            .select_related("order", "from_stage", "to_stage")
            .get(pk=pk)
        )
    except WeightTransfer.DoesNotExist:
        raise NotFound(f"Weight transfer {pk} does not exist.")


def save_versioned(instance, update_fields):
    """Write ``update_fields`` only if nobody bumped ``version`` meanwhile."""
    model = type(instance)
    current = instance.version
    values = {name: getattr(instance, name) for name in update_fields}
    values["version"] = current + 1
    values["updated_at"] = timezone.now()
    rows = model.objects.filter(pk=instance.pk, version=current).update(**values)
    if rows != 1:
        raise ConcurrentModification(
            f"{model._meta.verbose_name} {instance.pk} changed underneath this request.",
            expected_version=current,
        )
    instance.version = current + 1
    instance.updated_at = values["updated_at"]
    return instance
