import logging
from decimal import Decimal

from django.db import IntegrityError, transaction
from django.db.models import Sum
from django.utils import timezone

from audit.utils.jsonsafe import snapshot
from order_processing import authority
from order_processing.errors import (
    ConcurrentModification,
    NotFound,
    Unauthorized,
    WorkflowValidationError,
)
from order_processing.models import OrderProcessing, WeightTransfer, WorkStage, stage_capability
from order_processing.results import ServiceResult, service_operation

from . import ledger
from .approval import ApprovalGate
from .locking import lock_order, lock_transfer, save_versioned

logger = logging.getLogger(__name__)

TRANSFER_REQUESTED = "transfer_requested"


def resolve_stage(stage):
    if isinstance(stage, WorkStage):
        return stage
    try:
        if isinstance(stage, int):
            return WorkStage.objects.get(pk=stage)
        return WorkStage.objects.get(code=stage)
    except WorkStage.DoesNotExist:
        raise WorkflowValidationError(f"Unknown work stage '{stage}'.")


def pending_outgoing_weight(order, stage):
    total = WeightTransfer.objects.pending_from(order, stage).aggregate(
        total=Sum("weight_transferred")
    )["total"]
    return total or Decimal("0.000")


def ensure_processing(order, stage, status=OrderProcessing.STATUS_PENDING):
    """Return the locked (order, stage) processing row, creating it if needed."""
    processing = (
        OrderProcessing.objects.select_for_update()
        .select_related("order", "work_stage")
        .for_stage(order, stage)
        .first()
    )
    if processing is not None:
        return processing, False
    try:
        with transaction.atomic():
            processing = OrderProcessing.objects.create(
                order=order,
                work_stage=stage,
                status=status,
                mandatory_handover=stage.mandatory_handover,
            )
    except IntegrityError:
        raise ConcurrentModification(
            f"Processing record for {stage.name_en} was created concurrently."
        )
    return processing, True


def _notify_after_commit(transfer_id):
    from order_processing.tasks import notify_transfer_approvers

    try:
        notify_transfer_approvers.delay(transfer_id)
    except Exception:
        # broker unavailable; the transfer itself is already committed
        logger.exception("Could not queue approval notification for transfer %s", transfer_id)


@service_operation
def request_transfer(order, from_stage, to_stage, weight, requested_by, notes="", audit=None):
    from_stage = resolve_stage(from_stage)
    to_stage = resolve_stage(to_stage)
    if to_stage.order <= from_stage.order:
        raise WorkflowValidationError("Weight can only be transferred to a later stage.")

    order = lock_order(order)
    if order.is_terminal or order.is_deleted:
        raise WorkflowValidationError(f"Order {order.order_number} is closed.")
    if not authority.has_capability(requested_by, from_stage.capability):
        raise Unauthorized(
            f"You have no authority over the {from_stage.name_en} stage.",
            capability=from_stage.capability,
            subject=order,
            actor=requested_by,
            action="request_transfer",
        )

    source = (
        OrderProcessing.objects.select_for_update()
        .for_stage(order, from_stage)
        .first()
    )
    if source is None:
        raise WorkflowValidationError(
            f"Order {order.order_number} has no {from_stage.name_en} processing record."
        )

    # weight already promised to pending requests is not available again
    committed = ledger.to_weight(source.weight_to_transfer) + pending_outgoing_weight(order, from_stage)
    weight = ledger.validate_transfer_request(source.actual_weight_received, committed, weight)

    transfer = WeightTransfer.objects.create(
        order=order,
        from_stage=from_stage,
        to_stage=to_stage,
        weight_transferred=weight,
        requested_by=requested_by,
        notes=notes or "",
    )
    audit.log_custom(
        TRANSFER_REQUESTED,
        transfer,
        f"Transfer of {weight} requested ({from_stage.name_en} → {to_stage.name_en})",
        new_values=snapshot(transfer, fields=["status", "weight_transferred", "from_stage", "to_stage"]),
        metadata={"order_id": order.pk, "order_number": order.order_number},
        actor=requested_by,
    )
    transaction.on_commit(lambda: _notify_after_commit(transfer.pk))
    logger.info(
        "Transfer %s requested: %s %s→%s by %s",
        transfer.pk, weight, from_stage.code, to_stage.code, requested_by,
    )
    return ServiceResult.ok(
        transfer,
        message="Transfer requested and awaiting approval.",
        payload={"available_after_request": str(source.actual_weight_received - committed - weight)},
    )


@service_operation(retries=1)
def approve_transfer(actor, transfer, audit=None):
    transfer = lock_transfer(transfer)
    order = transfer.order
    if transfer.is_pending and (order.is_terminal or order.is_deleted):
        raise WorkflowValidationError(f"Order {order.order_number} is closed; the transfer can only be rejected.")
    ApprovalGate(audit).approve(actor, transfer)

    source = (
        OrderProcessing.objects.select_for_update()
        .for_stage(transfer.order, transfer.from_stage)
        .first()
    )
    if source is None:
        raise NotFound("Source processing record no longer exists.")
    weight = ledger.to_weight(transfer.weight_transferred)
    source.weight_to_transfer = ledger.to_weight(source.weight_to_transfer) + weight
    source.weight_balance = ledger.compute_balance(
        source.actual_weight_received, source.weight_to_transfer
    )
    source.transfer_destination = transfer.to_stage.code
    source.transfer_approved = True
    source.transfer_approved_by = actor
    source.transfer_approved_at = timezone.now()
    save_versioned(
        source,
        [
            "weight_to_transfer",
            "weight_balance",
            "transfer_destination",
            "transfer_approved",
            "transfer_approved_by",
            "transfer_approved_at",
        ],
    )

    destination, created = ensure_processing(transfer.order, transfer.to_stage)
    destination.actual_weight_received = ledger.to_weight(destination.actual_weight_received) + weight
    destination.weight_balance = ledger.compute_balance(
        destination.actual_weight_received, destination.weight_to_transfer
    )
    save_versioned(destination, ["actual_weight_received", "weight_balance"])

    logger.info(
        "Transfer %s approved by %s; destination %s %s",
        transfer.pk, actor, destination.pk, "created" if created else "updated",
    )
    return ServiceResult.ok(
        transfer,
        message="Transfer approved.",
        payload={
            "source_balance": str(source.weight_balance),
            "destination_received": str(destination.actual_weight_received),
            "destination_created": created,
        },
    )


@service_operation
def reject_transfer(actor, transfer, reason, audit=None):
    transfer = lock_transfer(transfer)
    ApprovalGate(audit).reject(actor, transfer, reason)
    logger.info("Transfer %s rejected by %s", transfer.pk, actor)
    return ServiceResult.ok(transfer, message="Transfer rejected.")


def approvers_for(transfer):
    return authority.actors_with_capability(stage_capability(transfer.to_stage.code)).exclude(
        pk=transfer.requested_by_id
    )
