"""Sorting stage: record the two-roll split, approve it, ship it onward.

Flow on one Sorting processing row::

    record_sorting_results  (repeatable while unapproved)
        -> approve_sorting   (once)
        -> transfer_to_destination (once)
"""
import logging
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.utils import timezone

from audit.utils.jsonsafe import snapshot
from order_processing import authority
from order_processing.errors import (
    AlreadyResolved,
    AlreadyTransferred,
    MissingDestination,
    Unauthorized,
    WorkflowValidationError,
)
from order_processing.models import STAGE_SORTING, OrderProcessing, Warehouse
from order_processing.results import ServiceResult, service_operation

from .ledger import to_weight
from .locking import lock_processing, save_versioned

logger = logging.getLogger(__name__)

SORTING_RECORDED = "sorting_recorded"
SORTING_APPROVED = "sorting_approved"
SORTING_TRANSFER_COMPLETED = "sorting_transfer_completed"

SORTING_FIELDS = [
    "roll1_weight",
    "roll1_width",
    "roll1_location",
    "roll2_weight",
    "roll2_width",
    "roll2_location",
    "sorting_waste_weight",
    "waste_reason",
    "sorting_notes",
]


def sorting_tolerance():
    return Decimal(str(getattr(settings, "ORDERFLOW_SORTING_TOLERANCE", "0.01")))


def _require_sorting(processing):
    if processing.work_stage.code != STAGE_SORTING:
        raise WorkflowValidationError("Not a sorting stage.")


def can_user_approve_sorting(actor, processing):
    """Assignee of the row (or any Sorting-stage actor when unassigned), or an override holder."""
    if actor is None or not getattr(actor, "is_authenticated", False):
        return False
    if authority.has_capability(actor, "override_sorting"):
        return True
    if processing.assigned_to_id is not None:
        return processing.assigned_to_id == actor.pk and actor.is_active
    return authority.has_capability(actor, "stage_sorting")


def _deny(actor, processing, action):
    return Unauthorized(
        "You are not allowed to approve or transfer this sorting result.",
        capability="override_sorting",
        subject=processing,
        actor=actor,
        action=action,
    )


def sorting_summary(processing):
    received = to_weight(processing.actual_weight_received)
    roll1 = to_weight(processing.roll1_weight)
    roll2 = to_weight(processing.roll2_weight)
    waste = to_weight(processing.sorting_waste_weight)
    total = roll1 + roll2 + waste
    difference = total - received
    waste_pct = (waste / received * 100).quantize(Decimal("0.01")) if received > 0 else Decimal("0.00")
    return {
        "processing_id": processing.pk,
        "status": processing.status,
        "approved": processing.sorting_approved,
        "approved_at": processing.sorting_approved_at,
        "received_weight": received,
        "roll1_weight": roll1,
        "roll1_width": processing.roll1_width,
        "roll2_weight": roll2,
        "roll2_width": processing.roll2_width,
        "waste_weight": waste,
        "total_sorted_weight": total,
        "difference": difference,
        "waste_percentage": waste_pct,
        "balanced": abs(difference) <= sorting_tolerance(),
        "transfer_completed": processing.transfer_completed,
        "destination": processing.post_sorting_destination or None,
        "destination_warehouse": (
            processing.destination_warehouse.name if processing.destination_warehouse_id else None
        ),
    }


def validate_sorting_results(data):
    errors = []
    weights = {}
    for key in ("roll1_weight", "roll2_weight", "sorting_waste_weight"):
        try:
            weights[key] = to_weight(data.get(key))
        except WorkflowValidationError:
            errors.append(f"{key} must be numeric.")
            weights[key] = Decimal("0")
            continue
        if weights[key] < 0:
            errors.append(f"{key} cannot be negative.")
    if weights["roll1_weight"] <= 0 and weights["roll2_weight"] <= 0:
        errors.append("At least one roll must have weight greater than 0.")
    for roll in ("roll1", "roll2"):
        width = data.get(f"{roll}_width")
        if width not in (None, ""):
            try:
                width = Decimal(str(width))
                if not width.is_finite():
                    raise InvalidOperation(width)
                if width <= 0:
                    errors.append(f"{roll}_width must be greater than 0.")
            except InvalidOperation:
                errors.append(f"{roll}_width must be numeric.")
        if weights[f"{roll}_weight"] > 0 and not (data.get(f"{roll}_location") or "").strip():
            errors.append(f"{roll}_location is required when {roll}_weight > 0.")
    if weights["sorting_waste_weight"] > 0 and not (data.get("waste_reason") or "").strip():
        errors.append("waste_reason is required when waste weight > 0.")
    return errors


@service_operation
def record_sorting_results(processing, actor, expected_version=None, audit=None, **data):
    unknown = set(data) - set(SORTING_FIELDS)
    if unknown:
        raise WorkflowValidationError(f"Unknown sorting fields: {', '.join(sorted(unknown))}")
    processing = lock_processing(processing, expected_version)
    _require_sorting(processing)
    if not (
        can_user_approve_sorting(actor, processing)
        or authority.has_capability(actor, "stage_sorting")
    ):
        raise Unauthorized(
            "You have no authority over the Sorting stage.",
            capability="stage_sorting",
            subject=processing,
            actor=actor,
            action="record_sorting_results",
        )
    if processing.sorting_approved:
        raise WorkflowValidationError("Sorting results are already approved and cannot change.")

    errors = validate_sorting_results(data)
    if errors:
        raise WorkflowValidationError(errors=errors)

    before = snapshot(processing, fields=SORTING_FIELDS)
    for key in ("roll1_weight", "roll2_weight", "sorting_waste_weight"):
        value = data.get(key)
        setattr(processing, key, to_weight(value) if value not in (None, "") else None)
    for key in ("roll1_width", "roll2_width"):
        value = data.get(key)
        setattr(processing, key, Decimal(str(value)) if value not in (None, "") else None)
    for key in ("roll1_location", "roll2_location", "waste_reason", "sorting_notes"):
        setattr(processing, key, (data.get(key) or "").strip())
    if processing.status == OrderProcessing.STATUS_PENDING:
        processing.status = OrderProcessing.STATUS_IN_PROGRESS
        processing.started_at = processing.started_at or timezone.now()
    save_versioned(processing, SORTING_FIELDS + ["status", "started_at"])

    summary = sorting_summary(processing)
    audit.log_custom(
        SORTING_RECORDED,
        processing,
        "Sorting results recorded",
        old_values=before,
        new_values=snapshot(processing, fields=SORTING_FIELDS),
        metadata={"order_id": processing.order_id, "balanced": summary["balanced"]},
        actor=actor,
    )
    warnings = [] if summary["balanced"] else [_imbalance_message(summary)]
    return ServiceResult.ok(processing, message="Sorting results recorded.", warnings=warnings)


def _imbalance_message(summary):
    return (
        f"Sorted weight {summary['total_sorted_weight']} differs from received weight "
        f"{summary['received_weight']} by {summary['difference']}."
    )


@service_operation
def approve_sorting(processing, actor, notes="", expected_version=None, audit=None):
    processing = lock_processing(processing, expected_version)
    _require_sorting(processing)
    if not can_user_approve_sorting(actor, processing):
        raise _deny(actor, processing, "approve_sorting")
    if processing.sorting_approved:
        raise AlreadyResolved("Sorting is already approved.")

    summary = sorting_summary(processing)
    warnings = []
    if not summary["balanced"]:
        message = _imbalance_message(summary)
        if getattr(settings, "ORDERFLOW_SORTING_BALANCE_STRICT", False):
            raise WorkflowValidationError(message, difference=str(summary["difference"]))
        logger.warning("Sorting %s approved with imbalance: %s", processing.pk, message)
        warnings.append(message)

    processing.sorting_approved = True
    processing.sorting_approved_by = actor
    processing.sorting_approved_at = timezone.now()
    if notes:
        processing.sorting_notes = notes
    save_versioned(
        processing,
        ["sorting_approved", "sorting_approved_by", "sorting_approved_at", "sorting_notes"],
    )
    audit.log_custom(
        SORTING_APPROVED,
        processing,
        "Sorting results approved",
        old_values={"sorting_approved": False},
        new_values={"sorting_approved": True, "sorting_approved_by": actor.pk},
        metadata={
            "order_id": processing.order_id,
            "total_sorted_weight": summary["total_sorted_weight"],
            "received_weight": summary["received_weight"],
            "balanced": summary["balanced"],
        },
        actor=actor,
    )
    return ServiceResult.ok(processing, message="Sorting approved successfully.", warnings=warnings)


def _resolve_warehouse(destination_type, warehouse_id):
    if destination_type == OrderProcessing.DEST_DIRECT_DELIVERY:
        return None
    if warehouse_id in (None, ""):
        if destination_type == OrderProcessing.DEST_OTHER_WAREHOUSE:
            raise MissingDestination()
        return (
            Warehouse.objects.filter(warehouse_type=Warehouse.CUTTING, is_active=True)
            .order_by("code")
            .first()
        )
    warehouse = Warehouse.objects.filter(pk=warehouse_id, is_active=True).first()
    if warehouse is None:
        raise WorkflowValidationError("Destination warehouse not found.", warehouse_id=warehouse_id)
    return warehouse


@service_operation
def transfer_to_destination(processing, actor, destination_warehouse_id=None,
                            destination_type=OrderProcessing.DEST_CUTTING_WAREHOUSE,
                            expected_version=None, audit=None):
    processing = lock_processing(processing, expected_version)
    _require_sorting(processing)
    if not can_user_approve_sorting(actor, processing):
        raise _deny(actor, processing, "transfer_to_destination")
    if processing.transfer_completed:
        raise AlreadyTransferred(destination=processing.post_sorting_destination)
    if not processing.sorting_approved:
        raise WorkflowValidationError("Sorting must be approved before transfer.")
    valid_types = dict(OrderProcessing.DESTINATION_CHOICES)
    if destination_type not in valid_types:
        raise WorkflowValidationError(f"Unknown destination type '{destination_type}'.")

    warehouse = _resolve_warehouse(destination_type, destination_warehouse_id)
    processing.post_sorting_destination = destination_type
    processing.destination_warehouse = warehouse
    processing.transfer_completed = True
    processing.transfer_completed_at = timezone.now()
    processing.transfer_completed_by = actor
    save_versioned(
        processing,
        [
            "post_sorting_destination",
            "destination_warehouse",
            "transfer_completed",
            "transfer_completed_at",
            "transfer_completed_by",
        ],
    )
    payload = {
        "destination": destination_type,
        "destination_label": valid_types[destination_type],
        "warehouse": warehouse.name if warehouse else None,
        "warehouse_id": warehouse.pk if warehouse else None,
    }
    audit.log_custom(
        SORTING_TRANSFER_COMPLETED,
        processing,
        f"Sorted material sent to {valid_types[destination_type]}"
        + (f" ({warehouse.name})" if warehouse else ""),
        old_values={"transfer_completed": False},
        new_values={"transfer_completed": True, "post_sorting_destination": destination_type},
        metadata=dict(payload, order_id=processing.order_id),
        actor=actor,
    )
    return ServiceResult.ok(processing, message="Materials transferred successfully.", payload=payload)
