"""Order stage machine.

Creation → Review → Material Reservation → Sorting → Cutting → Packaging
→ Invoicing → Delivery → Delivered, with Cancelled reachable from any
non-terminal stage. Each public function runs atomically and returns a
:class:`~order_processing.results.ServiceResult`.
"""
import logging
from decimal import Decimal, InvalidOperation

from django.db import IntegrityError, transaction
from django.utils import timezone

from audit.utils.jsonsafe import snapshot
from order_processing import authority
from order_processing.errors import (
    AlreadyResolved,
    ConcurrentModification,
    HandoverRequired,
    OutOfOrder,
    Unauthorized,
    WorkflowValidationError,
)
from order_processing.models import (
    STAGE_CANCELLED,
    STAGE_CREATION,
    STAGE_DELIVERED,
    STAGE_MATERIAL_RESERVATION,
    STAGE_REVIEW,
    STAGE_SEQUENCE,
    STAGE_SORTING,
    WORK_STAGE_CODES,
    Order,
    OrderProcessing,
    WorkStage,
    stage_capability,
)
from order_processing.results import ServiceResult, service_operation

from .approval import validate_reason
from .locking import lock_order, lock_processing, save_versioned
from .transfers import ensure_processing

logger = logging.getLogger(__name__)

WORKFLOW_TRANSITION = "workflow_transition"
STAGE_SKIPPED = "stage_skipped"
ORDER_CANCELLED = "order_cancelled"
HANDOVER_REQUESTED = "handover_requested"
HANDOVER_CONFIRMED = "handover_confirmed"
HANDOVER_CANCELLED = "handover_cancelled"

# order timestamp stamped the first time the order enters a stage
ENTRY_TIMESTAMPS = {
    STAGE_REVIEW: "submitted_at",
    STAGE_MATERIAL_RESERVATION: "approved_at",
    STAGE_SORTING: "started_at",
    STAGE_DELIVERED: "completed_at",
}

ORDER_INPUT_FIELDS = ("order_type", "required_weight", "price_per_ton", "cutting_fees", "discount")


def next_stage(code):
    try:
        index = STAGE_SEQUENCE.index(code)
    except ValueError:
        return None
    if index + 1 >= len(STAGE_SEQUENCE):
        return None
    return STAGE_SEQUENCE[index + 1]


def _require(actor, capability, subject, action, message=None):
    if not authority.has_capability(actor, capability):
        raise Unauthorized(
            message or f"Missing capability '{capability}'.",
            capability=capability,
            subject=subject,
            actor=actor,
            action=action,
        )


def _require_open(order):
    if order.is_deleted:
        raise WorkflowValidationError(f"Order {order.order_number} is deleted.")
    if order.is_terminal:
        raise WorkflowValidationError(
            f"Order {order.order_number} is already {order.get_current_stage_display().lower()}."
        )


def _current_processing(order):
    if order.current_stage not in WORK_STAGE_CODES:
        return None
    return (
        OrderProcessing.objects.select_for_update()
        .select_related("work_stage")
        .for_stage(order, order.current_stage)
        .first()
    )


def _check_handover(order):
    outgoing = _current_processing(order)
    if outgoing is not None and outgoing.handover_blocks_exit:
        raise HandoverRequired(
            f"The {outgoing.work_stage.name_en} stage requires a completed handover "
            f"(currently {outgoing.handover_status}).",
            handover_status=outgoing.handover_status,
        )
    return outgoing


def _enter_stage(order, target, outgoing):
    now = timezone.now()
    if outgoing is not None and outgoing.status != OrderProcessing.STATUS_COMPLETED:
        outgoing.status = OrderProcessing.STATUS_COMPLETED
        outgoing.completed_at = now
        save_versioned(outgoing, ["status", "completed_at"])

    if target in WORK_STAGE_CODES:
        stage = WorkStage.objects.get(code=target)
        incoming, _ = ensure_processing(order, stage, status=OrderProcessing.STATUS_IN_PROGRESS)
        if incoming.status == OrderProcessing.STATUS_PENDING:
            incoming.status = OrderProcessing.STATUS_IN_PROGRESS
        incoming.started_at = incoming.started_at or now
        save_versioned(incoming, ["status", "started_at"])

    order.current_stage = target
    update_fields = ["current_stage", "status", "updated_at"]
    if target == STAGE_DELIVERED:
        order.status = Order.STATUS_COMPLETED
    elif target != STAGE_CREATION:
        order.status = Order.STATUS_IN_PROGRESS
    stamp = ENTRY_TIMESTAMPS.get(target)
    if stamp and getattr(order, stamp) is None:
        setattr(order, stamp, now)
        update_fields.append(stamp)
    order.save(update_fields=update_fields)


def _validate_target(target):
    if target not in STAGE_SEQUENCE:
        raise WorkflowValidationError(f"'{target}' is not a stage an order can move to.")


@service_operation(retries=2)
def create_order(actor, audit=None, **fields):
    unknown = set(fields) - set(ORDER_INPUT_FIELDS)
    if unknown:
        raise WorkflowValidationError(f"Unknown order fields: {', '.join(sorted(unknown))}")
    _require(actor, stage_capability(STAGE_CREATION), None, "create_order")
    order_type = fields.get("order_type", Order.TYPE_OUTBOUND)
    if order_type not in dict(Order.TYPE_CHOICES):
        raise WorkflowValidationError(f"Unknown order type '{order_type}'.")
    for name in ORDER_INPUT_FIELDS[1:]:
        if fields.get(name) in (None, ""):
            fields.pop(name, None)
            continue
        try:
            fields[name] = Decimal(str(fields[name]))
        except InvalidOperation:
            raise WorkflowValidationError(f"{name} must be numeric.")
        if not fields[name].is_finite():
            raise WorkflowValidationError(f"{name} must be numeric.")
        if fields[name] < 0:
            raise WorkflowValidationError(f"{name} cannot be negative.")

    try:
        with transaction.atomic():
            order = Order.objects.create(created_by=actor, **fields)
    except IntegrityError:
        raise ConcurrentModification("Order number was taken by a concurrent request.")
    stage = WorkStage.objects.get(code=STAGE_CREATION)
    processing, _ = ensure_processing(order, stage, status=OrderProcessing.STATUS_IN_PROGRESS)
    processing.started_at = timezone.now()
    processing.assigned_to = actor
    save_versioned(processing, ["started_at", "assigned_to"])
    audit.log_created(order, actor=actor, metadata={"order_number": order.order_number})
    logger.info("Order %s created by %s", order.order_number, actor)
    return ServiceResult.ok(order, message=f"Order {order.order_number} created.")


@service_operation(retries=1)
def advance(order, target_stage, actor, notes="", audit=None):
    order = lock_order(order)
    _require_open(order)
    _validate_target(target_stage)
    capability = stage_capability(target_stage)
    _require(
        actor, capability, order, "advance",
        f"You are not allowed to move orders into the {target_stage} stage.",
    )
    expected = next_stage(order.current_stage)
    if target_stage != expected:
        raise OutOfOrder(
            f"Cannot move from {order.current_stage} to {target_stage}; next stage is {expected}.",
            current_stage=order.current_stage,
            target_stage=target_stage,
            expected_stage=expected,
        )
    outgoing = _check_handover(order)

    source = order.current_stage
    _enter_stage(order, target_stage, outgoing)
    audit.log_custom(
        WORKFLOW_TRANSITION,
        order,
        f"Moved from {source} to {target_stage}",
        old_values={"current_stage": source},
        new_values={"current_stage": target_stage},
        metadata={"from": source, "to": target_stage, "notes": notes or ""},
        actor=actor,
    )
    logger.info("Order %s: %s → %s by %s", order.order_number, source, target_stage, actor)
    return ServiceResult.ok(order, message=f"Order moved to {order.get_current_stage_display()}.")


@service_operation(retries=1)
def skip_stage(order, target_stage, actor, reason, audit=None):
    order = lock_order(order)
    _require_open(order)
    _validate_target(target_stage)
    _require(actor, "skip_stage", order, "skip_stage", "You are not allowed to skip stages.")
    reason = validate_reason(reason, "Skip reason")
    current_index = STAGE_SEQUENCE.index(order.current_stage)
    target_index = STAGE_SEQUENCE.index(target_stage)
    if target_index <= current_index:
        raise OutOfOrder(
            "Stages can only be skipped forward.",
            current_stage=order.current_stage,
            target_stage=target_stage,
        )
    outgoing = _check_handover(order)

    source = order.current_stage
    skipped = STAGE_SEQUENCE[current_index + 1:target_index]
    _enter_stage(order, target_stage, outgoing)
    audit.log_custom(
        STAGE_SKIPPED,
        order,
        f"Skipped from {source} to {target_stage}: {reason}",
        old_values={"current_stage": source},
        new_values={"current_stage": target_stage},
        metadata={"from": source, "to": target_stage, "skipped": skipped, "reason": reason},
        actor=actor,
    )
    logger.info("Order %s skipped %s by %s", order.order_number, skipped, actor)
    return ServiceResult.ok(order, message=f"Order moved to {order.get_current_stage_display()}.",
                            payload={"skipped": skipped})


@service_operation
def cancel(order, actor, reason, audit=None):
    order = lock_order(order)
    _require_open(order)
    _require(actor, "cancel_order", order, "cancel", "You are not allowed to cancel orders.")
    reason = validate_reason(reason, "Cancellation reason")

    source = order.current_stage
    current = _current_processing(order)
    if current is not None and current.status != OrderProcessing.STATUS_COMPLETED:
        current.status = OrderProcessing.STATUS_CANCELLED
        save_versioned(current, ["status"])
    order.current_stage = STAGE_CANCELLED
    order.status = Order.STATUS_CANCELLED
    order.cancelled_at = timezone.now()
    order.cancellation_reason = reason
    order.save(update_fields=["current_stage", "status", "cancelled_at", "cancellation_reason", "updated_at"])
    audit.log_custom(
        ORDER_CANCELLED,
        order,
        f"Order cancelled: {reason}",
        old_values={"current_stage": source},
        new_values={"current_stage": STAGE_CANCELLED},
        metadata={"from": source, "reason": reason},
        actor=actor,
    )
    logger.info("Order %s cancelled by %s", order.order_number, actor)
    return ServiceResult.ok(order, message="Order cancelled.")


#
# ——————————————————————————————————————
# Handover
# ——————————————————————————————————————
#
def _open_processing(processing):
    if processing.status in (OrderProcessing.STATUS_COMPLETED, OrderProcessing.STATUS_CANCELLED):
        raise WorkflowValidationError(f"This {processing.work_stage.name_en} record is {processing.status}.")


@service_operation
def request_handover(processing, actor, to_actor=None, notes="", expected_version=None, audit=None):
    processing = lock_processing(processing, expected_version)
    _open_processing(processing)
    _require(actor, processing.work_stage.capability, processing, "request_handover")
    if processing.handover_status == OrderProcessing.HANDOVER_COMPLETED:
        raise AlreadyResolved("Handover is already completed.")
    if processing.handover_status != OrderProcessing.HANDOVER_NOT_REQUIRED:
        raise WorkflowValidationError("A handover is already in progress for this stage.")
    if to_actor is not None and to_actor.pk == actor.pk:
        raise WorkflowValidationError("A handover must go to a different person.")

    processing.handover_status = OrderProcessing.HANDOVER_PENDING
    processing.handover_from = actor
    processing.handover_to = to_actor
    processing.handover_requested_at = timezone.now()
    processing.handover_notes = notes or ""
    save_versioned(
        processing,
        ["handover_status", "handover_from", "handover_to", "handover_requested_at", "handover_notes"],
    )
    audit.log_custom(
        HANDOVER_REQUESTED,
        processing,
        f"Handover requested on {processing.work_stage.name_en}",
        old_values={"handover_status": OrderProcessing.HANDOVER_NOT_REQUIRED},
        new_values=snapshot(processing, fields=["handover_status", "handover_from", "handover_to"]),
        metadata={"order_id": processing.order_id, "notes": notes or ""},
        actor=actor,
    )
    return ServiceResult.ok(processing, message="Handover requested.")


@service_operation
def confirm_handover(processing, actor, notes="", expected_version=None, audit=None):
    processing = lock_processing(processing, expected_version)
    _open_processing(processing)
    if processing.handover_status == OrderProcessing.HANDOVER_COMPLETED:
        raise AlreadyResolved("Handover is already completed.")
    if processing.handover_status not in (
        OrderProcessing.HANDOVER_PENDING,
        OrderProcessing.HANDOVER_IN_PROGRESS,
    ):
        raise WorkflowValidationError("No handover has been requested for this stage.")
    if actor is not None and processing.handover_from_id == actor.pk:
        raise Unauthorized(
            "The person who requested the handover cannot confirm it.",
            capability=processing.work_stage.capability,
            subject=processing,
            actor=actor,
            action="confirm_handover",
        )
    if processing.handover_to_id is not None and actor is not None and processing.handover_to_id != actor.pk:
        raise Unauthorized(
            "This handover is addressed to someone else.",
            capability=processing.work_stage.capability,
            subject=processing,
            actor=actor,
            action="confirm_handover",
        )
    _require(actor, processing.work_stage.capability, processing, "confirm_handover")

    previous = processing.handover_status
    processing.handover_status = OrderProcessing.HANDOVER_COMPLETED
    processing.handover_to = actor
    processing.handover_completed_at = timezone.now()
    processing.assigned_to = actor
    if notes:
        processing.handover_notes = "\n".join(filter(None, [processing.handover_notes, notes]))
    save_versioned(
        processing,
        ["handover_status", "handover_to", "handover_completed_at", "assigned_to", "handover_notes"],
    )
    audit.log_custom(
        HANDOVER_CONFIRMED,
        processing,
        f"Handover confirmed on {processing.work_stage.name_en}",
        old_values={"handover_status": previous},
        new_values={"handover_status": processing.handover_status, "handover_to": actor.pk},
        metadata={"order_id": processing.order_id, "handover_from": processing.handover_from_id},
        actor=actor,
    )
    return ServiceResult.ok(processing, message="Handover confirmed.")


@service_operation
def cancel_handover(processing, actor, expected_version=None, audit=None):
    processing = lock_processing(processing, expected_version)
    if processing.handover_status == OrderProcessing.HANDOVER_COMPLETED:
        raise AlreadyResolved("Handover is already completed.")
    if processing.handover_status == OrderProcessing.HANDOVER_NOT_REQUIRED:
        raise WorkflowValidationError("There is no handover to cancel.")
    is_requester = actor is not None and processing.handover_from_id == actor.pk
    if not is_requester:
        _require(actor, processing.work_stage.capability, processing, "cancel_handover")

    previous = processing.handover_status
    processing.handover_status = OrderProcessing.HANDOVER_NOT_REQUIRED
    processing.handover_from = None
    processing.handover_to = None
    processing.handover_requested_at = None
    save_versioned(
        processing, ["handover_status", "handover_from", "handover_to", "handover_requested_at"]
    )
    audit.log_custom(
        HANDOVER_CANCELLED,
        processing,
        f"Handover cancelled on {processing.work_stage.name_en}",
        old_values={"handover_status": previous},
        new_values={"handover_status": processing.handover_status},
        metadata={"order_id": processing.order_id},
        actor=actor,
    )
    return ServiceResult.ok(processing, message="Handover cancelled.")


#
# ——————————————————————————————————————
# Soft delete
# ——————————————————————————————————————
#
@service_operation
def soft_delete_order(order, actor, reason="", audit=None):
    order = lock_order(order)
    _require(actor, "soft_delete_order", order, "soft_delete_order")
    if order.is_deleted:
        raise AlreadyResolved(f"Order {order.order_number} is already deleted.")
    order.deleted_at = timezone.now()
    order.deleted_by = actor
    order.save(update_fields=["deleted_at", "deleted_by", "updated_at"])
    audit.log_soft_deleted(order, actor=actor, metadata={"reason": reason or ""})
    return ServiceResult.ok(order, message="Order deleted.")


@service_operation
def restore_order(order, actor, audit=None):
    order = lock_order(order)
    _require(actor, "soft_delete_order", order, "restore_order")
    if not order.is_deleted:
        raise AlreadyResolved(f"Order {order.order_number} is not deleted.")
    old_deleted_at = order.deleted_at
    order.deleted_at = None
    order.deleted_by = None
    order.save(update_fields=["deleted_at", "deleted_by", "updated_at"])
    audit.log_restored(order, old_deleted_at=old_deleted_at, actor=actor)
    return ServiceResult.ok(order, message="Order restored.")
