from django.conf import settings
from django.utils import timezone

from order_processing import authority
from order_processing.errors import AlreadyResolved, Unauthorized, WorkflowValidationError
from order_processing.models import WeightTransfer, stage_capability

TRANSFER_APPROVED = "transfer_approved"
TRANSFER_REJECTED = "transfer_rejected"


def reason_min_length():
    return int(getattr(settings, "ORDERFLOW_REASON_MIN_LENGTH", 10))


def validate_reason(reason, label="Reason"):
    reason = (reason or "").strip()
    minimum = reason_min_length()
    if len(reason) < minimum:
        raise WorkflowValidationError(f"{label} must be at least {minimum} characters.")
    return reason


class ApprovalGate:
    """pending → approved / rejected, for one weight transfer.

    Methods raise on failure; callers own the transaction. The transfer
    passed in should already be locked (``select_for_update``).
    """

    def __init__(self, audit, provider=None):
        self.audit = audit
        self.provider = provider or authority.get_authority()

    def can_approve(self, actor, transfer):
        if actor is None or transfer.requested_by_id == getattr(actor, "pk", None):
            return False
        return self.provider.has_capability(actor, stage_capability(transfer.to_stage.code))

    def _check(self, actor, transfer, action):
        if not self.can_approve(actor, transfer):
            if actor is not None and transfer.requested_by_id == actor.pk:
                message = "You cannot approve or reject a transfer you requested."
            else:
                message = f"You have no authority over the {transfer.to_stage.name_en} stage."
            raise Unauthorized(
                message,
                capability=stage_capability(transfer.to_stage.code),
                subject=transfer,
                actor=actor,
                action=action,
            )
        if transfer.status != WeightTransfer.STATUS_PENDING:
            raise AlreadyResolved(
                f"Transfer {transfer.pk} is already {transfer.status}.", status=transfer.status
            )

    def approve(self, actor, transfer):
        self._check(actor, transfer, "approve_transfer")
        transfer.status = WeightTransfer.STATUS_APPROVED
        transfer.approved_by = actor
        transfer.approved_at = timezone.now()
        transfer.save(update_fields=["status", "approved_by", "approved_at", "updated_at"])
        self.audit.log_custom(
            TRANSFER_APPROVED,
            transfer,
            f"Transfer of {transfer.weight_transferred} approved "
            f"({transfer.from_stage.name_en} → {transfer.to_stage.name_en})",
            old_values={"status": WeightTransfer.STATUS_PENDING},
            new_values={"status": transfer.status, "approved_by": actor.pk},
            metadata={
                "order_id": transfer.order_id,
                "weight": transfer.weight_transferred,
                "from_stage": transfer.from_stage.code,
                "to_stage": transfer.to_stage.code,
            },
            actor=actor,
        )
        return transfer

    def reject(self, actor, transfer, reason):
        self._check(actor, transfer, "reject_transfer")
        reason = validate_reason(reason, "Rejection reason")
        transfer.status = WeightTransfer.STATUS_REJECTED
        transfer.rejected_by = actor
        transfer.rejected_at = timezone.now()
        transfer.rejection_reason = reason
        transfer.save(
            update_fields=["status", "rejected_by", "rejected_at", "rejection_reason", "updated_at"]
        )
        self.audit.log_custom(
            TRANSFER_REJECTED,
            transfer,
            f"Transfer of {transfer.weight_transferred} rejected: {reason}",
            old_values={"status": WeightTransfer.STATUS_PENDING},
            new_values={"status": transfer.status, "rejected_by": actor.pk},
            metadata={
                "order_id": transfer.order_id,
                "weight": transfer.weight_transferred,
                "reason": reason,
            },
            actor=actor,
        )
        return transfer
