import logging

from celery import shared_task

from .models import WeightTransfer
from .notifications import TRANSFER_APPROVAL_REQUIRED, notify

logger = logging.getLogger(__name__)


@shared_task
def notify_transfer_approvers(transfer_id):
    """E-mail every actor able to approve the transfer, one message each."""
    from .services.transfers import approvers_for

    transfer = (
        WeightTransfer.objects.select_related("order", "from_stage", "to_stage", "requested_by")
        .filter(pk=transfer_id)
        .first()
    )
    if transfer is None:
        logger.warning("Transfer %s vanished before notification", transfer_id)
        return 0
    if not transfer.is_pending:
        return 0

    payload = {
        "order_number": transfer.order.order_number,
        "from_stage": transfer.from_stage.name_en,
        "to_stage": transfer.to_stage.name_en,
        "weight": str(transfer.weight_transferred),
        "requested_by": transfer.requested_by.get_username(),
        "transfer_id": transfer.pk,
    }
    sent = 0
    for approver in approvers_for(transfer):
        if notify(approver, TRANSFER_APPROVAL_REQUIRED, payload):
            sent += 1
    logger.info("Transfer %s: %d approval notification(s) sent", transfer_id, sent)
    return sent
