import logging
from types import SimpleNamespace

import pytest
from django.core import mail

from order_processing.models import WeightTransfer
from order_processing.notifications import TRANSFER_APPROVAL_REQUIRED, notify
from order_processing.services import request_transfer
from order_processing.tasks import notify_transfer_approvers

from .helpers import make_actor, make_order, place_at


@pytest.fixture
def reservation(db):
    keeper = make_actor("keeper", "stage_material_reservation")
    order = make_order()
    place_at(order, "material_reservation", received="500")
    return order, keeper


@pytest.mark.django_db
def test_request_emails_each_approver_after_commit(reservation, django_capture_on_commit_callbacks):
    order, keeper = reservation
    make_actor("sorter1", "stage_sorting")
    make_actor("sorter2", "stage_sorting")
    make_actor("cutter", "stage_cutting")

    with django_capture_on_commit_callbacks(execute=True) as callbacks:
        result = request_transfer(order, "material_reservation", "sorting", "200", keeper)
    assert result.success
    assert len(callbacks) == 1

    assert sorted(m.to[0] for m in mail.outbox) == ["sorter1@example.com", "sorter2@example.com"]
    message = mail.outbox[0]
    assert message.subject == f"Weight Transfer Approval Required - {order.order_number}"
    assert "200.000" in message.body
    assert message.alternatives[0][1] == "text/html"


@pytest.mark.django_db
def test_requester_is_not_notified(reservation, django_capture_on_commit_callbacks):
    order, _ = reservation
    both = make_actor("both", "stage_material_reservation", "stage_sorting")
    with django_capture_on_commit_callbacks(execute=True):
        request_transfer(order, "material_reservation", "sorting", "100", both)
    assert mail.outbox == []


@pytest.mark.django_db
def test_failed_request_queues_nothing(reservation, django_capture_on_commit_callbacks):
    order, keeper = reservation
    make_actor("sorter", "stage_sorting")
    with django_capture_on_commit_callbacks(execute=True) as callbacks:
        result = request_transfer(order, "material_reservation", "sorting", "900", keeper)
    assert result.kind == "insufficient_weight"
    assert callbacks == []
    assert mail.outbox == []


@pytest.mark.django_db
def test_broker_failure_does_not_undo_the_request(
    reservation, django_capture_on_commit_callbacks, monkeypatch, caplog
):
    order, keeper = reservation

    def refuse(*args, **kwargs):
        raise ConnectionError("broker down")

    monkeypatch.setattr("order_processing.tasks.notify_transfer_approvers", SimpleNamespace(delay=refuse))
    with caplog.at_level(logging.ERROR, logger="order_processing"):
        with django_capture_on_commit_callbacks(execute=True):
            result = request_transfer(order, "material_reservation", "sorting", "100", keeper)
    assert result.success
    assert WeightTransfer.objects.pending().count() == 1
    assert "Could not queue approval notification" in caplog.text


@pytest.mark.django_db
def test_task_skips_resolved_and_missing_transfers(reservation):
    order, keeper = reservation
    make_actor("sorter", "stage_sorting")
    transfer = request_transfer(order, "material_reservation", "sorting", "100", keeper).value
    WeightTransfer.objects.filter(pk=transfer.pk).update(status=WeightTransfer.STATUS_REJECTED)
    assert notify_transfer_approvers(transfer.pk) == 0
    assert notify_transfer_approvers(transfer.pk + 1000) == 0
    assert mail.outbox == []


@pytest.mark.django_db
def test_notify_without_address_sends_nothing():
    silent = make_actor("silent")
    silent.email = ""
    assert notify(silent, TRANSFER_APPROVAL_REQUIRED, {"order_number": "ORD-1"}) is False
    assert mail.outbox == []


@pytest.mark.django_db
def test_send_failure_is_logged_not_raised(monkeypatch, caplog):
    actor = make_actor("reader")

    def explode(self, fail_silently=False):
        raise OSError("smtp down")

    monkeypatch.setattr("django.core.mail.EmailMultiAlternatives.send", explode)
    with caplog.at_level(logging.ERROR, logger="order_processing"):
        assert notify(actor, TRANSFER_APPROVAL_REQUIRED, {"order_number": "ORD-1"}) is False
    assert "Failed to send" in caplog.text
