from decimal import Decimal

import pytest

from audit.models import AuditLogEntry
from order_processing.models import OrderProcessing, WeightTransfer
from order_processing.services import approve_transfer, reject_transfer, request_transfer
from order_processing.services.approval import ApprovalGate
from audit.services import AuditTrail

from .helpers import make_actor, make_order, place_at


def setup_reservation(received="500"):
    requester = make_actor("keeper", "stage_material_reservation")
    approver = make_actor("sorter", "stage_sorting")
    order = make_order()
    source = place_at(order, "material_reservation", received=received)
    return order, source, requester, approver


@pytest.mark.django_db
def test_request_creates_pending_transfer_and_audits():
    order, source, requester, _ = setup_reservation()
    result = request_transfer(order, "material_reservation", "sorting", Decimal("200"), requester)
    assert result.success, result.message
    transfer = result.value
    assert transfer.status == WeightTransfer.STATUS_PENDING
    assert transfer.weight_transferred == Decimal("200.000")
    assert transfer.requested_by == requester
    assert AuditLogEntry.objects.for_subject(transfer).of_type("transfer_requested").count() == 1
    source.refresh_from_db()
    # nothing moves until approval
    assert source.weight_to_transfer == Decimal("0")
    assert source.weight_balance == Decimal("500")


@pytest.mark.django_db
def test_request_above_received_weight_fails():
    order, _, requester, _ = setup_reservation("500")
    result = request_transfer(order, "material_reservation", "sorting", Decimal("600"), requester)
    assert not result.success
    assert result.kind == "insufficient_weight"
    assert WeightTransfer.objects.count() == 0


@pytest.mark.django_db
def test_pending_requests_reserve_weight():
    order, _, requester, _ = setup_reservation("500")
    assert request_transfer(order, "material_reservation", "sorting", "300", requester).success
    second = request_transfer(order, "material_reservation", "sorting", "300", requester)
    assert second.kind == "insufficient_weight"
    assert request_transfer(order, "material_reservation", "sorting", "200", requester).success


@pytest.mark.django_db
def test_request_validations():
    order, _, requester, _ = setup_reservation()
    assert request_transfer(order, "material_reservation", "sorting", "0", requester).kind == "validation_error"
    backwards = request_transfer(order, "material_reservation", "review", "10", requester)
    assert backwards.kind == "validation_error"
    missing = request_transfer(order, "sorting", "cutting", "10", make_actor("s2", "stage_sorting"))
    assert missing.kind == "validation_error"
    assert request_transfer(order, "material_reservation", "sorting", "10", make_actor("nobody")).kind == "unauthorized"


@pytest.mark.django_db
def test_approval_moves_weight_and_creates_destination():
    order, source, requester, approver = setup_reservation("500")
    transfer = request_transfer(order, "material_reservation", "sorting", "200", requester).value
    assert not OrderProcessing.objects.for_stage(order, "sorting").exists()

    result = approve_transfer(approver, transfer)
    assert result.success, result.message
    assert result.payload["destination_created"] is True

    source.refresh_from_db()
    destination = OrderProcessing.objects.for_stage(order, "sorting").get()
    transfer.refresh_from_db()
    assert transfer.status == WeightTransfer.STATUS_APPROVED
    assert transfer.approved_by == approver
    assert transfer.approved_at is not None
    assert source.weight_to_transfer == Decimal("200")
    assert source.weight_balance == source.actual_weight_received - source.weight_to_transfer
    assert source.transfer_approved is True
    assert source.transfer_destination == "sorting"
    assert destination.status == OrderProcessing.STATUS_PENDING
    assert destination.actual_weight_received == Decimal("200")
    assert destination.weight_balance == Decimal("200")


@pytest.mark.django_db
def test_second_approval_adds_to_existing_destination():
    order, source, requester, approver = setup_reservation("500")
    first = request_transfer(order, "material_reservation", "sorting", "200", requester).value
    second = request_transfer(order, "material_reservation", "sorting", "300", requester).value
    approve_transfer(approver, first)
    before = OrderProcessing.objects.for_stage(order, "sorting").get().actual_weight_received
    result = approve_transfer(approver, second)
    assert result.payload["destination_created"] is False
    destination = OrderProcessing.objects.for_stage(order, "sorting").get()
    assert destination.actual_weight_received == before + Decimal("300")
    source.refresh_from_db()
    assert source.weight_balance == Decimal("0")


@pytest.mark.django_db
def test_requester_cannot_approve_own_transfer():
    order, source, _, _ = setup_reservation("500")
    both = make_actor("both", "stage_material_reservation", "stage_sorting")
    transfer = request_transfer(order, "material_reservation", "sorting", "100", both).value
    result = approve_transfer(both, transfer)
    assert result.kind == "unauthorized"
    transfer.refresh_from_db()
    assert transfer.status == WeightTransfer.STATUS_PENDING
    assert transfer.approved_by is None
    attempt = AuditLogEntry.objects.for_subject(transfer).of_type("unauthorized_attempt").get()
    assert attempt.actor == both
    assert attempt.metadata["action"] == "approve_transfer"


@pytest.mark.django_db
def test_approver_needs_authority_over_receiving_stage():
    order, _, requester, _ = setup_reservation("500")
    cutter = make_actor("cutter", "stage_cutting")
    transfer = request_transfer(order, "material_reservation", "sorting", "100", requester).value
    gate = ApprovalGate(AuditTrail())
    assert gate.can_approve(cutter, transfer) is False
    assert approve_transfer(cutter, transfer).kind == "unauthorized"


@pytest.mark.django_db
def test_resolved_transfer_cannot_be_resolved_again():
    order, source, requester, approver = setup_reservation("500")
    transfer = request_transfer(order, "material_reservation", "sorting", "200", requester).value
    assert approve_transfer(approver, transfer).success
    source.refresh_from_db()
    destination = OrderProcessing.objects.for_stage(order, "sorting").get()

    again = approve_transfer(approver, transfer)
    assert again.kind == "already_resolved"
    rejected = reject_transfer(approver, transfer, "Changed my mind about it")
    assert rejected.kind == "already_resolved"

    refreshed_source = OrderProcessing.objects.get(pk=source.pk)
    refreshed_destination = OrderProcessing.objects.get(pk=destination.pk)
    assert refreshed_source.weight_to_transfer == source.weight_to_transfer
    assert refreshed_destination.actual_weight_received == destination.actual_weight_received


@pytest.mark.django_db
def test_rejection_requires_a_reason_and_moves_no_weight():
    order, source, requester, approver = setup_reservation("500")
    transfer = request_transfer(order, "material_reservation", "sorting", "200", requester).value
    short = reject_transfer(approver, transfer, "no")
    assert short.kind == "validation_error"

    result = reject_transfer(approver, transfer, "Rolls are wet, weigh again")
    assert result.success
    transfer.refresh_from_db()
    assert transfer.status == WeightTransfer.STATUS_REJECTED
    assert transfer.rejected_by == approver
    assert transfer.rejection_reason == "Rolls are wet, weigh again"
    source.refresh_from_db()
    assert source.weight_to_transfer == Decimal("0")
    assert not OrderProcessing.objects.for_stage(order, "sorting").exists()
    # rejected weight is available again
    assert request_transfer(order, "material_reservation", "sorting", "500", requester).success


@pytest.mark.django_db
def test_each_transfer_operation_writes_exactly_one_entry():
    order, _, requester, approver = setup_reservation("500")
    count = AuditLogEntry.objects.count()
    transfer = request_transfer(order, "material_reservation", "sorting", "100", requester).value
    assert AuditLogEntry.objects.count() == count + 1
    approve_transfer(approver, transfer)
    assert AuditLogEntry.objects.count() == count + 2
    other = request_transfer(order, "material_reservation", "sorting", "100", requester).value
    reject_transfer(approver, other, "Duplicate of the first request")
    assert AuditLogEntry.objects.count() == count + 4


@pytest.mark.django_db
def test_pending_queries_by_stage():
    order, _, requester, _ = setup_reservation("500")
    transfer = request_transfer(order, "material_reservation", "sorting", "100", requester).value
    assert list(WeightTransfer.objects.pending_for(order, "sorting")) == [transfer]
    assert list(WeightTransfer.objects.pending_from(order, "material_reservation")) == [transfer]
    assert not WeightTransfer.objects.pending_for(order, "cutting").exists()


@pytest.mark.django_db
def test_pending_transfer_survives_cancellation_but_cannot_be_approved():
    from order_processing.services import cancel

    order, source, requester, approver = setup_reservation("500")
    transfer = request_transfer(order, "material_reservation", "sorting", "100", requester).value
    assert cancel(order, make_actor("boss", "cancel_order"), "Customer withdrew the order").success
    transfer.refresh_from_db()
    assert transfer.status == WeightTransfer.STATUS_PENDING

    assert approve_transfer(approver, transfer).kind == "validation_error"
    source.refresh_from_db()
    assert source.weight_to_transfer == Decimal("0")
    assert reject_transfer(approver, transfer, "Order was cancelled meanwhile").success


@pytest.mark.django_db
@pytest.mark.parametrize("weight", ["NaN", "Infinity"])
def test_non_finite_weight_is_rejected(weight):
    order, _, requester, _ = setup_reservation("500")
    result = request_transfer(order, "material_reservation", "sorting", weight, requester)
    assert result.kind == "validation_error"
    assert WeightTransfer.objects.count() == 0


def bump_version_before_write(monkeypatch, times):
    """Make the next ``times`` versioned writes lose a race with another writer."""
    from django.db.models import F

    from order_processing.services import transfers

    real = transfers.save_versioned
    remaining = {"n": times}

    def racing(instance, update_fields):
        if remaining["n"]:
            remaining["n"] -= 1
            type(instance).objects.filter(pk=instance.pk).update(version=F("version") + 1)
        return real(instance, update_fields)

    monkeypatch.setattr(transfers, "save_versioned", racing)


@pytest.mark.django_db
def test_approval_retries_once_after_a_lost_race(monkeypatch):
    order, source, requester, approver = setup_reservation("500")
    transfer = request_transfer(order, "material_reservation", "sorting", "200", requester).value
    bump_version_before_write(monkeypatch, times=1)

    result = approve_transfer(approver, transfer)
    assert result.success, result.message
    source.refresh_from_db()
    assert source.weight_to_transfer == Decimal("200")
    destination = OrderProcessing.objects.for_stage(order, "sorting").get()
    assert destination.actual_weight_received == Decimal("200")
    assert AuditLogEntry.objects.for_subject(transfer).of_type("transfer_approved").count() == 1


@pytest.mark.django_db
def test_approval_reports_concurrent_modification_when_retry_also_loses(monkeypatch):
    order, source, requester, approver = setup_reservation("500")
    transfer = request_transfer(order, "material_reservation", "sorting", "200", requester).value
    bump_version_before_write(monkeypatch, times=2)

    result = approve_transfer(approver, transfer)
    assert result.kind == "concurrent_modification"
    assert result.retryable is True
    transfer.refresh_from_db()
    assert transfer.status == WeightTransfer.STATUS_PENDING
    source.refresh_from_db()
    assert source.weight_to_transfer == Decimal("0")
    assert not OrderProcessing.objects.for_stage(order, "sorting").exists()
    assert not AuditLogEntry.objects.for_subject(transfer).of_type("transfer_approved").exists()
