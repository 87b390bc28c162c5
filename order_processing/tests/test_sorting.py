from decimal import Decimal

import pytest

from audit.models import AuditLogEntry
from order_processing.models import OrderProcessing, Warehouse
from order_processing.services import (
    approve_sorting,
    can_user_approve_sorting,
    record_sorting_results,
    sorting_summary,
    transfer_to_destination,
)

from .helpers import make_actor, make_order, place_at

BALANCED = dict(
    roll1_weight="600",
    roll1_width="120",
    roll1_location="Bay A",
    roll2_weight="390",
    roll2_width="80",
    roll2_location="Bay B",
    sorting_waste_weight="10",
    waste_reason="Torn edges",
)


def sorting_row(received="1000", **fields):
    return place_at(make_order(), "sorting", received=received, **fields)


@pytest.mark.django_db
def test_record_results_stores_rolls_and_audits():
    sorter = make_actor("sorter", "stage_sorting")
    processing = sorting_row()
    result = record_sorting_results(processing, sorter, **BALANCED)
    assert result.success, result.message
    assert result.warnings == []
    processing.refresh_from_db()
    assert processing.roll1_weight == Decimal("600")
    assert processing.roll2_location == "Bay B"
    assert processing.version == 1
    entry = AuditLogEntry.objects.for_subject(processing).of_type("sorting_recorded").get()
    assert entry.new_values["roll1_weight"] == "600.000"


@pytest.mark.django_db
@pytest.mark.parametrize(
    "changes, error",
    [
        ({"roll1_weight": "0", "roll2_weight": "0"}, "At least one roll must have weight greater than 0."),
        ({"roll1_location": ""}, "roll1_location is required when roll1_weight > 0."),
        ({"roll2_width": "0"}, "roll2_width must be greater than 0."),
        ({"waste_reason": ""}, "waste_reason is required when waste weight > 0."),
        ({"sorting_waste_weight": "-1"}, "sorting_waste_weight cannot be negative."),
    ],
)
def test_record_results_validation(changes, error):
    sorter = make_actor("sorter", "stage_sorting")
    processing = sorting_row()
    result = record_sorting_results(processing, sorter, **dict(BALANCED, **changes))
    assert result.kind == "validation_error"
    assert error in result.payload["errors"]
    processing.refresh_from_db()
    assert processing.roll1_weight is None


@pytest.mark.django_db
def test_record_results_only_on_sorting_stage():
    sorter = make_actor("sorter", "stage_sorting")
    cutting = place_at(make_order(), "cutting", received="100")
    assert record_sorting_results(cutting, sorter, **BALANCED).kind == "validation_error"


@pytest.mark.django_db
def test_summary_reports_balance():
    sorter = make_actor("sorter", "stage_sorting")
    processing = sorting_row()
    record_sorting_results(processing, sorter, **BALANCED)
    processing.refresh_from_db()
    summary = sorting_summary(processing)
    assert summary["total_sorted_weight"] == Decimal("1000.000")
    assert summary["difference"] == Decimal("0.000")
    assert summary["waste_percentage"] == Decimal("1.00")
    assert summary["balanced"] is True


@pytest.mark.django_db
def test_approval_sets_flags_and_audits():
    sorter = make_actor("sorter", "stage_sorting")
    processing = sorting_row()
    record_sorting_results(processing, sorter, **BALANCED)
    result = approve_sorting(processing, sorter)
    assert result.success, result.message
    assert result.warnings == []
    processing.refresh_from_db()
    assert processing.sorting_approved is True
    assert processing.sorting_approved_by == sorter
    assert processing.sorting_approved_at is not None
    assert AuditLogEntry.objects.for_subject(processing).of_type("sorting_approved").count() == 1

    again = approve_sorting(processing, sorter)
    assert not again.success
    assert again.kind == "already_resolved"


@pytest.mark.django_db
def test_imbalance_is_a_warning_by_default():
    sorter = make_actor("sorter", "stage_sorting")
    processing = sorting_row()
    record_sorting_results(processing, sorter, **dict(BALANCED, roll2_weight="300"))
    result = approve_sorting(processing, sorter)
    assert result.success
    assert len(result.warnings) == 1
    assert "differs from received weight" in result.warnings[0]


@pytest.mark.django_db
def test_imbalance_blocks_approval_in_strict_mode(settings):
    settings.ORDERFLOW_SORTING_BALANCE_STRICT = True
    sorter = make_actor("sorter", "stage_sorting")
    processing = sorting_row()
    record_sorting_results(processing, sorter, **dict(BALANCED, roll2_weight="300"))
    result = approve_sorting(processing, sorter)
    assert result.kind == "validation_error"
    processing.refresh_from_db()
    assert processing.sorting_approved is False


@pytest.mark.django_db
def test_within_tolerance_counts_as_balanced():
    sorter = make_actor("sorter", "stage_sorting")
    processing = sorting_row()
    record_sorting_results(processing, sorter, **dict(BALANCED, sorting_waste_weight="10.005"))
    assert approve_sorting(processing, sorter).warnings == []


@pytest.mark.django_db
def test_only_assignee_or_override_may_approve():
    assignee = make_actor("assignee", "stage_sorting")
    colleague = make_actor("colleague", "stage_sorting")
    supervisor = make_actor("supervisor", "override_sorting")
    processing = sorting_row(assigned_to=assignee)
    assert can_user_approve_sorting(assignee, processing)
    assert not can_user_approve_sorting(colleague, processing)
    assert can_user_approve_sorting(supervisor, processing)

    record_sorting_results(processing, assignee, **BALANCED)
    result = approve_sorting(processing, colleague)
    assert result.kind == "unauthorized"
    assert AuditLogEntry.objects.for_subject(processing).of_type("unauthorized_attempt").count() == 1
    assert approve_sorting(processing, supervisor).success


@pytest.mark.django_db
def test_transfer_requires_approval_first():
    sorter = make_actor("sorter", "stage_sorting")
    processing = sorting_row()
    record_sorting_results(processing, sorter, **BALANCED)
    result = transfer_to_destination(processing, sorter, destination_type="direct_delivery")
    assert result.kind == "validation_error"


@pytest.mark.django_db
def test_transfer_twice_fails_and_audits_once():
    sorter = make_actor("sorter", "stage_sorting")
    hall = Warehouse.objects.create(code="CUT-1", name="Cutting hall", warehouse_type=Warehouse.CUTTING)
    processing = sorting_row()
    record_sorting_results(processing, sorter, **BALANCED)
    approve_sorting(processing, sorter)

    first = transfer_to_destination(processing, sorter, hall.pk, "cutting_warehouse")
    assert first.success, first.message
    assert first.payload["destination"] == "cutting_warehouse"
    assert first.payload["warehouse"] == "Cutting hall"

    second = transfer_to_destination(processing, sorter, hall.pk, "cutting_warehouse")
    assert not second.success
    assert second.kind == "already_transferred"

    processing.refresh_from_db()
    assert processing.transfer_completed is True
    assert processing.transfer_completed_at is not None
    assert processing.destination_warehouse == hall
    entries = AuditLogEntry.objects.for_subject(processing).of_type("sorting_transfer_completed")
    assert entries.count() == 1


@pytest.mark.django_db
def test_other_warehouse_needs_a_warehouse():
    sorter = make_actor("sorter", "stage_sorting")
    processing = sorting_row()
    record_sorting_results(processing, sorter, **BALANCED)
    approve_sorting(processing, sorter)
    result = transfer_to_destination(processing, sorter, None, "other_warehouse")
    assert result.kind == "missing_destination"
    processing.refresh_from_db()
    assert processing.transfer_completed is False


@pytest.mark.django_db
def test_direct_delivery_has_no_warehouse():
    sorter = make_actor("sorter", "stage_sorting")
    processing = sorting_row()
    record_sorting_results(processing, sorter, **BALANCED)
    approve_sorting(processing, sorter)
    result = transfer_to_destination(processing, sorter, destination_type="direct_delivery")
    assert result.success
    assert result.payload["warehouse"] is None
    processing.refresh_from_db()
    assert processing.post_sorting_destination == OrderProcessing.DEST_DIRECT_DELIVERY


@pytest.mark.django_db
def test_results_are_frozen_after_approval():
    sorter = make_actor("sorter", "stage_sorting")
    processing = sorting_row()
    record_sorting_results(processing, sorter, **BALANCED)
    approve_sorting(processing, sorter)
    assert record_sorting_results(processing, sorter, **BALANCED).kind == "validation_error"


@pytest.mark.django_db
def test_stale_version_is_a_concurrent_modification():
    sorter = make_actor("sorter", "stage_sorting")
    processing = sorting_row()
    record_sorting_results(processing, sorter, **BALANCED)
    result = approve_sorting(processing, sorter, expected_version=0)
    assert result.kind == "concurrent_modification"
    assert result.retryable is True


@pytest.mark.django_db
def test_pending_sorting_queue():
    sorter = make_actor("sorter", "stage_sorting")
    waiting = sorting_row()
    done = sorting_row()
    place_at(make_order(), "cutting", received="100")
    record_sorting_results(done, sorter, **BALANCED)
    approve_sorting(done, sorter).unwrap()
    assert list(OrderProcessing.objects.pending_sorting_approval()) == [waiting]


@pytest.mark.django_db
def test_unwrap_raises_on_failure():
    from order_processing.errors import OrderFlowError

    result = approve_sorting(sorting_row(), make_actor("nobody"))
    with pytest.raises(OrderFlowError):
        result.unwrap()


@pytest.mark.django_db
@pytest.mark.parametrize(
    "changes, error",
    [
        ({"roll1_weight": "NaN"}, "roll1_weight must be numeric."),
        ({"sorting_waste_weight": "Infinity"}, "sorting_waste_weight must be numeric."),
        ({"roll2_width": "Infinity"}, "roll2_width must be numeric."),
    ],
)
def test_non_finite_values_are_validation_errors(changes, error):
    sorter = make_actor("sorter", "stage_sorting")
    processing = sorting_row()
    result = record_sorting_results(processing, sorter, **dict(BALANCED, **changes))
    assert result.kind == "validation_error"
    assert error in result.payload["errors"]


@pytest.mark.django_db
def test_malformed_version_is_a_validation_error():
    sorter = make_actor("sorter", "stage_sorting")
    processing = sorting_row()
    record_sorting_results(processing, sorter, **BALANCED)
    result = approve_sorting(processing, sorter, expected_version="abc")
    assert result.kind == "validation_error"
    processing.refresh_from_db()
    assert processing.sorting_approved is False
