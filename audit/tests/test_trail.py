import logging

import pytest
from django.core.exceptions import ValidationError
from django.db import transaction

from audit.models import AuditLogEntry
from audit.services import AuditTrail
from audit.utils.jsonsafe import snapshot
from order_processing.models import Warehouse


def make_warehouse():
    return Warehouse.objects.create(code="CUT-1", name="Cutting hall", warehouse_type=Warehouse.CUTTING)


@pytest.mark.django_db
def test_log_created_drops_excluded_fields():
    wh = make_warehouse()
    entry = AuditTrail().log_created(wh)
    assert entry.event_type == AuditLogEntry.CREATED
    assert entry.subject_type == "order_processing.Warehouse"
    assert entry.subject_id == str(wh.pk)
    assert entry.new_values["code"] == "CUT-1"
    assert "created_at" not in entry.new_values


@pytest.mark.django_db
def test_log_updated_records_only_real_differences():
    wh = make_warehouse()
    trail = AuditTrail()
    before = snapshot(wh)
    wh.name = "Cutting hall B"
    wh.save()
    entry = trail.log_updated(wh, before, snapshot(wh))
    assert entry.old_values == {"name": "Cutting hall"}
    assert entry.new_values == {"name": "Cutting hall B"}
    assert entry.metadata["changed_fields"] == ["name"]


@pytest.mark.django_db
def test_log_updated_without_diff_writes_nothing():
    wh = make_warehouse()
    trail = AuditTrail()
    values = snapshot(wh)
    assert trail.log_updated(wh, values, dict(values)) is None
    # only excluded keys differ
    assert trail.log_updated(wh, {"updated_at": "a"}, {"updated_at": "b"}) is None
    assert AuditLogEntry.objects.count() == 0


@pytest.mark.django_db
def test_soft_delete_and_restore_have_their_own_event_types():
    wh = make_warehouse()
    trail = AuditTrail()
    trail.log_soft_deleted(wh)
    trail.log_restored(wh, old_deleted_at=None)
    events = list(AuditLogEntry.objects.for_subject(wh).values_list("event_type", flat=True))
    assert events == [AuditLogEntry.SOFT_DELETED, AuditLogEntry.RESTORED]


@pytest.mark.django_db
def test_hard_delete_keeps_the_last_values():
    wh = make_warehouse()
    pk = wh.pk
    AuditTrail().log_deleted(wh)
    wh.delete()
    entry = AuditLogEntry.objects.get(subject_id=str(pk))
    assert entry.event_type == AuditLogEntry.DELETED
    assert entry.old_values["name"] == "Cutting hall"
    assert entry.new_values in (None, {})


@pytest.mark.django_db
def test_entries_are_immutable():
    wh = make_warehouse()
    entry = AuditTrail().log_custom("inspected", wh, "Inspected")
    entry.description = "changed"
    with pytest.raises(ValidationError):
        entry.save()
    with pytest.raises(ValidationError):
        entry.delete()
    with pytest.raises(ValidationError):
        AuditLogEntry.objects.all().update(description="x")
    with pytest.raises(ValidationError):
        AuditLogEntry.objects.all().delete()
    assert AuditLogEntry.objects.get(pk=entry.pk).description == "Inspected"


@pytest.mark.django_db
def test_disabled_trail_is_per_instance(settings):
    wh = make_warehouse()
    assert AuditTrail(enabled=False).log_created(wh) is None
    assert AuditTrail().log_created(wh) is not None
    settings.ORDERFLOW_AUDIT_ENABLED = False
    assert AuditTrail.from_settings().log_created(wh) is None
    assert AuditTrail.from_settings(enabled=True).log_created(wh) is not None
    assert AuditLogEntry.objects.count() == 2


@pytest.mark.django_db
def test_write_failure_is_logged_and_business_transaction_survives(monkeypatch, caplog):
    wh = make_warehouse()

    def boom(**kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(AuditLogEntry.objects, "create", boom)
    with caplog.at_level(logging.ERROR, logger="audit"):
        with transaction.atomic():
            assert AuditTrail().log_created(wh) is None
            wh.name = "Still saved"
            wh.save()
    wh.refresh_from_db()
    assert wh.name == "Still saved"
    assert "Audit write failed for created" in caplog.text
    assert "disk full" in caplog.text
