from __future__ import annotations

import logging
from dataclasses import dataclass, field

from django.conf import settings
from django.db import transaction

from audit.models import AuditLogEntry
from audit.utils.jsonsafe import json_safe, snapshot

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDE = ("created_at", "updated_at", "version")


class AuditWriteFailure(Exception):
    """An audit entry could not be persisted. Logged, never raised to callers."""

    kind = "audit_write_failure"

    def __init__(self, event_type, subject_type, subject_id, cause):
        self.event_type = event_type
        self.subject_type = subject_type
        self.subject_id = subject_id
        self.cause = cause
        super().__init__(
            f"Audit write failed for {event_type} on {subject_type}#{subject_id}: {cause}"
        )


def _actor_or_none(actor):
    if actor is None or not getattr(actor, "is_authenticated", False):
        return None
    return actor if getattr(actor, "pk", None) is not None else None


@dataclass
class AuditTrail:
    """Explicit audit writer passed to (or built by) every mutating service.

    ``enabled`` and ``exclude`` are per-instance configuration; build one
    with :meth:`from_settings` and override what a single call site needs.
    """

    enabled: bool = True
    exclude: frozenset = field(default_factory=lambda: frozenset(DEFAULT_EXCLUDE))
    actor: object = None

    @classmethod
    def from_settings(cls, actor=None, **overrides):
        enabled = overrides.pop(
            "enabled", getattr(settings, "ORDERFLOW_AUDIT_ENABLED", True)
        )
        exclude = overrides.pop(
            "exclude", getattr(settings, "ORDERFLOW_AUDIT_EXCLUDE", DEFAULT_EXCLUDE)
        )
        if overrides:
            raise TypeError(f"Unknown audit options: {sorted(overrides)}")
        return cls(enabled=bool(enabled), exclude=frozenset(exclude), actor=actor)

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    def log_created(self, entity, actor=None, metadata=None):
        return self._write(
            AuditLogEntry.CREATED,
            entity,
            "Record created",
            new_values=self._filtered(snapshot(entity)),
            metadata=metadata,
            actor=actor,
        )

    def log_updated(self, entity, old_values, new_values, actor=None, metadata=None):
        """Write an ``updated`` entry for the real differences only.

        Returns ``None`` without writing when the filtered values are equal.
        """
        old_diff, new_diff = self.diff(old_values, new_values)
        if not old_diff and not new_diff:
            return None
        meta = dict(metadata or {})
        meta["changed_fields"] = sorted(set(old_diff) | set(new_diff))
        return self._write(
            AuditLogEntry.UPDATED,
            entity,
            "Record updated",
            old_values=old_diff,
            new_values=new_diff,
            metadata=meta,
            actor=actor,
        )

    def log_deleted(self, entity, actor=None, metadata=None):
        return self._write(
            AuditLogEntry.DELETED,
            entity,
            "Record deleted",
            old_values=self._filtered(snapshot(entity)),
            metadata=metadata,
            actor=actor,
        )

    def log_soft_deleted(self, entity, actor=None, metadata=None):
        return self._write(
            AuditLogEntry.SOFT_DELETED,
            entity,
            "Record soft deleted",
            old_values={"deleted_at": None},
            new_values={"deleted_at": json_safe(getattr(entity, "deleted_at", None))},
            metadata=metadata,
            actor=actor,
        )

    def log_restored(self, entity, old_deleted_at=None, actor=None, metadata=None):
        return self._write(
            AuditLogEntry.RESTORED,
            entity,
            "Record restored",
            old_values={"deleted_at": json_safe(old_deleted_at)},
            new_values={"deleted_at": None},
            metadata=metadata,
            actor=actor,
        )

    def log_custom(
        self,
        event_type,
        entity,
        description,
        old_values=None,
        new_values=None,
        metadata=None,
        actor=None,
    ):
        return self._write(
            event_type,
            entity,
            description,
            old_values=old_values,
            new_values=new_values,
            metadata=metadata,
            actor=actor,
        )

    def diff(self, old_values, new_values):
        old = self._filtered(old_values or {})
        new = self._filtered(new_values or {})
        changed = [k for k in sorted(set(old) | set(new)) if old.get(k) != new.get(k)]
        return (
            {k: old[k] for k in changed if k in old},
            {k: new[k] for k in changed if k in new},
        )

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    def _filtered(self, values):
        return {
            str(k): json_safe(v) for k, v in values.items() if k not in self.exclude
        }

    def _write(
        self,
        event_type,
        entity,
        description,
        old_values=None,
        new_values=None,
        metadata=None,
        actor=None,
    ):
        if not self.enabled:
            return None
        subject_type = entity._meta.label
        subject_id = str(entity.pk)
        try:
            # savepoint: a failed insert must not poison the caller's transaction
            with transaction.atomic():
                return AuditLogEntry.objects.create(
                    event_type=event_type,
                    subject_type=subject_type,
                    subject_id=subject_id,
                    actor=_actor_or_none(actor if actor is not None else self.actor),
                    old_values=json_safe(old_values or {}),
                    new_values=json_safe(new_values or {}),
                    description=description or "System event",
                    metadata=json_safe(metadata or {}),
                )
        except Exception as exc:
            logger.exception(
                "%s", AuditWriteFailure(event_type, subject_type, subject_id, exc)
            )
            return None
