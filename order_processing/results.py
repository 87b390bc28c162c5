from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from typing import Any

from django.db import transaction

from audit.services import AuditTrail

from .errors import ConcurrentModification, OrderFlowError, Unauthorized

logger = logging.getLogger(__name__)

UNAUTHORIZED_ATTEMPT = "unauthorized_attempt"


@dataclass
class ServiceResult:
    """Outcome of a public engine operation.

    Failures carry the machine-readable ``kind`` of the error that caused
    them; nothing is communicated through a silent no-op.
    """

    success: bool
    value: Any = None
    kind: str = ""
    message: str = ""
    warnings: list = field(default_factory=list)
    payload: dict = field(default_factory=dict)
    retryable: bool = False

    def __bool__(self):
        return self.success

    @classmethod
    def ok(cls, value=None, message="", warnings=None, payload=None):
        return cls(
            success=True,
            value=value,
            message=message,
            warnings=list(warnings or []),
            payload=dict(payload or {}),
        )

    @classmethod
    def failure(cls, error: OrderFlowError):
        payload = dict(error.details)
        errors = getattr(error, "errors", None)
        if errors:
            payload["errors"] = list(errors)
        return cls(
            success=False,
            kind=error.kind,
            message=error.message,
            payload=payload,
            retryable=error.retryable,
        )

    def unwrap(self):
        if not self.success:
            raise OrderFlowError(f"{self.kind}: {self.message}")
        return self.value

    def as_dict(self):
        data = {
            "success": self.success,
            "message": self.message,
            "warnings": list(self.warnings),
            "payload": self.payload,
        }
        if not self.success:
            data["error"] = self.kind
            data["retryable"] = self.retryable
        return data


def _record_unauthorized(trail, exc, func_name):
    subject = exc.subject
    if subject is None or getattr(subject, "pk", None) is None:
        # nothing persisted yet; file the attempt under the actor
        subject = exc.actor
    if subject is None or getattr(subject, "pk", None) is None:
        logger.warning("Unauthorized %s by anonymous actor not audited", func_name)
        return
    trail.log_custom(
        UNAUTHORIZED_ATTEMPT,
        subject,
        exc.message,
        metadata={
            "action": exc.action or func_name,
            "capability": exc.capability,
        },
        actor=exc.actor,
    )


def service_operation(func=None, *, retries=0):
    """Run ``func`` as one atomic unit and convert failures into results.

    The wrapped function receives an ``audit`` keyword (an :class:`AuditTrail`
    built from settings unless the caller passes one) and may return either a
    plain value or a :class:`ServiceResult`. ``ConcurrentModification`` is
    retried ``retries`` times before it is reported.
    """

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, audit=None, **kwargs):
            trail = audit if audit is not None else AuditTrail.from_settings()
            attempt = 0
            while True:
                try:
                    with transaction.atomic():
                        value = fn(*args, audit=trail, **kwargs)
                except ConcurrentModification as exc:
                    if attempt < retries:
                        attempt += 1
                        logger.info("%s: concurrent modification, retry %d", fn.__name__, attempt)
                        continue
                    logger.warning("%s failed: %s", fn.__name__, exc.message)
                    return ServiceResult.failure(exc)
                except Unauthorized as exc:
                    # state is rolled back; the attempt itself is still recorded
                    _record_unauthorized(trail, exc, fn.__name__)
                    logger.warning("%s refused: %s", fn.__name__, exc.message)
                    return ServiceResult.failure(exc)
                except OrderFlowError as exc:
                    logger.info("%s failed (%s): %s", fn.__name__, exc.kind, exc.message)
                    return ServiceResult.failure(exc)
                if isinstance(value, ServiceResult):
                    return value
                return ServiceResult.ok(value)

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator
