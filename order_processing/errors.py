from audit.services.trail import AuditWriteFailure


class OrderFlowError(Exception):
    """Base class for business failures raised inside the order engine."""

    kind = "error"
    retryable = False
    default_message = "Operation failed."

    def __init__(self, message=None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class WorkflowValidationError(OrderFlowError):
    kind = "validation_error"
    default_message = "Invalid input."

    def __init__(self, message=None, errors=None, **details):
        self.errors = list(errors or [])
        if message is None and self.errors:
            message = "; ".join(self.errors)
        super().__init__(message, **details)


class MissingDestination(WorkflowValidationError):
    kind = "missing_destination"
    default_message = "A destination warehouse is required for this destination type."


class Unauthorized(OrderFlowError):
    kind = "unauthorized"
    default_message = "You are not allowed to perform this action."

    def __init__(self, message=None, capability=None, subject=None, actor=None, action=None, **details):
        self.capability = capability
        self.subject = subject
        self.actor = actor
        self.action = action
        super().__init__(message, capability=capability, action=action, **details)


class AlreadyResolved(OrderFlowError):
    kind = "already_resolved"
    default_message = "This transfer has already been resolved."


class AlreadyTransferred(OrderFlowError):
    kind = "already_transferred"
    default_message = "Sorted material has already been transferred."


class InsufficientWeight(OrderFlowError):
    kind = "insufficient_weight"
    default_message = "Requested weight exceeds the available balance."


class NegativeBalance(OrderFlowError):
    kind = "negative_balance"
    default_message = "Transferred weight exceeds received weight."


class ConcurrentModification(OrderFlowError):
    kind = "concurrent_modification"
    retryable = True
    default_message = "The record was modified by another request. Please retry."


class OutOfOrder(OrderFlowError):
    kind = "out_of_order"
    default_message = "Target stage is not the next stage in sequence."


class HandoverRequired(OrderFlowError):
    kind = "handover_required"
    default_message = "A completed handover is required before leaving this stage."


class NotFound(OrderFlowError):
    kind = "not_found"
    default_message = "Record not found."


__all__ = [
    "OrderFlowError",
    "WorkflowValidationError",
    "MissingDestination",
    "Unauthorized",
    "AlreadyResolved",
    "AlreadyTransferred",
    "InsufficientWeight",
    "NegativeBalance",
    "ConcurrentModification",
    "OutOfOrder",
    "HandoverRequired",
    "NotFound",
    "AuditWriteFailure",
]
