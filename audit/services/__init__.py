from .trail import AuditTrail, AuditWriteFailure

__all__ = ["AuditTrail", "AuditWriteFailure"]
