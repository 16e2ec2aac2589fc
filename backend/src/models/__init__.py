from src.models.audit_log import AuditLogRecord, AuditLogTag

__all__ = [
    "AuditLogRecord",
    "AuditLogTag",
]
