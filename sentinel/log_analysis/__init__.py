from .audit import AuditLogEntry, configure_logging, AUDIT, ALERT_I, ALERT_II, ALERT_III
from .audit_log import AuditLog

__all__ = [
    'AuditLog',
    'AuditLogEntry',
    'configure_logging',
    'AUDIT',
    'ALERT_I',
    'ALERT_II',
    'ALERT_III',
]
