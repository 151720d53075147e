from crm_api.models.audit import AuditLog

__all__ = ["AuditLog"]
