from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_api.context import get_correlation_id
from crm_api.crm.enums import AuditAction, AuditEntityType
from crm_api.metrics import observe_audit_write_failure
from crm_api.models.audit import AuditLog

logger = logging.getLogger("crm_api.audit")


def record(
    session: Session,
    actor_user_id: uuid.UUID | None,
    action: AuditAction,
    entity_type: AuditEntityType,
    entity_id: uuid.UUID | None = None,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
) -> AuditLog | None:
    """Append one audit row in its own commit.

    Call after the business change is committed. A missing actor or a database
    failure never reaches the caller: the entry is dropped and logged instead.
    """
    if actor_user_id is None:
        logger.warning(
            "audit_skipped_no_actor",
            extra={"action": str(action), "entity_type": str(entity_type), "entity_id": str(entity_id)},
        )
        return None

    entry = AuditLog(
        actor_id=actor_user_id,
        action=str(action),
        entity_type=str(entity_type),
        entity_id=entity_id,
        old_values=old_values,
        new_values=new_values,
        correlation_id=get_correlation_id(),
    )
    try:
        session.add(entry)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        observe_audit_write_failure(str(action))
        logger.exception(
            "audit_write_failed",
            extra={
                "action": str(action),
                "entity_type": str(entity_type),
                "entity_id": str(entity_id),
                "actor_user_id": str(actor_user_id),
                "error": str(exc)[:500],
            },
        )
        return None
    return entry
