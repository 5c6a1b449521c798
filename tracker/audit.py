from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from tracker.models import AuditActorType, AuditLog

logger = logging.getLogger("tracker.audit")

AUDIT_ACTION_CONFIG_UPDATED = "AUTO_EMAIL_CONFIG_UPDATED"
AUDIT_ACTION_EMAIL_SENT = "AUTO_EMAIL_SENT"
AUDIT_ACTION_EMAIL_FAILED = "AUTO_EMAIL_FAILED"
AUDIT_ACTION_EMAIL_SKIPPED = "AUTO_EMAIL_SKIPPED"

SCHEDULER_ACTOR_ID = "email_scheduler"


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> None:
    """Persist an audit row and mirror it to the log.

    A failed audit write is rolled back and logged; it never fails the caller's flow.
    """
    audit = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        ip=ip,
        user_agent=user_agent,
        success=success,
        details=details or {},
    )
    db.add(audit)
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={
                "request_id": request_id,
                "action": action,
                "actor_type": actor_type.value,
                "actor_id": actor_id,
                "success": success,
            },
        )
        return

    logger.info(
        "audit_event",
        extra={
            "request_id": request_id,
            "action": action,
            "actor_type": actor_type.value,
            "actor_id": actor_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "success": success,
            "details": details or {},
        },
    )


def log_scheduler_audit(
    db: Session,
    *,
    action: str,
    success: bool,
    department: str,
    schedule_id: int,
    details: dict[str, Any] | None = None,
) -> None:
    log_audit(
        db,
        actor_type=AuditActorType.SYSTEM,
        actor_id=SCHEDULER_ACTOR_ID,
        action=action,
        success=success,
        entity_type="auto_email_department_config",
        entity_id=str(schedule_id),
        details={"department": department, **(details or {})},
    )
