from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from tracker.audit import AUDIT_ACTION_CONFIG_UPDATED, log_audit
from tracker.db import get_db
from tracker.models import AuditActorType
from tracker.schemas import (
    AutoEmailConfigRead,
    AutoEmailConfigUpsert,
    AutoEmailTickRead,
    EmailLogRead,
    EmailSchedulerStatusRead,
    ScheduleRunResultRead,
)
from tracker.security import require_super_admin
from tracker.services.email_logs import list_recent_deliveries
from tracker.services.email_schedule_store import (
    apply_auto_email_config_update,
    get_or_create_auto_email_config,
    to_auto_email_config_read,
)
from tracker.services.email_scheduler import EmailScheduler, run_auto_email_tick
from tracker.settings import get_email_scheduler_interval_seconds, get_settings

router = APIRouter(prefix="/api/email/admin", tags=["auto-email"])


def _client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip() or None
    return request.client.host if request.client else None


def _user_agent(request: Request) -> str | None:
    value = request.headers.get("user-agent")
    return value[:512] if value else None


def _actor_id(claims: dict[str, Any]) -> str:
    return str(claims.get("email") or claims.get("sub") or "admin")


@router.get("/auto-email-config", response_model=AutoEmailConfigRead)
def get_auto_email_config(
    _claims: dict[str, Any] = Depends(require_super_admin),
    db: Session = Depends(get_db),
) -> AutoEmailConfigRead:
    return to_auto_email_config_read(get_or_create_auto_email_config(db))


@router.post("/auto-email-config", response_model=AutoEmailConfigRead)
def upsert_auto_email_config(
    payload: AutoEmailConfigUpsert,
    request: Request,
    claims: dict[str, Any] = Depends(require_super_admin),
    db: Session = Depends(get_db),
) -> AutoEmailConfigRead:
    config = apply_auto_email_config_update(db, payload)
    result = to_auto_email_config_read(config)

    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=_actor_id(claims),
        action=AUDIT_ACTION_CONFIG_UPDATED,
        success=True,
        entity_type="auto_email_config",
        entity_id=str(result.id),
        ip=_client_ip(request),
        user_agent=_user_agent(request),
        details={
            "enabled": result.enabled,
            "to_emails": result.to_emails,
            "timezone": result.timezone,
            "send_when_empty": result.send_when_empty,
            "departments": [
                {
                    "department": item.department,
                    "enabled": item.enabled,
                    "days_of_week": item.days_of_week,
                    "time_of_day": item.time_of_day,
                }
                for item in result.departments
            ],
            "replace_departments": payload.replace_departments,
        },
        request_id=getattr(request.state, "request_id", None),
    )
    return result


@router.get("/auto-email-logs", response_model=list[EmailLogRead])
def list_auto_email_logs(
    department: str | None = Query(default=None, max_length=255),
    limit: int = Query(default=50, ge=1, le=500),
    _claims: dict[str, Any] = Depends(require_super_admin),
    db: Session = Depends(get_db),
) -> list[EmailLogRead]:
    return list_recent_deliveries(db, department=department, limit=limit)


@router.get("/auto-email-scheduler", response_model=EmailSchedulerStatusRead)
def get_auto_email_scheduler_status(
    request: Request,
    _claims: dict[str, Any] = Depends(require_super_admin),
) -> EmailSchedulerStatusRead:
    scheduler: EmailScheduler | None = getattr(request.app.state, "email_scheduler", None)
    if scheduler is None:
        return EmailSchedulerStatusRead(
            running=False,
            interval_seconds=get_email_scheduler_interval_seconds(),
            max_concurrent_jobs=int(get_settings().email_scheduler_max_concurrent_jobs),
        )
    return EmailSchedulerStatusRead(**scheduler.status())


@router.post("/auto-email-scheduler/run", response_model=AutoEmailTickRead)
def run_auto_email_scheduler_now(
    _claims: dict[str, Any] = Depends(require_super_admin),
) -> AutoEmailTickRead:
    evaluated_at = datetime.now(timezone.utc)
    results = run_auto_email_tick(evaluated_at)
    return AutoEmailTickRead(
        evaluated_at_utc=evaluated_at,
        results=[ScheduleRunResultRead(**item.to_dict()) for item in results],
    )
