from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from tracker.models import SYSTEM_USER_ID, EmailLog


def record_delivery(
    session: Session,
    *,
    department: str,
    recipients: list[str] | tuple[str, ...],
    cc: list[str] | tuple[str, ...] = (),
    subject: str,
    delivery_id: str | None,
    user_id: str = SYSTEM_USER_ID,
) -> EmailLog:
    email_log = EmailLog(
        to_emails=list(recipients),
        cc_emails=list(cc) or None,
        subject=subject,
        body="",
        department=department,
        delivery_id=delivery_id,
        user_id=user_id,
    )
    session.add(email_log)
    session.commit()
    session.refresh(email_log)
    return email_log


def list_recent_deliveries(session: Session, *, department: str | None = None, limit: int = 50) -> list[EmailLog]:
    stmt = select(EmailLog).order_by(EmailLog.created_at.desc(), EmailLog.id.desc()).limit(max(1, limit))
    if department is not None:
        stmt = stmt.where(EmailLog.department == department)
    return list(session.scalars(stmt).all())
