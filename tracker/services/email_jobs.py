from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from tracker.audit import (
    AUDIT_ACTION_EMAIL_FAILED,
    AUDIT_ACTION_EMAIL_SENT,
    AUDIT_ACTION_EMAIL_SKIPPED,
    log_scheduler_audit,
)
from tracker.services.department_reports import DepartmentReport, build_department_report
from tracker.services.email_claims import release_claim
from tracker.services.email_logs import record_delivery
from tracker.services.email_schedule_store import DepartmentScheduleSnapshot, SchedulerConfigSnapshot
from tracker.services.mail_transport import DeliveryReceipt, EmailTransport, OutgoingEmail

logger = logging.getLogger("tracker.email_jobs")

ReportBuilder = Callable[..., DepartmentReport]

SKIP_REASON_EMPTY_REPORT = "EMPTY_REPORT"
DELIVERY_RECORD_FAILED = "DELIVERY_RECORD_FAILED"


class JobOutcomeStatus(str, enum.Enum):
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True, slots=True)
class JobOutcome:
    status: JobOutcomeStatus
    email_log_id: int | None = None
    reason: str | None = None

    @classmethod
    def delivered(cls, email_log_id: int | None, reason: str | None = None) -> JobOutcome:
        return cls(status=JobOutcomeStatus.DELIVERED, email_log_id=email_log_id, reason=reason)

    @classmethod
    def failed(cls, reason: str) -> JobOutcome:
        return cls(status=JobOutcomeStatus.FAILED, reason=reason)

    @classmethod
    def skipped(cls, reason: str) -> JobOutcome:
        return cls(status=JobOutcomeStatus.SKIPPED, reason=reason)

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "email_log_id": self.email_log_id, "reason": self.reason}


def _error_reason(exc: Exception) -> str:
    return (str(exc) or exc.__class__.__name__)[:500]


def _fail(
    session: Session,
    *,
    schedule: DepartmentScheduleSnapshot,
    exc: Exception,
    stage: str,
) -> JobOutcome:
    reason = _error_reason(exc)
    session.rollback()
    logger.error(
        "email_schedule_delivery_failed",
        exc_info=exc,
        extra={
            "schedule_id": schedule.id,
            "department": schedule.department,
            "stage": stage,
            "reason": reason,
        },
    )
    try:
        release_claim(session, schedule_id=schedule.id)
    except Exception:
        # The claim stays in place; the schedule resumes at its next natural occurrence.
        logger.exception(
            "email_schedule_claim_release_failed",
            extra={"schedule_id": schedule.id, "department": schedule.department},
        )
    log_scheduler_audit(
        session,
        action=AUDIT_ACTION_EMAIL_FAILED,
        success=False,
        department=schedule.department,
        schedule_id=schedule.id,
        details={"stage": stage, "error": reason},
    )
    return JobOutcome.failed(reason)


def execute_department_email(
    session: Session,
    *,
    schedule: DepartmentScheduleSnapshot,
    config: SchedulerConfigSnapshot,
    now_utc: datetime,
    transport: EmailTransport,
    report_builder: ReportBuilder = build_department_report,
) -> JobOutcome:
    """Build and deliver one department report for a schedule whose claim was won.

    Never raises. A failure before the mail leaves releases the claim so the schedule can
    fire again at its next natural occurrence.
    """
    try:
        report = report_builder(session, schedule.department, as_of=now_utc)
    except Exception as exc:
        return _fail(session, schedule=schedule, exc=exc, stage="report")

    if report.is_empty and not config.send_when_empty:
        logger.info(
            "email_schedule_skipped_empty_report",
            extra={"schedule_id": schedule.id, "department": schedule.department},
        )
        log_scheduler_audit(
            session,
            action=AUDIT_ACTION_EMAIL_SKIPPED,
            success=True,
            department=schedule.department,
            schedule_id=schedule.id,
            details={"reason": SKIP_REASON_EMPTY_REPORT, "employee_count": report.employee_count},
        )
        return JobOutcome.skipped(SKIP_REASON_EMPTY_REPORT)

    recipients = tuple(config.to_emails)
    recipient_keys = {item.lower() for item in recipients}
    cc = tuple(item for item in report.cc_emails if item.lower() not in recipient_keys)
    try:
        receipt: DeliveryReceipt = transport.send(
            OutgoingEmail(
                recipients=recipients,
                cc=cc,
                subject=report.subject,
                html_body=report.html_body,
            )
        )
    except Exception as exc:
        return _fail(session, schedule=schedule, exc=exc, stage="transport")

    details = {
        "subject": report.subject,
        "to": list(recipients),
        "cc_count": len(cc),
        "employee_count": report.employee_count,
        "task_count": report.task_count,
        "transport": receipt.transport,
        "delivery_id": receipt.delivery_id,
    }
    try:
        email_log = record_delivery(
            session,
            department=schedule.department,
            recipients=recipients,
            cc=cc,
            subject=report.subject,
            delivery_id=receipt.delivery_id,
        )
    except Exception:
        # The mail already left; keep the claim so today's slot is not sent twice.
        session.rollback()
        logger.exception(
            "email_delivery_record_failed",
            extra={"schedule_id": schedule.id, "department": schedule.department, **details},
        )
        return JobOutcome.delivered(None, reason=DELIVERY_RECORD_FAILED)

    log_scheduler_audit(
        session,
        action=AUDIT_ACTION_EMAIL_SENT,
        success=True,
        department=schedule.department,
        schedule_id=schedule.id,
        details={"email_log_id": email_log.id, **details},
    )
    logger.info(
        "email_schedule_delivered",
        extra={
            "schedule_id": schedule.id,
            "department": schedule.department,
            "email_log_id": email_log.id,
            "delivery_id": receipt.delivery_id,
        },
    )
    return JobOutcome.delivered(email_log.id)
