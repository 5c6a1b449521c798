from __future__ import annotations

import enum
import logging
from datetime import datetime
from zoneinfo import ZoneInfo

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from tracker.models import AutoEmailDepartmentConfig
from tracker.services.email_triggers import normalize_utc, start_of_local_day_utc

logger = logging.getLogger("tracker.email_claims")


class ClaimResult(str, enum.Enum):
    WON = "WON"
    LOST = "LOST"


def try_claim(
    session: Session,
    *,
    schedule_id: int,
    now_utc: datetime,
    tz: ZoneInfo,
) -> ClaimResult:
    """Reserve today's run of a department schedule.

    One conditional UPDATE evaluated by the database: whichever caller moves
    ``last_run_at`` past local midnight first wins, every other caller matches zero rows.
    """
    claimed_at = normalize_utc(now_utc)
    start_of_today = start_of_local_day_utc(claimed_at, tz)
    stmt = (
        update(AutoEmailDepartmentConfig)
        .where(
            AutoEmailDepartmentConfig.id == schedule_id,
            or_(
                AutoEmailDepartmentConfig.last_run_at.is_(None),
                AutoEmailDepartmentConfig.last_run_at < start_of_today,
            ),
        )
        .values(last_run_at=claimed_at)
        .execution_options(synchronize_session=False)
    )
    try:
        result = session.execute(stmt)
        session.commit()
    except Exception:
        session.rollback()
        raise

    if result.rowcount == 1:
        return ClaimResult.WON
    return ClaimResult.LOST


def release_claim(session: Session, *, schedule_id: int) -> None:
    stmt = (
        update(AutoEmailDepartmentConfig)
        .where(AutoEmailDepartmentConfig.id == schedule_id)
        .values(last_run_at=None)
        .execution_options(synchronize_session=False)
    )
    try:
        session.execute(stmt)
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info("email_schedule_claim_released", extra={"schedule_id": schedule_id})
