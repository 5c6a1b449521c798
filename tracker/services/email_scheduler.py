from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from tracker.db import SessionLocal
from tracker.services.department_reports import build_department_report
from tracker.services.email_claims import ClaimResult, try_claim
from tracker.services.email_jobs import JobOutcome, ReportBuilder, execute_department_email
from tracker.services.email_schedule_store import (
    DepartmentScheduleSnapshot,
    SchedulerConfigSnapshot,
    SchedulerSnapshot,
    load_scheduler_snapshot,
)
from tracker.services.email_triggers import normalize_utc, resolve_timezone, should_fire
from tracker.services.mail_transport import EmailTransport, build_email_transport
from tracker.settings import get_email_scheduler_interval_seconds, get_settings

logger = logging.getLogger("tracker.email_scheduler")

SessionFactory = Callable[[], Session]
Clock = Callable[[], datetime]

TICKER_TASK_NAME = "auto-email-scheduler"
# Floor for the sleep between ticks; an early wake-up lands on the already evaluated minute.
MIN_TICK_SLEEP_SECONDS = 0.5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ScheduleRunResult:
    schedule_id: int
    department: str
    claim: ClaimResult | None = None
    outcome: JobOutcome | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "department": self.department,
            "claim": self.claim.value if self.claim is not None else None,
            "outcome": self.outcome.status.value if self.outcome is not None else None,
            "email_log_id": self.outcome.email_log_id if self.outcome is not None else None,
            "reason": self.outcome.reason if self.outcome is not None else self.error,
        }


def find_due_schedules(snapshot: SchedulerSnapshot, now_utc: datetime) -> list[DepartmentScheduleSnapshot]:
    config = snapshot.config
    if config is None or not config.enabled:
        return []
    try:
        tz = resolve_timezone(config.timezone)
    except ValueError:
        logger.exception(
            "email_schedule_evaluation_failed",
            extra={"config_id": config.id, "timezone": config.timezone},
        )
        return []

    due: list[DepartmentScheduleSnapshot] = []
    for schedule in snapshot.schedules:
        if not schedule.is_active:
            continue
        try:
            matched = should_fire(now_utc, schedule.days_of_week, schedule.time_of_day, tz)
        except Exception:
            logger.exception(
                "email_schedule_evaluation_failed",
                extra={
                    "schedule_id": schedule.id,
                    "department": schedule.department,
                    "time_of_day": schedule.time_of_day,
                    "days_of_week": list(schedule.days_of_week),
                },
            )
            continue
        if matched:
            due.append(schedule)
    return due


def run_department_schedule(
    config: SchedulerConfigSnapshot,
    schedule: DepartmentScheduleSnapshot,
    now_utc: datetime,
    *,
    session_factory: SessionFactory = SessionLocal,
    transport: EmailTransport,
    report_builder: ReportBuilder = build_department_report,
) -> ScheduleRunResult:
    """Claim today's run of one schedule and, if won, deliver its report.

    Uses a session of its own. Never raises.
    """
    try:
        tz = resolve_timezone(config.timezone)
        with session_factory() as session:
            claim = try_claim(session, schedule_id=schedule.id, now_utc=now_utc, tz=tz)
            if claim is ClaimResult.LOST:
                logger.debug(
                    "email_schedule_claim_lost",
                    extra={"schedule_id": schedule.id, "department": schedule.department},
                )
                return ScheduleRunResult(schedule_id=schedule.id, department=schedule.department, claim=claim)

            logger.info(
                "email_schedule_claimed",
                extra={
                    "schedule_id": schedule.id,
                    "department": schedule.department,
                    "claimed_at_utc": normalize_utc(now_utc).isoformat(),
                },
            )
            outcome = execute_department_email(
                session,
                schedule=schedule,
                config=config,
                now_utc=now_utc,
                transport=transport,
                report_builder=report_builder,
            )
    except Exception as exc:
        logger.exception(
            "email_schedule_run_failed",
            extra={"schedule_id": schedule.id, "department": schedule.department},
        )
        return ScheduleRunResult(
            schedule_id=schedule.id,
            department=schedule.department,
            error=(str(exc) or exc.__class__.__name__)[:500],
        )

    return ScheduleRunResult(
        schedule_id=schedule.id,
        department=schedule.department,
        claim=ClaimResult.WON,
        outcome=outcome,
    )


def _load_snapshot(session_factory: SessionFactory) -> SchedulerSnapshot:
    with session_factory() as session:
        return load_scheduler_snapshot(session)


def run_auto_email_tick(
    now_utc: datetime | None = None,
    *,
    session_factory: SessionFactory = SessionLocal,
    transport: EmailTransport | None = None,
    report_builder: ReportBuilder = build_department_report,
) -> list[ScheduleRunResult]:
    """Evaluate every department schedule once and run the due ones one after another."""
    reference = normalize_utc(now_utc or _utcnow())
    try:
        snapshot = _load_snapshot(session_factory)
    except Exception:
        logger.exception("email_scheduler_tick_failed", extra={"evaluated_at_utc": reference.isoformat()})
        return []

    due = find_due_schedules(snapshot, reference)
    if not due or snapshot.config is None:
        return []

    active_transport = transport or build_email_transport()
    return [
        run_department_schedule(
            snapshot.config,
            schedule,
            reference,
            session_factory=session_factory,
            transport=active_transport,
            report_builder=report_builder,
        )
        for schedule in due
    ]


class EmailScheduler:
    """Host-owned handle for the in-process ticker.

    Matched schedules run as independent worker threads, bounded by a semaphore, so a slow
    department never delays the next tick.
    """

    def __init__(
        self,
        *,
        interval_seconds: int | None = None,
        max_concurrent_jobs: int | None = None,
        session_factory: SessionFactory = SessionLocal,
        transport: EmailTransport | None = None,
        report_builder: ReportBuilder = build_department_report,
        clock: Clock = _utcnow,
    ) -> None:
        self.interval_seconds = interval_seconds or get_email_scheduler_interval_seconds()
        self.max_concurrent_jobs = max(1, max_concurrent_jobs or int(get_settings().email_scheduler_max_concurrent_jobs))
        self._session_factory = session_factory
        self._transport = transport or build_email_transport()
        self._report_builder = report_builder
        self._clock = clock
        self._semaphore = asyncio.Semaphore(self.max_concurrent_jobs)
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._jobs: set[asyncio.Task[ScheduleRunResult]] = set()
        self._last_evaluated_minute: datetime | None = None
        self.started_at_utc: datetime | None = None
        self.last_tick_at_utc: datetime | None = None
        self.last_tick: dict[str, Any] = {}

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        await self.stop()
        stop_event = asyncio.Event()
        self._stop_event = stop_event
        self._task = asyncio.create_task(self._run(stop_event), name=TICKER_TASK_NAME)
        self.started_at_utc = normalize_utc(self._clock())
        logger.info(
            "email_scheduler_started",
            extra={
                "interval_seconds": self.interval_seconds,
                "max_concurrent_jobs": self.max_concurrent_jobs,
                "transport": self._transport.config_status(),
            },
        )

    async def stop(self) -> None:
        stop_event, task = self._stop_event, self._task
        self._stop_event = None
        self._task = None
        if stop_event is not None:
            stop_event.set()
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        if self._jobs:
            await asyncio.gather(*list(self._jobs), return_exceptions=True)
        if task is not None:
            logger.info("email_scheduler_stopped")

    def status(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "max_concurrent_jobs": self.max_concurrent_jobs,
            "in_flight_jobs": len(self._jobs),
            "started_at_utc": self.started_at_utc,
            "last_tick_at_utc": self.last_tick_at_utc,
            "last_tick": dict(self.last_tick),
        }

    def seconds_until_next_tick(self) -> float:
        now = normalize_utc(self._clock())
        remaining = self.interval_seconds - (now.timestamp() % self.interval_seconds)
        return max(MIN_TICK_SLEEP_SECONDS, remaining)

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("email_scheduler_tick_failed")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.seconds_until_next_tick())
            except asyncio.TimeoutError:
                continue

    async def tick(self) -> list[asyncio.Task[ScheduleRunResult]]:
        """Evaluate the current minute once and dispatch the due schedules.

        Returns the dispatched job tasks; they keep running after this returns.
        """
        now_utc = normalize_utc(self._clock())
        minute = now_utc.replace(second=0, microsecond=0)
        if self._last_evaluated_minute == minute:
            logger.debug("email_scheduler_minute_already_evaluated", extra={"minute_utc": minute.isoformat()})
            return []
        self._last_evaluated_minute = minute
        self.last_tick_at_utc = now_utc

        try:
            snapshot = await asyncio.to_thread(_load_snapshot, self._session_factory)
        except Exception:
            logger.exception("email_scheduler_tick_failed", extra={"evaluated_at_utc": now_utc.isoformat()})
            self.last_tick = {"status": "store_unavailable", "due": 0}
            return []

        due = find_due_schedules(snapshot, now_utc)
        self.last_tick = {
            "status": "ok",
            "enabled": bool(snapshot.config is not None and snapshot.config.enabled),
            "due": len(due),
            "departments": [schedule.department for schedule in due],
        }
        if not due or snapshot.config is None:
            return []

        logger.info(
            "email_scheduler_tick",
            extra={"evaluated_at_utc": now_utc.isoformat(), **self.last_tick},
        )
        return [self._dispatch(snapshot.config, schedule, now_utc) for schedule in due]

    def _dispatch(
        self,
        config: SchedulerConfigSnapshot,
        schedule: DepartmentScheduleSnapshot,
        now_utc: datetime,
    ) -> asyncio.Task[ScheduleRunResult]:
        job = asyncio.create_task(
            self._run_schedule(config, schedule, now_utc),
            name=f"auto-email-{schedule.id}",
        )
        self._jobs.add(job)
        job.add_done_callback(self._jobs.discard)
        return job

    async def _run_schedule(
        self,
        config: SchedulerConfigSnapshot,
        schedule: DepartmentScheduleSnapshot,
        now_utc: datetime,
    ) -> ScheduleRunResult:
        async with self._semaphore:
            result = await asyncio.to_thread(
                run_department_schedule,
                config,
                schedule,
                now_utc,
                session_factory=self._session_factory,
                transport=self._transport,
                report_builder=self._report_builder,
            )
        if result.claim is ClaimResult.WON:
            logger.info("email_schedule_run", extra=result.to_dict())
        return result


async def start_email_scheduler(current: EmailScheduler | None = None, **kwargs: Any) -> EmailScheduler:
    if current is not None:
        await current.stop()
    scheduler = EmailScheduler(**kwargs)
    await scheduler.start()
    return scheduler


async def stop_email_scheduler(scheduler: EmailScheduler | None) -> None:
    if scheduler is not None:
        await scheduler.stop()
