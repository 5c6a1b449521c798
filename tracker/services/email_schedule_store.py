from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from tracker.errors import ApiError
from tracker.models import AutoEmailConfig, AutoEmailDepartmentConfig
from tracker.schemas import AutoEmailConfigRead, AutoEmailConfigUpsert, DepartmentScheduleRead
from tracker.settings import get_settings

logger = logging.getLogger("tracker.email_schedule_store")


@dataclass(frozen=True, slots=True)
class SchedulerConfigSnapshot:
    id: int
    enabled: bool
    to_emails: tuple[str, ...]
    timezone: str
    send_when_empty: bool


@dataclass(frozen=True, slots=True)
class DepartmentScheduleSnapshot:
    id: int
    department: str
    enabled: bool
    days_of_week: tuple[int, ...]
    time_of_day: str
    last_run_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.enabled and bool(self.days_of_week)


@dataclass(frozen=True, slots=True)
class SchedulerSnapshot:
    config: SchedulerConfigSnapshot | None
    schedules: tuple[DepartmentScheduleSnapshot, ...] = field(default_factory=tuple)


def get_auto_email_config(session: Session) -> AutoEmailConfig | None:
    return session.scalar(
        select(AutoEmailConfig)
        .options(selectinload(AutoEmailConfig.department_configs))
        .order_by(AutoEmailConfig.id.asc())
        .limit(1)
    )


def get_or_create_auto_email_config(session: Session) -> AutoEmailConfig:
    config = get_auto_email_config(session)
    if config is not None:
        return config

    config = AutoEmailConfig(
        enabled=False,
        to_emails=[],
        timezone=get_settings().auto_email_default_timezone,
        send_when_empty=False,
    )
    session.add(config)
    session.commit()
    session.refresh(config)
    return config


def _coerce_days_of_week(value: object) -> tuple[int, ...]:
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"days_of_week must be a list, got {type(value).__name__}")
    days: list[int] = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (int, str)):
            raise ValueError(f"Invalid day of week: {item!r}")
        days.append(int(item))
    return tuple(days)


def _snapshot_schedule(row: AutoEmailDepartmentConfig) -> DepartmentScheduleSnapshot:
    return DepartmentScheduleSnapshot(
        id=row.id,
        department=row.department,
        enabled=bool(row.enabled),
        days_of_week=_coerce_days_of_week(row.days_of_week),
        time_of_day=row.time_of_day,
        last_run_at=row.last_run_at,
    )


def _snapshot_schedules(rows: list[AutoEmailDepartmentConfig]) -> list[DepartmentScheduleSnapshot]:
    # A malformed row is left out of the snapshot; the other schedules still run.
    snapshots: list[DepartmentScheduleSnapshot] = []
    for row in rows:
        try:
            snapshots.append(_snapshot_schedule(row))
        except (TypeError, ValueError):
            logger.exception(
                "email_schedule_evaluation_failed",
                extra={
                    "schedule_id": row.id,
                    "department": row.department,
                    "days_of_week": repr(row.days_of_week),
                },
            )
    return snapshots


def load_scheduler_snapshot(session: Session) -> SchedulerSnapshot:
    config = get_auto_email_config(session)
    if config is None:
        return SchedulerSnapshot(config=None)

    return SchedulerSnapshot(
        config=SchedulerConfigSnapshot(
            id=config.id,
            enabled=bool(config.enabled),
            to_emails=tuple(config.to_emails or ()),
            timezone=config.timezone,
            send_when_empty=bool(config.send_when_empty),
        ),
        schedules=tuple(_snapshot_schedules(config.department_configs)),
    )


def to_auto_email_config_read(config: AutoEmailConfig) -> AutoEmailConfigRead:
    return AutoEmailConfigRead(
        id=config.id,
        enabled=config.enabled,
        to_emails=list(config.to_emails or []),
        timezone=config.timezone,
        send_when_empty=config.send_when_empty,
        created_at=config.created_at,
        updated_at=config.updated_at,
        departments=[DepartmentScheduleRead.model_validate(row) for row in config.department_configs],
    )


def _validation_error(message: str) -> ApiError:
    return ApiError(status_code=422, code="VALIDATION_ERROR", message=message)


def apply_auto_email_config_update(session: Session, payload: AutoEmailConfigUpsert) -> AutoEmailConfig:
    """Validate the effective configuration, then write it in one commit.

    ``last_run_at`` of existing department rows is never touched here.
    """
    config = get_or_create_auto_email_config(session)
    existing_by_name = {row.department.lower(): row for row in config.department_configs}

    effective_enabled = config.enabled if payload.enabled is None else payload.enabled
    effective_to_emails = list(config.to_emails or []) if payload.to_emails is None else payload.to_emails

    effective_department_flags: dict[str, bool] = {}
    if not payload.replace_departments:
        effective_department_flags.update(
            {name: bool(row.enabled and row.days_of_week) for name, row in existing_by_name.items()}
        )
    for item in payload.departments or []:
        effective_department_flags[item.department.lower()] = bool(item.enabled and item.days_of_week)

    if effective_enabled:
        if not effective_to_emails:
            raise _validation_error("At least one recipient email is required when enabled")
        if not any(effective_department_flags.values()):
            raise _validation_error("At least one enabled department is required when enabled")

    config.enabled = effective_enabled
    config.to_emails = effective_to_emails
    if payload.timezone is not None:
        config.timezone = payload.timezone
    if payload.send_when_empty is not None:
        config.send_when_empty = payload.send_when_empty

    listed_names: set[str] = set()
    for item in payload.departments or []:
        key = item.department.lower()
        listed_names.add(key)
        row = existing_by_name.get(key)
        if row is None:
            config.department_configs.append(
                AutoEmailDepartmentConfig(
                    department=item.department,
                    enabled=item.enabled,
                    days_of_week=list(item.days_of_week),
                    time_of_day=item.time_of_day,
                )
            )
            continue
        row.enabled = item.enabled
        row.days_of_week = list(item.days_of_week)
        row.time_of_day = item.time_of_day

    if payload.replace_departments:
        for key, row in existing_by_name.items():
            if key not in listed_names:
                config.department_configs.remove(row)

    session.commit()
    session.refresh(config)
    return config
