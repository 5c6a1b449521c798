import re
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tracker.services.email_triggers import InvalidTimezoneError, is_valid_time_of_day, resolve_timezone

EMAIL_ADDRESS_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_email_list(values: list[str]) -> list[str]:
    normalized: list[str] = []
    invalid: list[str] = []
    for item in values:
        candidate = str(item or "").strip()
        if not EMAIL_ADDRESS_PATTERN.match(candidate):
            invalid.append(candidate)
            continue
        lowered = candidate.lower()
        if lowered not in normalized:
            normalized.append(lowered)
    if invalid:
        raise ValueError(f"Invalid email format: {', '.join(invalid)}")
    return normalized


class DepartmentScheduleUpsert(BaseModel):
    department: str = Field(min_length=1, max_length=255)
    enabled: bool = True
    days_of_week: list[int] = Field(default_factory=list)
    time_of_day: str = Field(default="18:00", max_length=5)

    @model_validator(mode="after")
    def validate_schedule(self) -> "DepartmentScheduleUpsert":
        self.department = self.department.strip()
        if not self.department:
            raise ValueError("department must not be blank")
        invalid_days = [day for day in self.days_of_week if day < 0 or day > 6]
        if invalid_days:
            raise ValueError("Days of week must be numbers between 0 (Sunday) and 6 (Saturday)")
        self.days_of_week = sorted(set(self.days_of_week))
        self.time_of_day = self.time_of_day.strip()
        if self.enabled:
            if not self.days_of_week:
                raise ValueError(f"At least one day of week is required for enabled department {self.department}")
            if not is_valid_time_of_day(self.time_of_day):
                raise ValueError(f"Valid time of day (HH:MM) is required for enabled department {self.department}")
        return self


class AutoEmailConfigUpsert(BaseModel):
    enabled: bool | None = None
    to_emails: list[str] | None = None
    timezone: str | None = None
    send_when_empty: bool | None = None
    departments: list[DepartmentScheduleUpsert] | None = None
    replace_departments: bool = False

    @field_validator("to_emails")
    @classmethod
    def validate_to_emails(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return normalize_email_list(value)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            resolve_timezone(value)
        except InvalidTimezoneError as exc:
            raise ValueError(str(exc)) from exc
        return value.strip()

    @model_validator(mode="after")
    def validate_payload(self) -> "AutoEmailConfigUpsert":
        if self.departments is not None:
            names = [item.department.lower() for item in self.departments]
            duplicates = sorted({name for name in names if names.count(name) > 1})
            if duplicates:
                raise ValueError(f"Duplicate department entries: {', '.join(duplicates)}")
        if self.enabled and self.to_emails is not None and not self.to_emails:
            raise ValueError("At least one recipient email is required when enabled")
        return self


class DepartmentScheduleRead(BaseModel):
    id: int
    department: str
    enabled: bool
    days_of_week: list[int]
    time_of_day: str
    last_run_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class AutoEmailConfigRead(BaseModel):
    id: int
    enabled: bool
    to_emails: list[str]
    timezone: str
    send_when_empty: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None
    departments: list[DepartmentScheduleRead] = Field(default_factory=list)


class ScheduleRunResultRead(BaseModel):
    schedule_id: int
    department: str
    claim: str | None = None
    outcome: str | None = None
    email_log_id: int | None = None
    reason: str | None = None


class AutoEmailTickRead(BaseModel):
    evaluated_at_utc: datetime
    results: list[ScheduleRunResultRead] = Field(default_factory=list)


class EmailSchedulerStatusRead(BaseModel):
    running: bool
    interval_seconds: int
    max_concurrent_jobs: int
    in_flight_jobs: int = 0
    started_at_utc: datetime | None = None
    last_tick_at_utc: datetime | None = None
    last_tick: dict[str, Any] = Field(default_factory=dict)


class EmailLogRead(BaseModel):
    id: int
    department: str | None = None
    to_emails: list[str]
    cc_emails: list[str] | None = None
    subject: str
    delivery_id: str | None = None
    user_id: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
