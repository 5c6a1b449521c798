from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "auto_email_configs": {"id", "enabled", "to_emails", "timezone", "send_when_empty"},
    "auto_email_department_configs": {
        "id",
        "config_id",
        "department",
        "enabled",
        "days_of_week",
        "time_of_day",
        "last_run_at",
    },
    "email_logs": {"id", "to_emails", "subject", "department", "delivery_id", "user_id", "created_at"},
    "audit_logs": {"id", "action", "details"},
    "users": {"id", "email", "department", "is_active"},
    "tasks": {"id", "status", "project_id"},
    "task_assignees": {"task_id", "user_id"},
}

VERSION_TABLE = "alembic_version"


def verify_runtime_schema(engine: Engine, *, require_alembic_version: bool = True) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    try:
        existing_tables = set(inspector.get_table_names())
    except Exception as exc:
        return SchemaGuardResult(
            ok=False,
            checked_at_utc=checked_at_utc,
            issues=[f"SCHEMA_UNREADABLE:{exc.__class__.__name__}"],
        )

    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        if table_name not in existing_tables:
            issues.append(f"MISSING_TABLE:{table_name}")
            continue
        column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")

    if VERSION_TABLE not in existing_tables:
        if require_alembic_version:
            issues.append("ALEMBIC_VERSION_MISSING")
        else:
            warnings.append("ALEMBIC_VERSION_MISSING")
    else:
        try:
            with engine.connect() as connection:
                row = connection.execute(text(f"SELECT version_num FROM {VERSION_TABLE} LIMIT 1")).scalar()
        except Exception as exc:
            issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")
        else:
            if not (str(row).strip() if row is not None else ""):
                issues.append("ALEMBIC_VERSION_EMPTY")

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
