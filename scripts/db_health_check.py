#!/usr/bin/env python
from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine, text

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from tracker.services.email_triggers import InvalidTimezoneError, is_valid_time_of_day, resolve_timezone
from tracker.settings import get_settings

EXPECTED_HEAD = "0001_initial"
REQUIRED_TABLES = (
    "auto_email_configs",
    "auto_email_department_configs",
    "email_logs",
    "audit_logs",
    "users",
    "tasks",
    "task_assignees",
)


def run() -> dict:
    database_url = get_settings().database_url
    engine = create_engine(database_url)
    report: dict = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "checks": [],
    }

    def add(name: str, status: str, details: dict) -> None:
        report["checks"].append(
            {
                "name": name,
                "status": status,
                "details": details,
            }
        )

    with engine.connect() as conn:
        tables = set(
            conn.execute(
                text(
                    """
                    select table_name
                    from information_schema.tables
                    where table_schema='public'
                    """
                )
            ).scalars()
        )

        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = [
                row[0]
                for row in conn.execute(text("select version_num from alembic_version")).fetchall()
            ]
        add("alembic_version", "ok" if current_versions else "fail", {"current": current_versions})
        add(
            "migration_up_to_date",
            "ok" if EXPECTED_HEAD in current_versions else "warn",
            {"expected_head": EXPECTED_HEAD, "current": current_versions},
        )

        missing_tables = [table for table in REQUIRED_TABLES if table not in tables]
        add("missing_tables", "fail" if missing_tables else "ok", {"tables": missing_tables})
        if missing_tables:
            return report

        configs = conn.execute(
            text("select id, enabled, to_emails, timezone from auto_email_configs order by id")
        ).fetchall()
        add(
            "auto_email_config_singleton",
            "warn" if len(configs) > 1 else "ok",
            {"config_ids": [row[0] for row in configs]},
        )
        for config_id, enabled, to_emails, tz_name in configs:
            try:
                resolve_timezone(tz_name)
                tz_status = "ok"
            except InvalidTimezoneError:
                tz_status = "fail"
            add("auto_email_config_timezone", tz_status, {"config_id": config_id, "timezone": tz_name})
            if enabled and not to_emails:
                add("auto_email_config_recipients", "fail", {"config_id": config_id})

        invalid_schedules: list[dict] = []
        for schedule_id, department, days_of_week, time_of_day in conn.execute(
            text(
                """
                select id, department, days_of_week, time_of_day
                from auto_email_department_configs
                where enabled = true
                """
            )
        ).fetchall():
            days = list(days_of_week or [])
            if not days or any(not isinstance(day, int) or day < 0 or day > 6 for day in days):
                invalid_schedules.append({"id": schedule_id, "department": department, "days_of_week": days})
            elif not is_valid_time_of_day(time_of_day):
                invalid_schedules.append({"id": schedule_id, "department": department, "time_of_day": time_of_day})
        add("enabled_schedules_valid", "fail" if invalid_schedules else "ok", {"rows": invalid_schedules})

        orphan_departments = conn.execute(
            text(
                """
                select c.department
                from auto_email_department_configs c
                left join users u on lower(u.department) = lower(c.department) and u.is_active = true
                where u.id is null
                group by c.department
                """
            )
        ).scalars().all()
        add(
            "schedules_without_active_members",
            "warn" if orphan_departments else "ok",
            {"departments": list(orphan_departments)},
        )

    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2, default=str))
