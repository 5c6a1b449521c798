from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from tracker.db import Base
from tracker.services.schema_guard import REQUIRED_TABLE_COLUMNS, verify_runtime_schema


class _FakeResult:
    def __init__(self, value):
        self._value = value

    def scalar(self):  # type: ignore[no-untyped-def]
        return self._value


class _FakeConnection:
    def __init__(self, version_value):
        self._version_value = version_value

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return _FakeResult(self._version_value)


class _FakeEngine:
    def __init__(self, version_value):
        self._version_value = version_value

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._version_value)


class _FakeInspector:
    def __init__(self, *, columns_by_table: dict[str, set[str]]):
        self._columns_by_table = columns_by_table

    def get_table_names(self):  # type: ignore[no-untyped-def]
        return list(self._columns_by_table)

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        return [{"name": item} for item in self._columns_by_table[table_name]]


def _complete_columns() -> dict[str, set[str]]:
    columns = {table: set(required) for table, required in REQUIRED_TABLE_COLUMNS.items()}
    columns["alembic_version"] = {"version_num"}
    return columns


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_required_columns_exist(self) -> None:
        fake_inspector = _FakeInspector(columns_by_table=_complete_columns())

        with patch("tracker.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine("0001_initial"))  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])

    def test_verify_runtime_schema_reports_missing_schedule_columns(self) -> None:
        columns = _complete_columns()
        columns["auto_email_department_configs"].discard("last_run_at")
        del columns["email_logs"]
        fake_inspector = _FakeInspector(columns_by_table=columns)

        with patch("tracker.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine(""))  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:auto_email_department_configs:last_run_at", result.issues)
        self.assertIn("MISSING_TABLE:email_logs", result.issues)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)

    def test_metadata_tables_satisfy_the_guard(self) -> None:
        engine = create_engine("sqlite://", poolclass=StaticPool)
        Base.metadata.create_all(engine)
        try:
            result = verify_runtime_schema(engine)
            self.assertFalse(result.ok)
            self.assertEqual(result.issues, ["ALEMBIC_VERSION_MISSING"])

            lenient = verify_runtime_schema(engine, require_alembic_version=False)
            self.assertTrue(lenient.ok)
            self.assertEqual(lenient.warnings, ["ALEMBIC_VERSION_MISSING"])

            with engine.begin() as connection:
                connection.execute(text("CREATE TABLE alembic_version (version_num VARCHAR(32) NOT NULL)"))
                connection.execute(text("INSERT INTO alembic_version (version_num) VALUES ('0001_initial')"))
            self.assertTrue(verify_runtime_schema(engine).ok)
        finally:
            engine.dispose()


if __name__ == "__main__":
    unittest.main()
