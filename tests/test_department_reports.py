from __future__ import annotations

import unittest
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tracker.db import Base
from tracker.models import (
    TASK_STATUS_COMPLETED,
    TASK_STATUS_IN_PROGRESS,
    TASK_STATUS_RECURRING,
    TASK_STATUS_TODO,
    Project,
    Task,
    TaskAssignee,
    User,
)
from tracker.services.department_reports import (
    ReportGenerationError,
    build_department_report,
    build_report_subject,
)

AS_OF = datetime(2026, 10, 19, 12, 30, tzinfo=timezone.utc)


class _BrokenSession:
    def scalars(self, _statement):  # type: ignore[no-untyped-def]
        raise OperationalError("SELECT users", {}, Exception("connection refused"))


class BuildReportSubjectTests(unittest.TestCase):
    def test_pluralizes_counts(self) -> None:
        self.assertEqual(
            build_report_subject("Design", employee_count=1, task_count=1),
            "Design In-Progress & Recurring Tasks Report - 1 Employee, 1 Task",
        )
        self.assertEqual(
            build_report_subject("Design", employee_count=3, task_count=0),
            "Design In-Progress & Recurring Tasks Report - 3 Employees, 0 Tasks",
        )


class BuildDepartmentReportTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.session = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)()

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def _seed_design_team(self) -> None:
        ravi = User(id="u-ravi", name="ravi", email="ravi@example.com", department="Design")
        asha = User(id="u-asha", name="Asha", email="asha@example.com", department="Design")
        idle = User(id="u-neel", name="Neel", email="neel@example.com", department="Design")
        former = User(id="u-old", name="Old", email="old@example.com", department="Design", is_active=False)
        sales = User(id="u-sam", name="Sam", email="sam@example.com", department="Sales")
        project = Project(id="p-1", name="Autumn <Launch>", department="Design")
        self.session.add_all([ravi, asha, idle, former, sales, project])

        tasks = [
            Task(
                id="t-1",
                title="Poster <b>draft</b>",
                brand="Acme",
                status=TASK_STATUS_IN_PROGRESS,
                priority="High",
                due_date=date(2026, 10, 25),
                link="https://example.com/poster?a=1&b=2",
                project_id="p-1",
                created_at=AS_OF - timedelta(days=2),
            ),
            Task(
                id="t-2",
                title="Weekly banner",
                status=TASK_STATUS_RECURRING,
                project_id="p-1",
                created_at=AS_OF - timedelta(days=1),
            ),
            Task(id="t-3", title="Shipped flyer", status=TASK_STATUS_COMPLETED, project_id="p-1"),
            Task(id="t-4", title="Backlog idea", status=TASK_STATUS_TODO, project_id="p-1"),
            Task(id="t-5", title="Sales deck", status=TASK_STATUS_IN_PROGRESS),
            Task(id="t-6", title="Legacy archive", status=TASK_STATUS_IN_PROGRESS),
        ]
        self.session.add_all(tasks)
        self.session.add_all(
            [
                TaskAssignee(task_id="t-1", user_id="u-ravi"),
                TaskAssignee(task_id="t-1", user_id="u-asha"),
                TaskAssignee(task_id="t-2", user_id="u-asha"),
                TaskAssignee(task_id="t-3", user_id="u-ravi"),
                TaskAssignee(task_id="t-4", user_id="u-ravi"),
                TaskAssignee(task_id="t-5", user_id="u-sam"),
                TaskAssignee(task_id="t-6", user_id="u-old"),
            ]
        )
        self.session.commit()

    def test_groups_open_tasks_per_active_member(self) -> None:
        self._seed_design_team()
        report = build_department_report(self.session, "Design", as_of=AS_OF)

        self.assertEqual(report.employee_count, 3)
        self.assertEqual(report.task_count, 2)
        self.assertFalse(report.is_empty)
        self.assertEqual(
            report.subject,
            "Design In-Progress & Recurring Tasks Report - 3 Employees, 2 Tasks",
        )
        self.assertEqual(report.cc_emails, ("asha@example.com", "neel@example.com", "ravi@example.com"))
        self.assertEqual(report.generated_at_utc, AS_OF)

        body = report.html_body
        self.assertLess(body.index("Asha"), body.index("Neel"))
        self.assertLess(body.index("Neel"), body.index("ravi"))
        self.assertIn("Weekly banner", body)
        self.assertIn("Oct 25, 2026", body)
        self.assertIn("No tasks assigned", body)
        self.assertNotIn("Shipped flyer", body)
        self.assertNotIn("Backlog idea", body)
        self.assertNotIn("Sales deck", body)
        self.assertNotIn("Legacy archive", body)
        self.assertNotIn("Images", body)

    def test_escapes_task_content(self) -> None:
        self._seed_design_team()
        body = build_department_report(self.session, "Design", as_of=AS_OF).html_body
        self.assertIn("Poster &lt;b&gt;draft&lt;/b&gt;", body)
        self.assertIn("Autumn &lt;Launch&gt;", body)
        self.assertIn("https://example.com/poster?a=1&amp;b=2", body)
        self.assertNotIn("<b>draft</b>", body)

    def test_marks_members_on_leave(self) -> None:
        self._seed_design_team()
        body = build_department_report(
            self.session,
            "Design",
            as_of=AS_OF,
            on_leave_user_ids={"u-asha"},
        ).html_body
        self.assertIn("This team member is currently on leave.", body)

    def test_media_department_shows_media_columns(self) -> None:
        self.session.add_all(
            [
                User(id="u-1", name="Mira", email="mira@example.com", department="New Product Design"),
                Project(id="p-npd", name="Catalog", department="New Product Design"),
                Task(
                    id="t-npd",
                    title="Packshots",
                    status=TASK_STATUS_IN_PROGRESS,
                    project_id="p-npd",
                    image_count=12,
                    video_count=2,
                ),
                TaskAssignee(task_id="t-npd", user_id="u-1"),
            ]
        )
        self.session.commit()

        body = build_department_report(self.session, "New Product Design", as_of=AS_OF).html_body
        self.assertIn("Images", body)
        self.assertIn("Videos", body)
        self.assertIn(">12<", body)

    def test_department_without_open_tasks_is_empty(self) -> None:
        self.session.add(User(id="u-1", name="Mira", email="mira@example.com", department="Finance"))
        self.session.commit()

        report = build_department_report(self.session, "Finance", as_of=AS_OF)
        self.assertTrue(report.is_empty)
        self.assertEqual(report.employee_count, 1)
        self.assertIn("No in-progress or recurring tasks found", report.html_body)

    def test_unknown_department_has_no_members(self) -> None:
        report = build_department_report(self.session, "Nowhere", as_of=AS_OF)
        self.assertTrue(report.is_empty)
        self.assertEqual(report.employee_count, 0)
        self.assertEqual(report.cc_emails, ())

    def test_database_errors_become_report_errors(self) -> None:
        with self.assertRaises(ReportGenerationError):
            build_department_report(_BrokenSession(), "Design", as_of=AS_OF)  # type: ignore[arg-type]


if __name__ == "__main__":
    unittest.main()
