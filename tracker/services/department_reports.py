from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from html import escape
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from tracker.models import TASK_STATUS_IN_PROGRESS, TASK_STATUS_RECURRING, Task, TaskAssignee, User

REPORTED_TASK_STATUSES = (TASK_STATUS_IN_PROGRESS, TASK_STATUS_RECURRING)
MEDIA_COLUMNS_DEPARTMENT = "new product design"
REPORT_TITLE = "In-Progress & Recurring Tasks Report"

_HEADER_STYLE = "text-align: left; padding: 10px; border: 1px solid #ddd;"
_CELL_STYLE = "padding: 8px; border: 1px solid #ddd; word-wrap: break-word;"


class ReportGenerationError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class DepartmentReport:
    department: str
    subject: str
    html_body: str
    employee_count: int
    task_count: int
    cc_emails: tuple[str, ...] = ()
    generated_at_utc: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_empty(self) -> bool:
        return self.task_count == 0


@dataclass(slots=True)
class _MemberTasks:
    user: User
    tasks: list[Task] = field(default_factory=list)


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def _text(value: Any) -> str:
    if value is None or value == "":
        return "N/A"
    return escape(str(value))


def _format_due_date(value: date | datetime | None) -> str:
    if value is None:
        return "N/A"
    return f"{value:%b} {value.day}, {value.year}"


def _is_media_department(value: str | None) -> bool:
    return (value or "").strip().lower() == MEDIA_COLUMNS_DEPARTMENT


def build_report_subject(department: str, *, employee_count: int, task_count: int) -> str:
    return (
        f"{department} {REPORT_TITLE} - "
        f"{_plural(employee_count, 'Employee')}, {_plural(task_count, 'Task')}"
    )


def _load_department_members(session: Session, department: str) -> list[User]:
    return list(
        session.scalars(
            select(User).where(
                User.department == department,
                User.is_active.is_(True),
            )
        ).all()
    )


def _load_reported_tasks(session: Session, user_ids: list[str]) -> list[Task]:
    if not user_ids:
        return []
    stmt = (
        select(Task)
        .options(
            selectinload(Task.assignees).selectinload(TaskAssignee.user),
            selectinload(Task.project),
        )
        .where(
            Task.status.in_(REPORTED_TASK_STATUSES),
            Task.assignees.any(TaskAssignee.user_id.in_(user_ids)),
        )
        .order_by(Task.created_at.desc(), Task.id.asc())
    )
    return list(session.scalars(stmt).all())


def _task_row(task: Task, *, index: int, member: User, include_media: bool) -> str:
    row_color = "#f9f9f9" if index % 2 == 0 else "#ffffff"
    project = task.project
    cells = [
        _text(task.brand),
        _text(project.name if project is not None else None),
        _text(task.title),
        _text(task.priority),
        _format_due_date(task.due_date),
    ]
    if include_media:
        show_counts = _is_media_department(project.department if project is not None else None) or (
            _is_media_department(member.department)
        )
        cells.append(str(int(task.image_count or 0)) if show_counts else "-")
        cells.append(str(int(task.video_count or 0)) if show_counts else "-")
    if task.link:
        link = escape(task.link)
        cells.append(f'<a href="{link}" target="_blank" style="color: #006ba6;">{link}</a>')
    else:
        cells.append("-")
    rendered = "".join(f'<td style="{_CELL_STYLE}">{cell}</td>' for cell in cells)
    return f'<tr style="background-color: {row_color};">{rendered}</tr>'


def _member_section(entry: _MemberTasks, *, include_media: bool, on_leave: bool) -> str:
    headers = ["Brand", "Project", "Task Title", "Priority", "Due Date"]
    if include_media:
        headers += ["Images", "Videos"]
    headers.append("Link")
    header_html = "".join(f'<th style="{_HEADER_STYLE}">{item}</th>' for item in headers)

    if on_leave:
        rows = (
            f'<tr><td colspan="{len(headers)}" style="{_CELL_STYLE} text-align: center; '
            f'color: #ff0000; font-weight: bold;">On Leave</td></tr>'
        )
        summary = '<p style="color: #ff0000; font-weight: bold;">This team member is currently on leave.</p>'
    elif entry.tasks:
        rows = "".join(
            _task_row(task, index=index, member=entry.user, include_media=include_media)
            for index, task in enumerate(entry.tasks)
        )
        summary = f'<p style="color: #666;">Total Tasks: {len(entry.tasks)}</p>'
    else:
        rows = (
            f'<tr><td colspan="{len(headers)}" style="{_CELL_STYLE} text-align: center; '
            f'color: #666; font-style: italic;">No tasks assigned</td></tr>'
        )
        summary = '<p style="color: #666;">Total Tasks: 0</p>'

    leave_suffix = ' - <span style="color: #ff0000;">On Leave</span>' if on_leave else ""
    return (
        '<div style="margin-bottom: 30px; border-left: 5px solid #006ba6; padding-left: 15px;">'
        f'<h3 style="color: #b1740f;">{_text(entry.user.name or "Unknown")} '
        f"({_text(entry.user.email)}){leave_suffix}</h3>"
        f"{summary}"
        '<table border="1" cellpadding="8" cellspacing="0" '
        'style="border-collapse: collapse; width: 100%; font-family: Arial, sans-serif; font-size: 14px;">'
        f'<thead><tr style="background-color: #006ba6; color: white;">{header_html}</tr></thead>'
        f"<tbody>{rows}</tbody></table></div>"
    )


def build_department_report(
    session: Session,
    department: str,
    *,
    as_of: datetime | None = None,
    on_leave_user_ids: frozenset[str] | set[str] = frozenset(),
) -> DepartmentReport:
    """Build the in-progress/recurring task digest for one department.

    Members are the department's active users; a task appears under every member of the
    department it is assigned to.
    """
    generated_at = as_of or datetime.now(timezone.utc)
    try:
        members = _load_department_members(session, department)
        tasks = _load_reported_tasks(session, [member.id for member in members])
    except SQLAlchemyError as exc:
        raise ReportGenerationError(f"Report data unavailable for {department}: {exc}") from exc

    by_member: dict[str, _MemberTasks] = {member.id: _MemberTasks(user=member) for member in members}
    for task in tasks:
        for assignee in task.assignees:
            user = assignee.user
            if user is None or user.department != department:
                continue
            entry = by_member.setdefault(user.id, _MemberTasks(user=user))
            if all(existing.id != task.id for existing in entry.tasks):
                entry.tasks.append(task)

    include_media = _is_media_department(department) or any(
        _is_media_department(task.project.department if task.project is not None else None) for task in tasks
    )
    ordered = sorted(
        by_member.values(),
        key=lambda item: (item.user.name or item.user.email or "").lower(),
    )
    employee_count = len(ordered)
    task_count = len(tasks)

    summary_html = (
        f'<div style="background-color: #006ba6; color: white; padding: 20px; text-align: center;">'
        f'<h2 style="margin: 0;">{REPORT_TITLE}</h2></div>'
        f'<p style="font-size: 14px; color: #333;"><strong>Total Employees:</strong> {employee_count}<br>'
        f"<strong>Total Tasks:</strong> {task_count}</p>"
    )
    if task_count == 0:
        body = (
            f"{summary_html}"
            '<p style="font-size: 14px; color: #666;">'
            "No in-progress or recurring tasks found for the selected departments.</p>"
        )
    else:
        sections = "".join(
            _member_section(entry, include_media=include_media, on_leave=entry.user.id in on_leave_user_ids)
            for entry in ordered
        )
        body = (
            f"{summary_html}"
            '<div style="margin-bottom: 40px; border-top: 3px solid #006ba6; padding-top: 20px;">'
            f'<h2 style="color: #006ba6;">{_text(department)}</h2>{sections}</div>'
        )

    cc_emails: list[str] = []
    for entry in ordered:
        email = (entry.user.email or "").strip()
        if email and email.lower() not in {item.lower() for item in cc_emails}:
            cc_emails.append(email)

    return DepartmentReport(
        department=department,
        subject=build_report_subject(department, employee_count=employee_count, task_count=task_count),
        html_body=body,
        employee_count=employee_count,
        task_count=task_count,
        cc_emails=tuple(cc_emails),
        generated_at_utc=generated_at,
    )
