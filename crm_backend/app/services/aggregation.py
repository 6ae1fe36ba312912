from __future__ import annotations

from datetime import date, timedelta
from typing import Iterable, Mapping, Optional, Sequence

from crm_backend.app.models import (
    ACTIVE_INQUIRY_STATUSES,
    DashboardSummaryResponse,
    EmployeeRecord,
    InquiryRecord,
    LeaderboardEntry,
    ProgramRecord,
    ProgramStudentCount,
    StudentRecord,
    TrendPoint,
    utc_now,
)

FALLBACK_LABEL = "N/A"
TREND_DAYS = 7


def active_inquiry_count(inquiries: Iterable[InquiryRecord]) -> int:
    return sum(1 for inquiry in inquiries if inquiry.status in ACTIVE_INQUIRY_STATUSES)


def students_per_program(
    programs: Iterable[ProgramRecord], students: Sequence[StudentRecord]
) -> list[ProgramStudentCount]:
    counts: dict[str, int] = {}
    for student in students:
        counts[student.program_id] = counts.get(student.program_id, 0) + 1
    return [
        ProgramStudentCount(
            program_id=program.id, name=program.name, students=counts.get(program.id, 0)
        )
        for program in programs
    ]


def employee_leaderboard(
    employees: Iterable[EmployeeRecord], students: Iterable[StudentRecord]
) -> list[LeaderboardEntry]:
    conversions: dict[str, int] = {}
    for student in students:
        if student.employee_id:
            conversions[student.employee_id] = conversions.get(student.employee_id, 0) + 1
    entries = [
        LeaderboardEntry(
            employee_id=employee.id,
            name=employee.name,
            conversions=conversions.get(employee.id, 0),
        )
        for employee in employees
    ]
    # sorted() is stable: ties keep the employees' input order
    return sorted(entries, key=lambda entry: entry.conversions, reverse=True)


def weekly_enrollment_trend(
    students: Sequence[StudentRecord], today: Optional[date] = None
) -> list[TrendPoint]:
    end = today or utc_now().date()
    points: list[TrendPoint] = []
    for offset in range(TREND_DAYS - 1, -1, -1):
        day = end - timedelta(days=offset)
        prefix = day.isoformat()
        enrolled = sum(
            1
            for student in students
            if student.created_at and student.created_at.startswith(prefix)
        )
        points.append(TrendPoint(date=prefix, label=f"{day:%b} {day.day}", enrolled=enrolled))
    return points


def dashboard_summary(
    *,
    students: Mapping[str, StudentRecord],
    inquiries: Mapping[str, InquiryRecord],
    programs: Mapping[str, ProgramRecord],
    employees: Mapping[str, EmployeeRecord],
    today: Optional[date] = None,
) -> DashboardSummaryResponse:
    student_list = list(students.values())
    return DashboardSummaryResponse(
        total_students=len(student_list),
        active_inquiries=active_inquiry_count(inquiries.values()),
        total_programs=len(programs),
        students_per_program=students_per_program(programs.values(), student_list),
        employee_leaderboard=employee_leaderboard(employees.values(), student_list),
        weekly_enrollment_trend=weekly_enrollment_trend(student_list, today),
    )


def _contains(value: Optional[str], query: str) -> bool:
    return bool(value) and query.lower() in value.lower()


def filter_students(
    students: Iterable[StudentRecord],
    *,
    batch_id: Optional[str] = None,
    name_or_phone: Optional[str] = None,
    enrollment_id: Optional[str] = None,
    email: Optional[str] = None,
) -> list[StudentRecord]:
    records = list(students)
    if batch_id:
        records = [item for item in records if item.batch_id == batch_id]
    if name_or_phone:
        records = [
            item
            for item in records
            if _contains(item.full_name, name_or_phone)
            or (item.phone and name_or_phone in item.phone)
        ]
    if enrollment_id:
        records = [item for item in records if _contains(item.enrollment_id, enrollment_id)]
    if email:
        records = [item for item in records if _contains(item.email, email)]
    return records


def filter_inquiries(inquiries: Iterable[InquiryRecord], search: Optional[str] = None) -> list:
    records = list(inquiries)
    if not search:
        return records
    return [
        item
        for item in records
        if _contains(item.name, search) or (item.phone and search in item.phone)
    ]


def lookup_label(
    records: Mapping[str, object], record_id: Optional[str], fallback: str = FALLBACK_LABEL
) -> str:
    """Display name for a weak reference; dangling or empty ids get the fallback."""
    record = records.get(record_id) if record_id else None
    name = getattr(record, "name", None)
    return name or fallback
