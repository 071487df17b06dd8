"""Pure summaries over fetched rows.

Rows may be ORM objects or plain mappings; nothing here touches the
database. Numeric fields are trusted to be numeric, the fetch layer
validates them.
"""
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from .config import settings

NO_GRADE = "-"

GRADE_BANDS = (
    (90, "A+"),
    (80, "A"),
    (70, "B"),
    (60, "C"),
    (50, "D"),
)

DEFAULTER_STATUSES = frozenset({"pending", "overdue"})


def _get(row: Any, key: str, default: Any = None) -> Any:
    if isinstance(row, Mapping):
        return row.get(key, default)
    return getattr(row, key, default)


def _value(raw: Any) -> Any:
    # str-based enums compare by their value
    return getattr(raw, "value", raw)


def _as_date(raw: Any) -> date | None:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw)[:10])


def calculate_grade(marks_obtained: float, total_marks: float) -> str:
    if not total_marks:
        return NO_GRADE
    percentage = marks_obtained / total_marks * 100
    for threshold, grade in GRADE_BANDS:
        if percentage >= threshold:
            return grade
    return "F"


def pending_amount(fee: Any) -> float:
    # Not clamped: an overpaid fee reduces the total (see DESIGN.md).
    return float(_get(fee, "amount", 0) or 0) - float(_get(fee, "paid_amount", 0) or 0)


def days_overdue(due_date: Any, today: date) -> int:
    return (today - _as_date(due_date)).days


def is_defaulter_contributor(fee: Any, today: date) -> bool:
    due = _as_date(_get(fee, "due_date"))
    return _value(_get(fee, "status")) in DEFAULTER_STATUSES and due is not None and due < today


def settle_payment(amount: float, paid_amount: float | None, payment: float, today: date) -> tuple[float, str, date | None]:
    """Return ``(new_paid_amount, status, paid_date)`` after a payment."""
    new_paid = float(paid_amount or 0) + float(payment)
    if new_paid >= float(amount):
        return new_paid, "paid", today
    return new_paid, "pending", None


@dataclass(frozen=True)
class Defaulter:
    id: str
    student_id: str
    student_name: str
    class_name: str
    pending_amount: float
    days_overdue: int


@dataclass(frozen=True)
class DefaulterReport:
    preview: list[Defaulter]
    total: int
    total_pending: float


def aggregate_defaulters(fees: Iterable[Any], today: date, limit: int | None = None) -> DefaulterReport:
    """Group overdue unpaid fees by student.

    Pending amounts are summed and the worst days-overdue kept per student.
    The list is ordered most overdue first; ``preview`` holds at most
    ``limit`` entries while ``total`` counts every defaulter.
    """
    limit = settings.defaulter_preview_size if limit is None else limit
    grouped: dict[str, dict[str, Any]] = {}

    for fee in fees:
        if not is_defaulter_contributor(fee, today):
            continue
        student = _get(fee, "student")
        if student is None:
            continue

        key = str(_get(student, "id"))
        amount_due = pending_amount(fee)
        overdue = days_overdue(_get(fee, "due_date"), today)

        entry = grouped.get(key)
        if entry is None:
            grouped[key] = {
                "id": key,
                "student_id": _get(student, "student_id"),
                "student_name": f"{_get(student, 'first_name')} {_get(student, 'last_name')}",
                "class_name": _get(student, "class_name", _get(student, "class")),
                "pending_amount": amount_due,
                "days_overdue": overdue,
            }
        else:
            entry["pending_amount"] += amount_due
            entry["days_overdue"] = max(entry["days_overdue"], overdue)

    ranked = sorted((Defaulter(**entry) for entry in grouped.values()), key=lambda d: d.days_overdue, reverse=True)
    return DefaulterReport(
        preview=ranked[:limit],
        total=len(ranked),
        total_pending=sum(d.pending_amount for d in ranked),
    )


@dataclass(frozen=True)
class DashboardStats:
    total_students: int = 0
    active_students: int = 0
    inactive_students: int = 0
    alumni_students: int = 0
    left_students: int = 0
    new_enrollments_this_year: int = 0
    total_fees_collected: float = 0.0
    total_fees_pending: float = 0.0
    pending_student_count: int = 0


def compute_dashboard_stats(students: Iterable[Any], fees: Iterable[Any], today: date) -> DashboardStats:
    counts = {"active": 0, "inactive": 0, "alumni": 0, "left": 0}
    total = 0
    new_this_year = 0
    for student in students:
        total += 1
        status = _value(_get(student, "status"))
        if status in counts:
            counts[status] += 1
        admitted = _as_date(_get(student, "admission_date"))
        if admitted is not None and admitted.year == today.year:
            new_this_year += 1

    collected = 0.0
    outstanding = 0.0
    pending_students = set()
    for fee in fees:
        collected += float(_get(fee, "paid_amount", 0) or 0)
        if _value(_get(fee, "status")) in DEFAULTER_STATUSES:
            outstanding += pending_amount(fee)
            pending_students.add(_get(fee, "student_id"))

    return DashboardStats(
        total_students=total,
        active_students=counts["active"],
        inactive_students=counts["inactive"],
        alumni_students=counts["alumni"],
        left_students=counts["left"],
        new_enrollments_this_year=new_this_year,
        total_fees_collected=collected,
        total_fees_pending=outstanding,
        pending_student_count=len(pending_students),
    )


@dataclass(frozen=True)
class AttendanceStats:
    present: int = 0
    absent: int = 0
    leave: int = 0
    total: int = 0

    @property
    def attendance_rate(self) -> float:
        if not self.total:
            return 0.0
        return round(self.present / self.total * 100, 1)


def compute_attendance_stats(records: Iterable[Any]) -> AttendanceStats:
    tally = {"present": 0, "absent": 0, "leave": 0}
    total = 0
    for record in records:
        total += 1
        status = _value(_get(record, "status"))
        if status in tally:
            tally[status] += 1
    return AttendanceStats(total=total, **tally)


ACTIVITY_TYPES = {
    "students": "student_added",
    "fees": "fee_paid",
    "attendance": "attendance",
    "exams": "exam_added",
    "exam_marks": "exam_added",
}

_DESCRIPTIONS = {
    ("students", "INSERT"): "New student enrolled",
    ("students", "UPDATE"): "Student record updated",
    ("students", "DELETE"): "Student record deleted",
    ("fees", "INSERT"): "Fee invoice created",
    ("fees", "UPDATE"): "Fee payment recorded",
    ("fees", "DELETE"): "Fee record deleted",
}


@dataclass(frozen=True)
class ActivityItem:
    id: str
    type: str
    description: str
    timestamp: datetime
    user: str | None = None


def describe_activity(table_name: str, action: str) -> tuple[str, str]:
    activity_type = ACTIVITY_TYPES.get(table_name, "student_added")
    if table_name == "attendance":
        return activity_type, "Attendance recorded"
    if table_name == "exams":
        return activity_type, "Exam created"
    if table_name == "exam_marks":
        return activity_type, "Exam marks entered"
    return activity_type, _DESCRIPTIONS.get((table_name, action), f"{table_name} {action.lower()}")


def summarize_recent_activity(logs: Iterable[Any], limit: int = 10) -> list[ActivityItem]:
    items = []
    for log in logs:
        activity_type, description = describe_activity(_get(log, "table_name"), _value(_get(log, "action")))
        items.append(
            ActivityItem(
                id=str(_get(log, "id")),
                type=activity_type,
                description=description,
                timestamp=_get(log, "timestamp"),
                user=_get(log, "user_email"),
            )
        )
    items.sort(key=lambda item: item.timestamp, reverse=True)
    return items[:limit]
