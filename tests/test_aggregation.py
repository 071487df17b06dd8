from datetime import date, datetime, timedelta

import pytest

from backend.school_admin.aggregation import (
    NO_GRADE,
    aggregate_defaulters,
    calculate_grade,
    compute_attendance_stats,
    compute_dashboard_stats,
    settle_payment,
    summarize_recent_activity,
)

TODAY = date(2025, 6, 30)


def _student(pk="s-1", student_id="STU001", first="Asha", last="Rao", class_name="5"):
    return {"id": pk, "student_id": student_id, "first_name": first, "last_name": last, "class": class_name}


def _fee(student, days_ago, status, amount, paid=0):
    return {
        "student": student,
        "student_id": student["id"],
        "due_date": TODAY - timedelta(days=days_ago),
        "status": status,
        "amount": amount,
        "paid_amount": paid,
    }


class TestGrades:
    @pytest.mark.parametrize(
        "marks,expected",
        [(95, "A+"), (90, "A+"), (85, "A"), (75, "B"), (65, "C"), (55, "D"), (49.9, "F"), (0, "F")],
    )
    def test_bands(self, marks, expected):
        assert calculate_grade(marks, 100) == expected

    @pytest.mark.parametrize("marks", [0, 10, 100, -5])
    def test_zero_total_has_no_grade(self, marks):
        assert calculate_grade(marks, 0) == NO_GRADE

    def test_monotonic_in_ratio(self):
        order = ["F", "D", "C", "B", "A", "A+"]
        ranks = [order.index(calculate_grade(marks, 80)) for marks in range(0, 81)]
        assert ranks == sorted(ranks)


class TestDefaulters:
    def test_one_entry_per_student_with_sum_and_worst_overdue(self):
        student = _student()
        fees = [_fee(student, 10, "pending", 100), _fee(student, 90, "overdue", 50, paid=20)]

        report = aggregate_defaulters(fees, TODAY)

        assert report.total == 1
        [entry] = report.preview
        assert entry.student_id == "STU001"
        assert entry.student_name == "Asha Rao"
        assert entry.class_name == "5"
        assert entry.pending_amount == 130
        assert entry.days_overdue == 90

    def test_paid_and_not_yet_due_fees_are_ignored(self):
        student = _student()
        fees = [
            _fee(student, 30, "paid", 100, paid=100),
            _fee(student, -5, "pending", 100),
            _fee(student, 0, "pending", 100),
        ]
        report = aggregate_defaulters(fees, TODAY)
        assert report.total == 0
        assert report.preview == []
        assert report.total_pending == 0

    def test_sorted_most_overdue_first_and_preview_limited(self):
        fees = [
            _fee(_student(pk=f"s-{n}", student_id=f"STU{n:03d}"), days, "pending", 10)
            for n, days in enumerate([5, 40, 12, 70, 1])
        ]
        report = aggregate_defaulters(fees, TODAY, limit=3)

        assert report.total == 5
        assert [d.days_overdue for d in report.preview] == [70, 40, 12]
        assert report.total_pending == 50

    def test_overpayment_is_not_clamped(self):
        student = _student()
        fees = [_fee(student, 3, "pending", 100, paid=120), _fee(student, 8, "pending", 50)]
        [entry] = aggregate_defaulters(fees, TODAY).preview
        assert entry.pending_amount == 30


class TestDashboardStats:
    def test_empty_system(self):
        stats = compute_dashboard_stats([], [], TODAY)
        assert stats.total_students == 0
        assert stats.total_fees_collected == 0
        assert stats.total_fees_pending == 0
        assert stats.pending_student_count == 0

    def test_counts_and_money(self):
        students = [
            {"status": "active", "admission_date": date(2025, 1, 10)},
            {"status": "active", "admission_date": date(2023, 4, 1)},
            {"status": "alumni", "admission_date": date(2019, 4, 1)},
            {"status": "left", "admission_date": "2025-02-01"},
        ]
        fees = [
            {"student_id": "a", "status": "paid", "amount": 100, "paid_amount": 100},
            {"student_id": "a", "status": "pending", "amount": 200, "paid_amount": 50},
            {"student_id": "b", "status": "overdue", "amount": 80, "paid_amount": 0},
        ]

        stats = compute_dashboard_stats(students, fees, TODAY)

        assert stats.total_students == 4
        assert stats.active_students == 2
        assert stats.alumni_students == 1
        assert stats.left_students == 1
        assert stats.new_enrollments_this_year == 2
        assert stats.total_fees_collected == 150
        assert stats.total_fees_pending == 230
        assert stats.pending_student_count == 2


def test_settle_payment_partial_then_full():
    assert settle_payment(100, 0, 40, TODAY) == (40, "pending", None)
    assert settle_payment(100, 40, 60, TODAY) == (100, "paid", TODAY)


def test_attendance_rate():
    stats = compute_attendance_stats(
        [{"status": "present"}, {"status": "present"}, {"status": "absent"}, {"status": "leave"}]
    )
    assert (stats.present, stats.absent, stats.leave, stats.total) == (2, 1, 1, 4)
    assert stats.attendance_rate == 50.0
    assert compute_attendance_stats([]).attendance_rate == 0.0


def test_recent_activity_newest_first():
    logs = [
        {"id": 1, "table_name": "students", "action": "INSERT", "timestamp": datetime(2025, 6, 1), "user_email": "a@x.io"},
        {"id": 2, "table_name": "fees", "action": "UPDATE", "timestamp": datetime(2025, 6, 3), "user_email": None},
        {"id": 3, "table_name": "attendance", "action": "INSERT", "timestamp": datetime(2025, 6, 2), "user_email": None},
    ]
    items = summarize_recent_activity(logs, limit=2)
    assert [item.id for item in items] == ["2", "3"]
    assert items[0].type == "fee_paid"
    assert items[0].description == "Fee payment recorded"
    assert items[1].description == "Attendance recorded"
