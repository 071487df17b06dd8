from dataclasses import replace
from datetime import date, timedelta

import pytest

from backend.school_admin import services
from backend.school_admin.config import settings
from backend.school_admin.models import Attendance, AuditLog, ExamMark, Fee, FeeStatus

from .conftest import ADMIN_EMAIL, ADMIN_PASSWORD, bearer

API = "/api/v1"


def _student_payload(student_id="STU001", class_name="5", **overrides):
    payload = {
        "student_id": student_id,
        "first_name": "Asha",
        "last_name": "Rao",
        "class_name": class_name,
        "guardian_name": "Meera Rao",
        "guardian_phone": "9876543210",
    }
    payload.update(overrides)
    return payload


def _create_student(client, headers, **kwargs):
    response = client.post(f"{API}/students", json=_student_payload(**kwargs), headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


class TestSetup:
    def test_status_is_public_and_flips_after_setup(self, client):
        assert client.get(f"{API}/setup/status").json() == {"initialized": False}
        response = client.post(
            f"{API}/setup/master-admin",
            json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD, "full_name": "School Admin"},
        )
        assert response.status_code == 201
        assert response.json()["role"] == "master_admin"
        assert client.get(f"{API}/setup/status").json() == {"initialized": True}

    def test_second_setup_conflicts(self, client, admin_headers):
        response = client.post(
            f"{API}/setup/master-admin",
            json={"email": "intruder@school.test", "password": "Secret123", "full_name": "Intruder"},
        )
        assert response.status_code == 409


class TestAuth:
    def test_signup_login_me_pending(self, client, admin_headers):
        signup = client.post(
            f"{API}/auth/signup",
            json={"email": "New.Staff@School.test", "password": "Password1", "full_name": "New Staff"},
        )
        assert signup.status_code == 201, signup.text
        assert signup.json()["email"] == "new.staff@school.test"
        assert signup.json()["email_confirmed"] is True

        login = client.post(f"{API}/auth/login", json={"email": "new.staff@school.test", "password": "Password1"})
        assert login.status_code == 200
        assert login.json()["role"] is None
        headers = bearer(login.json()["access_token"])

        me = client.get(f"{API}/me", headers=headers)
        assert me.json()["role"] is None

        blocked = client.get(f"{API}/students", headers=headers)
        assert blocked.status_code == 403
        assert blocked.json()["detail"] == "Access pending"

    def test_bad_credentials(self, client, admin_headers):
        response = client.post(f"{API}/auth/login", json={"email": ADMIN_EMAIL, "password": "wrong-password"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid login credentials"

    def test_missing_or_malformed_token(self, client):
        assert client.get(f"{API}/me").status_code == 401
        assert client.get(f"{API}/me", headers={"Authorization": "Token abc"}).status_code == 401
        assert client.get(f"{API}/me", headers=bearer("not-a-jwt")).status_code == 401

    def test_logout_revokes_token(self, client, admin_headers):
        assert client.post(f"{API}/auth/logout", headers=admin_headers).status_code == 200
        assert client.get(f"{API}/me", headers=admin_headers).status_code == 401

    def test_email_confirmation_flow(self, client, monkeypatch):
        sent = {}

        def capture(*, recipient_email, token):
            sent[recipient_email] = token
            return True

        monkeypatch.setattr(services, "settings", replace(settings, require_email_confirmation=True))
        monkeypatch.setattr(services, "send_verification_email", capture)

        signup = client.post(
            f"{API}/auth/signup",
            json={"email": "pending@school.test", "password": "Password1", "full_name": "Pending User"},
        )
        assert signup.json()["email_confirmed"] is False
        assert signup.json()["access_token"] is None

        login = client.post(f"{API}/auth/login", json={"email": "pending@school.test", "password": "Password1"})
        assert login.status_code == 403

        bad = client.post(f"{API}/auth/verify-email", json={"email": "pending@school.test", "token": "wrong-token"})
        assert bad.status_code == 400

        token = sent["pending@school.test"]
        ok = client.post(f"{API}/auth/verify-email", json={"email": "pending@school.test", "token": token})
        assert ok.status_code == 200
        login = client.post(f"{API}/auth/login", json={"email": "pending@school.test", "password": "Password1"})
        assert login.status_code == 200

    def test_resend_for_unknown_email_looks_the_same(self, client):
        response = client.post(f"{API}/auth/resend-verification", json={"email": "ghost@school.test"})
        assert response.status_code == 200


class TestStaffManagement:
    def test_master_admin_manages_roles(self, client, admin_headers):
        signup = client.post(
            f"{API}/auth/signup",
            json={"email": "clerk@school.test", "password": "Password1", "full_name": "Front Clerk"},
        )
        user_id = signup.json()["user_id"]

        staff = client.get(f"{API}/staff", headers=admin_headers).json()
        assert {row["email"]: row["role"] for row in staff}["clerk@school.test"] is None

        assigned = client.put(f"{API}/staff/{user_id}/role", json={"role": "staff"}, headers=admin_headers)
        assert assigned.status_code == 200

        login = client.post(f"{API}/auth/login", json={"email": "clerk@school.test", "password": "Password1"})
        assert login.json()["role"] == "staff"

        removed = client.delete(f"{API}/staff/{user_id}/role", headers=admin_headers)
        assert removed.status_code == 200
        assert client.delete(f"{API}/staff/{user_id}/role", headers=admin_headers).status_code == 404

    def test_cannot_remove_own_role(self, client, admin_headers):
        me = client.get(f"{API}/me", headers=admin_headers).json()
        response = client.delete(f"{API}/staff/{me['id']}/role", headers=admin_headers)
        assert response.status_code == 400

    def test_staff_cannot_reach_admin_sections(self, client, staff_headers):
        assert client.get(f"{API}/staff", headers=staff_headers).status_code == 403
        assert client.get(f"{API}/audit-logs", headers=staff_headers).status_code == 403
        assert client.get(f"{API}/students", headers=staff_headers).status_code == 200


class TestStudents:
    def test_crud(self, client, admin_headers):
        student = _create_student(client, admin_headers)
        assert student["status"] == "active"
        assert student["admission_date"] == date.today().isoformat()

        duplicate = client.post(f"{API}/students", json=_student_payload(), headers=admin_headers)
        assert duplicate.status_code == 409

        updated = client.put(f"{API}/students/{student['id']}", json={"status": "alumni"}, headers=admin_headers)
        assert updated.json()["status"] == "alumni"

        listed = client.get(f"{API}/students", params={"search": "asha"}, headers=admin_headers).json()
        assert [row["student_id"] for row in listed] == ["STU001"]

        assert client.delete(f"{API}/students/{student['id']}", headers=admin_headers).status_code == 204
        assert client.get(f"{API}/students/{student['id']}", headers=admin_headers).status_code == 404

    def test_staff_cannot_delete(self, client, admin_headers, staff_headers):
        student = _create_student(client, staff_headers)
        assert client.delete(f"{API}/students/{student['id']}", headers=staff_headers).status_code == 403

    def test_unknown_status_filter_is_rejected(self, client, admin_headers):
        _create_student(client, admin_headers)
        response = client.get(f"{API}/students", params={"status": "bogus"}, headers=admin_headers)
        assert response.status_code == 422
        assert "bogus" in response.json()["detail"]
        assert len(client.get(f"{API}/students", params={"status": "all"}, headers=admin_headers).json()) == 1

    def test_null_for_required_field_is_rejected(self, client, admin_headers):
        student = _create_student(client, admin_headers)
        for field in ("first_name", "class_name", "guardian_phone", "status"):
            response = client.put(f"{API}/students/{student['id']}", json={field: None}, headers=admin_headers)
            assert response.status_code == 422, field

        unchanged = client.get(f"{API}/students/{student['id']}", headers=admin_headers).json()
        assert unchanged["first_name"] == "Asha"

        cleared = client.put(f"{API}/students/{student['id']}", json={"section": None}, headers=admin_headers)
        assert cleared.status_code == 200
        assert cleared.json()["section"] is None

    def test_profile_reads_filter_by_student(self, client, admin_headers):
        first = _create_student(client, admin_headers, student_id="STU001")
        second = _create_student(client, admin_headers, student_id="STU002")
        for student in (first, second):
            client.post(
                f"{API}/fees",
                json={"student_id": student["id"], "description": "Tuition Fee", "amount": 500, "due_date": "2025-06-10"},
                headers=admin_headers,
            )
        for day in ("2025-06-02", "2025-06-03"):
            client.post(
                f"{API}/attendance",
                json={
                    "class_name": "5",
                    "attendance_date": day,
                    "records": [
                        {"student_id": first["id"], "status": "present"},
                        {"student_id": second["id"], "status": "absent"},
                    ],
                },
                headers=admin_headers,
            )
        exam = client.post(
            f"{API}/exams",
            json={"name": "Unit Test", "class_name": "5", "academic_year": "2025-26", "exam_date": "2025-06-20"},
            headers=admin_headers,
        ).json()
        client.post(
            f"{API}/exams/{exam['id']}/marks",
            json={
                "marks": [
                    {"student_id": first["id"], "subject": "Maths", "marks_obtained": 80},
                    {"student_id": second["id"], "subject": "Maths", "marks_obtained": 40},
                ]
            },
            headers=admin_headers,
        )

        params = {"student_id": first["id"]}
        fees = client.get(f"{API}/fees", params=params, headers=admin_headers).json()
        assert [fee["student_id"] for fee in fees] == [first["id"]]

        history = client.get(f"{API}/attendance", params=params, headers=admin_headers).json()
        assert [row["attendance_date"] for row in history] == ["2025-06-03", "2025-06-02"]
        assert {row["status"] for row in history} == {"present"}

        marks = client.get(f"{API}/exam-marks", params=params, headers=admin_headers).json()
        assert [mark["marks_obtained"] for mark in marks] == [80]

        assert client.get(f"{API}/attendance", params={"class_name": "5"}, headers=admin_headers).status_code == 422


class TestClasses:
    def test_master_admin_manages_classes(self, client, admin_headers):
        first = client.post(f"{API}/classes", json={"name": "Class 1"}, headers=admin_headers)
        assert first.status_code == 201
        second = client.post(
            f"{API}/classes", json={"name": "Class 2", "description": "Second grade"}, headers=admin_headers
        ).json()
        assert first.json()["sort_order"] == 1
        assert second["sort_order"] == 2

        duplicate = client.post(f"{API}/classes", json={"name": "Class 1"}, headers=admin_headers)
        assert duplicate.status_code == 409

        renamed = client.put(f"{API}/classes/{second['id']}", json={"name": "Class 2A"}, headers=admin_headers)
        assert renamed.json()["name"] == "Class 2A"
        assert renamed.json()["description"] == "Second grade"

        client.put(f"{API}/classes/{second['id']}", json={"is_active": False}, headers=admin_headers)
        active = client.get(f"{API}/classes", headers=admin_headers).json()
        assert [row["name"] for row in active] == ["Class 1"]
        everything = client.get(f"{API}/classes", params={"active_only": False}, headers=admin_headers).json()
        assert [row["name"] for row in everything] == ["Class 1", "Class 2A"]

        assert client.delete(f"{API}/classes/{second['id']}", headers=admin_headers).status_code == 204
        assert client.put(f"{API}/classes/{second['id']}", json={"name": "X"}, headers=admin_headers).status_code == 404

        logs = client.get(f"{API}/audit-logs", params={"table_name": "classes"}, headers=admin_headers).json()
        assert sorted(log["action"] for log in logs) == ["DELETE", "INSERT", "INSERT", "UPDATE", "UPDATE"]

    def test_staff_read_only(self, client, admin_headers, staff_headers):
        created = client.post(f"{API}/classes", json={"name": "Class 3"}, headers=admin_headers).json()
        assert [row["name"] for row in client.get(f"{API}/classes", headers=staff_headers).json()] == ["Class 3"]
        assert client.post(f"{API}/classes", json={"name": "Class 4"}, headers=staff_headers).status_code == 403
        assert client.put(
            f"{API}/classes/{created['id']}", json={"is_active": False}, headers=staff_headers
        ).status_code == 403
        assert client.delete(f"{API}/classes/{created['id']}", headers=staff_headers).status_code == 403

    def test_blank_or_null_name_is_rejected(self, client, admin_headers):
        assert client.post(f"{API}/classes", json={"name": "   "}, headers=admin_headers).status_code == 400
        created = client.post(f"{API}/classes", json={"name": "Class 5"}, headers=admin_headers).json()
        assert client.put(f"{API}/classes/{created['id']}", json={"name": None}, headers=admin_headers).status_code == 422


class TestFees:
    def test_partial_then_full_payment(self, client, admin_headers):
        student = _create_student(client, admin_headers)
        fee = client.post(
            f"{API}/fees",
            json={
                "student_id": student["id"],
                "description": "Tuition Fee",
                "amount": 1000,
                "due_date": date.today().isoformat(),
            },
            headers=admin_headers,
        ).json()

        partial = client.post(
            f"{API}/fees/{fee['id']}/payments", json={"amount": 400, "payment_method": "cash"}, headers=admin_headers
        ).json()
        assert partial["status"] == "pending"
        assert partial["paid_amount"] == 400
        assert partial["receipt_number"] is None

        full = client.post(
            f"{API}/fees/{fee['id']}/payments", json={"amount": 600, "payment_method": "upi"}, headers=admin_headers
        ).json()
        assert full["status"] == "paid"
        assert full["paid_date"] == date.today().isoformat()
        assert full["receipt_number"].startswith("RCP-")

        again = client.post(
            f"{API}/fees/{fee['id']}/payments", json={"amount": 1, "payment_method": "cash"}, headers=admin_headers
        )
        assert again.status_code == 400

    def test_bulk_generation_targets_active_students(self, client, admin_headers):
        _create_student(client, admin_headers, student_id="STU001", class_name="7")
        _create_student(client, admin_headers, student_id="STU002", class_name="7")
        _create_student(client, admin_headers, student_id="STU003", class_name="7", status="left")

        payload = {"class_name": "7", "description": "Exam Fee", "amount": 250, "due_date": "2025-07-10"}
        response = client.post(f"{API}/fees/bulk", json=payload, headers=admin_headers)
        assert response.status_code == 201
        assert len(response.json()) == 2

        empty = client.post(f"{API}/fees/bulk", json={**payload, "class_name": "12"}, headers=admin_headers)
        assert empty.status_code == 400

    def test_unknown_status_filter_is_rejected(self, client, admin_headers):
        assert client.get(f"{API}/fees", params={"status": "bogus"}, headers=admin_headers).status_code == 422
        assert client.get(f"{API}/fees", params={"status": "overdue"}, headers=admin_headers).json() == []


class TestDashboard:
    def test_defaulters_and_stats(self, client, admin_headers, db):
        student = _create_student(client, admin_headers)
        today = date.today()
        db.add_all(
            [
                Fee(student_id=student["id"], description="Tuition", amount=100, paid_amount=0,
                    due_date=today - timedelta(days=10), status=FeeStatus.PENDING),
                Fee(student_id=student["id"], description="Transport", amount=50, paid_amount=20,
                    due_date=today - timedelta(days=90), status=FeeStatus.OVERDUE),
                Fee(student_id=student["id"], description="Library", amount=30, paid_amount=30,
                    due_date=today - timedelta(days=5), status=FeeStatus.PAID),
            ]
        )
        db.commit()

        report = client.get(f"{API}/dashboard/defaulters", headers=admin_headers).json()
        assert report["total"] == 1
        assert report["defaulters"][0]["pending_amount"] == 130
        assert report["defaulters"][0]["days_overdue"] == 90

        stats = client.get(f"{API}/dashboard/stats", headers=admin_headers).json()
        assert stats["total_students"] == 1
        assert stats["total_fees_collected"] == 50
        assert stats["total_fees_pending"] == 130
        assert stats["pending_student_count"] == 1

    def test_activity_feed_only_for_master_admin(self, client, admin_headers, staff_headers):
        _create_student(client, admin_headers)
        feed = client.get(f"{API}/dashboard/activity", headers=admin_headers).json()
        assert feed[0]["description"] == "New student enrolled"
        assert client.get(f"{API}/dashboard/activity", headers=staff_headers).json() == []

    def test_mutations_are_audited(self, client, admin_headers, db):
        _create_student(client, admin_headers)
        tables = {row.table_name for row in db.query(AuditLog).all()}
        assert {"user_roles", "students"} <= tables

        logs = client.get(f"{API}/audit-logs", params={"table_name": "students"}, headers=admin_headers).json()
        assert [log["action"] for log in logs] == ["INSERT"]

        bogus = client.get(f"{API}/audit-logs", params={"action": "bogus"}, headers=admin_headers)
        assert bogus.status_code == 422


class TestAttendanceAndExams:
    def test_attendance_sheet_replaced_and_counted(self, client, admin_headers):
        first = _create_student(client, admin_headers, student_id="STU001")
        second = _create_student(client, admin_headers, student_id="STU002")
        sheet = {
            "class_name": "5",
            "attendance_date": "2025-06-02",
            "records": [
                {"student_id": first["id"], "status": "present"},
                {"student_id": second["id"], "status": "absent"},
            ],
        }
        assert client.post(f"{API}/attendance", json=sheet, headers=admin_headers).status_code == 200
        sheet["records"][1]["status"] = "present"
        client.post(f"{API}/attendance", json=sheet, headers=admin_headers)

        rows = client.get(f"{API}/attendance", params={"class_name": "5", "date": "2025-06-02"}, headers=admin_headers)
        assert sorted(row["status"] for row in rows.json()) == ["present", "present"]

        stats = client.get(f"{API}/attendance/stats", params={"month": "2025-06"}, headers=admin_headers).json()
        assert stats["total"] == 2
        assert stats["attendance_rate"] == 100.0

    def test_marks_get_grades(self, client, admin_headers):
        student = _create_student(client, admin_headers)
        exam = client.post(
            f"{API}/exams",
            json={"name": "Mid Term", "class_name": "5", "academic_year": "2025-26", "exam_date": "2025-09-15"},
            headers=admin_headers,
        ).json()
        marks = client.post(
            f"{API}/exams/{exam['id']}/marks",
            json={
                "marks": [
                    {"student_id": student["id"], "subject": "Maths", "marks_obtained": 92, "total_marks": 100},
                    {"student_id": student["id"], "subject": "Art", "marks_obtained": 10, "total_marks": 0},
                ]
            },
            headers=admin_headers,
        )
        assert marks.status_code == 201
        assert {row["subject"]: row["grade"] for row in marks.json()} == {"Maths": "A+", "Art": "-"}

        listed = client.get(f"{API}/exam-marks", params={"exam_id": exam["id"]}, headers=admin_headers).json()
        assert len(listed) == 2

    def test_attendance_rejects_unknown_or_foreign_students(self, client, admin_headers, db):
        own = _create_student(client, admin_headers, student_id="STU001", class_name="5")
        other = _create_student(client, admin_headers, student_id="STU002", class_name="6")
        sheet = {"class_name": "5", "attendance_date": "2025-06-02"}

        unknown = client.post(
            f"{API}/attendance",
            json={**sheet, "records": [{"student_id": "no-such-student", "status": "present"}]},
            headers=admin_headers,
        )
        assert unknown.status_code == 400
        assert "no-such-student" in unknown.json()["detail"]

        foreign = client.post(
            f"{API}/attendance",
            json={
                **sheet,
                "records": [
                    {"student_id": own["id"], "status": "present"},
                    {"student_id": other["id"], "status": "present"},
                ],
            },
            headers=admin_headers,
        )
        assert foreign.status_code == 400
        assert db.query(Attendance).count() == 0

    def test_marks_reject_unknown_students(self, client, admin_headers, db):
        exam = client.post(
            f"{API}/exams",
            json={"name": "Final", "class_name": "5", "academic_year": "2025-26", "exam_date": "2026-03-15"},
            headers=admin_headers,
        ).json()
        response = client.post(
            f"{API}/exams/{exam['id']}/marks",
            json={"marks": [{"student_id": "no-such-student", "subject": "Maths", "marks_obtained": 50}]},
            headers=admin_headers,
        )
        assert response.status_code == 400
        assert db.query(ExamMark).count() == 0


def test_health(client):
    assert client.get("/api/health").json()["status"] == "healthy"


@pytest.mark.parametrize("path", ["/dashboard/stats", "/fees", "/exams"])
def test_protected_endpoints_require_sign_in(client, path):
    assert client.get(f"{API}{path}").status_code == 401
