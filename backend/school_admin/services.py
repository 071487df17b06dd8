from datetime import date, datetime, timedelta
import enum
import logging
import re
import secrets
from typing import Any

from fastapi import HTTPException
from sqlalchemy import func, inspect, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from .aggregation import (
    DEFAULTER_STATUSES,
    aggregate_defaulters,
    calculate_grade,
    compute_attendance_stats,
    compute_dashboard_stats,
    settle_payment,
    summarize_recent_activity,
)
from .config import settings
from .mailer import MailDispatchError, send_verification_email
from .models import (
    AppRole,
    Attendance,
    AuditAction,
    AuditLog,
    Exam,
    ExamMark,
    Fee,
    FeeStatus,
    FeeStructure,
    Profile,
    SchoolClass,
    Student,
    StudentStatus,
    SystemFlag,
    User,
    UserRoleAssignment,
)
from .security import (
    AuthError,
    create_access_token,
    decode_access_token,
    generate_verification_token,
    hash_password,
    hash_verification_token,
    verify_password,
    verify_verification_token,
)

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
MIN_PASSWORD_LENGTH = 8
INITIALIZED_FLAG = "system_initialized"


def _normalize_email(value: str) -> str:
    normalized = value.lower().strip()
    if not EMAIL_PATTERN.match(normalized):
        raise AuthError("Invalid email format", code="invalid_input", status_code=400)
    return normalized


def _check_password(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise AuthError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
            code="invalid_input",
            status_code=400,
        )


def _jsonable(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return getattr(value, "value", value)


def _snapshot(obj: Any) -> dict[str, Any]:
    return {attr.key: _jsonable(getattr(obj, attr.key)) for attr in inspect(obj).mapper.column_attrs}


def _audit(
    db: Session,
    *,
    actor: User | None,
    table_name: str,
    action: AuditAction,
    record_id: str | None,
    old_data: dict | None = None,
    new_data: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            table_name=table_name,
            action=action,
            record_id=record_id,
            old_data=old_data,
            new_data=new_data,
            user_id=actor.id if actor else None,
            user_email=actor.email if actor else None,
        )
    )


def _filter_value(enum_cls: type[enum.Enum], value: str, label: str) -> enum.Enum:
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(["all", *(member.value for member in enum_cls)])
        raise HTTPException(status_code=422, detail=f"Invalid {label} '{value}'; expected one of: {allowed}") from exc


def _matches(term: str | None, *values: str | None) -> bool:
    if not term:
        return True
    needle = term.lower()
    return any(needle in value.lower() for value in values if value)


# --- identity -----------------------------------------------------------


def _issue_verification(db: Session, user: User) -> None:
    token = generate_verification_token()
    user.verification_hash = hash_verification_token(token)
    user.verification_expires_at = datetime.utcnow() + timedelta(hours=settings.verification_exp_hours)
    db.flush()
    try:
        send_verification_email(recipient_email=user.email, token=token)
    except MailDispatchError as exc:
        logger.error(f"Verification email for {user.email} not sent: {exc}")


def register_user(db: Session, *, email: str, password: str, confirmed: bool | None = None) -> User:
    """Create a sign-in identity. Never assigns a role."""
    email = _normalize_email(email)
    _check_password(password)
    if db.query(User).filter(User.email == email).first():
        raise AuthError("User already registered", code="user_already_exists", status_code=409)

    if confirmed is None:
        confirmed = not settings.require_email_confirmation

    user = User(
        email=email,
        password_hash=hash_password(password),
        email_confirmed_at=datetime.utcnow() if confirmed else None,
    )
    db.add(user)
    db.flush()
    if not confirmed:
        _issue_verification(db, user)
    db.commit()
    db.refresh(user)
    logger.info(f"Registered identity {user.email} (confirmed={confirmed})")
    return user


def create_profile(db: Session, *, user_id: str, full_name: str, email: str) -> Profile:
    profile = db.query(Profile).filter(Profile.user_id == user_id).first()
    if profile:
        profile.full_name = full_name.strip()
        profile.email = email.lower().strip()
    else:
        profile = Profile(user_id=user_id, full_name=full_name.strip(), email=email.lower().strip())
        db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


def authenticate_user(db: Session, *, email: str, password: str) -> User:
    user = db.query(User).filter(User.email == email.lower().strip()).first()
    if not user or not verify_password(password, user.password_hash):
        raise AuthError("Invalid login credentials", code="invalid_credentials")
    if user.email_confirmed_at is None:
        raise AuthError("Email not confirmed", code="email_not_confirmed", status_code=403)
    return user


def issue_session_token(user: User) -> tuple[str, datetime]:
    return create_access_token(subject=user.id, email=user.email, version=user.token_version)


def resolve_token(db: Session, token: str) -> User:
    payload = decode_access_token(token)
    user = db.query(User).filter(User.id == payload["sub"]).first()
    if not user:
        raise AuthError("Invalid user", code="invalid_token")
    if payload.get("ver", 0) != user.token_version:
        raise AuthError("Session has been signed out", code="invalid_token")
    return user


def revoke_sessions(db: Session, *, user: User) -> None:
    user.token_version += 1
    db.commit()


def resend_verification(db: Session, *, email: str) -> None:
    user = db.query(User).filter(User.email == _normalize_email(email)).first()
    if not user:
        # Unknown addresses get the same answer as known ones.
        return
    if user.email_confirmed_at is not None:
        raise AuthError("Email already confirmed", code="invalid_input", status_code=400)
    _issue_verification(db, user)
    db.commit()


def confirm_email(db: Session, *, email: str, token: str) -> User:
    user = db.query(User).filter(User.email == _normalize_email(email)).first()
    if not user:
        raise AuthError("Invalid verification link", code="invalid_token", status_code=400)
    if user.email_confirmed_at is not None:
        return user
    if not user.verification_hash or not user.verification_expires_at:
        raise AuthError("Verification not requested", code="invalid_token", status_code=400)
    if datetime.utcnow() > user.verification_expires_at:
        raise AuthError("Verification link expired", code="token_expired", status_code=400)
    if not verify_verification_token(token, user.verification_hash):
        raise AuthError("Invalid verification link", code="invalid_token", status_code=400)

    user.email_confirmed_at = datetime.utcnow()
    user.verification_hash = None
    user.verification_expires_at = None
    db.commit()
    db.refresh(user)
    return user


# --- roles --------------------------------------------------------------


def get_role(db: Session, user_id: str) -> AppRole | None:
    row = db.query(UserRoleAssignment).filter(UserRoleAssignment.user_id == user_id).first()
    return row.role if row else None


def _require_master_admin(db: Session, actor: User) -> None:
    if get_role(db, actor.id) != AppRole.MASTER_ADMIN:
        raise AuthError("Only master admins can manage roles", code="forbidden", status_code=403)


def assign_role(db: Session, *, actor: User, user_id: str, role: AppRole) -> UserRoleAssignment:
    _require_master_admin(db, actor)
    if not db.query(User).filter(User.id == user_id).first():
        raise AuthError("User not found", code="not_found", status_code=404)

    row = db.query(UserRoleAssignment).filter(UserRoleAssignment.user_id == user_id).first()
    if row:
        old = _snapshot(row)
        row.role = role
        db.flush()
        _audit(db, actor=actor, table_name="user_roles", action=AuditAction.UPDATE,
               record_id=row.id, old_data=old, new_data=_snapshot(row))
    else:
        row = UserRoleAssignment(user_id=user_id, role=role)
        db.add(row)
        db.flush()
        _audit(db, actor=actor, table_name="user_roles", action=AuditAction.INSERT,
               record_id=row.id, new_data=_snapshot(row))
    db.commit()
    db.refresh(row)
    logger.info(f"{actor.email} assigned role {role.value} to user {user_id}")
    return row


def remove_role(db: Session, *, actor: User, user_id: str) -> None:
    _require_master_admin(db, actor)
    if user_id == actor.id:
        raise AuthError("You cannot remove your own role", code="invalid_input", status_code=400)
    row = db.query(UserRoleAssignment).filter(UserRoleAssignment.user_id == user_id).first()
    if not row:
        raise AuthError("User has no role", code="not_found", status_code=404)
    _audit(db, actor=actor, table_name="user_roles", action=AuditAction.DELETE,
           record_id=row.id, old_data=_snapshot(row))
    db.delete(row)
    db.commit()
    logger.info(f"{actor.email} removed role from user {user_id}")


def list_staff(db: Session) -> list[tuple[Profile, AppRole | None]]:
    roles = {row.user_id: row.role for row in db.query(UserRoleAssignment).all()}
    profiles = db.query(Profile).order_by(Profile.created_at.desc()).all()
    return [(profile, roles.get(profile.user_id)) for profile in profiles]


def create_staff_account(
    db: Session,
    *,
    actor: User,
    email: str,
    password: str,
    full_name: str,
    role: AppRole,
) -> tuple[User, Profile]:
    _require_master_admin(db, actor)
    user = register_user(db, email=email, password=password, confirmed=True)
    profile = create_profile(db, user_id=user.id, full_name=full_name, email=user.email)
    assign_role(db, actor=actor, user_id=user.id, role=role)
    return user, profile


# --- first run ----------------------------------------------------------


def is_system_initialized(db: Session) -> bool:
    if db.query(SystemFlag).filter(SystemFlag.key == INITIALIZED_FLAG).first():
        return True
    return (
        db.query(UserRoleAssignment).filter(UserRoleAssignment.role == AppRole.MASTER_ADMIN).first()
        is not None
    )


def initialize_system(db: Session, *, email: str, password: str, full_name: str) -> User:
    """Create the first master admin. Succeeds at most once per database."""
    if is_system_initialized(db):
        raise AuthError("System is already initialized", code="already_initialized", status_code=409)

    email = _normalize_email(email)
    _check_password(password)
    if db.query(User).filter(User.email == email).first():
        raise AuthError("User already registered", code="user_already_exists", status_code=409)

    try:
        # The flag's primary key makes a concurrent second bootstrap fail.
        db.add(SystemFlag(key=INITIALIZED_FLAG, value=email))
        db.flush()
        user = User(email=email, password_hash=hash_password(password), email_confirmed_at=datetime.utcnow())
        db.add(user)
        db.flush()
        db.add(Profile(user_id=user.id, full_name=full_name.strip(), email=email))
        role = UserRoleAssignment(user_id=user.id, role=AppRole.MASTER_ADMIN)
        db.add(role)
        db.flush()
        _audit(db, actor=user, table_name="user_roles", action=AuditAction.INSERT,
               record_id=role.id, new_data={**_snapshot(role), "bootstrap": True})
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise AuthError("System is already initialized", code="already_initialized", status_code=409) from exc

    db.refresh(user)
    logger.info(f"System initialized with master admin {email}")
    return user


# --- classes ------------------------------------------------------------


def list_classes(db: Session, *, active_only: bool = True) -> list[SchoolClass]:
    query = db.query(SchoolClass).order_by(SchoolClass.sort_order.asc(), SchoolClass.name.asc())
    if active_only:
        query = query.filter(SchoolClass.is_active.is_(True))
    return query.all()


def get_class(db: Session, class_pk: str) -> SchoolClass:
    school_class = db.query(SchoolClass).filter(SchoolClass.id == class_pk).first()
    if not school_class:
        raise HTTPException(status_code=404, detail="Class not found")
    return school_class


def _check_class_name(db: Session, name: str, exclude_pk: str | None = None) -> None:
    if not name:
        raise HTTPException(status_code=400, detail="Class name is required")
    query = db.query(SchoolClass).filter(SchoolClass.name == name)
    if exclude_pk:
        query = query.filter(SchoolClass.id != exclude_pk)
    if query.first():
        raise HTTPException(status_code=409, detail="Class name already exists")


def create_class(
    db: Session,
    *,
    actor: User,
    name: str,
    description: str | None = None,
    is_active: bool = True,
) -> SchoolClass:
    name = name.strip()
    _check_class_name(db, name)
    # New classes go to the end of the list.
    max_order = db.query(func.max(SchoolClass.sort_order)).scalar() or 0
    school_class = SchoolClass(
        name=name,
        description=description or None,
        is_active=is_active,
        sort_order=max_order + 1,
    )
    db.add(school_class)
    db.flush()
    _audit(db, actor=actor, table_name="classes", action=AuditAction.INSERT,
           record_id=school_class.id, new_data=_snapshot(school_class))
    db.commit()
    db.refresh(school_class)
    return school_class


def update_class(db: Session, *, actor: User, class_pk: str, changes: dict[str, Any]) -> SchoolClass:
    school_class = get_class(db, class_pk)
    if "name" in changes:
        changes["name"] = changes["name"].strip()
        _check_class_name(db, changes["name"], exclude_pk=class_pk)
    if "description" in changes:
        changes["description"] = changes["description"] or None

    old = _snapshot(school_class)
    for key, value in changes.items():
        setattr(school_class, key, value)
    db.flush()
    _audit(db, actor=actor, table_name="classes", action=AuditAction.UPDATE,
           record_id=school_class.id, old_data=old, new_data=_snapshot(school_class))
    db.commit()
    db.refresh(school_class)
    return school_class


def delete_class(db: Session, *, actor: User, class_pk: str) -> None:
    school_class = get_class(db, class_pk)
    _audit(db, actor=actor, table_name="classes", action=AuditAction.DELETE,
           record_id=school_class.id, old_data=_snapshot(school_class))
    db.delete(school_class)
    db.commit()


# --- students -----------------------------------------------------------


def list_students(
    db: Session,
    *,
    class_name: str | None = None,
    status_filter: str | None = None,
    search: str | None = None,
) -> list[Student]:
    query = db.query(Student).order_by(Student.created_at.desc())
    if class_name and class_name != "all":
        query = query.filter(Student.class_name == class_name)
    if status_filter and status_filter != "all":
        query = query.filter(Student.status == _filter_value(StudentStatus, status_filter, "status"))
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(
                Student.student_id.ilike(pattern),
                Student.first_name.ilike(pattern),
                Student.last_name.ilike(pattern),
                Student.guardian_name.ilike(pattern),
            )
        )
    return query.all()


def get_student(db: Session, student_pk: str) -> Student:
    student = db.query(Student).filter(Student.id == student_pk).first()
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    return student


def create_student(db: Session, *, actor: User, data: dict[str, Any]) -> Student:
    if db.query(Student).filter(Student.student_id == data["student_id"]).first():
        raise HTTPException(status_code=409, detail="Student ID already exists")

    student = Student(**data, created_by=actor.id)
    db.add(student)
    db.flush()
    _audit(db, actor=actor, table_name="students", action=AuditAction.INSERT,
           record_id=student.id, new_data=_snapshot(student))
    db.commit()
    db.refresh(student)
    return student


def update_student(db: Session, *, actor: User, student_pk: str, changes: dict[str, Any]) -> Student:
    student = get_student(db, student_pk)
    new_student_id = changes.get("student_id")
    if new_student_id and new_student_id != student.student_id:
        exists = db.query(Student).filter(Student.student_id == new_student_id, Student.id != student_pk).first()
        if exists:
            raise HTTPException(status_code=409, detail="Student ID already exists")

    old = _snapshot(student)
    for key, value in changes.items():
        setattr(student, key, value)
    db.flush()
    _audit(db, actor=actor, table_name="students", action=AuditAction.UPDATE,
           record_id=student.id, old_data=old, new_data=_snapshot(student))
    db.commit()
    db.refresh(student)
    return student


def delete_student(db: Session, *, actor: User, student_pk: str) -> None:
    student = get_student(db, student_pk)
    db.query(ExamMark).filter(ExamMark.student_id == student_pk).delete()
    db.query(Attendance).filter(Attendance.student_id == student_pk).delete()
    db.query(Fee).filter(Fee.student_id == student_pk).delete()
    _audit(db, actor=actor, table_name="students", action=AuditAction.DELETE,
           record_id=student.id, old_data=_snapshot(student))
    db.delete(student)
    db.commit()


# --- fees ---------------------------------------------------------------


def list_fee_structures(db: Session) -> list[FeeStructure]:
    return db.query(FeeStructure).filter(FeeStructure.is_active.is_(True)).order_by(FeeStructure.name).all()


def list_fees(
    db: Session,
    *,
    status_filter: str | None = None,
    fee_type: str | None = None,
    search: str | None = None,
    student_id: str | None = None,
) -> list[Fee]:
    query = db.query(Fee).options(joinedload(Fee.student)).order_by(Fee.created_at.desc())
    if student_id:
        query = query.filter(Fee.student_id == student_id)
    if status_filter and status_filter != "all":
        query = query.filter(Fee.status == _filter_value(FeeStatus, status_filter, "status"))
    if fee_type and fee_type != "all":
        query = query.filter(Fee.description == fee_type)

    fees = query.all()
    if search:
        fees = [
            fee
            for fee in fees
            if _matches(
                search,
                fee.student.student_id if fee.student else None,
                fee.student.first_name if fee.student else None,
                fee.student.last_name if fee.student else None,
                fee.receipt_number,
            )
        ]
    return fees


def get_fee(db: Session, fee_id: str) -> Fee:
    fee = db.query(Fee).filter(Fee.id == fee_id).first()
    if not fee:
        raise HTTPException(status_code=404, detail="Fee not found")
    return fee


def create_fee(db: Session, *, actor: User, data: dict[str, Any]) -> Fee:
    get_student(db, data["student_id"])
    fee = Fee(**data, created_by=actor.id)
    db.add(fee)
    db.flush()
    _audit(db, actor=actor, table_name="fees", action=AuditAction.INSERT,
           record_id=fee.id, new_data=_snapshot(fee))
    db.commit()
    db.refresh(fee)
    return fee


def bulk_create_fees(
    db: Session,
    *,
    actor: User,
    class_name: str,
    description: str,
    amount: float,
    due_date: date,
    month_year: str | None = None,
    fee_structure_id: str | None = None,
) -> list[Fee]:
    students = (
        db.query(Student)
        .filter(Student.class_name == class_name, Student.status == StudentStatus.ACTIVE)
        .all()
    )
    if not students:
        raise HTTPException(status_code=400, detail="No active students found in this class")

    fees = []
    for student in students:
        fee = Fee(
            student_id=student.id,
            fee_structure_id=fee_structure_id,
            description=description,
            amount=amount,
            due_date=due_date,
            month_year=month_year,
            status=FeeStatus.PENDING,
            created_by=actor.id,
        )
        db.add(fee)
        fees.append(fee)
    db.flush()
    for fee in fees:
        _audit(db, actor=actor, table_name="fees", action=AuditAction.INSERT,
               record_id=fee.id, new_data=_snapshot(fee))
    db.commit()
    logger.info(f"{actor.email} generated {len(fees)} fee invoices for class {class_name}")
    return fees


def _receipt_number(today: date) -> str:
    return f"RCP-{today:%Y%m%d}-{secrets.token_hex(3).upper()}"


def record_payment(
    db: Session,
    *,
    actor: User,
    fee_id: str,
    amount: float,
    payment_method: str,
    today: date | None = None,
) -> Fee:
    today = today or date.today()
    fee = get_fee(db, fee_id)
    if fee.status == FeeStatus.PAID:
        raise HTTPException(status_code=400, detail="Fee is already paid")

    old = _snapshot(fee)
    new_paid, new_status, paid_date = settle_payment(fee.amount, fee.paid_amount, amount, today)
    fee.paid_amount = new_paid
    fee.status = FeeStatus(new_status)
    fee.payment_method = payment_method
    fee.paid_date = paid_date
    if fee.status == FeeStatus.PAID and not fee.receipt_number:
        fee.receipt_number = _receipt_number(today)
    db.flush()
    _audit(db, actor=actor, table_name="fees", action=AuditAction.UPDATE,
           record_id=fee.id, old_data=old, new_data=_snapshot(fee))
    db.commit()
    db.refresh(fee)
    return fee


def delete_fee(db: Session, *, actor: User, fee_id: str) -> None:
    fee = get_fee(db, fee_id)
    _audit(db, actor=actor, table_name="fees", action=AuditAction.DELETE,
           record_id=fee.id, old_data=_snapshot(fee))
    db.delete(fee)
    db.commit()


# --- attendance ---------------------------------------------------------


def get_attendance(
    db: Session,
    *,
    class_name: str | None = None,
    on_date: date | None = None,
    student_id: str | None = None,
) -> list[Attendance]:
    query = db.query(Attendance).order_by(Attendance.attendance_date.desc())
    if class_name:
        query = query.filter(Attendance.class_name == class_name)
    if on_date:
        query = query.filter(Attendance.attendance_date == on_date)
    if student_id:
        query = query.filter(Attendance.student_id == student_id)
    return query.all()


def _require_students(db: Session, student_ids: list[str], class_name: str | None = None) -> None:
    """Reject IDs that are not students (of ``class_name``, when given)."""
    wanted = set(student_ids)
    if not wanted:
        return
    rows = db.query(Student.id, Student.class_name).filter(Student.id.in_(wanted)).all()
    found = {row.id: row.class_name for row in rows}
    unknown = sorted(wanted - found.keys())
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown student IDs: {', '.join(unknown)}")
    if class_name:
        outside = sorted(pk for pk, cls in found.items() if cls != class_name)
        if outside:
            raise HTTPException(
                status_code=400,
                detail=f"Students not in class {class_name}: {', '.join(outside)}",
            )


def save_attendance(
    db: Session,
    *,
    actor: User,
    class_name: str,
    on_date: date,
    records: list[dict[str, Any]],
) -> list[Attendance]:
    """Replace the attendance sheet of ``class_name`` for ``on_date``."""
    _require_students(db, [record["student_id"] for record in records], class_name)
    db.query(Attendance).filter(
        Attendance.class_name == class_name, Attendance.attendance_date == on_date
    ).delete()

    rows = [
        Attendance(
            student_id=record["student_id"],
            status=record["status"],
            notes=record.get("notes"),
            class_name=class_name,
            attendance_date=on_date,
            recorded_by=actor.id,
        )
        for record in records
    ]
    db.add_all(rows)
    db.flush()
    _audit(db, actor=actor, table_name="attendance", action=AuditAction.INSERT, record_id=None,
           new_data={"class": class_name, "date": on_date.isoformat(), "count": len(rows)})
    db.commit()
    return rows


def _month_bounds(month: str) -> tuple[date, date]:
    try:
        start = datetime.strptime(month, "%Y-%m").date()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Month must be YYYY-MM") from exc
    next_month = (start.replace(day=28) + timedelta(days=4)).replace(day=1)
    return start, next_month


def attendance_stats(db: Session, *, class_name: str | None = None, month: str | None = None):
    query = db.query(Attendance)
    if class_name and class_name != "all":
        query = query.filter(Attendance.class_name == class_name)
    if month:
        start, end = _month_bounds(month)
        query = query.filter(Attendance.attendance_date >= start, Attendance.attendance_date < end)
    return compute_attendance_stats(query.all())


# --- exams --------------------------------------------------------------


def list_exams(db: Session, *, class_name: str | None = None, academic_year: str | None = None) -> list[Exam]:
    query = db.query(Exam).filter(Exam.is_active.is_(True)).order_by(Exam.exam_date.desc())
    if class_name and class_name != "all":
        query = query.filter(Exam.class_name == class_name)
    if academic_year and academic_year != "all":
        query = query.filter(Exam.academic_year == academic_year)
    return query.all()


def get_exam(db: Session, exam_id: str) -> Exam:
    exam = db.query(Exam).filter(Exam.id == exam_id).first()
    if not exam:
        raise HTTPException(status_code=404, detail="Exam not found")
    return exam


def create_exam(db: Session, *, actor: User, data: dict[str, Any]) -> Exam:
    exam = Exam(**data, created_by=actor.id)
    db.add(exam)
    db.flush()
    _audit(db, actor=actor, table_name="exams", action=AuditAction.INSERT,
           record_id=exam.id, new_data=_snapshot(exam))
    db.commit()
    db.refresh(exam)
    return exam


def delete_exam(db: Session, *, actor: User, exam_id: str) -> None:
    exam = get_exam(db, exam_id)
    db.query(ExamMark).filter(ExamMark.exam_id == exam_id).delete()
    _audit(db, actor=actor, table_name="exams", action=AuditAction.DELETE,
           record_id=exam.id, old_data=_snapshot(exam))
    db.delete(exam)
    db.commit()


def list_exam_marks(
    db: Session,
    *,
    exam_id: str | None = None,
    search: str | None = None,
    student_id: str | None = None,
) -> list[ExamMark]:
    query = db.query(ExamMark).options(joinedload(ExamMark.student)).order_by(ExamMark.created_at.desc())
    if exam_id and exam_id != "all":
        query = query.filter(ExamMark.exam_id == exam_id)
    if student_id:
        query = query.filter(ExamMark.student_id == student_id)
    marks = query.all()
    if search:
        marks = [
            mark
            for mark in marks
            if mark.student and _matches(search, mark.student.student_id, mark.student.first_name, mark.student.last_name)
        ]
    return marks


def save_exam_marks(db: Session, *, actor: User, exam_id: str, marks: list[dict[str, Any]]) -> list[ExamMark]:
    get_exam(db, exam_id)
    _require_students(db, [mark["student_id"] for mark in marks])
    rows = [
        ExamMark(
            exam_id=exam_id,
            student_id=mark["student_id"],
            subject=mark["subject"],
            marks_obtained=mark["marks_obtained"],
            total_marks=mark["total_marks"],
            grade=mark.get("grade") or calculate_grade(mark["marks_obtained"], mark["total_marks"]),
            remarks=mark.get("remarks"),
            recorded_by=actor.id,
        )
        for mark in marks
    ]
    db.add_all(rows)
    db.flush()
    for row in rows:
        _audit(db, actor=actor, table_name="exam_marks", action=AuditAction.INSERT,
               record_id=row.id, new_data=_snapshot(row))
    db.commit()
    return rows


# --- dashboard & audit --------------------------------------------------


def dashboard_stats(db: Session, *, today: date | None = None):
    today = today or date.today()
    return compute_dashboard_stats(db.query(Student).all(), db.query(Fee).all(), today)


def defaulters(db: Session, *, today: date | None = None, limit: int | None = None):
    today = today or date.today()
    fees = (
        db.query(Fee)
        .options(joinedload(Fee.student))
        .filter(Fee.status.in_([FeeStatus(value) for value in DEFAULTER_STATUSES]), Fee.due_date < today)
        .all()
    )
    return aggregate_defaulters(fees, today, limit=limit)


def recent_activity(db: Session, *, limit: int = 10):
    logs = db.query(AuditLog).order_by(AuditLog.timestamp.desc()).limit(limit).all()
    return summarize_recent_activity(logs, limit=limit)


def list_audit_logs(
    db: Session,
    *,
    table_name: str | None = None,
    action: str | None = None,
    search: str | None = None,
    limit: int = 500,
) -> list[AuditLog]:
    query = db.query(AuditLog).order_by(AuditLog.timestamp.desc())
    if table_name and table_name != "all":
        query = query.filter(AuditLog.table_name == table_name)
    if action and action != "all":
        query = query.filter(AuditLog.action == _filter_value(AuditAction, action, "action"))
    logs = query.limit(limit).all()
    if search:
        logs = [log for log in logs if _matches(search, log.user_email, log.table_name, log.record_id)]
    return logs
