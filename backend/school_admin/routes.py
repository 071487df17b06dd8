from dataclasses import asdict
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from . import services
from .auth_context import AuthState
from .database import get_db_session
from .middleware import get_auth_state, get_current_user, require_access
from .models import AppRole, User
from .schemas import (
    ActivityOut,
    AttendanceOut,
    AttendanceSaveRequest,
    AttendanceStatsOut,
    AuditLogOut,
    BulkFeeRequest,
    ClassCreateRequest,
    ClassOut,
    ClassUpdateRequest,
    DashboardStatsOut,
    DefaulterOut,
    DefaulterReportOut,
    EmailRequest,
    ExamCreateRequest,
    ExamMarkOut,
    ExamMarksSaveRequest,
    ExamOut,
    FeeCreateRequest,
    FeeOut,
    FeeStructureOut,
    IdentityOut,
    LoginRequest,
    LoginResponse,
    MasterAdminCreateRequest,
    MessageResponse,
    PaymentRequest,
    RoleAssignRequest,
    SetupStatusResponse,
    SignUpRequest,
    SignUpResponse,
    StaffCreateRequest,
    StaffOut,
    StudentCreateRequest,
    StudentOut,
    StudentUpdateRequest,
    VerifyEmailRequest,
)
from .security import AuthError

router = APIRouter(prefix="/api/v1", tags=["School Admin"])

signed_in = require_access()
master_admin = require_access(AppRole.MASTER_ADMIN)


def _http_error(exc: AuthError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


# --- auth ---------------------------------------------------------------


@router.post("/auth/signup", response_model=SignUpResponse, status_code=status.HTTP_201_CREATED)
def signup(payload: SignUpRequest, db: Session = Depends(get_db_session)):
    try:
        user = services.register_user(db, email=payload.email, password=payload.password)
    except AuthError as exc:
        raise _http_error(exc) from exc
    services.create_profile(db, user_id=user.id, full_name=payload.full_name, email=user.email)

    if user.email_confirmed_at is None:
        return SignUpResponse(
            user_id=user.id,
            email=user.email,
            email_confirmed=False,
            message="Please check your email to verify your account.",
        )
    token, _ = services.issue_session_token(user)
    return SignUpResponse(
        user_id=user.id,
        email=user.email,
        email_confirmed=True,
        access_token=token,
        message="Account created. A Master Admin must assign your role before you can access the dashboard.",
    )


@router.post("/auth/login", response_model=LoginResponse)
def login(payload: LoginRequest, db: Session = Depends(get_db_session)):
    try:
        user = services.authenticate_user(db, email=payload.email, password=payload.password)
    except AuthError as exc:
        raise _http_error(exc) from exc
    token, _ = services.issue_session_token(user)
    return LoginResponse(access_token=token, user_id=user.id, email=user.email, role=services.get_role(db, user.id))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(current_user: User = Depends(get_current_user), db: Session = Depends(get_db_session)):
    services.revoke_sessions(db, user=current_user)
    return MessageResponse(message="Signed out")


@router.post("/auth/resend-verification", response_model=MessageResponse)
def resend_verification(payload: EmailRequest, db: Session = Depends(get_db_session)):
    try:
        services.resend_verification(db, email=payload.email)
    except AuthError as exc:
        raise _http_error(exc) from exc
    return MessageResponse(message="If the account exists, a verification email has been sent.")


@router.post("/auth/verify-email", response_model=MessageResponse)
def verify_email(payload: VerifyEmailRequest, db: Session = Depends(get_db_session)):
    try:
        services.confirm_email(db, email=payload.email, token=payload.token)
    except AuthError as exc:
        raise _http_error(exc) from exc
    return MessageResponse(message="Email verified. You can now sign in.")


@router.get("/me", response_model=IdentityOut)
def me(current_user: User = Depends(get_current_user), state: AuthState = Depends(get_auth_state)):
    return IdentityOut(
        id=current_user.id,
        email=current_user.email,
        role=state.role,
        email_confirmed=current_user.email_confirmed_at is not None,
    )


# --- first run ----------------------------------------------------------


@router.get("/setup/status", response_model=SetupStatusResponse)
def setup_status(db: Session = Depends(get_db_session)):
    return SetupStatusResponse(initialized=services.is_system_initialized(db))


@router.post("/setup/master-admin", response_model=LoginResponse, status_code=status.HTTP_201_CREATED)
def setup_master_admin(payload: MasterAdminCreateRequest, db: Session = Depends(get_db_session)):
    try:
        user = services.initialize_system(
            db, email=payload.email, password=payload.password, full_name=payload.full_name
        )
    except AuthError as exc:
        raise _http_error(exc) from exc
    token, _ = services.issue_session_token(user)
    return LoginResponse(access_token=token, user_id=user.id, email=user.email, role=AppRole.MASTER_ADMIN)


# --- staff --------------------------------------------------------------


@router.get("/staff", response_model=list[StaffOut])
def list_staff(db: Session = Depends(get_db_session), _: User = Depends(master_admin)):
    return [
        StaffOut(
            user_id=profile.user_id,
            full_name=profile.full_name,
            email=profile.email,
            role=role,
            created_at=profile.created_at,
        )
        for profile, role in services.list_staff(db)
    ]


@router.post("/staff", response_model=StaffOut, status_code=status.HTTP_201_CREATED)
def create_staff(
    payload: StaffCreateRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(master_admin),
):
    try:
        user, profile = services.create_staff_account(
            db,
            actor=current_user,
            email=payload.email,
            password=payload.password,
            full_name=payload.full_name,
            role=payload.role,
        )
    except AuthError as exc:
        raise _http_error(exc) from exc
    return StaffOut(
        user_id=user.id,
        full_name=profile.full_name,
        email=user.email,
        role=payload.role,
        created_at=profile.created_at,
    )


@router.put("/staff/{user_id}/role", response_model=MessageResponse)
def assign_role(
    user_id: str,
    payload: RoleAssignRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(master_admin),
):
    try:
        services.assign_role(db, actor=current_user, user_id=user_id, role=payload.role)
    except AuthError as exc:
        raise _http_error(exc) from exc
    return MessageResponse(message=f"Role updated to {payload.role.value}")


@router.delete("/staff/{user_id}/role", response_model=MessageResponse)
def remove_role(user_id: str, db: Session = Depends(get_db_session), current_user: User = Depends(master_admin)):
    try:
        services.remove_role(db, actor=current_user, user_id=user_id)
    except AuthError as exc:
        raise _http_error(exc) from exc
    return MessageResponse(message="Role removed")


# --- classes ------------------------------------------------------------


@router.get("/classes", response_model=list[ClassOut])
def list_classes(
    active_only: bool = True,
    db: Session = Depends(get_db_session),
    _: User = Depends(signed_in),
):
    return [ClassOut.model_validate(row) for row in services.list_classes(db, active_only=active_only)]


@router.post("/classes", response_model=ClassOut, status_code=status.HTTP_201_CREATED)
def create_class(payload: ClassCreateRequest, db: Session = Depends(get_db_session), current_user: User = Depends(master_admin)):
    return ClassOut.model_validate(services.create_class(db, actor=current_user, **payload.model_dump()))


@router.put("/classes/{class_pk}", response_model=ClassOut)
def update_class(
    class_pk: str,
    payload: ClassUpdateRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(master_admin),
):
    school_class = services.update_class(
        db, actor=current_user, class_pk=class_pk, changes=payload.model_dump(exclude_unset=True)
    )
    return ClassOut.model_validate(school_class)


@router.delete("/classes/{class_pk}", status_code=status.HTTP_204_NO_CONTENT)
def delete_class(class_pk: str, db: Session = Depends(get_db_session), current_user: User = Depends(master_admin)):
    services.delete_class(db, actor=current_user, class_pk=class_pk)


# --- students -----------------------------------------------------------


@router.get("/students", response_model=list[StudentOut])
def list_students(
    class_name: str | None = None,
    status_filter: str | None = Query(default=None, alias="status"),
    search: str | None = None,
    db: Session = Depends(get_db_session),
    _: User = Depends(signed_in),
):
    students = services.list_students(db, class_name=class_name, status_filter=status_filter, search=search)
    return [StudentOut.model_validate(student) for student in students]


@router.get("/students/{student_pk}", response_model=StudentOut)
def get_student(student_pk: str, db: Session = Depends(get_db_session), _: User = Depends(signed_in)):
    return StudentOut.model_validate(services.get_student(db, student_pk))


@router.post("/students", response_model=StudentOut, status_code=status.HTTP_201_CREATED)
def create_student(
    payload: StudentCreateRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(signed_in),
):
    student = services.create_student(db, actor=current_user, data=payload.model_dump(exclude_none=True))
    return StudentOut.model_validate(student)


@router.put("/students/{student_pk}", response_model=StudentOut)
def update_student(
    student_pk: str,
    payload: StudentUpdateRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(signed_in),
):
    student = services.update_student(
        db, actor=current_user, student_pk=student_pk, changes=payload.model_dump(exclude_unset=True)
    )
    return StudentOut.model_validate(student)


@router.delete("/students/{student_pk}", status_code=status.HTTP_204_NO_CONTENT)
def delete_student(student_pk: str, db: Session = Depends(get_db_session), current_user: User = Depends(master_admin)):
    services.delete_student(db, actor=current_user, student_pk=student_pk)


# --- fees ---------------------------------------------------------------


@router.get("/fee-structures", response_model=list[FeeStructureOut])
def list_fee_structures(db: Session = Depends(get_db_session), _: User = Depends(signed_in)):
    return [FeeStructureOut.model_validate(row) for row in services.list_fee_structures(db)]


@router.get("/fees", response_model=list[FeeOut])
def list_fees(
    status_filter: str | None = Query(default=None, alias="status"),
    fee_type: str | None = None,
    search: str | None = None,
    student_id: str | None = None,
    db: Session = Depends(get_db_session),
    _: User = Depends(signed_in),
):
    fees = services.list_fees(
        db, status_filter=status_filter, fee_type=fee_type, search=search, student_id=student_id
    )
    return [FeeOut.model_validate(fee) for fee in fees]


@router.post("/fees", response_model=FeeOut, status_code=status.HTTP_201_CREATED)
def create_fee(payload: FeeCreateRequest, db: Session = Depends(get_db_session), current_user: User = Depends(signed_in)):
    return FeeOut.model_validate(services.create_fee(db, actor=current_user, data=payload.model_dump()))


@router.post("/fees/bulk", response_model=list[FeeOut], status_code=status.HTTP_201_CREATED)
def bulk_create_fees(
    payload: BulkFeeRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(signed_in),
):
    fees = services.bulk_create_fees(db, actor=current_user, **payload.model_dump())
    return [FeeOut.model_validate(fee) for fee in fees]


@router.post("/fees/{fee_id}/payments", response_model=FeeOut)
def record_payment(
    fee_id: str,
    payload: PaymentRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(signed_in),
):
    fee = services.record_payment(
        db, actor=current_user, fee_id=fee_id, amount=payload.amount, payment_method=payload.payment_method
    )
    return FeeOut.model_validate(fee)


@router.delete("/fees/{fee_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_fee(fee_id: str, db: Session = Depends(get_db_session), current_user: User = Depends(master_admin)):
    services.delete_fee(db, actor=current_user, fee_id=fee_id)


# --- attendance ---------------------------------------------------------


@router.get("/attendance", response_model=list[AttendanceOut])
def get_attendance(
    class_name: str | None = None,
    on_date: date | None = Query(default=None, alias="date"),
    student_id: str | None = None,
    db: Session = Depends(get_db_session),
    _: User = Depends(signed_in),
):
    if not student_id and not (class_name and on_date):
        raise HTTPException(status_code=422, detail="Provide class_name and date, or student_id")
    rows = services.get_attendance(db, class_name=class_name, on_date=on_date, student_id=student_id)
    return [AttendanceOut.model_validate(row) for row in rows]


@router.post("/attendance", response_model=list[AttendanceOut])
def save_attendance(
    payload: AttendanceSaveRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(signed_in),
):
    rows = services.save_attendance(
        db,
        actor=current_user,
        class_name=payload.class_name,
        on_date=payload.attendance_date,
        records=[record.model_dump() for record in payload.records],
    )
    return [AttendanceOut.model_validate(row) for row in rows]


@router.get("/attendance/stats", response_model=AttendanceStatsOut)
def attendance_stats(
    class_name: str | None = None,
    month: str | None = None,
    db: Session = Depends(get_db_session),
    _: User = Depends(signed_in),
):
    stats = services.attendance_stats(db, class_name=class_name, month=month)
    return AttendanceStatsOut(
        present=stats.present,
        absent=stats.absent,
        leave=stats.leave,
        total=stats.total,
        attendance_rate=stats.attendance_rate,
    )


# --- exams --------------------------------------------------------------


@router.get("/exams", response_model=list[ExamOut])
def list_exams(
    class_name: str | None = None,
    academic_year: str | None = None,
    db: Session = Depends(get_db_session),
    _: User = Depends(signed_in),
):
    exams = services.list_exams(db, class_name=class_name, academic_year=academic_year)
    return [ExamOut.model_validate(exam) for exam in exams]


@router.post("/exams", response_model=ExamOut, status_code=status.HTTP_201_CREATED)
def create_exam(payload: ExamCreateRequest, db: Session = Depends(get_db_session), current_user: User = Depends(signed_in)):
    return ExamOut.model_validate(services.create_exam(db, actor=current_user, data=payload.model_dump()))


@router.delete("/exams/{exam_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_exam(exam_id: str, db: Session = Depends(get_db_session), current_user: User = Depends(master_admin)):
    services.delete_exam(db, actor=current_user, exam_id=exam_id)


@router.get("/exam-marks", response_model=list[ExamMarkOut])
def list_exam_marks(
    exam_id: str | None = None,
    search: str | None = None,
    student_id: str | None = None,
    db: Session = Depends(get_db_session),
    _: User = Depends(signed_in),
):
    marks = services.list_exam_marks(db, exam_id=exam_id, search=search, student_id=student_id)
    return [ExamMarkOut.model_validate(mark) for mark in marks]


@router.post("/exams/{exam_id}/marks", response_model=list[ExamMarkOut], status_code=status.HTTP_201_CREATED)
def save_exam_marks(
    exam_id: str,
    payload: ExamMarksSaveRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(signed_in),
):
    rows = services.save_exam_marks(
        db, actor=current_user, exam_id=exam_id, marks=[mark.model_dump() for mark in payload.marks]
    )
    return [ExamMarkOut.model_validate(row) for row in rows]


# --- dashboard & audit --------------------------------------------------


@router.get("/dashboard/stats", response_model=DashboardStatsOut)
def dashboard_stats(db: Session = Depends(get_db_session), _: User = Depends(signed_in)):
    stats = services.dashboard_stats(db)
    return DashboardStatsOut(**asdict(stats))


@router.get("/dashboard/defaulters", response_model=DefaulterReportOut)
def dashboard_defaulters(
    limit: int | None = Query(default=None, ge=0),
    db: Session = Depends(get_db_session),
    _: User = Depends(signed_in),
):
    report = services.defaulters(db, limit=limit)
    return DefaulterReportOut(
        defaulters=[DefaulterOut(**asdict(item)) for item in report.preview],
        total=report.total,
        total_pending=report.total_pending,
    )


@router.get("/dashboard/activity", response_model=list[ActivityOut])
def dashboard_activity(
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db_session),
    state: AuthState = Depends(get_auth_state),
    _: User = Depends(signed_in),
):
    # Staff see the dashboard without the audit-backed feed.
    if not state.is_master_admin:
        return []
    return [ActivityOut(**asdict(item)) for item in services.recent_activity(db, limit=limit)]


@router.get("/audit-logs", response_model=list[AuditLogOut])
def list_audit_logs(
    table_name: str | None = None,
    action: str | None = None,
    search: str | None = None,
    limit: int = Query(default=500, ge=1, le=1000),
    db: Session = Depends(get_db_session),
    _: User = Depends(master_admin),
):
    logs = services.list_audit_logs(db, table_name=table_name, action=action, search=search, limit=limit)
    return [AuditLogOut.model_validate(log) for log in logs]
