from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from .models import AppRole, AttendanceStatus, AuditAction, FeeStatus, StudentStatus


class SignUpRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    full_name: str = Field(min_length=2, max_length=255)


class LoginRequest(BaseModel):
    email: str = Field(min_length=5, max_length=255)
    password: str = Field(min_length=1)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    email: str
    role: AppRole | None


class SignUpResponse(BaseModel):
    user_id: str
    email: str
    email_confirmed: bool
    access_token: str | None = None
    message: str


class EmailRequest(BaseModel):
    email: EmailStr


class VerifyEmailRequest(BaseModel):
    email: EmailStr
    token: str = Field(min_length=8)


class IdentityOut(BaseModel):
    id: str
    email: str
    role: AppRole | None = None
    email_confirmed: bool = True


class MessageResponse(BaseModel):
    message: str


class SetupStatusResponse(BaseModel):
    initialized: bool


class MasterAdminCreateRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    full_name: str = Field(min_length=2, max_length=255)


class StaffCreateRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    full_name: str = Field(min_length=2, max_length=255)
    role: AppRole


class RoleAssignRequest(BaseModel):
    role: AppRole


class StaffOut(BaseModel):
    user_id: str
    full_name: str
    email: str
    role: AppRole | None
    created_at: datetime


class ClassCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    description: str | None = None
    is_active: bool = True


class ClassUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=50)
    description: str | None = None
    is_active: bool | None = None

    @field_validator("name", "is_active")
    @classmethod
    def reject_null(cls, value):
        if value is None:
            raise ValueError("Field cannot be null")
        return value


class ClassOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None
    is_active: bool
    sort_order: int | None
    created_at: datetime


class StudentBase(BaseModel):
    student_id: str = Field(min_length=1, max_length=50)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    class_name: str = Field(min_length=1, max_length=50)
    section: str | None = None
    status: StudentStatus = StudentStatus.ACTIVE
    admission_date: date | None = None
    date_of_birth: date | None = None
    gender: str | None = None
    guardian_name: str = Field(min_length=1, max_length=255)
    guardian_phone: str = Field(min_length=5, max_length=30)
    guardian_relation: str | None = None
    phone: str | None = None
    address: str | None = None
    notes: str | None = None


class StudentCreateRequest(StudentBase):
    pass


class StudentUpdateRequest(BaseModel):
    student_id: str | None = Field(default=None, min_length=1, max_length=50)
    first_name: str | None = None
    last_name: str | None = None
    class_name: str | None = None
    section: str | None = None
    status: StudentStatus | None = None
    admission_date: date | None = None
    date_of_birth: date | None = None
    gender: str | None = None
    guardian_name: str | None = None
    guardian_phone: str | None = None
    guardian_relation: str | None = None
    phone: str | None = None
    address: str | None = None
    notes: str | None = None

    @field_validator(
        "student_id",
        "first_name",
        "last_name",
        "class_name",
        "status",
        "admission_date",
        "guardian_name",
        "guardian_phone",
    )
    @classmethod
    def reject_null(cls, value):
        # Omit a field to leave it unchanged; these columns cannot be cleared.
        if value is None:
            raise ValueError("Field cannot be null")
        return value


class StudentOut(StudentBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    admission_date: date
    created_at: datetime


class StudentBrief(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    student_id: str
    first_name: str
    last_name: str
    class_name: str
    section: str | None = None


class FeeStructureOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    fee_type: str
    amount: float
    class_name: str | None
    frequency: str


class FeeCreateRequest(BaseModel):
    student_id: str
    description: str = Field(min_length=1, max_length=255)
    amount: float = Field(gt=0)
    due_date: date
    fee_structure_id: str | None = None
    month_year: str | None = Field(default=None, pattern=r"^\d{4}-\d{2}$")
    notes: str | None = None


class BulkFeeRequest(BaseModel):
    class_name: str = Field(min_length=1)
    description: str = Field(min_length=1, max_length=255)
    amount: float = Field(gt=0)
    due_date: date
    fee_structure_id: str | None = None
    month_year: str | None = Field(default=None, pattern=r"^\d{4}-\d{2}$")


class PaymentRequest(BaseModel):
    amount: float = Field(gt=0)
    payment_method: str = Field(min_length=1, max_length=50)


class FeeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    student_id: str
    description: str
    amount: float
    paid_amount: float
    due_date: date
    paid_date: date | None
    status: FeeStatus
    payment_method: str | None
    receipt_number: str | None
    month_year: str | None
    student: StudentBrief | None = None


class AttendanceRecordIn(BaseModel):
    student_id: str
    status: AttendanceStatus
    notes: str | None = None


class AttendanceSaveRequest(BaseModel):
    class_name: str = Field(min_length=1)
    attendance_date: date
    records: list[AttendanceRecordIn]


class AttendanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    student_id: str
    class_name: str
    attendance_date: date
    status: AttendanceStatus
    notes: str | None


class AttendanceStatsOut(BaseModel):
    present: int
    absent: int
    leave: int
    total: int
    attendance_rate: float


class ExamCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    class_name: str = Field(min_length=1)
    academic_year: str = Field(min_length=4, max_length=20)
    exam_date: date
    total_marks: float = Field(default=100, gt=0)


class ExamOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    class_name: str
    academic_year: str
    exam_date: date
    total_marks: float


class ExamMarkIn(BaseModel):
    student_id: str
    subject: str = Field(min_length=1, max_length=100)
    marks_obtained: float = Field(ge=0)
    total_marks: float = Field(default=100, ge=0)
    grade: str | None = Field(default=None, max_length=5)
    remarks: str | None = None


class ExamMarksSaveRequest(BaseModel):
    marks: list[ExamMarkIn]


class ExamMarkOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    exam_id: str
    student_id: str
    subject: str
    marks_obtained: float
    total_marks: float
    grade: str | None
    remarks: str | None
    student: StudentBrief | None = None


class DashboardStatsOut(BaseModel):
    total_students: int
    active_students: int
    inactive_students: int
    alumni_students: int
    left_students: int
    new_enrollments_this_year: int
    total_fees_collected: float
    total_fees_pending: float
    pending_student_count: int


class DefaulterOut(BaseModel):
    id: str
    student_id: str
    student_name: str
    class_name: str
    pending_amount: float
    days_overdue: int


class DefaulterReportOut(BaseModel):
    defaulters: list[DefaulterOut]
    total: int
    total_pending: float


class ActivityOut(BaseModel):
    id: str
    type: str
    description: str
    timestamp: datetime
    user: str | None


class AuditLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    table_name: str
    action: AuditAction
    record_id: str | None
    old_data: dict | None
    new_data: dict | None
    user_email: str | None
    timestamp: datetime
