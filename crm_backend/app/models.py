from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_timestamp(value: Optional[datetime] = None) -> str:
    """Millisecond ISO-8601 UTC string, the format stored in `createdAt`/`updatedAt`."""
    moment = (value or utc_now()).astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Collection(str, Enum):
    students = "users"
    programs = "programs"
    inquiries = "inquiries"
    potentials = "potentials"
    batches = "batches"
    exams = "exams"
    employees = "employees"


class StudentStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    completed = "completed"


class InquiryStatus(str, Enum):
    new = "New"
    follow_up = "Follow-up"
    enrolled = "Enrolled"
    dropped = "Dropped"


class InquirySource(str, Enum):
    walk_in = "Walk-in"
    website = "Website"
    referral = "Referral"
    social_media = "Social Media"
    other = "Other"


class ProgramStatus(str, Enum):
    active = "active"
    inactive = "inactive"


class BatchStatus(str, Enum):
    active = "active"
    inactive = "inactive"


APPROVED_EMPLOYEE_STATUS = "approved"
MANUAL_ENROLLMENT_EMPLOYEE_ID = "e_manual"
ACTIVE_INQUIRY_STATUSES = frozenset({InquiryStatus.new, InquiryStatus.follow_up})


class StoredModel(BaseModel):
    """Base for documents kept in the record store under camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    def to_document(self) -> dict:
        return self.model_dump(
            mode="json", by_alias=True, exclude={"id"}, exclude_none=True
        )


# --- Records (what the store holds) ---


class EmployeeRecord(StoredModel):
    id: str
    name: str = ""
    status: str = ""


class ProgramRecord(StoredModel):
    id: str
    name: str
    category: str = ""
    code: str = ""
    description: str = ""
    duration: str = ""
    fee: float = 0
    status: ProgramStatus = ProgramStatus.active
    target_audience: str = Field(default="", alias="targetAudience")
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")


class BatchRecord(StoredModel):
    id: str
    name: str
    code: str = ""
    remarks: str = ""
    status: BatchStatus = BatchStatus.active
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")


class StudentRecord(StoredModel):
    id: str
    full_name: str = Field(alias="fullName")
    enrollment_id: str = Field(default="", alias="enrollmentId")
    dob: str = ""
    class_name: str = Field(default="", alias="className")
    school: str = ""
    program_id: str = Field(default="", alias="programId")
    batch_id: str = Field(default="", alias="batchId")
    medium: str = ""
    board: str = ""
    phone: str = ""
    email: str = ""
    address: str = ""
    status: StudentStatus = StudentStatus.active
    employee_id: Optional[str] = Field(default=None, alias="employeeId")
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")


class InquiryRecord(StoredModel):
    id: str
    name: str
    phone: str
    email: Optional[str] = None
    address: Optional[str] = None
    program_of_interest_id: str = Field(default="", alias="programOfInterestId")
    employee_id: str = Field(default="", alias="employeeId")
    status: InquiryStatus = InquiryStatus.new
    source: InquirySource = InquirySource.other
    notes: Optional[str] = None
    inquiry_date: str = Field(default="", alias="inquiryDate")
    follow_up_date: Optional[str] = Field(default=None, alias="followUpDate")


class PotentialRecord(InquiryRecord):
    remark: str = ""


class ExamRecord(BaseModel):
    air: Union[int, str]
    name: str
    program: str
    score: str = ""
    url: str


# --- Request bodies ---


class InquiryCreateRequest(StoredModel):
    name: str = Field(min_length=1, max_length=120)
    phone: str = Field(min_length=1, max_length=20)
    email: Optional[str] = None
    address: Optional[str] = None
    program_of_interest_id: str = Field(alias="programOfInterestId")
    employee_id: str = Field(alias="employeeId")
    status: InquiryStatus = InquiryStatus.new
    source: InquirySource = InquirySource.walk_in
    notes: Optional[str] = Field(default=None, max_length=1000)
    inquiry_date: str = Field(alias="inquiryDate")
    follow_up_date: Optional[str] = Field(default=None, alias="followUpDate")


_CLEARABLE_INQUIRY_FIELDS = frozenset({"email", "address", "notes", "follow_up_date"})


class InquiryUpdateRequest(StoredModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    phone: Optional[str] = Field(default=None, min_length=1, max_length=20)
    email: Optional[str] = None
    address: Optional[str] = None
    program_of_interest_id: Optional[str] = Field(default=None, alias="programOfInterestId")
    employee_id: Optional[str] = Field(default=None, alias="employeeId")
    status: Optional[InquiryStatus] = None
    source: Optional[InquirySource] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    inquiry_date: Optional[str] = Field(default=None, alias="inquiryDate")
    follow_up_date: Optional[str] = Field(default=None, alias="followUpDate")

    @model_validator(mode="after")
    def validate_required_fields_kept(self) -> "InquiryUpdateRequest":
        cleared = sorted(
            name
            for name in self.model_fields_set - _CLEARABLE_INQUIRY_FIELDS
            if getattr(self, name) is None
        )
        if cleared:
            raise ValueError(f"fields cannot be cleared: {', '.join(cleared)}")
        return self

    def changed_fields(self) -> dict:
        # an explicit null clears an optional field
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


class PotentialUpdateRequest(InquiryCreateRequest):
    remark: str = Field(min_length=1, max_length=500)


class MoveToPotentialRequest(BaseModel):
    remark: str = Field(min_length=1, max_length=500)


class BulkMoveToPotentialRequest(BaseModel):
    inquiry_ids: list[str] = Field(min_length=1)
    remark: str = Field(min_length=1, max_length=500)


class BulkDeleteRequest(BaseModel):
    ids: list[str] = Field(min_length=1)


class BatchReassignRequest(BaseModel):
    student_ids: list[str] = Field(min_length=1)
    batch_id: str = Field(min_length=1)


class StudentCreateRequest(StoredModel):
    full_name: str = Field(alias="fullName", min_length=1, max_length=120)
    enrollment_id: str = Field(alias="enrollmentId", min_length=1)
    dob: str = ""
    class_name: str = Field(default="", alias="className")
    school: str = ""
    program_id: str = Field(alias="programId")
    batch_id: str = Field(default="", alias="batchId")
    medium: str = "English"
    board: str = "CBSE"
    phone: str = ""
    email: str = ""
    address: str = ""
    status: StudentStatus = StudentStatus.active
    employee_id: Optional[str] = Field(default=None, alias="employeeId")


class StudentUpdateRequest(StudentCreateRequest):
    pass


class EnrollmentRequest(StoredModel):
    """Enrollment form; any field left out is pre-populated from the potential."""

    full_name: Optional[str] = Field(default=None, alias="fullName")
    enrollment_id: Optional[str] = Field(default=None, alias="enrollmentId")
    dob: Optional[str] = None
    class_name: Optional[str] = Field(default=None, alias="className")
    school: Optional[str] = None
    program_id: Optional[str] = Field(default=None, alias="programId")
    batch_id: Optional[str] = Field(default=None, alias="batchId")
    medium: Optional[str] = None
    board: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    status: Optional[StudentStatus] = None
    employee_id: Optional[str] = Field(default=None, alias="employeeId")


class ProgramCreateRequest(StoredModel):
    name: str = Field(min_length=1, max_length=120)
    category: str = ""
    code: str = ""
    description: str = ""
    duration: str = ""
    fee: float = Field(default=0, ge=0)
    status: ProgramStatus = ProgramStatus.active
    target_audience: str = Field(default="", alias="targetAudience")


class BatchCreateRequest(StoredModel):
    name: str = Field(min_length=1, max_length=120)
    code: str = ""
    remarks: str = ""
    status: BatchStatus = BatchStatus.active


class ExamRecordRequest(BaseModel):
    air: Union[int, str]
    name: str = Field(min_length=1, max_length=120)
    program: str = Field(min_length=1, max_length=120)
    score: str = ""
    url: str = Field(min_length=1)


class SignInRequest(BaseModel):
    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1)


class SignUpRequest(BaseModel):
    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1)
    confirm_password: str = Field(min_length=1)

    @model_validator(mode="after")
    def validate_passwords_match(self) -> "SignUpRequest":
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match.")
        return self


class FederatedSignInRequest(BaseModel):
    id_token: Optional[str] = Field(default=None, max_length=8000)


# --- Response bodies ---


class SessionResponse(BaseModel):
    token: str
    uid: str
    email: Optional[str]
    employee_id: str
    expires_at_utc: datetime


class SessionInfoResponse(BaseModel):
    uid: str
    email: Optional[str]
    display_name: Optional[str]
    employee_id: str


class CreatedResponse(BaseModel):
    id: str


class MoveResponse(BaseModel):
    moved: bool
    potential_id: Optional[str] = None


class BulkMoveResponse(BaseModel):
    potential_ids: dict[str, str]
    skipped: list[str]


class BulkMutationResponse(BaseModel):
    affected: list[str]
    skipped: list[str]


class EnrollmentResponse(BaseModel):
    enrolled: bool
    student_id: Optional[str] = None
    enrollment_id: Optional[str] = None


class ProgramStudentCount(BaseModel):
    program_id: str
    name: str
    students: int


class LeaderboardEntry(BaseModel):
    employee_id: str
    name: str
    conversions: int


class TrendPoint(BaseModel):
    date: str
    label: str
    enrolled: int


class DashboardSummaryResponse(BaseModel):
    total_students: int
    active_inquiries: int
    total_programs: int
    students_per_program: list[ProgramStudentCount]
    employee_leaderboard: list[LeaderboardEntry]
    weekly_enrollment_trend: list[TrendPoint]


class StudentListItem(StudentRecord):
    program_name: str = Field(alias="programName")
    batch_name: str = Field(alias="batchName")


class InquiryListItem(InquiryRecord):
    program_name: str = Field(alias="programName")
    employee_name: str = Field(alias="employeeName")


class PotentialListItem(PotentialRecord):
    program_name: str = Field(alias="programName")
    employee_name: str = Field(alias="employeeName")
