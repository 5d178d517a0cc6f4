"""
Database Schemas for EduManage

Each Pydantic model describes one MongoDB collection. Field names are the
camelCase keys the web client reads, so documents are stored exactly as
model_dump() returns them.

- User -> "users"
- TeacherApplication -> "teacher-applications"
- Class -> "classes"
- Assignment -> "assignments"
- Submission -> "submissions"
- TeachingEvaluation -> "teaching-evaluations"
- Payment -> "payments"
"""
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["student", "teacher", "admin"]
ReviewStatus = Literal["pending", "approved", "rejected"]
ClassStatus = Literal["pending", "approved", "rejected"]

USERS = "users"
TEACHER_APPLICATIONS = "teacher-applications"
CLASSES = "classes"
ASSIGNMENTS = "assignments"
SUBMISSIONS = "submissions"
TEACHING_EVALUATIONS = "teaching-evaluations"
PAYMENTS = "payments"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    uid: str = Field(..., description="Identity provider user id")
    name: str = Field(..., description="Display name")
    email: EmailStr = Field(..., description="Email address")
    photoURL: str = Field("", description="Profile picture URL")
    role: Role = Field("student", description="User role")
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)


class TeacherApplication(BaseModel):
    uid: str
    name: str
    email: EmailStr
    photoURL: str = ""
    title: str
    experience: str
    category: str
    status: ReviewStatus = "pending"
    appliedAt: datetime = Field(default_factory=utcnow)
    reviewedAt: Optional[datetime] = None
    reviewedBy: Optional[str] = None


class Class(BaseModel):
    title: str
    teacherName: Optional[str] = None
    teacherEmail: Optional[str] = None
    teacherUid: str
    price: float = Field(..., ge=0)
    description: Optional[str] = None
    image: Optional[str] = None
    status: ClassStatus = "pending"
    enrolledStudents: List[str] = Field(default_factory=list, description="Student uids, no duplicates")
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)


class Assignment(BaseModel):
    classId: str
    teacherUid: str
    title: str
    deadline: datetime
    description: str
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)


class Submission(BaseModel):
    assignmentId: str
    classId: str
    studentUid: str
    studentName: str = ""
    studentEmail: str = ""
    submissionText: str
    submittedAt: datetime = Field(default_factory=utcnow)
    status: Literal["submitted"] = "submitted"


class TeachingEvaluation(BaseModel):
    classId: str
    teacherUid: str
    studentUid: str
    studentName: str = ""
    studentEmail: str = ""
    rating: int = Field(..., ge=1, le=5)
    description: str
    submittedAt: datetime = Field(default_factory=utcnow)
    createdAt: datetime = Field(default_factory=utcnow)


class Payment(BaseModel):
    transactionId: str = Field(..., description="Provider payment id, unique")
    stripePaymentIntentId: Optional[str] = None
    classId: str
    studentUid: str
    studentName: str = ""
    studentEmail: str = ""
    amount: float
    paymentMethod: str = "stripe"
    paymentMethodId: Optional[str] = None
    status: Literal["completed"] = "completed"
    source: Literal["checkout", "direct_enrollment"] = "checkout"
    createdAt: datetime = Field(default_factory=utcnow)
