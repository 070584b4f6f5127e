"""Directory of supervisors, teachers and interns."""
from datetime import datetime
from enum import Enum
from typing import Optional

from beanie import Document, Indexed
from pydantic import BaseModel, EmailStr, Field

CLOCK_PATTERN = r"^([01]?\d|2[0-3]):[0-5]\d$"


class UserRole(str, Enum):
    SUPERVISOR = "supervisor"
    TEACHER = "teacher"
    INTERN = "intern"


class User(Document):
    """User document for every role; interns carry their teacher and work hours."""

    email: Indexed(EmailStr, unique=True)
    hashed_password: str
    role: UserRole
    first_name: str
    last_name: str
    phone: Optional[str] = None
    company: Optional[str] = None
    is_active: bool = True
    accepted_terms: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    # Teacher-specific
    supervisor_id: Optional[str] = None

    # Intern-specific
    teacher_id: Optional[str] = None
    scheduled_time_in: Optional[str] = None  # e.g. "09:00"
    scheduled_time_out: Optional[str] = None  # e.g. "17:00"

    # FCM tokens for notifications
    fcm_tokens: list[str] = Field(default_factory=list)

    class Settings:
        name = "users"
        use_state_management = True
        indexes = ["teacher_id", "role"]


class InternProfile(BaseModel):
    """The slice of an intern's directory entry the attendance engine reads."""
    uid: str
    teacher_id: Optional[str] = None
    scheduled_time_in: Optional[str] = Field(default=None, pattern=CLOCK_PATTERN)
    scheduled_time_out: Optional[str] = Field(default=None, pattern=CLOCK_PATTERN)


class TeacherCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    first_name: str
    last_name: str
    phone: Optional[str] = None


class InternCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    first_name: str
    last_name: str
    phone: Optional[str] = None
    company: Optional[str] = None
    teacher_id: Optional[str] = None
    scheduled_time_in: str = Field(default="08:00", pattern=CLOCK_PATTERN)
    scheduled_time_out: str = Field(default="17:00", pattern=CLOCK_PATTERN)


class ScheduleUpdate(BaseModel):
    scheduled_time_in: Optional[str] = Field(default=None, pattern=CLOCK_PATTERN)
    scheduled_time_out: Optional[str] = Field(default=None, pattern=CLOCK_PATTERN)


class UserInDB(BaseModel):
    id: str
    email: str
    role: UserRole
    first_name: str
    last_name: str
    phone: Optional[str] = None
    company: Optional[str] = None
    is_active: bool
    teacher_id: Optional[str] = None
    supervisor_id: Optional[str] = None
    scheduled_time_in: Optional[str] = None
    scheduled_time_out: Optional[str] = None

    class Config:
        from_attributes = True
