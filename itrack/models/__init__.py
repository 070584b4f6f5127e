"""Beanie document models and Pydantic schemas."""
from itrack.models.attendance import (
    AttendanceEvent,
    AttendanceStatus,
    AttendanceSummary,
    Coordinates,
    DecisionRequest,
    Location,
    TeacherStats,
)
from itrack.models.user import InternCreate, InternProfile, ScheduleUpdate, TeacherCreate, User, UserInDB, UserRole

__all__ = [
    "AttendanceEvent",
    "AttendanceStatus",
    "AttendanceSummary",
    "Coordinates",
    "DecisionRequest",
    "Location",
    "TeacherStats",
    "InternCreate",
    "InternProfile",
    "ScheduleUpdate",
    "TeacherCreate",
    "User",
    "UserInDB",
    "UserRole",
]
