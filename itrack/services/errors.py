"""Failure kinds surfaced by the attendance engine and its collaborators."""


class AttendanceError(Exception):
    """Base class; ``kind`` is the stable name the API reports to clients."""

    kind = "attendance_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AttendanceError):
    """A required field is missing or malformed. Never retried."""

    kind = "validation"


class StateConflictError(AttendanceError):
    """The intern's session state does not allow the requested transition."""

    kind = "state_conflict"


class RecordNotFound(AttendanceError):
    kind = "not_found"


class UploadFailure(AttendanceError):
    """Every photo provider in the fallback chain failed."""

    kind = "upload_failure"


class BackendUnavailable(AttendanceError):
    """The database (or another backing service) could not be reached."""

    kind = "backend_unavailable"


class MigrationConflict(AttendanceError):
    """Two records map onto the same deterministic id."""

    kind = "migration_conflict"

    def __init__(self, record_id: str, target_id: str):
        super().__init__(f"Record {record_id} cannot move to {target_id}: id already taken")
        self.record_id = record_id
        self.target_id = target_id
