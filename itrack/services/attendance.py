"""Attendance session engine: time-in, time-out and teacher decisions.

State lives entirely in the attendance collection. An intern's session is
derived from their events on every read:

- pending: an event with ``status == pending`` (fresh time-in, or a
  time-out awaiting re-approval). Blocks new time-ins.
- current: an approved event without ``clock_out``. Enables time-out.
- completed: an approved event with ``clock_out``. One per day.

Status transitions are compare-and-swap updates, so a teacher decision
and an intern time-out racing on the same event cannot both apply.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from itrack.models.attendance import (
    AttendanceEvent,
    AttendanceStatus,
    Location,
    TeacherStats,
    parse_event,
    parse_events,
)
from itrack.models.user import InternProfile
from itrack.services import sessions
from itrack.services.directory import UserDirectory
from itrack.services.errors import (
    BackendUnavailable,
    RecordNotFound,
    StateConflictError,
    ValidationError,
)
from itrack.services.fcm import AttendanceNotifier
from itrack.services.migration import migrate_attendance_records
from itrack.services.photos import is_data_uri
from itrack.services.punctuality import clock_string, compute_early, compute_late
from itrack.services.store import AttendanceStore, SnapshotCallback, Subscription

logger = logging.getLogger(__name__)


def _require_photo(photo_url: Optional[str], label: str) -> str:
    if not photo_url or not photo_url.strip():
        raise ValidationError(f"{label} is required")
    if is_data_uri(photo_url):
        raise ValidationError(f"{label} must be an uploaded file URL, not embedded image data")
    return photo_url.strip()


class AttendanceEngine:
    def __init__(
        self,
        store: AttendanceStore,
        directory: UserDirectory,
        notifier: Optional[AttendanceNotifier] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.directory = directory
        self.notifier = notifier
        self.clock = clock

    # Queries

    async def _events(self, **filters) -> list[AttendanceEvent]:
        return parse_events(await self.store.query(filters))

    async def get_event(self, event_id: str) -> AttendanceEvent:
        event = parse_event(await self.store.get(event_id) or {}) if event_id else None
        if event is None:
            raise RecordNotFound(f"Attendance record {event_id} not found")
        return event

    async def get_current_session(self, intern_id: str) -> Optional[AttendanceEvent]:
        return sessions.current_session(await self._events(intern_id=intern_id))

    async def get_pending_session(self, intern_id: str) -> Optional[AttendanceEvent]:
        return sessions.pending_session(await self._events(intern_id=intern_id))

    async def get_history(self, intern_id: str) -> list[AttendanceEvent]:
        """Every event of the intern, all statuses, newest first."""
        return sessions.order_history(await self._events(intern_id=intern_id))

    async def get_session_state(self, intern_id: str) -> dict:
        return sessions.session_state(await self._events(intern_id=intern_id), self.clock())

    async def get_teacher_records(self, teacher_id: str, status: Optional[str] = None) -> list[AttendanceEvent]:
        filters = {"teacher_id": teacher_id}
        if status:
            filters["status"] = status
        return sessions.order_history(await self._events(**filters))

    async def teacher_stats(self, teacher_id: str) -> TeacherStats:
        records = await self._events(teacher_id=teacher_id)
        return TeacherStats(
            total_interns=await self.directory.count_interns(teacher_id),
            total_attendance=len(records),
            pending_attendance=sum(1 for r in records if sessions.is_pending(r)),
        )

    # Transitions

    async def check_time_in(self, intern_id: str, now: Optional[datetime] = None) -> InternProfile:
        """Raise unless the intern may time in now; callers run it before uploading the photo."""
        profile = await self.directory.get_intern_profile(intern_id)
        if profile is None:
            raise RecordNotFound(f"Intern {intern_id} not found")
        if not profile.teacher_id:
            raise ValidationError("Teacher assignment not found")

        history = await self.get_history(intern_id)
        if sessions.pending_session(history):
            raise StateConflictError("Your previous attendance is still waiting for approval")
        if sessions.current_session(history):
            raise StateConflictError("You are already timed in")
        if sessions.has_completed_today(history, now or self.clock()):
            raise StateConflictError("You have already completed your attendance for today")
        return profile

    async def check_time_out(self, event_id: str) -> AttendanceEvent:
        event = await self.get_event(event_id)
        if not sessions.is_current(event):
            raise StateConflictError("No active session found")
        return event

    async def time_in(self, intern_id: str, location: Optional[Location], photo_url: Optional[str]) -> str:
        photo_url = _require_photo(photo_url, "Photo")
        if location is None or not location.address.strip():
            raise ValidationError("Location is required for time-in")

        now = self.clock()
        profile = await self.check_time_in(intern_id, now)

        event = AttendanceEvent(
            intern_id=intern_id,
            teacher_id=profile.teacher_id,
            clock_in=now,
            location=location.address.strip(),
            coordinates=location.coordinates,
            photo_url=photo_url,
            status=AttendanceStatus.PENDING,
            is_late=compute_late(clock_string(now), profile.scheduled_time_in),
            created_at=now,
            updated_at=now,
        )
        event.id = await self.store.insert(event.to_document())
        logger.info(f"Time-in {event.id} recorded for intern {intern_id} (late={event.is_late}), pending approval")
        await self._notify("submitted", event)
        return event.id

    async def time_out(self, event_id: str, photo_url: Optional[str]) -> None:
        photo_url = _require_photo(photo_url, "Time-out photo")
        event = await self.check_time_out(event_id)

        profile = await self.directory.get_intern_profile(event.intern_id)
        now = self.clock()
        is_early = compute_early(clock_string(now), profile.scheduled_time_out if profile else None)
        changes = {
            "clock_out": now,
            "time_out_photo_url": photo_url,
            "is_early": is_early,
            "status": AttendanceStatus.PENDING.value,
            "updated_at": now,
        }
        swapped = await self.store.update(
            event_id, changes, expected={"status": AttendanceStatus.APPROVED.value, "clock_out": None}
        )
        if not swapped:
            raise StateConflictError("The session changed before time-out could be recorded")
        logger.info(f"Time-out recorded for {event_id} (early={is_early}), pending approval")
        await self._notify("submitted", event.model_copy(update=changes))

    async def approve(self, event_id: str, approver_id: str, reason: Optional[str] = None) -> None:
        await self._decide(event_id, AttendanceStatus.APPROVED, approver_id, reason)

    async def reject(self, event_id: str, approver_id: str, reason: Optional[str] = None) -> None:
        await self._decide(event_id, AttendanceStatus.REJECTED, approver_id, reason)

    async def _decide(
        self, event_id: str, status: AttendanceStatus, approver_id: str, reason: Optional[str]
    ) -> None:
        if not approver_id:
            raise ValidationError("Approver is required")
        event = await self.get_event(event_id)
        if not sessions.is_pending(event):
            raise StateConflictError(f"Attendance record is already {event.status}")

        if status == AttendanceStatus.APPROVED and event.clock_out is None:
            current = await self.get_current_session(event.intern_id)
            if current is not None and current.id != event_id:
                raise StateConflictError("Intern already has an active session")

        now = self.clock()
        changes = {
            "status": status.value,
            "approved_at": now,
            "approved_by": approver_id,
            "approval_reason": reason or None,
            "updated_at": now,
        }
        swapped = await self.store.update(event_id, changes, expected={"status": AttendanceStatus.PENDING.value})
        if not swapped:
            raise StateConflictError("Attendance record changed before the decision was saved")
        logger.info(f"Attendance {event_id} {status.value} by {approver_id}")
        await self._notify("decided", event.model_copy(update=changes))

    async def _notify(self, kind: str, event: AttendanceEvent) -> None:
        if self.notifier is None:
            return
        try:
            await getattr(self.notifier, kind)(event)
        except BackendUnavailable as e:
            logger.error(f"Attendance notification skipped: {e}")

    # Live updates and maintenance

    def _subscribe(self, filters: dict, callback: Optional[SnapshotCallback]) -> Subscription:
        async def load() -> list[AttendanceEvent]:
            return sessions.order_history(await self._events(**filters))

        return Subscription(load, self.store.watch(filters), callback)

    def subscribe_to_intern_attendance(self, intern_id: str, callback: Optional[SnapshotCallback] = None) -> Subscription:
        """Validated events of the intern, newest first, after every change."""
        return self._subscribe({"intern_id": intern_id}, callback)

    def subscribe_to_teacher_attendance(self, teacher_id: str, callback: Optional[SnapshotCallback] = None) -> Subscription:
        return self._subscribe({"teacher_id": teacher_id}, callback)

    async def migrate_ids(self) -> bool:
        return await migrate_attendance_records(self.store)
