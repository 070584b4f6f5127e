from datetime import datetime

import pytest

from conftest import PHOTO, InMemoryAttendanceStore, make_record
from itrack.models.attendance import AttendanceStatus, Coordinates, Location
from itrack.services.attendance import AttendanceEngine
from itrack.services.errors import (
    BackendUnavailable,
    RecordNotFound,
    StateConflictError,
    ValidationError,
)

pytestmark = pytest.mark.anyio

OUT_PHOTO = "https://cdn.example.com/out.jpg"


async def test_full_day_scenario(engine, store, clock, location, notifier):
    clock.set(8, 5)
    event_id = await engine.time_in("intern1", location, PHOTO)

    pending = await engine.get_pending_session("intern1")
    assert pending.id == event_id
    assert pending.is_late is True
    assert pending.teacher_id == "teacher1"
    assert await engine.get_current_session("intern1") is None

    clock.set(8, 30)
    await engine.approve(event_id, "teacher1", "ok")
    current = await engine.get_current_session("intern1")
    assert current.id == event_id
    assert current.approved_by == "teacher1"
    assert current.approval_reason == "ok"
    assert await engine.get_pending_session("intern1") is None

    clock.set(16, 30)
    await engine.time_out(event_id, OUT_PHOTO)
    event = await engine.get_event(event_id)
    assert event.status == AttendanceStatus.PENDING
    assert event.is_early is True
    assert event.time_out_photo_url == OUT_PHOTO
    assert event.clock_out == clock.now
    assert await engine.get_current_session("intern1") is None

    clock.set(16, 45)
    await engine.approve(event_id, "teacher1")
    state = await engine.get_session_state("intern1")
    assert state["completed_today"] is True
    assert state["current"] is None and state["pending"] is None

    with pytest.raises(StateConflictError, match="already completed"):
        await engine.time_in("intern1", location, PHOTO)

    assert [kind for kind, _, _ in notifier.sent] == ["submitted", "decided", "submitted", "decided"]


async def test_on_time_arrival_is_not_late(engine, clock, location):
    clock.set(8, 0)
    event_id = await engine.time_in("intern1", location, PHOTO)
    assert (await engine.get_event(event_id)).is_late is False


async def test_time_in_blocked_while_pending(engine, location):
    await engine.time_in("intern1", location, PHOTO)
    with pytest.raises(StateConflictError, match="waiting for approval"):
        await engine.time_in("intern1", location, PHOTO)


async def test_time_in_blocked_while_timed_in(engine, location):
    event_id = await engine.time_in("intern1", location, PHOTO)
    await engine.approve(event_id, "teacher1")
    with pytest.raises(StateConflictError, match="already timed in"):
        await engine.time_in("intern1", location, PHOTO)


async def test_rejected_time_in_allows_retry(engine, location):
    event_id = await engine.time_in("intern1", location, PHOTO)
    await engine.reject(event_id, "teacher1", "blurry photo")
    assert (await engine.get_event(event_id)).status == AttendanceStatus.REJECTED
    assert await engine.time_in("intern1", location, PHOTO) != event_id


async def test_unique_pending_index_closes_race(store, directory, clock, location):
    # A pending record the engine did not see when it checked.
    engine = AttendanceEngine(store, directory, clock=clock)
    original_query = store.query

    async def stale_query(filters=None, order_by=None, descending=True):
        return []

    store.query = stale_query
    await store.insert({k: v for k, v in make_record("p", status="pending").items() if k != "id"})
    with pytest.raises(StateConflictError):
        await engine.time_in("intern1", location, PHOTO)
    store.query = original_query


@pytest.mark.parametrize(
    "photo",
    [None, "", "   ", "data:image/jpeg;base64,AAAA"],
)
async def test_time_in_requires_uploaded_photo(engine, store, location, photo):
    with pytest.raises(ValidationError):
        await engine.time_in("intern1", location, photo)
    assert store.records == {}


async def test_time_in_requires_location(engine):
    with pytest.raises(ValidationError, match="Location"):
        await engine.time_in("intern1", None, PHOTO)
    blank = Location.model_construct(address="  ", coordinates=Coordinates(latitude=0, longitude=0))
    with pytest.raises(ValidationError):
        await engine.time_in("intern1", blank, PHOTO)


async def test_time_in_unknown_intern(engine, location):
    with pytest.raises(RecordNotFound):
        await engine.time_in("ghost", location, PHOTO)


async def test_time_in_requires_teacher(engine, directory, location):
    directory.add_intern("orphan", teacher_id=None)
    with pytest.raises(ValidationError, match="Teacher"):
        await engine.time_in("orphan", location, PHOTO)


async def test_missing_schedule_never_late(engine, directory, clock, location):
    directory.add_intern("flex", time_in=None, time_out=None)
    clock.set(11, 0)
    event_id = await engine.time_in("flex", location, PHOTO)
    await engine.approve(event_id, "teacher1")
    clock.set(12, 0)
    await engine.time_out(event_id, OUT_PHOTO)
    event = await engine.get_event(event_id)
    assert event.is_late is False and event.is_early is False


async def test_time_out_requires_active_session(engine, location):
    event_id = await engine.time_in("intern1", location, PHOTO)
    with pytest.raises(StateConflictError, match="No active session"):
        await engine.time_out(event_id, OUT_PHOTO)


async def test_time_out_requires_photo(engine, location):
    event_id = await engine.time_in("intern1", location, PHOTO)
    await engine.approve(event_id, "teacher1")
    with pytest.raises(ValidationError):
        await engine.time_out(event_id, "data:image/png;base64,AAAA")
    assert await engine.get_current_session("intern1") is not None


async def test_time_out_unknown_event(engine):
    with pytest.raises(RecordNotFound):
        await engine.time_out("nope", OUT_PHOTO)


async def test_state_checks_run_without_a_photo(engine, store, location):
    profile = await engine.check_time_in("intern1")
    assert profile.teacher_id == "teacher1"
    assert store.records == {}

    event_id = await engine.time_in("intern1", location, PHOTO)
    with pytest.raises(StateConflictError, match="waiting for approval"):
        await engine.check_time_in("intern1")
    with pytest.raises(StateConflictError, match="No active session"):
        await engine.check_time_out(event_id)

    await engine.approve(event_id, "teacher1")
    assert (await engine.check_time_out(event_id)).id == event_id


async def test_time_out_loses_race_to_concurrent_change(engine, store, location):
    event_id = await engine.time_in("intern1", location, PHOTO)
    await engine.approve(event_id, "teacher1")
    original_update = store.update

    async def racing_update(record_id, changes, expected=None):
        # Someone else closed the session between the read and the write.
        store.records[record_id]["clock_out"] = datetime(2024, 3, 4, 12)
        return await original_update(record_id, changes, expected)

    store.update = racing_update
    with pytest.raises(StateConflictError, match="changed"):
        await engine.time_out(event_id, OUT_PHOTO)


@pytest.mark.parametrize("status", ["approved", "rejected"])
async def test_only_pending_events_can_be_decided(engine, store, status):
    store.records["e1"] = {k: v for k, v in make_record("e1", status=status).items() if k != "id"}
    with pytest.raises(StateConflictError):
        await engine.approve("e1", "teacher1")
    with pytest.raises(StateConflictError):
        await engine.reject("e1", "teacher1")


async def test_decision_requires_approver(engine, location):
    event_id = await engine.time_in("intern1", location, PHOTO)
    with pytest.raises(ValidationError):
        await engine.approve(event_id, "")


async def test_approve_refuses_second_open_session(store, directory, clock):
    store.records["open"] = {
        k: v for k, v in make_record("open", status="approved", created_at=datetime(2024, 3, 3, 8)).items() if k != "id"
    }
    store.records["p"] = {k: v for k, v in make_record("p", status="pending").items() if k != "id"}
    engine = AttendanceEngine(store, directory, clock=clock)
    with pytest.raises(StateConflictError, match="active session"):
        await engine.approve("p", "teacher1")
    await engine.reject("p", "teacher1")


async def test_backend_failure_propagates(engine, store, location, backend_down):
    store.fail_with = backend_down
    with pytest.raises(BackendUnavailable):
        await engine.get_history("intern1")
    with pytest.raises(BackendUnavailable):
        await engine.time_in("intern1", location, PHOTO)


async def test_notification_failure_does_not_fail_transition(store, directory, clock, location):
    class DownNotifier:
        async def submitted(self, event):
            raise BackendUnavailable("users collection down")

    engine = AttendanceEngine(store, directory, DownNotifier(), clock=clock)
    event_id = await engine.time_in("intern1", location, PHOTO)
    assert event_id in store.records


async def test_history_keeps_every_status(store, directory, clock):
    for record_id, status, day in [("a", "rejected", 1), ("b", "approved", 2), ("c", "pending", 3)]:
        record = make_record(record_id, status=status, created_at=datetime(2024, 3, day, 8))
        store.records[record_id] = {k: v for k, v in record.items() if k != "id"}
    store.records["other"] = {k: v for k, v in make_record("other", intern_id="intern2").items() if k != "id"}
    engine = AttendanceEngine(store, directory, clock=clock)
    assert [e.id for e in await engine.get_history("intern1")] == ["c", "b", "a"]


async def test_teacher_records_and_stats(engine, directory, location):
    directory.add_intern("intern2")
    directory.add_intern("intern3", teacher_id="teacher2")
    first = await engine.time_in("intern1", location, PHOTO)
    await engine.approve(first, "teacher1")
    await engine.time_in("intern2", location, PHOTO)
    await engine.time_in("intern3", location, PHOTO)

    records = await engine.get_teacher_records("teacher1")
    assert {r.intern_id for r in records} == {"intern1", "intern2"}
    pending = await engine.get_teacher_records("teacher1", status="pending")
    assert [r.intern_id for r in pending] == ["intern2"]

    stats = await engine.teacher_stats("teacher1")
    assert (stats.total_interns, stats.total_attendance, stats.pending_attendance) == (2, 2, 1)


async def test_malformed_record_is_ignored_by_queries(store, directory, clock):
    store.records["bad"] = {"intern_id": "intern1", "status": "approved"}
    engine = AttendanceEngine(store, directory, clock=clock)
    assert await engine.get_current_session("intern1") is None
    with pytest.raises(RecordNotFound):
        await engine.get_event("bad")


async def test_migrate_ids_through_engine(directory, clock, local_timezone):
    store = InMemoryAttendanceStore([make_record("abc123", status="rejected")])
    engine = AttendanceEngine(store, directory, clock=clock)
    assert await engine.migrate_ids() is True
    assert list(store.records) == ["intern1_2024-03-01"]
