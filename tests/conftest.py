import asyncio
import copy
import os
import time
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Iterable, Optional

# Settings refuse the default JWT secret outside debug mode.
os.environ.setdefault("DEBUG", "true")

import pytest

from itrack.models.attendance import Coordinates, Location
from itrack.models.user import InternProfile
from itrack.services.attendance import AttendanceEngine
from itrack.services.errors import BackendUnavailable, StateConflictError
from itrack.services.store import AttendanceStore, BatchOp, Record, new_record_id


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, hour: int, minute: int = 0) -> None:
        self.now = self.now.replace(hour=hour, minute=minute)

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class InMemoryAttendanceStore(AttendanceStore):
    """Dict backed store with the same conflict rules as the Mongo indexes."""

    def __init__(self, records: Optional[Iterable[Record]] = None):
        self.records: dict[str, Record] = {}
        self.fail_with: Optional[Exception] = None
        self._watchers: list[tuple[Record, asyncio.Queue]] = []
        for record in records or []:
            record = dict(record)
            self.records[record.pop("id")] = record

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def _check_single_pending(self, records: dict[str, Record]) -> None:
        pending = [r["intern_id"] for r in records.values() if r.get("status") == "pending"]
        if len(pending) != len(set(pending)):
            raise StateConflictError("A pending attendance record already exists for this intern")

    def _notify(self, *records: Optional[Record], deleted: bool = False) -> None:
        for filters, queue in self._watchers:
            if deleted or any(r and all(r.get(k) == v for k, v in filters.items()) for r in records):
                queue.put_nowait({"operationType": "delete" if deleted else "write"})

    async def insert(self, record: Record) -> str:
        self._check()
        record_id = record.get("id") or new_record_id()
        staged = dict(self.records)
        staged[record_id] = copy.deepcopy({k: v for k, v in record.items() if k != "id"})
        self._check_single_pending(staged)
        self.records = staged
        self._notify(staged[record_id])
        return record_id

    async def get(self, record_id: str) -> Optional[Record]:
        self._check()
        record = self.records.get(record_id)
        return {**copy.deepcopy(record), "id": record_id} if record is not None else None

    async def update(self, record_id: str, changes: Record, expected: Optional[Record] = None) -> bool:
        self._check()
        current = self.records.get(record_id)
        if current is None:
            return False
        if any(current.get(k) != v for k, v in (expected or {}).items()):
            return False
        staged = dict(self.records)
        staged[record_id] = {**current, **copy.deepcopy(changes)}
        self._check_single_pending(staged)
        self.records = staged
        self._notify(current, staged[record_id])
        return True

    async def delete(self, record_id: str) -> bool:
        self._check()
        if self.records.pop(record_id, None) is None:
            return False
        self._notify(deleted=True)
        return True

    async def query(self, filters=None, order_by=None, descending=True) -> list[Record]:
        self._check()
        rows = [
            {**copy.deepcopy(r), "id": rid}
            for rid, r in self.records.items()
            if all(r.get(k) == v for k, v in (filters or {}).items())
        ]
        if order_by:
            rows.sort(key=lambda r: r.get(order_by) or datetime.min, reverse=descending)
        return rows

    async def watch(self, filters: Record) -> AsyncIterator[Any]:
        entry = (dict(filters), asyncio.Queue())
        self._watchers.append(entry)
        try:
            while True:
                item = await entry[1].get()
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self._watchers.remove(entry)

    def break_streams(self, error: Exception) -> None:
        for _, queue in self._watchers:
            queue.put_nowait(error)

    async def atomic_batch(self, ops: list[BatchOp]) -> None:
        self._check()
        staged = dict(self.records)
        for op in ops:
            if op.kind == "delete":
                staged.pop(op.record_id, None)
            else:
                staged[op.record_id] = copy.deepcopy(op.record or {})
        self._check_single_pending(staged)
        self.records = staged
        self._notify(deleted=True)


class FakeDirectory:
    def __init__(self):
        self.profiles: dict[str, InternProfile] = {}
        self.names: dict[str, str] = {}
        self.tokens: dict[str, list[str]] = {}

    def add_intern(self, uid: str, teacher_id: Optional[str] = "teacher1", time_in="08:00", time_out="17:00", name=None):
        self.profiles[uid] = InternProfile(
            uid=uid, teacher_id=teacher_id, scheduled_time_in=time_in, scheduled_time_out=time_out
        )
        self.names[uid] = name or f"Intern {uid}"

    async def get_intern_profile(self, intern_id: str) -> Optional[InternProfile]:
        return self.profiles.get(intern_id)

    async def count_interns(self, teacher_id: str) -> int:
        return sum(1 for p in self.profiles.values() if p.teacher_id == teacher_id)

    async def device_tokens(self, user_ids: Iterable[str]) -> list[str]:
        return [t for u in user_ids for t in self.tokens.get(u, [])]

    async def display_names(self, user_ids: Iterable[str]) -> dict[str, str]:
        return {u: self.names[u] for u in user_ids if u in self.names}


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []

    async def submitted(self, event) -> None:
        self.sent.append(("submitted", event.id, event.status))

    async def decided(self, event) -> None:
        self.sent.append(("decided", event.id, event.status))


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 4, 7, 55))


@pytest.fixture
def store():
    return InMemoryAttendanceStore()


@pytest.fixture
def directory():
    d = FakeDirectory()
    d.add_intern("intern1")
    return d


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(store, directory, notifier, clock):
    return AttendanceEngine(store, directory, notifier, clock=clock)


@pytest.fixture
def location():
    return Location(address="12 Main St", coordinates=Coordinates(latitude=14.6, longitude=121.0))


PHOTO = "https://cdn.example.com/p1.jpg"


def make_record(record_id: str, intern_id: str = "intern1", **overrides) -> Record:
    created = overrides.pop("created_at", datetime(2024, 3, 1, 8, 0))
    record = {
        "id": record_id,
        "intern_id": intern_id,
        "teacher_id": "teacher1",
        "clock_in": created,
        "clock_out": None,
        "location": "12 Main St",
        "coordinates": {"latitude": 14.6, "longitude": 121.0},
        "photo_url": PHOTO,
        "status": "pending",
        "is_late": False,
        "is_early": False,
        "created_at": created,
        "updated_at": created,
    }
    record.update(overrides)
    return record


@pytest.fixture
def local_timezone(monkeypatch):
    """Pin the process timezone; call the returned function to switch it."""

    def use(name: str) -> None:
        monkeypatch.setenv("TZ", name)
        time.tzset()

    use("UTC")
    yield use
    monkeypatch.undo()
    time.tzset()


@pytest.fixture
def backend_down():
    return BackendUnavailable("connection refused")
