"""Document store for attendance records and live query subscriptions."""
from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Literal, Optional, Union

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from itrack.services.errors import BackendUnavailable, StateConflictError

logger = logging.getLogger(__name__)

Record = dict[str, Any]
SnapshotCallback = Callable[[list], Union[None, Awaitable[None]]]

_CLOSED = object()


def new_record_id() -> str:
    return uuid.uuid4().hex


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


@dataclass
class BatchOp:
    """One write of an atomic batch: ``set`` replaces/creates, ``delete`` removes."""
    kind: Literal["set", "delete"]
    record_id: str
    record: Optional[Record] = None


class Subscription:
    """Live query: publishes a full snapshot now and after every change.

    Snapshots go to the optional callback and into a one-slot channel read
    with ``async for``; a consumer that falls behind only sees the latest
    snapshot. Call ``cancel()`` on teardown, nothing reclaims it otherwise.
    """

    def __init__(
        self,
        load_snapshot: Callable[[], Awaitable[list]],
        changes: AsyncIterator[Any],
        on_change: Optional[SnapshotCallback] = None,
    ):
        self._load_snapshot = load_snapshot
        self._changes = changes
        self._on_change = on_change
        self._channel: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._error: Optional[BaseException] = None
        self._task = asyncio.create_task(self._run())

    @property
    def active(self) -> bool:
        return not self._task.done()

    async def _publish(self) -> None:
        snapshot = await self._load_snapshot()
        if self._on_change is not None:
            result = self._on_change(snapshot)
            if inspect.isawaitable(result):
                await result
        self._push(snapshot)

    def _push(self, item: Any) -> None:
        if self._channel.full():
            self._channel.get_nowait()
        self._channel.put_nowait(item)

    async def _run(self) -> None:
        try:
            await self._publish()
            async for _ in self._changes:
                await self._publish()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Live attendance subscription failed")
            self._error = e
        finally:
            close = getattr(self._changes, "aclose", None)
            if close is not None:
                try:
                    await close()
                except Exception:
                    logger.debug("Change stream did not close cleanly", exc_info=True)
            self._push(_CLOSED)

    def cancel(self) -> None:
        self._task.cancel()

    async def wait_closed(self) -> None:
        """Wait for the subscription to finish; cancelling the waiter leaves it running."""
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> list:
        item = await self._channel.get()
        if item is _CLOSED:
            self._push(_CLOSED)
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration
        return item


class AttendanceStore(ABC):
    """Document store contract the attendance engine is written against.

    Records are plain dicts with the document id under ``"id"``. Every
    backend failure surfaces as ``BackendUnavailable``.
    """

    @abstractmethod
    async def insert(self, record: Record) -> str: ...

    @abstractmethod
    async def get(self, record_id: str) -> Optional[Record]: ...

    @abstractmethod
    async def update(self, record_id: str, changes: Record, expected: Optional[Record] = None) -> bool:
        """Apply ``changes`` only if every ``expected`` field still matches."""

    @abstractmethod
    async def delete(self, record_id: str) -> bool: ...

    @abstractmethod
    async def query(
        self,
        filters: Optional[Record] = None,
        order_by: Optional[str] = None,
        descending: bool = True,
    ) -> list[Record]: ...

    @abstractmethod
    def watch(self, filters: Record) -> AsyncIterator[Any]:
        """Async iterator yielding one item per change that may affect ``filters``."""

    @abstractmethod
    async def atomic_batch(self, ops: list[BatchOp]) -> None: ...

    def subscribe(self, filters: Record, on_change: Optional[SnapshotCallback] = None) -> Subscription:
        async def load() -> list[Record]:
            return await self.query(filters, order_by="created_at")

        return Subscription(load, self.watch(filters), on_change)


class MongoAttendanceStore(AttendanceStore):
    """MongoDB store; ids are stored as string ``_id`` values."""

    def __init__(self, client: AsyncIOMotorClient, collection: AsyncIOMotorCollection):
        self._client = client
        self._collection = collection

    @staticmethod
    def _to_record(doc: Optional[dict]) -> Optional[Record]:
        if doc is None:
            return None
        record = dict(doc)
        record["id"] = str(record.pop("_id"))
        return record

    @staticmethod
    def _to_doc(record_id: str, record: Record) -> dict:
        doc = {k: _plain(v) for k, v in record.items() if k != "id"}
        doc["_id"] = record_id
        return doc

    @staticmethod
    def _mongo_filters(filters: Optional[Record]) -> dict:
        return {k: _plain(v) for k, v in (filters or {}).items()}

    async def ensure_indexes(self) -> None:
        try:
            await self._collection.create_index([("intern_id", ASCENDING), ("created_at", DESCENDING)])
            await self._collection.create_index([("teacher_id", ASCENDING), ("created_at", DESCENDING)])
            # At most one pending event per intern.
            await self._collection.create_index(
                [("intern_id", ASCENDING)],
                name="one_pending_per_intern",
                unique=True,
                partialFilterExpression={"status": "pending"},
            )
        except PyMongoError as e:
            raise BackendUnavailable(f"Could not create attendance indexes: {e}") from e

    async def insert(self, record: Record) -> str:
        record_id = record.get("id") or new_record_id()
        try:
            await self._collection.insert_one(self._to_doc(record_id, record))
        except DuplicateKeyError as e:
            raise StateConflictError("A pending attendance record already exists for this intern") from e
        except PyMongoError as e:
            raise BackendUnavailable(f"Attendance insert failed: {e}") from e
        return record_id

    async def get(self, record_id: str) -> Optional[Record]:
        try:
            doc = await self._collection.find_one({"_id": record_id})
        except PyMongoError as e:
            raise BackendUnavailable(f"Attendance read failed: {e}") from e
        return self._to_record(doc)

    async def update(self, record_id: str, changes: Record, expected: Optional[Record] = None) -> bool:
        selector = {"_id": record_id, **self._mongo_filters(expected)}
        try:
            doc = await self._collection.find_one_and_update(
                selector,
                {"$set": {k: _plain(v) for k, v in changes.items() if k != "id"}},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError as e:
            raise StateConflictError("A pending attendance record already exists for this intern") from e
        except PyMongoError as e:
            raise BackendUnavailable(f"Attendance update failed: {e}") from e
        return doc is not None

    async def delete(self, record_id: str) -> bool:
        try:
            result = await self._collection.delete_one({"_id": record_id})
        except PyMongoError as e:
            raise BackendUnavailable(f"Attendance delete failed: {e}") from e
        return result.deleted_count == 1

    async def query(
        self,
        filters: Optional[Record] = None,
        order_by: Optional[str] = None,
        descending: bool = True,
    ) -> list[Record]:
        cursor = self._collection.find(self._mongo_filters(filters))
        if order_by:
            cursor = cursor.sort(order_by, DESCENDING if descending else ASCENDING)
        try:
            docs = await cursor.to_list(length=None)
        except PyMongoError as e:
            raise BackendUnavailable(f"Attendance query failed: {e}") from e
        return [self._to_record(d) for d in docs]

    async def watch(self, filters: Record) -> AsyncIterator[Any]:
        # Deletes carry no document, so they always trigger a refresh.
        match = {f"fullDocument.{k}": v for k, v in self._mongo_filters(filters).items()}
        pipeline = [{"$match": {"$or": [{"operationType": "delete"}, match]}}]
        try:
            async with self._collection.watch(pipeline, full_document="updateLookup") as stream:
                async for change in stream:
                    yield change
        except PyMongoError as e:
            raise BackendUnavailable(f"Attendance change stream failed: {e}") from e

    async def atomic_batch(self, ops: list[BatchOp]) -> None:
        if not ops:
            return
        try:
            async with await self._client.start_session() as session:
                async with session.start_transaction():
                    for op in ops:
                        if op.kind == "delete":
                            await self._collection.delete_one({"_id": op.record_id}, session=session)
                        else:
                            await self._collection.replace_one(
                                {"_id": op.record_id},
                                self._to_doc(op.record_id, op.record or {}),
                                upsert=True,
                                session=session,
                            )
        except PyMongoError as e:
            raise BackendUnavailable(f"Attendance batch write failed: {e}") from e
