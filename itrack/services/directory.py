"""User directory lookups the attendance engine depends on."""
from __future__ import annotations

import logging
from typing import Iterable, Optional, Protocol

from beanie import PydanticObjectId
from bson.errors import InvalidId
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import PyMongoError

from itrack.models.user import InternProfile, User, UserRole
from itrack.services.errors import BackendUnavailable

logger = logging.getLogger(__name__)


def safe_object_id(value: str | None) -> PydanticObjectId | None:
    if not value:
        return None
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError, ValueError):
        return None


class UserDirectory(Protocol):
    async def get_intern_profile(self, intern_id: str) -> Optional[InternProfile]: ...

    async def count_interns(self, teacher_id: str) -> int: ...

    async def device_tokens(self, user_ids: Iterable[str]) -> list[str]: ...

    async def display_names(self, user_ids: Iterable[str]) -> dict[str, str]: ...


class MongoUserDirectory:
    """Directory backed by the Beanie ``User`` collection."""

    async def get_intern_profile(self, intern_id: str) -> Optional[InternProfile]:
        oid = safe_object_id(intern_id)
        if not oid:
            return None
        try:
            user = await User.get(oid)
        except PyMongoError as e:
            raise BackendUnavailable(f"User directory unavailable: {e}") from e
        if not user or user.role != UserRole.INTERN or not user.is_active:
            return None
        try:
            return InternProfile(
                uid=str(user.id),
                teacher_id=user.teacher_id,
                scheduled_time_in=user.scheduled_time_in or None,
                scheduled_time_out=user.scheduled_time_out or None,
            )
        except PydanticValidationError:
            logger.warning(f"Intern {intern_id} has a malformed schedule; ignoring it")
            return InternProfile(uid=str(user.id), teacher_id=user.teacher_id)

    async def count_interns(self, teacher_id: str) -> int:
        try:
            return await User.find(
                {"role": UserRole.INTERN.value, "teacher_id": teacher_id, "is_active": True}
            ).count()
        except PyMongoError as e:
            raise BackendUnavailable(f"User directory unavailable: {e}") from e

    async def device_tokens(self, user_ids: Iterable[str]) -> list[str]:
        object_ids = [oid for oid in (safe_object_id(u) for u in user_ids) if oid]
        if not object_ids:
            return []
        try:
            users = await User.find({"_id": {"$in": object_ids}, "is_active": True}).to_list()
        except PyMongoError as e:
            raise BackendUnavailable(f"User directory unavailable: {e}") from e
        tokens: list[str] = []
        for user in users:
            tokens.extend(user.fcm_tokens)
        return tokens

    async def display_names(self, user_ids: Iterable[str]) -> dict[str, str]:
        object_ids = [oid for oid in (safe_object_id(u) for u in user_ids) if oid]
        if not object_ids:
            return {}
        try:
            users = await User.find({"_id": {"$in": object_ids}}).to_list()
        except PyMongoError as e:
            raise BackendUnavailable(f"User directory unavailable: {e}") from e
        return {str(u.id): f"{u.first_name} {u.last_name}".strip() for u in users}
