"""Shared dependencies: JWT auth, role checks and the application context."""
from datetime import datetime, timedelta
from typing import Annotated, Optional

import bcrypt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from itrack.config import settings
from itrack.db import AppContext
from itrack.models.user import User, UserRole
from itrack.services.attendance import AttendanceEngine
from itrack.services.directory import safe_object_id
from itrack.services.errors import BackendUnavailable
from itrack.services.photos import PhotoPipeline

security = HTTPBearer(auto_error=False)


def verify_password(plain: str, hashed: str) -> bool:
    return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))


def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def create_access_token(subject: str, role: str) -> str:
    expire = datetime.utcnow() + timedelta(minutes=settings.jwt_access_token_expire_minutes)
    to_encode = {"sub": subject, "role": role, "exp": expire, "type": "access"}
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def create_refresh_token(subject: str) -> str:
    expire = datetime.utcnow() + timedelta(days=settings.jwt_refresh_token_expire_days)
    to_encode = {"sub": subject, "exp": expire, "type": "refresh"}
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, expected_type: str) -> str:
    """Return the subject of a valid token of ``expected_type``."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    if payload.get("type") != expected_type:
        raise HTTPException(status_code=401, detail="Invalid token type")
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


async def load_active_user(user_id: str) -> User:
    oid = safe_object_id(user_id)
    user = await User.get(oid) if oid else None
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return user


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> User:
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return await load_active_user(decode_token(credentials.credentials, "access"))


def require_roles(*allowed: UserRole):
    allowed_values = [role.value for role in allowed]

    async def checker(user: Annotated[User, Depends(get_current_user)]):
        if user.role not in allowed_values:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return checker


def get_context(request: Request) -> AppContext:
    context = getattr(request.app.state, "context", None)
    if context is None or context.engine is None:
        raise BackendUnavailable("Attendance service is not ready")
    return context


def get_engine(context: Annotated[AppContext, Depends(get_context)]) -> AttendanceEngine:
    return context.engine


def get_photos(context: Annotated[AppContext, Depends(get_context)]) -> PhotoPipeline:
    return context.photos


# Type aliases for route injection
CurrentUser = Annotated[User, Depends(get_current_user)]
SupervisorOnly = Annotated[User, Depends(require_roles(UserRole.SUPERVISOR))]
TeacherOrSupervisor = Annotated[User, Depends(require_roles(UserRole.TEACHER, UserRole.SUPERVISOR))]
InternOnly = Annotated[User, Depends(require_roles(UserRole.INTERN))]
Engine = Annotated[AttendanceEngine, Depends(get_engine)]
Photos = Annotated[PhotoPipeline, Depends(get_photos)]
