"""JWT-based stateless authentication."""
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from itrack.api.deps import (
    CurrentUser,
    create_access_token,
    create_refresh_token,
    decode_token,
    load_active_user,
    verify_password,
)
from itrack.models.user import User

router = APIRouter()

MAX_FCM_TOKENS = 5


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class LoginRequest(BaseModel):
    email: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class FCMTokenRequest(BaseModel):
    token: str


def _tokens_for(user: User) -> TokenResponse:
    role = getattr(user.role, "value", user.role)
    return TokenResponse(
        access_token=create_access_token(str(user.id), role),
        refresh_token=create_refresh_token(str(user.id)),
    )


@router.post("/login", response_model=TokenResponse)
async def login(req: LoginRequest):
    user = await User.find_one(User.email == req.email.strip().lower())
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not verify_password(req.password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _tokens_for(user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(req: RefreshRequest):
    user = await load_active_user(decode_token(req.refresh_token, "refresh"))
    return _tokens_for(user)


@router.get("/me")
async def me(user: CurrentUser):
    return {
        "id": str(user.id),
        "email": user.email,
        "role": getattr(user.role, "value", user.role),
        "first_name": user.first_name,
        "last_name": user.last_name,
        "company": user.company,
        "teacher_id": user.teacher_id,
        "supervisor_id": user.supervisor_id,
        "scheduled_time_in": user.scheduled_time_in,
        "scheduled_time_out": user.scheduled_time_out,
    }


@router.post("/fcm-token")
async def register_fcm_token(req: FCMTokenRequest, user: CurrentUser):
    if req.token not in user.fcm_tokens:
        user.fcm_tokens.append(req.token)
        # Keep only the newest devices
        if len(user.fcm_tokens) > MAX_FCM_TOKENS:
            user.fcm_tokens = user.fcm_tokens[-MAX_FCM_TOKENS:]
        await user.save()
    return {"status": "ok"}
