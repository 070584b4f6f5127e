"""Intern time-in/out, teacher approvals, live streams and exports."""
import json
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, File, Form, HTTPException, Query, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.responses import Response, StreamingResponse
from pydantic import ValidationError as PydanticValidationError

from itrack.api.deps import CurrentUser, Engine, InternOnly, Photos, SupervisorOnly, TeacherOrSupervisor
from itrack.models.attendance import AttendanceEvent, AttendanceStatus, Coordinates, DecisionRequest, Location
from itrack.models.user import UserRole
from itrack.services import sessions
from itrack.services.attendance import AttendanceEngine
from itrack.services.errors import BackendUnavailable, RecordNotFound, ValidationError
from itrack.services.photos import PhotoPipeline
from itrack.services.reports import dtr_pdf_bytes, frame_to_csv, frame_to_excel, report_frame

router = APIRouter()


def _event_out(event: AttendanceEvent) -> dict:
    data = event.model_dump(mode="json")
    data["total_hours"] = round(event.total_hours, 2)
    return data


def _state_out(state: dict) -> dict:
    return {
        "current": _event_out(state["current"]) if state["current"] else None,
        "pending": _event_out(state["pending"]) if state["pending"] else None,
        "completed_today": state["completed_today"],
        "history": [_event_out(e) for e in state["history"]],
    }


async def _upload(photos: PhotoPipeline, photo: UploadFile) -> str:
    data = await photo.read()
    result = await photos.upload_photo(data, photo.filename, photo.content_type or "image/jpeg")
    return result.url


async def _ensure_can_view_intern(user, intern_id: str, engine: AttendanceEngine) -> None:
    """Interns see themselves, teachers their own interns, supervisors everyone."""
    if user.role == UserRole.SUPERVISOR:
        return
    if user.role == UserRole.INTERN:
        if intern_id != str(user.id):
            raise HTTPException(status_code=403, detail="You can only view your own attendance")
        return
    profile = await engine.directory.get_intern_profile(intern_id)
    if profile is None:
        raise RecordNotFound(f"Intern {intern_id} not found")
    if profile.teacher_id != str(user.id):
        raise HTTPException(status_code=403, detail="This intern is not assigned to you")


def _teacher_scope(user, teacher_id: Optional[str]) -> str:
    if user.role == UserRole.TEACHER:
        return str(user.id)
    if not teacher_id:
        raise ValidationError("teacher_id is required")
    return teacher_id


# Intern actions


@router.post("/time-in", status_code=201)
async def time_in(
    user: InternOnly,
    engine: Engine,
    photos: Photos,
    address: str = Form(...),
    latitude: float = Form(...),
    longitude: float = Form(...),
    photo: UploadFile = File(...),
):
    try:
        location = Location(address=address, coordinates=Coordinates(latitude=latitude, longitude=longitude))
    except PydanticValidationError:
        raise ValidationError("A valid address and coordinates are required for time-in")
    await engine.check_time_in(str(user.id))
    photo_url = await _upload(photos, photo)
    event_id = await engine.time_in(str(user.id), location, photo_url)
    return {"id": event_id, "status": AttendanceStatus.PENDING.value, "photo_url": photo_url}


@router.post("/{event_id}/time-out")
async def time_out(event_id: str, user: InternOnly, engine: Engine, photos: Photos, photo: UploadFile = File(...)):
    event = await engine.get_event(event_id)
    if event.intern_id != str(user.id):
        raise HTTPException(status_code=403, detail="This attendance record is not yours")
    await engine.check_time_out(event_id)
    photo_url = await _upload(photos, photo)
    await engine.time_out(event_id, photo_url)
    return {"id": event_id, "status": AttendanceStatus.PENDING.value, "time_out_photo_url": photo_url}


@router.get("/me")
async def my_attendance(user: InternOnly, engine: Engine):
    """Everything the intern dashboard renders."""
    state = await engine.get_session_state(str(user.id))
    out = _state_out(state)
    out["summary"] = sessions.summarize(state["history"]).model_dump()
    return out


# Teacher decisions


async def _decide(event_id: str, user, engine: AttendanceEngine, approve: bool, reason: Optional[str]) -> dict:
    event = await engine.get_event(event_id)
    if user.role == UserRole.TEACHER and event.teacher_id != str(user.id):
        raise HTTPException(status_code=403, detail="This attendance record belongs to another teacher")
    if approve:
        await engine.approve(event_id, str(user.id), reason)
    else:
        await engine.reject(event_id, str(user.id), reason)
    return _event_out(await engine.get_event(event_id))


@router.post("/{event_id}/approve")
async def approve(event_id: str, user: TeacherOrSupervisor, engine: Engine, data: Optional[DecisionRequest] = None):
    return await _decide(event_id, user, engine, True, data.reason if data else None)


@router.post("/{event_id}/reject")
async def reject(event_id: str, user: TeacherOrSupervisor, engine: Engine, data: Optional[DecisionRequest] = None):
    return await _decide(event_id, user, engine, False, data.reason if data else None)


# Queries


@router.get("/interns/{intern_id}/history")
async def intern_history(
    intern_id: str,
    user: CurrentUser,
    engine: Engine,
    date_range: str = Query("all", alias="range", enum=list(sessions.DATE_RANGES)),
    month: Optional[str] = None,
    status: Optional[str] = None,
):
    await _ensure_can_view_intern(user, intern_id, engine)
    history = await engine.get_history(intern_id)
    records = sessions.filter_by_range(history, date_range, engine.clock(), month=month, status=status)
    return {
        "records": [_event_out(e) for e in records],
        "summary": sessions.summarize(records).model_dump(),
    }


@router.get("/teacher/records")
async def teacher_records(
    user: TeacherOrSupervisor,
    engine: Engine,
    status: Optional[AttendanceStatus] = None,
    teacher_id: Optional[str] = None,
) -> List[dict]:
    scope = _teacher_scope(user, teacher_id)
    records = await engine.get_teacher_records(scope, status.value if status else None)
    return [_event_out(e) for e in records]


@router.get("/teacher/stats")
async def teacher_stats(user: TeacherOrSupervisor, engine: Engine, teacher_id: Optional[str] = None):
    return await engine.teacher_stats(_teacher_scope(user, teacher_id))


# Live streams (server-sent events, one event per snapshot)


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(jsonable_encoder(payload))}\n\n"


@router.get("/stream/intern/{intern_id}")
async def stream_intern(intern_id: str, user: CurrentUser, engine: Engine):
    await _ensure_can_view_intern(user, intern_id, engine)

    async def events():
        subscription = engine.subscribe_to_intern_attendance(intern_id)
        try:
            async for snapshot in subscription:
                yield _sse(_state_out(sessions.session_state(snapshot, engine.clock())))
        finally:
            subscription.cancel()

    return StreamingResponse(events(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})


@router.get("/stream/teacher/{teacher_id}")
async def stream_teacher(teacher_id: str, user: TeacherOrSupervisor, engine: Engine):
    if user.role == UserRole.TEACHER and teacher_id != str(user.id):
        raise HTTPException(status_code=403, detail="You can only follow your own interns")

    async def events():
        subscription = engine.subscribe_to_teacher_attendance(teacher_id)
        try:
            async for snapshot in subscription:
                yield _sse({
                    "records": [_event_out(e) for e in snapshot],
                    "pending_count": sum(1 for e in snapshot if sessions.is_pending(e)),
                })
        finally:
            subscription.cancel()

    return StreamingResponse(events(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})


# Exports


@router.get("/report")
async def download_attendance_report(
    user: TeacherOrSupervisor,
    engine: Engine,
    from_date: str,
    to_date: str,
    teacher_id: Optional[str] = None,
    format: str = Query("csv", enum=["csv", "excel"]),
):
    """Download the attendance of a teacher's interns for a date range."""
    try:
        d_from = date.fromisoformat(from_date)
        d_to = date.fromisoformat(to_date)
    except ValueError:
        raise ValidationError("Invalid date format (YYYY-MM-DD)")

    scope = _teacher_scope(user, teacher_id)
    records = [e for e in await engine.get_teacher_records(scope) if d_from <= e.clock_in.date() <= d_to]
    if not records:
        raise RecordNotFound("No records found for the given criteria")

    names = await engine.directory.display_names({e.intern_id for e in records})
    df = report_frame(records, names)
    filename = f"attendance_{scope}_{from_date}_{to_date}"
    if format == "csv":
        return StreamingResponse(
            iter([frame_to_csv(df)]),
            media_type="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}.csv"},
        )
    return Response(
        frame_to_excel(df),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f"attachment; filename={filename}.xlsx"},
    )


@router.get("/dtr")
async def download_dtr(
    user: CurrentUser,
    engine: Engine,
    intern_id: Optional[str] = None,
    month: Optional[str] = None,
):
    """Daily time record PDF of one intern for a month (default: the current one)."""
    intern_id = intern_id or str(user.id)
    await _ensure_can_view_intern(user, intern_id, engine)
    month = month or engine.clock().strftime("%Y-%m")
    history = await engine.get_history(intern_id)
    records = sessions.filter_by_range(history, "custom", engine.clock(), month=month)
    names = await engine.directory.display_names([intern_id])
    pdf = dtr_pdf_bytes(names.get(intern_id, intern_id), month, records)
    return Response(
        pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f"attachment; filename=dtr_{intern_id}_{month}.pdf"},
    )


# Maintenance


@router.post("/migrate")
async def migrate_ids(supervisor: SupervisorOnly, engine: Engine):
    if not await engine.migrate_ids():
        raise BackendUnavailable("Attendance migration failed, see server logs")
    return {"completed": True}
