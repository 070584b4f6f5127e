"""Teacher and intern accounts, managed by supervisors and teachers."""
from datetime import datetime
from typing import List

from fastapi import APIRouter, HTTPException

from itrack.api.deps import SupervisorOnly, TeacherOrSupervisor, get_password_hash
from itrack.models.user import InternCreate, ScheduleUpdate, TeacherCreate, User, UserInDB, UserRole
from itrack.services.directory import safe_object_id

router = APIRouter()


def _user_out(user: User) -> UserInDB:
    return UserInDB(
        id=str(user.id),
        email=user.email,
        role=user.role,
        first_name=user.first_name,
        last_name=user.last_name,
        phone=user.phone,
        company=user.company,
        is_active=user.is_active,
        teacher_id=user.teacher_id,
        supervisor_id=user.supervisor_id,
        scheduled_time_in=user.scheduled_time_in,
        scheduled_time_out=user.scheduled_time_out,
    )


async def _ensure_email_free(email: str) -> None:
    if await User.find_one(User.email == email):
        raise HTTPException(status_code=400, detail="Email already registered")


async def _get_intern(intern_id: str) -> User:
    oid = safe_object_id(intern_id)
    intern = await User.get(oid) if oid else None
    if not intern or intern.role != UserRole.INTERN:
        raise HTTPException(status_code=404, detail="Intern not found")
    return intern


@router.get("/teachers", response_model=List[UserInDB])
async def list_teachers(supervisor: SupervisorOnly):
    teachers = await User.find({"role": UserRole.TEACHER.value, "is_active": True}).sort("last_name").to_list()
    return [_user_out(t) for t in teachers]


@router.post("/teachers", response_model=UserInDB, status_code=201)
async def create_teacher(data: TeacherCreate, supervisor: SupervisorOnly):
    """Create a teacher account under the calling supervisor."""
    email = data.email.lower()
    await _ensure_email_free(email)
    teacher = User(
        email=email,
        hashed_password=get_password_hash(data.password),
        role=UserRole.TEACHER,
        first_name=data.first_name,
        last_name=data.last_name,
        phone=data.phone,
        supervisor_id=str(supervisor.id),
    )
    await teacher.insert()
    return _user_out(teacher)


@router.post("/interns", response_model=UserInDB, status_code=201)
async def create_intern(data: InternCreate, user: TeacherOrSupervisor):
    """Create an intern. Teachers always create interns for themselves."""
    if user.role == UserRole.TEACHER:
        teacher_id = str(user.id)
    else:
        teacher_id = data.teacher_id
        oid = safe_object_id(teacher_id)
        teacher = await User.get(oid) if oid else None
        if not teacher or teacher.role != UserRole.TEACHER:
            raise HTTPException(status_code=400, detail="A valid teacher_id is required")

    email = data.email.lower()
    await _ensure_email_free(email)
    intern = User(
        email=email,
        hashed_password=get_password_hash(data.password),
        role=UserRole.INTERN,
        first_name=data.first_name,
        last_name=data.last_name,
        phone=data.phone,
        company=data.company,
        teacher_id=teacher_id,
        scheduled_time_in=data.scheduled_time_in,
        scheduled_time_out=data.scheduled_time_out,
    )
    await intern.insert()
    return _user_out(intern)


@router.get("/interns", response_model=List[UserInDB])
async def list_interns(user: TeacherOrSupervisor):
    """The calling teacher's interns, or every intern for a supervisor."""
    query = {"role": UserRole.INTERN.value, "is_active": True}
    if user.role == UserRole.TEACHER:
        query["teacher_id"] = str(user.id)
    interns = await User.find(query).sort("last_name").to_list()
    return [_user_out(i) for i in interns]


@router.patch("/interns/{intern_id}/schedule", response_model=UserInDB)
async def update_schedule(intern_id: str, data: ScheduleUpdate, user: TeacherOrSupervisor):
    intern = await _get_intern(intern_id)
    if user.role == UserRole.TEACHER and intern.teacher_id != str(user.id):
        raise HTTPException(status_code=403, detail="This intern is not assigned to you")

    update_data = data.model_dump(exclude_unset=True)
    for key, value in update_data.items():
        setattr(intern, key, value)
    intern.updated_at = datetime.utcnow()
    await intern.save()
    return _user_out(intern)
