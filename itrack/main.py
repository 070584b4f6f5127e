"""iTrack attendance - FastAPI entrypoint."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import ServerSelectionTimeoutError

from itrack.api import attendance, auth, users
from itrack.config import settings
from itrack.db import AppContext
from itrack.seed import seed_supervisor
from itrack.services.errors import AttendanceError

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "state_conflict": status.HTTP_409_CONFLICT,
    "migration_conflict": status.HTTP_409_CONFLICT,
    "upload_failure": status.HTTP_502_BAD_GATEWAY,
    "backend_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    """Build the API. Pass a ready ``context`` to skip the database startup (tests)."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if context is not None:
            app.state.context = context
            yield
            return
        ctx = AppContext(settings)
        try:
            await ctx.startup()
            await seed_supervisor(settings)
        except ServerSelectionTimeoutError as e:
            logger.error("MongoDB is not running. Start a replica set member, e.g. mongod --replSet rs0")
            raise RuntimeError("MongoDB connection failed. Start MongoDB as a replica set.") from e
        app.state.context = ctx
        yield
        await ctx.shutdown()

    app = FastAPI(
        title=settings.app_name,
        description="Intern attendance: time-in/out with photo and location, teacher approvals",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(AttendanceError)
    async def attendance_exception_handler(request: Request, exc: AttendanceError):
        code = ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=code, content={"detail": exc.message, "kind": exc.kind})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": exc.errors(), "kind": "validation"},
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # API routes
    app.include_router(auth.router, prefix="/api/auth", tags=["Auth"])
    app.include_router(users.router, prefix="/api/users", tags=["Users"])
    app.include_router(attendance.router, prefix="/api/attendance", tags=["Attendance"])

    @app.get("/health")
    def health():
        return {"status": "ok", "app": settings.app_name}

    return app


app = create_app()
