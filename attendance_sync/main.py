from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker
import uvicorn
import logging
from contextlib import asynccontextmanager
from typing import Optional

from attendance_sync import __version__
from attendance_sync.core.config import Settings, settings, validate_attendance_sync_config
from attendance_sync.core.database import AsyncSessionLocal, init_db
from attendance_sync.api.v1 import attendance_sync
from attendance_sync.repositories import AttendanceRepository, JobRepository, StaffDirectory
from attendance_sync.services.employee_identity import EmployeeIdentityResolver, EmployeeValidationConfig
from attendance_sync.services.sync.job_orchestrator import AttendanceJobOrchestrator
from attendance_sync.tasks.sync_tasks import SyncTaskManager

logger = logging.getLogger(__name__)


def create_orchestrator(
    session_factory: async_sessionmaker,
    config: Optional[Settings] = None
) -> AttendanceJobOrchestrator:
    """Wire repositories, identity resolver and orchestrator for one process."""
    config = config or settings
    return AttendanceJobOrchestrator(
        job_repository=JobRepository(session_factory),
        attendance_repository=AttendanceRepository(session_factory),
        identity_resolver=EmployeeIdentityResolver(
            StaffDirectory(session_factory),
            EmployeeValidationConfig.from_settings(config)
        ),
        config=config
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Initialize database
    await init_db()

    validation = validate_attendance_sync_config(settings)
    for error in validation["errors"]:
        logger.warning(f"Attendance sync configuration: {error}")

    app.state.orchestrator = create_orchestrator(AsyncSessionLocal)
    task_manager = None
    if settings.ATTENDANCE_SYNC_ENABLED and validation["is_valid"]:
        task_manager = SyncTaskManager(app.state.orchestrator)
        await task_manager.start()

    yield

    if task_manager:
        await task_manager.stop()


app = FastAPI(
    title="Attendance Sync API",
    description="Biometric attendance synchronization and monitoring",
    version=__version__,
    lifespan=lifespan
)

app.include_router(attendance_sync.router, prefix="/api/v1/attendance-sync", tags=["attendance-sync"])


@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": __version__}


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "status_code": exc.status_code}
    )


if __name__ == "__main__":
    uvicorn.run(
        "attendance_sync.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info" if not settings.DEBUG else "debug"
    )
