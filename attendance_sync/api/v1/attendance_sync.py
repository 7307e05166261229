"""
API endpoints for attendance sync monitoring and manual triggers
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from datetime import date
from typing import List, Optional
import logging

from pydantic import BaseModel, Field

from attendance_sync.core.config import settings
from attendance_sync.models.sync_job import JobStatus, JobType
from attendance_sync.repositories.job_repository import JobStateError
from attendance_sync.schemas.attendance_sync import (
    DateRange,
    JobExecutionMetrics,
    JobHealthStatus,
    JobListRequest,
    JobListResponse,
    SyncJob,
)
from attendance_sync.schemas.zkteco import ConnectionTestResult, DeviceInfo, MachineConfig
from attendance_sync.services.sync.job_orchestrator import (
    AttendanceJobOrchestrator,
    JobAlreadyRunningError,
    JobNotFoundError,
    OrchestrationError,
    build_default_config,
)

logger = logging.getLogger(__name__)
router = APIRouter()


class ManualSyncRequest(BaseModel):
    """Body of a manual sync trigger"""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    machine_ids: Optional[List[str]] = None
    triggered_by: str = Field(default="api", min_length=1, max_length=100)


def get_orchestrator(request: Request) -> AttendanceJobOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Attendance sync is not initialised"
        )
    return orchestrator


async def _execute_in_background(orchestrator: AttendanceJobOrchestrator, job_id: str) -> None:
    try:
        await orchestrator.execute_job(job_id)
    except (OrchestrationError, JobAlreadyRunningError, JobNotFoundError, JobStateError) as e:
        logger.error(f"Background execution of job {job_id} failed: {e}")


@router.get("/metrics", response_model=JobExecutionMetrics)
async def get_metrics(orchestrator: AttendanceJobOrchestrator = Depends(get_orchestrator)):
    """Rolling job counts and timings"""
    return await orchestrator.get_job_metrics()


@router.get("/health", response_model=JobHealthStatus)
async def get_health(orchestrator: AttendanceJobOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.get_health_status()


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    job_status: Optional[JobStatus] = Query(None, alias="status"),
    job_type: Optional[JobType] = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    orchestrator: AttendanceJobOrchestrator = Depends(get_orchestrator)
):
    return await orchestrator.list_jobs(
        JobListRequest(status=job_status, type=job_type, limit=limit, offset=offset)
    )


@router.get("/jobs/{job_id}", response_model=SyncJob)
async def get_job(job_id: str, orchestrator: AttendanceJobOrchestrator = Depends(get_orchestrator)):
    job = await orchestrator.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return job


@router.post("/jobs", response_model=SyncJob, status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    sync_request: ManualSyncRequest,
    background_tasks: BackgroundTasks,
    orchestrator: AttendanceJobOrchestrator = Depends(get_orchestrator)
):
    """Create a manual sync job and run it in the background"""
    date_range = None
    if sync_request.start_date or sync_request.end_date:
        try:
            date_range = DateRange(
                start=sync_request.start_date or sync_request.end_date,
                end=sync_request.end_date or sync_request.start_date
            )
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    config = build_default_config(settings, date_range)
    if sync_request.machine_ids:
        config.machines = [m for m in config.machines if m.id in sync_request.machine_ids]
        if not config.machines:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="None of the requested machines are configured"
            )

    job = await orchestrator.create_sync_job(
        JobType.MANUAL_TRIGGER, config, triggered_by=sync_request.triggered_by
    )
    background_tasks.add_task(_execute_in_background, orchestrator, job.id)
    logger.info(f"Manual sync job {job.id} triggered by {sync_request.triggered_by}")
    return job


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str, orchestrator: AttendanceJobOrchestrator = Depends(get_orchestrator)):
    cancelled = await orchestrator.cancel_job(job_id)
    if not cancelled:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Job {job_id} is not running")
    return {"job_id": job_id, "cancelled": True}


@router.post("/jobs/{job_id}/execute", response_model=SyncJob)
async def execute_job(job_id: str, orchestrator: AttendanceJobOrchestrator = Depends(get_orchestrator)):
    """Run a pending job synchronously and return its final state"""
    try:
        await orchestrator.execute_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (JobAlreadyRunningError, JobStateError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except OrchestrationError as e:
        logger.error(f"Job {job_id} failed: {e}")

    return await orchestrator.get_job(job_id)


@router.post("/devices/test", response_model=ConnectionTestResult)
async def test_device(machine: MachineConfig, orchestrator: AttendanceJobOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.test_connection(machine)


@router.post("/devices/info", response_model=DeviceInfo)
async def device_info(machine: MachineConfig, orchestrator: AttendanceJobOrchestrator = Depends(get_orchestrator)):
    info = await orchestrator.get_device_info(machine)
    if info is None:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Could not read device info from {machine.id}"
        )
    return info
