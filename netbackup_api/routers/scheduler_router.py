"""
Scheduler Router
================

Handles scheduler lifecycle, ad-hoc device backups, task runs, job lookups and
operator command lines. Every endpoint works on the scheduler instance the
application created at startup.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, status

from netbackup.error_handling import FailureKind
from netbackup.job_scheduler import JobScheduler
from netbackup.operator_commands import CommandDispatcher

from netbackup_api.schemas import (
    CommandRequest, CommandResult, JobResponse, LifecycleResponse, SchedulerStatusResponse,
    SubmitResponse, TaskRunResponse,
)

router = APIRouter()
logger = logging.getLogger(__name__)

REJECTION_STATUS_CODES = {
    FailureKind.UNKNOWN_DEVICE: status.HTTP_404_NOT_FOUND,
    FailureKind.UNKNOWN_TASK: status.HTTP_404_NOT_FOUND,
    FailureKind.UNKNOWN_SCRIPT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    FailureKind.DUPLICATE_DEVICE_JOB: status.HTTP_409_CONFLICT,
    FailureKind.SCHEDULER_NOT_RUNNING: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_job_scheduler(request: Request) -> JobScheduler:
    """Get the scheduler created by the application lifespan."""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        logger.warning("Job scheduler not initialized")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job scheduler not available"
        )
    return scheduler


def get_command_dispatcher(scheduler: JobScheduler = Depends(get_job_scheduler)) -> CommandDispatcher:
    return CommandDispatcher(scheduler)


def raise_for_rejection(kind: FailureKind, message: str):
    raise HTTPException(
        status_code=REJECTION_STATUS_CODES.get(kind, status.HTTP_400_BAD_REQUEST),
        detail=f"{kind.value}: {message}"
    )


@router.get("/status", response_model=SchedulerStatusResponse)
async def get_scheduler_status(scheduler: JobScheduler = Depends(get_job_scheduler)):
    """Get scheduler state, job counts and scheduled tasks."""
    return SchedulerStatusResponse.model_validate(scheduler.status())


# Blocking scheduler calls are plain (threadpool) endpoints
@router.post("/start", response_model=LifecycleResponse)
def start_scheduler(scheduler: JobScheduler = Depends(get_job_scheduler)):
    """Start the scheduler."""
    return LifecycleResponse.model_validate(scheduler.start())


@router.post("/stop", response_model=LifecycleResponse)
def stop_scheduler(scheduler: JobScheduler = Depends(get_job_scheduler)):
    """Stop the scheduler; returns once no job is running."""
    return LifecycleResponse.model_validate(scheduler.stop())


@router.post("/restart", response_model=LifecycleResponse)
def restart_scheduler(scheduler: JobScheduler = Depends(get_job_scheduler)):
    """Restart the scheduler."""
    return LifecycleResponse.model_validate(scheduler.restart())


@router.post("/backup/{device_id}", response_model=SubmitResponse, status_code=status.HTTP_202_ACCEPTED)
def run_device_backup(
    device_id: str,
    wait: bool = False,
    timeout: float = 300.0,
    scheduler: JobScheduler = Depends(get_job_scheduler)
):
    """Back up a single device now."""
    result = scheduler.run_single_backup(device_id, wait=wait, timeout=timeout)
    if not result.accepted:
        raise_for_rejection(result.rejection, result.message)

    logger.info(f"Ad-hoc backup of device {device_id} accepted: job {result.job_id}")
    return SubmitResponse.model_validate(result)


@router.post("/tasks/{task_name}/run", response_model=TaskRunResponse, status_code=status.HTTP_202_ACCEPTED)
def run_task(task_name: str, scheduler: JobScheduler = Depends(get_job_scheduler)):
    """Enqueue one backup job per member device of a task."""
    result = scheduler.run_task(task_name)
    if not result.accepted:
        raise_for_rejection(result.rejection, result.message)
    return TaskRunResponse.model_validate(result)


@router.get("/jobs", response_model=List[JobResponse])
async def get_recent_jobs(limit: int = 20, scheduler: JobScheduler = Depends(get_job_scheduler)):
    """Get active jobs followed by the most recent finished jobs."""
    jobs = scheduler.active_jobs() + scheduler.recent_jobs(limit)
    return [JobResponse.model_validate(job) for job in jobs[:limit]]


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, scheduler: JobScheduler = Depends(get_job_scheduler)):
    """Get a job by id."""
    job = scheduler.get_job(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found"
        )
    return JobResponse.model_validate(job)


@router.post("/command", response_model=CommandResult)
def run_operator_command(
    request: CommandRequest,
    dispatcher: CommandDispatcher = Depends(get_command_dispatcher)
):
    """Execute an operator command line, as typed in the console."""
    response = dispatcher.execute(request.command)
    return CommandResult(
        success=response.success,
        command=response.command,
        message=response.message,
        data=response.data,
        error=response.error_kind,
        output=response.render(),
    )
