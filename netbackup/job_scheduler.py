"""
Job Scheduling Service
======================

This module runs backup jobs: one job executes one device script against one
device over a fresh transport. Jobs come from cron-scheduled tasks, operator
task runs and ad-hoc single device requests, and are executed by a fixed pool
of worker threads.

Features:
- Explicit scheduler lifecycle (stopped, running, stopping) with serialized
  start/stop/restart
- Cron-based task scheduling with APScheduler
- Bounded worker pool; queued jobs wait in the scheduler until a worker is free
- At most one unfinished job per device
- Retry of transient failures with configurable backoff
- Whole-job timeout enforced by a watchdog that closes the transport
- Exactly one report per job, then the job leaves live tracking
- Status snapshots with job counts, schedules and failure statistics
"""

import logging
import threading
import time
import uuid
import hashlib
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED

from netbackup import __version__
from netbackup.device_script import ScriptLibrary
from netbackup.error_handling import (
    ErrorTracker, FailureKind, RetryConfig, RetryManager, StructuredLogger, TransportError,
)
from netbackup.inventory import DeviceRecord, Inventory, TaskDefinition
from netbackup.result_reporter import JobOutcome, LoggingReporter, ReportResponse, ResultReporter
from netbackup.session_runner import SessionRunner
from netbackup.transport import Transport, open_transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[DeviceRecord], Transport]


class SchedulerState(Enum):
    """Scheduler lifecycle state."""
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


class JobState(Enum):
    """Job status enumeration."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobState.QUEUED, JobState.RUNNING)


class JobOrigin(Enum):
    SCHEDULE = "schedule"
    TASK = "task"
    ADHOC = "adhoc"


class StopMode(Enum):
    """How running jobs are treated by ``stop``."""
    ABORT = "abort"
    DRAIN = "drain"


@dataclass(frozen=True)
class JobSnapshot:
    """Read-only view of a job."""
    job_id: str
    device_id: str
    script_name: str
    origin: JobOrigin
    state: JobState
    created_at: datetime
    task_name: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    attempts: int = 0
    failure_kind: Optional[FailureKind] = None
    message: str = ""
    artifact_size: int = 0
    artifact_sha256: Optional[str] = None
    reported: bool = False
    report_success: Optional[bool] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class Job:
    """A scheduled execution of a device script against one device."""
    job_id: str
    device_id: str
    script_name: str
    origin: JobOrigin
    task_name: Optional[str] = None
    state: JobState = JobState.QUEUED
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    attempts: int = 0
    outcome: Optional[JobOutcome] = None
    report: Optional[ReportResponse] = None
    timed_out: bool = False
    transport: Optional[Transport] = field(default=None, repr=False)
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    done_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def snapshot(self) -> JobSnapshot:
        outcome = self.outcome
        artifact = outcome.artifact if outcome is not None and outcome.success else None
        return JobSnapshot(
            job_id=self.job_id,
            device_id=self.device_id,
            script_name=self.script_name,
            origin=self.origin,
            state=self.state,
            created_at=self.created_at,
            task_name=self.task_name,
            started_at=self.started_at,
            finished_at=self.finished_at,
            attempts=self.attempts,
            failure_kind=outcome.failure_kind if outcome is not None else None,
            message=outcome.message if outcome is not None else "",
            artifact_size=len(artifact) if artifact else 0,
            artifact_sha256=hashlib.sha256(artifact.encode("utf-8")).hexdigest() if artifact is not None else None,
            reported=self.report is not None,
            report_success=self.report.success if self.report is not None else None,
        )


@dataclass
class SubmitResult:
    """Answer to a job request: accepted (with the job) or rejected."""
    accepted: bool
    device_id: str
    job_id: Optional[str] = None
    job: Optional[JobSnapshot] = None
    rejection: Optional[FailureKind] = None
    message: str = ""

    @classmethod
    def rejected(cls, device_id: str, kind: FailureKind, message: str) -> "SubmitResult":
        return cls(accepted=False, device_id=device_id, rejection=kind, message=message)


@dataclass
class TaskRunResult:
    """Answer to a task run request."""
    task_name: str
    accepted: bool
    results: List[SubmitResult] = field(default_factory=list)
    skipped_devices: List[str] = field(default_factory=list)
    rejection: Optional[FailureKind] = None
    message: str = ""

    @property
    def submitted_count(self) -> int:
        return len([r for r in self.results if r.accepted])

    @property
    def rejected_count(self) -> int:
        return len([r for r in self.results if not r.accepted])


@dataclass
class LifecycleResult:
    """Answer to start, stop and restart."""
    success: bool
    state: SchedulerState
    message: str
    changed: bool = True


@dataclass
class ScheduledTaskInfo:
    """Information about a cron-scheduled task."""
    task_name: str
    cron_expression: str
    device_count: int
    next_run_time: Optional[datetime] = None


@dataclass
class SchedulerStatus:
    """Read-only scheduler status."""
    state: SchedulerState
    pool_size: int
    job_counts: Dict[str, int]
    running_devices: List[str]
    scheduled_tasks: List[ScheduledTaskInfo]
    failure_statistics: Dict[str, Any]
    version: str
    started_at: Optional[datetime] = None

    @property
    def uptime_seconds(self) -> Optional[float]:
        if self.started_at is None or self.state != SchedulerState.RUNNING:
            return None
        return (datetime.now(timezone.utc) - self.started_at).total_seconds()


class JobScheduler:
    """Per-device backup job scheduler with a bounded worker pool."""

    def __init__(self, inventory: Inventory, scripts: ScriptLibrary,
                 transport_factory: TransportFactory = open_transport,
                 reporter: Optional[ResultReporter] = None,
                 pool_size: int = 10,
                 job_timeout: Optional[float] = 600.0,
                 retry_config: Optional[RetryConfig] = None,
                 stop_mode: StopMode = StopMode.ABORT,
                 session_runner: Optional[SessionRunner] = None,
                 timezone_name: str = "UTC",
                 history_size: int = 500):
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")

        self.inventory = inventory
        self.scripts = scripts
        self.transport_factory = transport_factory
        self.reporter = reporter or LoggingReporter()
        self.pool_size = pool_size
        self.job_timeout = job_timeout
        self.retry_manager = RetryManager(retry_config or RetryConfig())
        self.stop_mode = stop_mode
        self.session_runner = session_runner or SessionRunner()
        self.timezone_name = timezone_name

        self.error_tracker = ErrorTracker()
        self.slog = StructuredLogger(__name__, self.error_tracker)

        # Guarded by _lock
        self._lock = threading.RLock()
        self._cond = threading.Condition(self._lock)
        self._state = SchedulerState.STOPPED
        self._jobs: Dict[str, Job] = {}
        self._device_jobs: Dict[str, str] = {}
        self._pending: Deque[str] = deque()
        self._running: Dict[str, Job] = {}
        # Pool threads holding a job, reporting included
        self._busy_workers = 0
        self._history: Deque[JobSnapshot] = deque(maxlen=history_size)
        self._terminal_counts: Dict[JobState, int] = {s: 0 for s in JobState if s.is_terminal}
        self._started_at: Optional[datetime] = None
        self._shut_down = False
        self._restarting = False

        # Serializes start, stop, restart and shutdown
        self._lifecycle_lock = threading.Lock()

        self._executor = ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="netbackup-worker")
        self._cron = BackgroundScheduler(
            job_defaults={
                'coalesce': True,  # Combine multiple pending executions
                'max_instances': 1,  # Only one instance of each task
                'misfire_grace_time': 300  # 5 minutes grace period
            },
            timezone=timezone_name,
        )
        self._cron.add_listener(self._cron_error_listener, EVENT_JOB_ERROR)
        self._cron.add_listener(self._cron_missed_listener, EVENT_JOB_MISSED)
        self._cron_configured = False

    @property
    def state(self) -> SchedulerState:
        with self._lock:
            return self._visible_state()

    def _visible_state(self) -> SchedulerState:
        # A restart is reported as one transition, never as stopping
        if self._restarting:
            return SchedulerState.RUNNING
        return self._state

    # Lifecycle

    def start(self) -> LifecycleResult:
        """Start admitting queued jobs and activate cron ticks."""
        with self._lifecycle_lock:
            return self._start()

    def stop(self) -> LifecycleResult:
        """Stop the scheduler; returns once no job is running."""
        with self._lifecycle_lock:
            return self._stop()

    def restart(self) -> LifecycleResult:
        """
        Stop then start as one transition.

        Callers keep seeing a running scheduler until the restart is done, and
        requests made meanwhile are queued for the restarted scheduler.
        """
        with self._lifecycle_lock:
            with self._lock:
                self._restarting = self._state == SchedulerState.RUNNING
            try:
                stopped = self._stop()
                if not stopped.success:
                    return stopped
                started = self._start()
                if not started.success:
                    return started
            finally:
                with self._lock:
                    self._restarting = False
            return LifecycleResult(True, self.state, "Scheduler restarted")

    def shutdown(self):
        """Stop and release the cron scheduler and the worker pool."""
        with self._lifecycle_lock:
            if self._shut_down:
                return
            self._stop()
            with self._lock:
                self._shut_down = True
            if self._cron.running:
                self._cron.shutdown(wait=False)
            self._executor.shutdown(wait=True)
            self.slog.info("Scheduler shut down")

    def _start(self) -> LifecycleResult:
        with self._lock:
            if self._shut_down:
                return LifecycleResult(False, self._state, "Scheduler has been shut down", changed=False)
            if self._state == SchedulerState.RUNNING:
                return LifecycleResult(True, self._state, "Scheduler is already running", changed=False)
            self._state = SchedulerState.RUNNING
            self._started_at = datetime.now(timezone.utc)

        self._activate_cron()

        with self._lock:
            queued = len(self._pending)
            self._dispatch()

        self.slog.info("Scheduler started", pool_size=self.pool_size, queued_jobs=queued)
        return LifecycleResult(True, SchedulerState.RUNNING, "Scheduler started")

    def _stop(self) -> LifecycleResult:
        with self._lock:
            # Ad-hoc jobs may still be running while stopped
            if self._state == SchedulerState.STOPPED and not self._jobs:
                return LifecycleResult(True, self._state, "Scheduler is already stopped", changed=False)

            self._state = SchedulerState.STOPPING
            # Jobs queued during a restart are kept for the next start
            outstanding = set(self._jobs)
            cancelled = [self._jobs[job_id] for job_id in self._pending]
            self._pending.clear()
            running = list(self._running.values())
            if self.stop_mode == StopMode.ABORT:
                for job in running:
                    job.cancel_event.set()

        self.slog.info("Scheduler stopping", stop_mode=self.stop_mode.value,
                       running_jobs=len(running), cancelled_jobs=len(cancelled))

        if self._cron.running:
            self._cron.pause()

        for job in cancelled:
            self._finish_job(job, JobOutcome.failed(
                FailureKind.CANCELLED, message="Cancelled before start: scheduler stopping"))

        with self._lock:
            self._cond.wait_for(lambda: outstanding.isdisjoint(self._jobs))
            self._state = SchedulerState.STOPPED
            if not self._restarting:
                self._started_at = None

        self.slog.info("Scheduler stopped")
        return LifecycleResult(True, SchedulerState.STOPPED, "Scheduler stopped")

    def _activate_cron(self):
        if not self._cron_configured:
            for task in self.inventory.scheduled_tasks():
                self._add_cron_task(task)
            self._cron_configured = True

        if self._cron.running:
            self._cron.resume()
        else:
            self._cron.start()

    def _add_cron_task(self, task: TaskDefinition):
        try:
            trigger = CronTrigger.from_crontab(task.schedule, timezone=self.timezone_name)
        except ValueError as e:
            logger.error(f"Invalid cron expression '{task.schedule}' for task {task.name}: {e}")
            return

        self._cron.add_job(
            func=self._run_scheduled_task,
            trigger=trigger,
            args=[task.name],
            id=f"task:{task.name}",
            name=f"Task: {task.name}",
            replace_existing=True,
        )
        logger.info(f"Scheduled task {task.name} with cron: {task.schedule}")

    def _cron_error_listener(self, event):
        logger.error(f"Cron job {event.job_id} failed with error: {event.exception}")

    def _cron_missed_listener(self, event):
        logger.warning(f"Cron job {event.job_id} missed execution at {event.scheduled_run_time}")

    def _run_scheduled_task(self, task_name: str):
        result = self._run_task(task_name, JobOrigin.SCHEDULE)
        logger.info(f"Scheduled run of task {task_name}: {result.submitted_count} jobs submitted, "
                    f"{result.rejected_count} rejected")

    # Admission

    def run_single_backup(self, device_id: str, wait: bool = True,
                          timeout: Optional[float] = None) -> SubmitResult:
        """
        Back up one device now, whatever the scheduler state (except stopping).

        Args:
            device_id: Inventory device id.
            wait: Block until the job is terminal and reported.
            timeout: Maximum seconds to wait.

        Returns:
            SubmitResult; when waiting, ``job`` holds the final snapshot.
        """
        result, job = self._submit(str(device_id), JobOrigin.ADHOC)
        if job is None or not wait:
            return result

        if not job.done_event.wait(timeout):
            logger.warning(f"Job {job.job_id} still running after waiting {timeout}s")
        result.job = job.snapshot()
        return result

    def run_task(self, task_name: str) -> TaskRunResult:
        """Enqueue one job per member device of a task."""
        return self._run_task(task_name, JobOrigin.TASK)

    def _run_task(self, task_name: str, origin: JobOrigin) -> TaskRunResult:
        task = self.inventory.get_task(task_name)
        if task is None:
            return TaskRunResult(task_name, False, rejection=FailureKind.UNKNOWN_TASK,
                                 message=f"Unknown task '{task_name}'")

        if self.state == SchedulerState.STOPPING:
            return TaskRunResult(task_name, False, rejection=FailureKind.SCHEDULER_NOT_RUNNING,
                                 message="Scheduler is stopping")

        result = TaskRunResult(task_name, True)
        for device_id in task.devices:
            device = self.inventory.get_device(device_id)
            if device is not None and not device.enabled:
                result.skipped_devices.append(device_id)
                continue
            submit, _ = self._submit(device_id, origin, task_name)
            result.results.append(submit)

        result.message = (f"{result.submitted_count} jobs submitted, {result.rejected_count} rejected, "
                          f"{len(result.skipped_devices)} devices disabled")
        self.slog.info(f"Task {task_name} run requested", origin=origin.value,
                       submitted=result.submitted_count, rejected=result.rejected_count)
        return result

    def _submit(self, device_id: str, origin: JobOrigin,
                task_name: Optional[str] = None) -> Tuple[SubmitResult, Optional[Job]]:
        device = self.inventory.get_device(device_id)
        if device is None:
            return SubmitResult.rejected(device_id, FailureKind.UNKNOWN_DEVICE,
                                         f"Unknown device '{device_id}'"), None
        if device.script not in self.scripts:
            return SubmitResult.rejected(device_id, FailureKind.UNKNOWN_SCRIPT,
                                         f"Device {device_id} uses unknown script '{device.script}'"), None

        with self._lock:
            stopping = self._state == SchedulerState.STOPPING and not self._restarting
            if stopping or self._shut_down:
                return SubmitResult.rejected(device_id, FailureKind.SCHEDULER_NOT_RUNNING,
                                             "Scheduler is stopping"), None

            existing = self._device_jobs.get(device_id)
            if existing is not None:
                return SubmitResult.rejected(device_id, FailureKind.DUPLICATE_DEVICE_JOB,
                                             f"Device {device_id} already has job {existing}"), None

            job = Job(
                job_id=str(uuid.uuid4()),
                device_id=device_id,
                script_name=device.script,
                origin=origin,
                task_name=task_name,
            )
            self._jobs[job.job_id] = job
            self._device_jobs[device_id] = job.job_id
            self._pending.append(job.job_id)
            snapshot = job.snapshot()
            self._dispatch()

        logger.debug(f"Job {job.job_id} queued for device {device_id} ({origin.value})")
        return SubmitResult(True, device_id, job_id=job.job_id, job=snapshot,
                            message=f"Job {job.job_id} queued"), job

    def _dispatchable(self, job: Job) -> bool:
        if self._state == SchedulerState.RUNNING:
            return True
        # Ad-hoc requests do not wait for start()
        return self._state == SchedulerState.STOPPED and job.origin == JobOrigin.ADHOC

    def _dispatch(self):
        """Hand queued jobs to free workers. Caller holds the lock."""
        if self._shut_down:
            return
        skipped: List[str] = []
        while self._pending and self._busy_workers < self.pool_size:
            job_id = self._pending.popleft()
            job = self._jobs[job_id]
            if not self._dispatchable(job):
                skipped.append(job_id)
                continue
            job.state = JobState.RUNNING
            job.started_at = datetime.now(timezone.utc)
            self._running[job_id] = job
            self._busy_workers += 1
            self._executor.submit(self._run_job, job)
        self._pending.extendleft(reversed(skipped))

    # Execution

    def _run_job(self, job: Job):
        try:
            with self.slog.context(job_id=job.job_id, device_id=job.device_id):
                try:
                    outcome = self._execute_job(job)
                except Exception as e:
                    if job.timed_out:
                        logger.warning(f"Job {job.job_id} raised after its timeout: {e}")
                        outcome = JobOutcome.failed(FailureKind.JOB_TIMEOUT, message="Job timed out",
                                                    script_name=job.script_name)
                    else:
                        logger.exception(f"Unexpected error in job {job.job_id}")
                        outcome = JobOutcome.failed(FailureKind.INTERNAL_ERROR,
                                                    message=f"Unexpected error: {str(e)}")
                self._finish_job(job, outcome)
        finally:
            with self._lock:
                self._busy_workers -= 1
                self._dispatch()

    def _execute_job(self, job: Job) -> JobOutcome:
        device = self.inventory.get_device(job.device_id)
        if device is None:
            return JobOutcome.failed(FailureKind.UNKNOWN_DEVICE, message="Device left the inventory")
        script = self.scripts.get(device.script)
        if script is None:
            return JobOutcome.failed(FailureKind.UNKNOWN_SCRIPT, message=f"Unknown script '{device.script}'")

        timeout = device.job_timeout or self.job_timeout
        deadline = time.monotonic() + timeout if timeout else None
        watchdog = None
        if timeout:
            watchdog = threading.Timer(timeout, self._on_job_timeout, args=(job,))
            watchdog.daemon = True
            watchdog.start()

        self.slog.info("Job started", script=script.name, origin=job.origin.value)

        try:
            while True:
                job.attempts += 1
                if job.cancel_event.is_set():
                    return self._interrupted_outcome(job, "")

                try:
                    transport = self.transport_factory(device)
                except TransportError as e:
                    kind, message, buffer = e.kind, str(e), ""
                else:
                    with self._lock:
                        job.transport = transport
                        timed_out = job.timed_out
                    if timed_out:
                        transport.close()

                    session = self.session_runner.execute(
                        script, transport, device.device_id, device.template_variables(),
                        cancel_event=job.cancel_event, deadline=deadline,
                    )
                    with self._lock:
                        job.transport = None

                    if session.success:
                        return JobOutcome.succeeded(session.artifact, script_name=script.name)

                    kind = session.failure.kind
                    message = session.failure.message
                    if session.failure.step_name:
                        message = f"step {session.failure.step_index} ({session.failure.step_name}): {message}"
                    buffer = session.failure.last_buffer

                if job.timed_out or kind == FailureKind.JOB_TIMEOUT:
                    return JobOutcome.failed(FailureKind.JOB_TIMEOUT, buffer,
                                             f"Job exceeded {timeout}s", script_name=script.name)
                if job.cancel_event.is_set() or kind == FailureKind.CANCELLED:
                    return self._interrupted_outcome(job, buffer)

                if not self.retry_manager.should_retry(kind, job.attempts):
                    return JobOutcome.failed(kind, buffer, message, script_name=script.name)

                delay = self.retry_manager.calculate_delay(job.attempts - 1)
                if deadline is not None:
                    delay = min(delay, max(deadline - time.monotonic(), 0.0))
                logger.info(f"Job {job.job_id}: attempt {job.attempts} failed with {kind.value}, "
                            f"retrying in {delay:.1f}s")
                # Cancellation and the watchdog interrupt the backoff wait
                if job.cancel_event.wait(delay):
                    return self._interrupted_outcome(job, buffer)
        finally:
            if watchdog is not None:
                watchdog.cancel()

    def _interrupted_outcome(self, job: Job, buffer: str) -> JobOutcome:
        if job.timed_out:
            return JobOutcome.failed(FailureKind.JOB_TIMEOUT, buffer, "Job timed out", script_name=job.script_name)
        return JobOutcome.failed(FailureKind.CANCELLED, buffer, "Job cancelled: scheduler stopping",
                                 script_name=job.script_name)

    def _on_job_timeout(self, job: Job):
        with self._lock:
            if job.state.is_terminal:
                return
            job.timed_out = True
            transport = job.transport

        logger.warning(f"Job {job.job_id} for device {job.device_id} exceeded its timeout, closing session")
        job.cancel_event.set()
        if transport is not None:
            transport.close()

    def _finish_job(self, job: Job, outcome: JobOutcome):
        if outcome.success:
            state = JobState.SUCCEEDED
        elif outcome.failure_kind == FailureKind.JOB_TIMEOUT:
            state = JobState.TIMED_OUT
        elif outcome.failure_kind == FailureKind.CANCELLED:
            state = JobState.CANCELLED
        else:
            state = JobState.FAILED

        with self._lock:
            if job.state.is_terminal:
                logger.error(f"Job {job.job_id} already finished as {job.state.value}")
                return
            job.state = state
            job.finished_at = datetime.now(timezone.utc)
            outcome.job_id = job.job_id
            outcome.script_name = outcome.script_name or job.script_name
            outcome.attempts = job.attempts
            outcome.started_at = job.started_at
            outcome.finished_at = job.finished_at
            job.outcome = outcome
            self._terminal_counts[state] += 1
            self._running.pop(job.job_id, None)

        if state in (JobState.FAILED, JobState.TIMED_OUT):
            self.slog.error(f"Job finished: {state.value}", kind=outcome.failure_kind,
                            device_id=job.device_id, job_id=job.job_id,
                            attempts=job.attempts, detail=outcome.message)
        else:
            self.slog.info(f"Job finished: {state.value}", attempts=job.attempts,
                           device_id=job.device_id, job_id=job.job_id)

        response = self._report(job, outcome)

        with self._lock:
            job.report = response
            self._history.append(job.snapshot())
            self._jobs.pop(job.job_id, None)
            if self._device_jobs.get(job.device_id) == job.job_id:
                del self._device_jobs[job.device_id]
            self._cond.notify_all()

        job.done_event.set()

    def _report(self, job: Job, outcome: JobOutcome) -> ReportResponse:
        try:
            response = self.reporter.report_result(job.device_id, outcome)
        except Exception as e:
            logger.error(f"Reporter failed for job {job.job_id}: {e}")
            return ReportResponse(success=False, message=str(e))
        if not response.success:
            logger.warning(f"Result of job {job.job_id} not accepted: {response.message}")
        return response

    # Queries

    def status(self) -> SchedulerStatus:
        with self._lock:
            counts = {s.value: n for s, n in self._terminal_counts.items()}
            counts[JobState.QUEUED.value] = len(self._pending)
            counts[JobState.RUNNING.value] = len(self._running)
            state = self._visible_state()
            running_devices = sorted(job.device_id for job in self._running.values())
            started_at = self._started_at

        return SchedulerStatus(
            state=state,
            pool_size=self.pool_size,
            job_counts=counts,
            running_devices=running_devices,
            scheduled_tasks=self._scheduled_task_info(),
            failure_statistics=self.error_tracker.get_error_statistics(timedelta(hours=24)),
            version=__version__,
            started_at=started_at,
        )

    def _scheduled_task_info(self) -> List[ScheduledTaskInfo]:
        tasks = []
        for task in self.inventory.scheduled_tasks():
            next_run = None
            if self._cron.running:
                cron_job = self._cron.get_job(f"task:{task.name}")
                if cron_job is not None:
                    next_run = cron_job.next_run_time
            tasks.append(ScheduledTaskInfo(task.name, task.schedule, len(task.devices), next_run))
        return tasks

    def get_job(self, job_id: str) -> Optional[JobSnapshot]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                return job.snapshot()
            for snapshot in reversed(self._history):
                if snapshot.job_id == job_id:
                    return snapshot
        return None

    def recent_jobs(self, limit: int = 20) -> List[JobSnapshot]:
        """Most recent terminal jobs, newest first."""
        with self._lock:
            history = list(self._history)
        return list(reversed(history))[:limit]

    def active_jobs(self) -> List[JobSnapshot]:
        with self._lock:
            return [job.snapshot() for job in self._jobs.values()]
