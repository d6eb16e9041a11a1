from pydantic import BaseModel
from typing import Optional, List, Dict, Any
from datetime import datetime

from netbackup.error_handling import FailureKind
from netbackup.job_scheduler import JobOrigin, JobState, SchedulerState

# Job Schemas
class JobResponse(BaseModel):
	job_id: str
	device_id: str
	script_name: str
	origin: JobOrigin
	state: JobState
	task_name: Optional[str] = None
	created_at: datetime
	started_at: Optional[datetime] = None
	finished_at: Optional[datetime] = None
	duration: Optional[float] = None
	attempts: int = 0
	failure_kind: Optional[FailureKind] = None
	message: str = ""
	artifact_size: int = 0
	artifact_sha256: Optional[str] = None
	reported: bool = False
	report_success: Optional[bool] = None

	class Config:
		from_attributes = True

class SubmitResponse(BaseModel):
	accepted: bool
	device_id: str
	job_id: Optional[str] = None
	job: Optional[JobResponse] = None
	rejection: Optional[FailureKind] = None
	message: str = ""

	class Config:
		from_attributes = True

class TaskRunResponse(BaseModel):
	task_name: str
	accepted: bool
	submitted_count: int = 0
	rejected_count: int = 0
	results: List[SubmitResponse] = []
	skipped_devices: List[str] = []
	rejection: Optional[FailureKind] = None
	message: str = ""

	class Config:
		from_attributes = True

# Scheduler Schemas
class LifecycleResponse(BaseModel):
	success: bool
	state: SchedulerState
	message: str
	changed: bool = True

	class Config:
		from_attributes = True

class ScheduledTaskResponse(BaseModel):
	task_name: str
	cron_expression: str
	device_count: int
	next_run_time: Optional[datetime] = None

	class Config:
		from_attributes = True

class SchedulerStatusResponse(BaseModel):
	state: SchedulerState
	pool_size: int
	job_counts: Dict[str, int]
	running_devices: List[str]
	scheduled_tasks: List[ScheduledTaskResponse]
	failure_statistics: Dict[str, Any]
	version: str
	started_at: Optional[datetime] = None
	uptime_seconds: Optional[float] = None

	class Config:
		from_attributes = True

# Operator Command Schemas
class CommandRequest(BaseModel):
	command: str

class CommandResult(BaseModel):
	success: bool
	command: Optional[str] = None
	message: str
	data: Dict[str, Any] = {}
	error: Optional[FailureKind] = None
	output: str

# Generic Response Schemas
class MessageResponse(BaseModel):
	message: str
	success: bool = True
