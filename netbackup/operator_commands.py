"""
Operator Commands
=================

This module maps operator command lines to scheduler operations. The command
set is a closed table validated once at the boundary; every call answers with
a CommandResponse rendered as text or JSON and never raises to the caller.

Commands:
    start              - Start scheduler
    restart            - Restart scheduler
    stop               - Stop scheduler
    backup <DEVICE ID> - Single device backup
    runtask <TASK>     - Run task by name
    status             - Get scheduler status
    version            - Get worker version
    help               - Show available commands

Add -json anywhere on the line to get JSON output. A leading program name
(``netbackup backup sw01``) is ignored.
"""

import json
import logging
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, TextIO

from netbackup import __version__
from netbackup.error_handling import FailureKind
from netbackup.job_scheduler import (
    JobScheduler, JobSnapshot, LifecycleResult, SchedulerStatus, SubmitResult, TaskRunResult,
)

logger = logging.getLogger(__name__)

PROGRAM_NAME = "netbackup"
JSON_FLAG = "-json"
PROMPT = "netbackup> "
WELCOME = "netbackup worker shell - Type 'help' for available commands"


class OperatorCommand(Enum):
    START = "start"
    RESTART = "restart"
    STOP = "stop"
    BACKUP = "backup"
    RUNTASK = "runtask"
    STATUS = "status"
    VERSION = "version"
    HELP = "help"


@dataclass(frozen=True)
class CommandSpec:
    usage: str
    summary: str
    argument: Optional[str] = None


COMMAND_TABLE: Dict[OperatorCommand, CommandSpec] = {
    OperatorCommand.START: CommandSpec("start", "Start scheduler"),
    OperatorCommand.RESTART: CommandSpec("restart", "Restart scheduler"),
    OperatorCommand.STOP: CommandSpec("stop", "Stop scheduler"),
    OperatorCommand.BACKUP: CommandSpec("backup <DEVICE ID>", "Single device backup", "device_id"),
    OperatorCommand.RUNTASK: CommandSpec("runtask <TASK>", "Run task by name", "task_name"),
    OperatorCommand.STATUS: CommandSpec("status", "Get scheduler status"),
    OperatorCommand.VERSION: CommandSpec("version", "Get worker version"),
    OperatorCommand.HELP: CommandSpec("help", "Show this help"),
}


class CommandParseError(ValueError):
    """Raised for unknown commands and bad arguments."""

    def __init__(self, message: str, command: Optional[str] = None, json_output: bool = False):
        super().__init__(message)
        self.command = command
        self.json_output = json_output


@dataclass
class ParsedCommand:
    command: OperatorCommand
    argument: Optional[str] = None
    json_output: bool = False


@dataclass
class CommandResponse:
    """Answer to one operator command."""
    success: bool
    message: str
    command: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[FailureKind] = None
    json_output: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": self.success,
            "command": self.command,
            "message": self.message,
            "data": self.data,
        }
        if self.error_kind is not None:
            result["error"] = self.error_kind.value
        return result

    def render(self) -> str:
        if self.json_output:
            return json.dumps(self.to_dict(), default=str)
        if self.success:
            return self.message
        return f"Error: {self.message}"


def help_text() -> str:
    width = max(len(spec.usage) for spec in COMMAND_TABLE.values()) + 2
    lines = ["Available commands:"]
    for spec in COMMAND_TABLE.values():
        lines.append(f"  {spec.usage.ljust(width)} - {spec.summary}")
    lines.append("")
    lines.append(f"Add {JSON_FLAG} to any command to get JSON output")
    return "\n".join(lines)


def parse_command_line(line: str) -> ParsedCommand:
    """Parse an operator command line into a table entry and its argument."""
    parts = line.split()
    json_output = JSON_FLAG in parts
    parts = [p for p in parts if p != JSON_FLAG]

    if parts and parts[0].lower() == PROGRAM_NAME:
        parts = parts[1:]
    if not parts:
        raise CommandParseError("Empty command. Type 'help' for available commands.", json_output=json_output)

    name = parts[0].lower()
    args = parts[1:]
    try:
        command = OperatorCommand(name)
    except ValueError:
        raise CommandParseError(f"Unknown command: {name}. Type 'help' for available commands.",
                                name, json_output) from None

    spec = COMMAND_TABLE[command]
    if spec.argument is None:
        if args:
            raise CommandParseError(f"Command '{name}' takes no arguments", name, json_output)
        return ParsedCommand(command, None, json_output)

    if len(args) != 1:
        raise CommandParseError(f"Usage: {spec.usage}", name, json_output)
    return ParsedCommand(command, args[0], json_output)


def snapshot_to_dict(snapshot: JobSnapshot) -> Dict[str, Any]:
    return {
        "job_id": snapshot.job_id,
        "device_id": snapshot.device_id,
        "script": snapshot.script_name,
        "origin": snapshot.origin.value,
        "task": snapshot.task_name,
        "state": snapshot.state.value,
        "created_at": snapshot.created_at,
        "started_at": snapshot.started_at,
        "finished_at": snapshot.finished_at,
        "attempts": snapshot.attempts,
        "failure_kind": snapshot.failure_kind.value if snapshot.failure_kind else None,
        "message": snapshot.message,
        "artifact_size": snapshot.artifact_size,
        "artifact_sha256": snapshot.artifact_sha256,
    }


def submit_to_dict(result: SubmitResult) -> Dict[str, Any]:
    return {
        "accepted": result.accepted,
        "device_id": result.device_id,
        "job_id": result.job_id,
        "rejection": result.rejection.value if result.rejection else None,
        "message": result.message,
        "job": snapshot_to_dict(result.job) if result.job else None,
    }


def status_to_dict(status: SchedulerStatus) -> Dict[str, Any]:
    return {
        "state": status.state.value,
        "pool_size": status.pool_size,
        "job_counts": status.job_counts,
        "running_devices": status.running_devices,
        "scheduled_tasks": [
            {
                "task": t.task_name,
                "cron": t.cron_expression,
                "devices": t.device_count,
                "next_run_time": t.next_run_time,
            }
            for t in status.scheduled_tasks
        ],
        "failures": status.failure_statistics,
        "version": status.version,
        "started_at": status.started_at,
    }


class CommandDispatcher:
    """Executes operator commands against an explicit scheduler handle."""

    def __init__(self, scheduler: JobScheduler, wait_for_backup: bool = False):
        self.scheduler = scheduler
        self.wait_for_backup = wait_for_backup
        self._handlers: Dict[OperatorCommand, Callable[[ParsedCommand], CommandResponse]] = {
            OperatorCommand.START: self._start,
            OperatorCommand.RESTART: self._restart,
            OperatorCommand.STOP: self._stop,
            OperatorCommand.BACKUP: self._backup,
            OperatorCommand.RUNTASK: self._runtask,
            OperatorCommand.STATUS: self._status,
            OperatorCommand.VERSION: self._version,
            OperatorCommand.HELP: self._help,
        }
        missing = set(OperatorCommand) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for commands: {sorted(c.value for c in missing)}")

    def execute(self, line: str) -> CommandResponse:
        """Run one command line."""
        try:
            parsed = parse_command_line(line)
        except CommandParseError as e:
            return CommandResponse(False, str(e), command=e.command, json_output=e.json_output)

        logger.debug(f"Operator command: {parsed.command.value} {parsed.argument or ''}".rstrip())
        try:
            response = self._handlers[parsed.command](parsed)
        except Exception as e:
            logger.exception(f"Error executing command {parsed.command.value}")
            response = CommandResponse(False, f"Error executing command: {str(e)}",
                                       error_kind=FailureKind.INTERNAL_ERROR)

        response.command = parsed.command.value
        response.json_output = parsed.json_output
        return response

    def _lifecycle_response(self, result: LifecycleResult) -> CommandResponse:
        return CommandResponse(result.success, result.message,
                               data={"state": result.state.value, "changed": result.changed})

    def _start(self, parsed: ParsedCommand) -> CommandResponse:
        return self._lifecycle_response(self.scheduler.start())

    def _restart(self, parsed: ParsedCommand) -> CommandResponse:
        return self._lifecycle_response(self.scheduler.restart())

    def _stop(self, parsed: ParsedCommand) -> CommandResponse:
        return self._lifecycle_response(self.scheduler.stop())

    def _backup(self, parsed: ParsedCommand) -> CommandResponse:
        result = self.scheduler.run_single_backup(parsed.argument, wait=self.wait_for_backup)
        if not result.accepted:
            return CommandResponse(False, result.message, data=submit_to_dict(result),
                                   error_kind=result.rejection)

        job = result.job
        if job is not None and job.state.is_terminal:
            message = f"Backup of device {result.device_id} finished: {job.state.value}"
            if job.failure_kind:
                message += f" ({job.failure_kind.value}: {job.message})"
        else:
            message = f"Backup of device {result.device_id} started, job {result.job_id}"
        return CommandResponse(True, message, data=submit_to_dict(result))

    def _runtask(self, parsed: ParsedCommand) -> CommandResponse:
        result: TaskRunResult = self.scheduler.run_task(parsed.argument)
        data = {
            "task": result.task_name,
            "submitted": result.submitted_count,
            "rejected": result.rejected_count,
            "skipped_devices": result.skipped_devices,
            "results": [submit_to_dict(r) for r in result.results],
        }
        if not result.accepted:
            return CommandResponse(False, result.message, data=data, error_kind=result.rejection)

        lines = [f"Task {result.task_name}: {result.message}"]
        for r in result.results:
            if not r.accepted:
                lines.append(f"  {r.device_id}: {r.rejection.value} - {r.message}")
        return CommandResponse(True, "\n".join(lines), data=data)

    def _status(self, parsed: ParsedCommand) -> CommandResponse:
        status = self.scheduler.status()
        counts = ", ".join(f"{state}={count}" for state, count in status.job_counts.items())
        lines = [
            f"Scheduler: {status.state.value}",
            f"Worker pool: {status.pool_size}",
            f"Jobs: {counts}",
            f"Running devices: {', '.join(status.running_devices) or '-'}",
        ]
        for task in status.scheduled_tasks:
            next_run = task.next_run_time.isoformat() if task.next_run_time else "paused"
            lines.append(f"Task {task.task_name} [{task.cron_expression}] {task.device_count} devices, "
                         f"next run {next_run}")
        lines.append(f"Failures (24h): {status.failure_statistics.get('total_errors', 0)}")
        return CommandResponse(True, "\n".join(lines), data=status_to_dict(status))

    def _version(self, parsed: ParsedCommand) -> CommandResponse:
        return CommandResponse(True, f"netbackup worker {__version__}", data={"version": __version__})

    def _help(self, parsed: ParsedCommand) -> CommandResponse:
        return CommandResponse(True, help_text(),
                               data={"commands": {c.value: s.summary for c, s in COMMAND_TABLE.items()}})


def serve_console(dispatcher: CommandDispatcher, stdin: TextIO = sys.stdin,
                  stdout: TextIO = sys.stdout, prompt: str = PROMPT) -> int:
    """
    Line-oriented operator console.

    Reads commands until EOF, ``quit`` or ``exit``. Returns the number of
    commands executed.
    """
    stdout.write(WELCOME + "\n")
    stdout.write(prompt)
    stdout.flush()

    executed = 0
    for line in stdin:
        line = line.strip()
        if line.lower() in ("quit", "exit"):
            break
        if line:
            response = dispatcher.execute(line)
            stdout.write(response.render() + "\n")
            executed += 1
        stdout.write(prompt)
        stdout.flush()

    stdout.write("\n")
    stdout.flush()
    return executed
