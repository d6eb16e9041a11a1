"""
Device Session Runner
=====================

This module executes a DeviceScript against one open Transport and turns the
dialogue into either a captured configuration artifact or a single failure
value carrying the failure kind and the buffer the device last produced.

Features:
- Strictly sequential step execution through the expect engine
- Conditional steps, templated or computed send text
- Per-step timeout policies (fail, retry with resend, skip)
- Authentication failure detection from failure patterns and credential
  prompts that come back
- Cancellation between steps and a whole-session deadline
- Transport closed on every exit path
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Event
from typing import Any, Dict, List, Optional, Tuple

from netbackup.device_script import DeviceScript, ExpectStep, TimeoutAction
from netbackup.error_handling import FailureKind, TransportError
from netbackup.expect_engine import ANY, ExpectEngine, ExpectStatus
from netbackup.script_templates import ScriptRenderError, TemplateProcessor
from netbackup.transport import Transport

logger = logging.getLogger(__name__)

DEFAULT_STEP_TIMEOUT = 30.0


class StepStatus(Enum):
    """Step execution status."""
    MATCHED = "matched"
    SENT = "sent"
    SKIPPED = "skipped"
    NOT_RUN = "not_run"
    FAILED = "failed"


@dataclass
class StepRecord:
    """What happened during one step."""
    index: int
    name: str
    status: StepStatus
    output: str = ""
    matched: str = ""
    groups: Tuple = ()
    attempts: int = 0
    elapsed: float = 0.0

    def as_context(self) -> Dict[str, Any]:
        """View of the record available to later step templates."""
        return {
            "status": self.status.value,
            "output": self.output,
            "matched": self.matched,
            "groups": self.groups,
        }


@dataclass
class SessionFailure:
    """Why a session did not produce an artifact."""
    kind: FailureKind
    message: str
    device_id: str
    step_index: Optional[int] = None
    step_name: Optional[str] = None
    last_buffer: str = ""


@dataclass
class SessionResult:
    """Result of running a script against a device."""
    device_id: str
    script_name: str
    success: bool
    start_time: datetime
    end_time: Optional[datetime] = None
    artifact: Optional[str] = None
    failure: Optional[SessionFailure] = None
    steps: List[StepRecord] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def duration(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


def strip_echo(output: str, sent: Optional[str]) -> str:
    """Remove the device's echo of ``sent`` and the line break after it."""
    if not sent:
        return output
    echo = sent.rstrip("\r\n")
    if not echo or not output.startswith(echo):
        return output

    output = output[len(echo):]
    for line_break in ("\r\r\n", "\r\n", "\n"):
        if output.startswith(line_break):
            return output[len(line_break):]
    return output


class _StepFailed(Exception):
    def __init__(self, kind: FailureKind, message: str, last_buffer: str = ""):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.last_buffer = last_buffer


class SessionRunner:
    """Runs device scripts; one instance may serve many sessions concurrently."""

    def __init__(self, default_timeout: float = DEFAULT_STEP_TIMEOUT,
                 template_processor: Optional[TemplateProcessor] = None):
        self.default_timeout = default_timeout
        self.templates = template_processor or TemplateProcessor()

    def execute(self, script: DeviceScript, transport: Transport, device_id: str,
                variables: Optional[Dict[str, Any]] = None,
                cancel_event: Optional[Event] = None,
                deadline: Optional[float] = None) -> SessionResult:
        """
        Run ``script`` over ``transport``.

        Args:
            script: The dialogue to execute.
            transport: An open transport; it is closed before returning.
            device_id: Device identifier carried into failures and logs.
            variables: Template variables (device record, credentials).
            cancel_event: When set, the session aborts before the next step.
            deadline: ``time.monotonic()`` value after which the session fails
                with JOB_TIMEOUT.

        Returns:
            SessionResult with the artifact or the failure.
        """
        result = SessionResult(
            device_id=device_id,
            script_name=script.name,
            success=False,
            start_time=datetime.now(timezone.utc),
        )
        engine = ExpectEngine(
            transport,
            default_timeout=script.default_timeout or self.default_timeout,
            line_ending=script.line_ending,
        )
        step_index: Optional[int] = None
        step_name: Optional[str] = None

        logger.debug(f"Device {device_id}: running script {script.name} ({len(script.steps)} steps)")

        try:
            with engine:
                armed: List = []
                for step_index, step in enumerate(script.steps):
                    step_name = step.name

                    if cancel_event is not None and cancel_event.is_set():
                        raise _StepFailed(FailureKind.CANCELLED, "Session cancelled", engine.unconsumed)
                    if deadline is not None and time.monotonic() >= deadline:
                        raise _StepFailed(FailureKind.JOB_TIMEOUT, "Job deadline exceeded", engine.unconsumed)

                    context = self._step_context(variables, result.steps)

                    if step.when is not None:
                        try:
                            should_run = self.templates.evaluate(step.when, context)
                        except ScriptRenderError as e:
                            raise _StepFailed(FailureKind.SCRIPT_ERROR, str(e)) from e
                        if not should_run:
                            result.steps.append(StepRecord(step_index, step.name, StepStatus.NOT_RUN))
                            continue

                    record = self._run_step(engine, script, step_index, step, context, armed, deadline, result)
                    result.steps.append(record)

                    if record.status == StepStatus.MATCHED:
                        if step.credential:
                            if step.pattern is not None:
                                armed.append(step.pattern)
                        else:
                            armed = []

            result.artifact = "".join(
                r.output for r, s in zip(result.steps, script.steps)
                if s.capture and r.status == StepStatus.MATCHED
            )
            result.success = True
            logger.info(f"Device {device_id}: script {script.name} completed, "
                        f"captured {len(result.artifact)} characters")

        except _StepFailed as e:
            result.failure = SessionFailure(
                kind=e.kind,
                message=e.message,
                device_id=device_id,
                step_index=step_index,
                step_name=step_name,
                last_buffer=e.last_buffer,
            )
            logger.warning(f"Device {device_id}: step {step_index} ({step_name}) failed "
                           f"with {e.kind.value}: {e.message}")

        except TransportError as e:
            result.failure = SessionFailure(
                kind=e.kind,
                message=str(e),
                device_id=device_id,
                step_index=step_index,
                step_name=step_name,
                last_buffer=engine.unconsumed,
            )
            logger.warning(f"Device {device_id}: transport failure at step {step_index} "
                           f"({step_name}): {e}")

        finally:
            result.end_time = datetime.now(timezone.utc)

        return result

    def _step_context(self, variables: Optional[Dict[str, Any]],
                      records: List[StepRecord]) -> Dict[str, Any]:
        context = dict(variables or {})
        context["steps"] = {r.name: r.as_context() for r in records}
        return context

    def _render_send(self, step: ExpectStep, context: Dict[str, Any]) -> Optional[str]:
        if step.send is None:
            return None
        if callable(step.send):
            try:
                return str(step.send(context))
            except Exception as e:
                raise _StepFailed(FailureKind.SCRIPT_ERROR,
                                  f"Send callable of step {step.name} failed: {e}") from e

        processed = self.templates.render(step.send, context)
        if not processed.success:
            raise _StepFailed(FailureKind.SCRIPT_ERROR, processed.error_message)
        return processed.processed_content

    def _run_step(self, engine: ExpectEngine, script: DeviceScript, index: int,
                  step: ExpectStep, context: Dict[str, Any], armed: List,
                  deadline: Optional[float], result: SessionResult) -> StepRecord:
        text = self._render_send(step, context)
        fail_patterns = list(step.fail_on) + list(script.fail_on)
        patterns = [step.pattern if step.pattern is not None else ANY]
        patterns += [fp.pattern for fp in fail_patterns]
        patterns += armed

        record = StepRecord(index, step.name, StepStatus.FAILED)
        start_time = time.monotonic()

        while True:
            record.attempts += 1

            if text is not None:
                if step.raw:
                    engine.send_raw(text)
                else:
                    engine.send(text)
                logger.debug(f"Device {result.device_id}: step {step.name} sent {step.describe_send()}")

            if not step.wait:
                record.status = StepStatus.SENT
                record.elapsed = time.monotonic() - start_time
                return record

            timeout = step.timeout or engine.default_timeout
            if deadline is not None:
                timeout = min(timeout, max(deadline - time.monotonic(), 0.0))

            outcome = engine.expect(patterns, timeout)

            if outcome.status == ExpectStatus.MATCHED:
                if outcome.index == 0:
                    record.status = StepStatus.MATCHED
                    record.output = strip_echo(outcome.before, text) if script.strip_echo else outcome.before
                    record.matched = outcome.matched
                    record.groups = outcome.match.groups() if outcome.match is not None else ()
                    record.elapsed = time.monotonic() - start_time
                    return record

                fail_index = outcome.index - 1
                diagnostic = outcome.before + outcome.matched
                if fail_index < len(fail_patterns):
                    fail_pattern = fail_patterns[fail_index]
                    raise _StepFailed(fail_pattern.kind, fail_pattern.describe(), diagnostic)
                raise _StepFailed(FailureKind.AUTHENTICATION_FAILED,
                                  f"Credential prompt '{outcome.matched.strip()}' repeated", diagnostic)

            if outcome.status == ExpectStatus.EOF:
                raise _StepFailed(FailureKind.UNEXPECTED_EOF,
                                  f"Device closed the session while waiting for step {step.name}",
                                  outcome.last_buffer)

            if deadline is not None and time.monotonic() >= deadline:
                raise _StepFailed(FailureKind.JOB_TIMEOUT, "Job deadline exceeded", outcome.last_buffer)

            policy = step.on_timeout
            if policy.action == TimeoutAction.RETRY and record.attempts <= policy.retries:
                logger.debug(f"Device {result.device_id}: step {step.name} timed out, "
                             f"retry {record.attempts}/{policy.retries}")
                continue

            if policy.action == TimeoutAction.SKIP:
                record.status = StepStatus.SKIPPED
                record.elapsed = time.monotonic() - start_time
                result.warnings.append(f"Step {step.name} timed out after {timeout:.1f}s and was skipped")
                return record

            raise _StepFailed(FailureKind.EXPECT_TIMEOUT,
                              f"Timed out after {timeout:.1f}s waiting for step {step.name}",
                              outcome.last_buffer)
