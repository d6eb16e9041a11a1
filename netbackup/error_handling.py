"""
Error Handling and Retry Logic
==============================

This module defines the failure taxonomy shared by the transport, session and
scheduler layers, the retry policy used between job attempts, and logging
helpers that keep a structured side channel of job events.

Features:
- Closed failure-kind enumeration with retry classification
- Transport-level exceptions raised at the I/O leaf
- Configurable retry strategies (exponential backoff, linear, fibonacci)
- Error tracking with per-kind statistics
- Structured JSON logging with thread-local context
"""

import json
import logging
import random
import threading
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class FailureKind(Enum):
    """Why a session, job or operator request did not succeed."""
    TRANSPORT_WRITE_ERROR = "transport_write_error"
    EXPECT_TIMEOUT = "expect_timeout"
    UNEXPECTED_EOF = "unexpected_eof"
    AUTHENTICATION_FAILED = "authentication_failed"
    CONNECT_ERROR = "connect_error"
    JOB_TIMEOUT = "job_timeout"
    CANCELLED = "cancelled"
    SCRIPT_ERROR = "script_error"
    INTERNAL_ERROR = "internal_error"
    # Admission and operator-facing rejections
    DUPLICATE_DEVICE_JOB = "duplicate_device_job"
    SCHEDULER_NOT_RUNNING = "scheduler_not_running"
    UNKNOWN_DEVICE = "unknown_device"
    UNKNOWN_TASK = "unknown_task"
    UNKNOWN_SCRIPT = "unknown_script"


RETRYABLE_KINDS = frozenset({
    FailureKind.CONNECT_ERROR,
    FailureKind.UNEXPECTED_EOF,
    FailureKind.TRANSPORT_WRITE_ERROR,
    FailureKind.EXPECT_TIMEOUT,
})

SUGGESTED_ACTIONS = {
    FailureKind.TRANSPORT_WRITE_ERROR: "Check that the device did not drop the session",
    FailureKind.EXPECT_TIMEOUT: "Compare the last buffer with the script pattern for this vendor",
    FailureKind.UNEXPECTED_EOF: "Check device session limits and idle timers",
    FailureKind.AUTHENTICATION_FAILED: "Verify username, password and enable credentials",
    FailureKind.CONNECT_ERROR: "Check network connectivity and device reachability",
    FailureKind.JOB_TIMEOUT: "Increase the job timeout or check device responsiveness",
    FailureKind.CANCELLED: "Job was stopped by the scheduler",
    FailureKind.SCRIPT_ERROR: "Check the device script templates and variables",
}


def is_retryable(kind: FailureKind) -> bool:
    """Authentication, script and admission problems never fix themselves."""
    return kind in RETRYABLE_KINDS


def suggest_action(kind: FailureKind) -> str:
    return SUGGESTED_ACTIONS.get(kind, "Review error details and worker logs")


class TransportError(Exception):
    """Base class for failures of the byte stream to a device."""
    kind = FailureKind.INTERNAL_ERROR


class TransportWriteError(TransportError):
    """Write attempted on a closed stream or the peer reset the connection."""
    kind = FailureKind.TRANSPORT_WRITE_ERROR


class TransportEOF(TransportError):
    """The device side closed the stream."""
    kind = FailureKind.UNEXPECTED_EOF


class TransportConnectError(TransportError):
    """The session could not be established."""

    def __init__(self, message: str, kind: FailureKind = FailureKind.CONNECT_ERROR):
        super().__init__(message)
        self.kind = kind


class RetryStrategy(Enum):
    """Retry strategy types."""
    EXPONENTIAL_BACKOFF = "exponential_backoff"
    LINEAR_BACKOFF = "linear_backoff"
    FIXED_INTERVAL = "fixed_interval"
    FIBONACCI = "fibonacci"


@dataclass
class RetryConfig:
    """Configuration for job attempt retries."""
    max_attempts: int = 2
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    base_delay: float = 5.0
    max_delay: float = 300.0
    backoff_multiplier: float = 2.0
    jitter: bool = True


class RetryManager:
    """Decides whether a failed attempt is repeated and how long to wait."""

    def __init__(self, config: RetryConfig):
        self.config = config

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay before the attempt following ``attempt`` (0-based)."""
        if self.config.strategy == RetryStrategy.EXPONENTIAL_BACKOFF:
            delay = self.config.base_delay * (self.config.backoff_multiplier ** attempt)
        elif self.config.strategy == RetryStrategy.LINEAR_BACKOFF:
            delay = self.config.base_delay * (attempt + 1)
        elif self.config.strategy == RetryStrategy.FIBONACCI:
            delay = self._fibonacci_delay(attempt)
        else:
            delay = self.config.base_delay

        delay = min(delay, self.config.max_delay)

        # Spread retries of a whole task group apart
        if self.config.jitter:
            delay *= (0.5 + random.random() * 0.5)

        return delay

    def _fibonacci_delay(self, attempt: int) -> float:
        if attempt <= 1:
            return self.config.base_delay

        fib_prev, fib_curr = 0, 1
        for _ in range(attempt):
            fib_prev, fib_curr = fib_curr, fib_prev + fib_curr

        return self.config.base_delay * fib_curr

    def should_retry(self, kind: FailureKind, attempt: int) -> bool:
        """``attempt`` is the number of attempts already made."""
        if attempt >= self.config.max_attempts:
            return False
        return is_retryable(kind)


@dataclass
class ErrorInfo:
    """One recorded failure."""
    timestamp: datetime
    kind: FailureKind
    message: str
    device_id: Optional[str] = None
    job_id: Optional[str] = None
    step_index: Optional[int] = None
    suggested_action: Optional[str] = None


class ErrorTracker:
    """Tracks recent failures for status reporting."""

    def __init__(self, max_errors: int = 1000):
        self.max_errors = max_errors
        self.errors: deque = deque(maxlen=max_errors)
        self.error_counts: Dict[str, int] = defaultdict(int)
        self.lock = threading.RLock()

    def record_error(self, error_info: ErrorInfo):
        with self.lock:
            self.errors.append(error_info)
            self.error_counts[error_info.kind.value] += 1

    def get_error_statistics(self, time_window: Optional[timedelta] = None) -> Dict[str, Any]:
        """Get failure statistics for the specified time window."""
        with self.lock:
            if time_window is None:
                relevant_errors = list(self.errors)
            else:
                cutoff_time = datetime.now(timezone.utc) - time_window
                relevant_errors = [e for e in self.errors if e.timestamp >= cutoff_time]

            kind_counts: Dict[str, int] = defaultdict(int)
            device_counts: Dict[str, int] = defaultdict(int)
            for error in relevant_errors:
                kind_counts[error.kind.value] += 1
                if error.device_id:
                    device_counts[error.device_id] += 1

            most_failing = sorted(device_counts.items(), key=lambda x: x[1], reverse=True)[:10]

            return {
                "total_errors": len(relevant_errors),
                "time_window": str(time_window) if time_window else "all_time",
                "kind_breakdown": dict(kind_counts),
                "most_failing_devices": most_failing,
                "lifetime_counts": dict(self.error_counts),
            }

    def get_recent_errors(self, count: int = 10) -> List[ErrorInfo]:
        with self.lock:
            return list(self.errors)[-count:]

    def clear_errors(self):
        with self.lock:
            self.errors.clear()
            self.error_counts.clear()


class StructuredLogger:
    """Logger emitting JSON entries with per-thread context variables."""

    def __init__(self, name: str, error_tracker: Optional[ErrorTracker] = None):
        self.logger = logging.getLogger(name)
        self.error_tracker = error_tracker
        self._local = threading.local()

    @property
    def _context_stack(self) -> List[Dict[str, Any]]:
        stack = getattr(self._local, "stack", None)
        if stack is None:
            stack = self._local.stack = []
        return stack

    @contextmanager
    def context(self, **context_vars):
        """Add context variables for log entries written by this thread."""
        self._context_stack.append(context_vars)
        try:
            yield
        finally:
            self._context_stack.pop()

    def _get_context(self) -> Dict[str, Any]:
        context: Dict[str, Any] = {}
        for ctx in self._context_stack:
            context.update(ctx)
        return context

    def _create_log_entry(self, level: str, message: str, **kwargs) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "message": message,
            "context": self._get_context(),
        }
        entry.update(kwargs)
        return json.dumps(entry, default=str)

    def debug(self, message: str, **kwargs):
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(self._create_log_entry("DEBUG", message, **kwargs))

    def info(self, message: str, **kwargs):
        self.logger.info(self._create_log_entry("INFO", message, **kwargs))

    def warning(self, message: str, **kwargs):
        self.logger.warning(self._create_log_entry("WARNING", message, **kwargs))

    def error(self, message: str, kind: Optional[FailureKind] = None, **kwargs):
        """Log an error entry, recording it in the tracker when a kind is given."""
        context = self._get_context()
        if kind is not None:
            kwargs["failure"] = {
                "kind": kind.value,
                "suggested_action": suggest_action(kind),
            }
            if self.error_tracker:
                self.error_tracker.record_error(ErrorInfo(
                    timestamp=datetime.now(timezone.utc),
                    kind=kind,
                    message=message,
                    device_id=kwargs.get("device_id", context.get("device_id")),
                    job_id=kwargs.get("job_id", context.get("job_id")),
                    step_index=kwargs.get("step_index"),
                    suggested_action=suggest_action(kind),
                ))
        self.logger.error(self._create_log_entry("ERROR", message, **kwargs))
