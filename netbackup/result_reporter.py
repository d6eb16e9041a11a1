"""
Result Reporting
================

This module hands the outcome of every finished job to the outside world.
The scheduler calls exactly one reporter once per job; reporters never raise
for delivery problems, they answer with a ReportResponse instead.

Features:
- Logging reporter (default)
- HTTP reporter posting results to the central inventory API with a bearer token
- File reporter storing artifacts under YYYY/MM/DD with optional gzip
  compression and sha256 verification
- Composite reporter fanning out to several reporters
"""

import gzip
import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import httpx

from netbackup.error_handling import FailureKind

logger = logging.getLogger(__name__)

DEFAULT_RESULT_ENDPOINT = "/api/v1/worker/results"
DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass
class JobOutcome:
    """Terminal result of a job: an artifact or a failure with diagnostics."""
    success: bool
    artifact: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    diagnostic_buffer: str = ""
    message: str = ""
    job_id: Optional[str] = None
    script_name: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def succeeded(cls, artifact: str, **metadata) -> "JobOutcome":
        return cls(success=True, artifact=artifact, **metadata)

    @classmethod
    def failed(cls, kind: FailureKind, diagnostic_buffer: str = "",
               message: str = "", **metadata) -> "JobOutcome":
        return cls(success=False, failure_kind=kind, diagnostic_buffer=diagnostic_buffer,
                   message=message, **metadata)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "status": "succeeded" if self.success else "failed",
            "job_id": self.job_id,
            "script": self.script_name,
            "attempts": self.attempts,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
        if self.success:
            data["config"] = self.artifact
        else:
            data["failure"] = {
                "kind": self.failure_kind.value if self.failure_kind else None,
                "message": self.message,
                "buffer": self.diagnostic_buffer,
            }
        return data


@dataclass
class ReportResponse:
    """Acknowledgement of a reported result."""
    success: bool
    status_code: int = 0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


class ResultReporter(ABC):
    """Receives the outcome of each finished job."""

    @abstractmethod
    def report_result(self, device_id: str, outcome: JobOutcome) -> ReportResponse:
        """Deliver one job outcome."""

    def close(self):
        pass


class LoggingReporter(ResultReporter):
    """Writes outcomes to the log."""

    def report_result(self, device_id: str, outcome: JobOutcome) -> ReportResponse:
        if outcome.success:
            digest = hashlib.sha256((outcome.artifact or "").encode("utf-8")).hexdigest()
            logger.info(f"Device {device_id}: backup succeeded, {len(outcome.artifact or '')} "
                        f"characters, sha256 {digest[:12]}")
        else:
            kind = outcome.failure_kind.value if outcome.failure_kind else "unknown"
            logger.warning(f"Device {device_id}: backup failed ({kind}): {outcome.message}")
            if outcome.diagnostic_buffer:
                logger.debug(f"Device {device_id}: last buffer {outcome.diagnostic_buffer[-500:]!r}")
        return ReportResponse(success=True, status_code=200, message="logged")


class HttpResultReporter(ResultReporter):
    """Posts outcomes as JSON to the central inventory API."""

    def __init__(self, base_url: str, token: Optional[str] = None,
                 endpoint: str = DEFAULT_RESULT_ENDPOINT,
                 timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
                 max_retries: int = 3,
                 transport: Optional[httpx.BaseTransport] = None):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self.endpoint = endpoint
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def report_result(self, device_id: str, outcome: JobOutcome) -> ReportResponse:
        payload = outcome.to_dict()
        payload["device_id"] = device_id

        try:
            response = self._client.post(self.endpoint, json=payload)
        except httpx.TimeoutException:
            logger.warning(f"Timeout reporting result of device {device_id}")
            return ReportResponse(success=False, message="timeout")
        except httpx.HTTPError as e:
            logger.warning(f"HTTP error reporting result of device {device_id}: {e}")
            return ReportResponse(success=False, message=str(e))

        if not response.is_success:
            logger.warning(f"Result API rejected device {device_id}: HTTP {response.status_code}")
            return ReportResponse(success=False, status_code=response.status_code,
                                  message=f"HTTP {response.status_code}: {response.text[:200]}")

        return ReportResponse(success=True, status_code=response.status_code, message=response.text)

    def close(self):
        self._client.close()


@dataclass
class StoredArtifact:
    """Metadata of an artifact written to disk."""
    file_path: str
    file_size_bytes: int
    file_hash: str
    compression_ratio: float
    compressed: bool
    timestamp: datetime
    job_id: Optional[str] = None


class ArtifactStore:
    """Stores configuration artifacts in a dated directory tree."""

    def __init__(self, base_storage_path: Union[str, Path] = "/backups"):
        self.base_storage_path = Path(base_storage_path)
        self.base_storage_path.mkdir(parents=True, exist_ok=True)

    def generate_filename(self, device_id: str, timestamp: Optional[datetime] = None,
                          file_extension: str = "cfg") -> str:
        """Generate standardized artifact filename."""
        if timestamp is None:
            timestamp = datetime.now(timezone.utc)

        safe_device_id = "".join(c for c in device_id if c.isalnum() or c in "-_.")
        timestamp_str = timestamp.strftime("%Y%m%d_%H%M%S")

        return f"{safe_device_id}_{timestamp_str}.{file_extension}"

    def calculate_hash(self, content: str) -> str:
        """Calculate SHA256 hash of content."""
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def compress_content(self, content: str) -> Tuple[bytes, float]:
        """Compress content using gzip and return compressed data and ratio."""
        original_size = len(content.encode("utf-8"))
        compressed_data = gzip.compress(content.encode("utf-8"))
        compression_ratio = len(compressed_data) / original_size if original_size > 0 else 1.0
        return compressed_data, compression_ratio

    def save(self, content: str, device_id: str, job_id: Optional[str] = None,
             compress: bool = True) -> StoredArtifact:
        """Write an artifact under YYYY/MM/DD and return its metadata."""
        timestamp = datetime.now(timezone.utc)

        date_path = self.base_storage_path / timestamp.strftime("%Y") / timestamp.strftime("%m") / timestamp.strftime("%d")
        date_path.mkdir(parents=True, exist_ok=True)

        base_filename = self.generate_filename(device_id, timestamp)

        if compress:
            compressed_data, compression_ratio = self.compress_content(content)
            file_path = date_path / f"{base_filename}.gz"
            with open(file_path, "wb") as f:
                f.write(compressed_data)
            file_size = len(compressed_data)
        else:
            file_path = date_path / base_filename
            with open(file_path, "w", encoding="utf-8", newline="") as f:
                f.write(content)
            file_size = len(content.encode("utf-8"))
            compression_ratio = 1.0

        artifact = StoredArtifact(
            file_path=str(file_path),
            file_size_bytes=file_size,
            file_hash=self.calculate_hash(content),
            compression_ratio=compression_ratio,
            compressed=compress,
            timestamp=timestamp,
            job_id=job_id,
        )

        logger.info(f"Saved artifact: {file_path} ({file_size} bytes, compression: {compression_ratio:.2f})")
        return artifact

    def verify(self, file_path: Union[str, Path], expected_hash: str) -> Tuple[bool, Optional[str]]:
        """Verify artifact file integrity."""
        path = Path(file_path)
        if not path.exists():
            return False, "File does not exist"

        try:
            if path.suffix == ".gz":
                with gzip.open(path, "rt", encoding="utf-8", newline="") as f:
                    content = f.read()
            else:
                with open(path, "r", encoding="utf-8", newline="") as f:
                    content = f.read()
        except (OSError, UnicodeDecodeError) as e:
            return False, f"Verification error: {str(e)}"

        actual_hash = self.calculate_hash(content)
        if actual_hash == expected_hash:
            return True, None
        return False, f"Hash mismatch: expected {expected_hash}, got {actual_hash}"


class FileResultReporter(ResultReporter):
    """Stores successful artifacts on disk; failures are only logged."""

    def __init__(self, store: ArtifactStore, compress: bool = True, verify: bool = True):
        self.store = store
        self.compress = compress
        self.verify = verify

    def report_result(self, device_id: str, outcome: JobOutcome) -> ReportResponse:
        if not outcome.success:
            kind = outcome.failure_kind.value if outcome.failure_kind else "unknown"
            logger.info(f"Device {device_id}: no artifact stored, job failed ({kind})")
            return ReportResponse(success=True, message="no artifact for failed job")

        try:
            artifact = self.store.save(outcome.artifact or "", device_id, outcome.job_id, self.compress)
        except OSError as e:
            logger.error(f"Storage error for device {device_id}: {e}")
            return ReportResponse(success=False, message=f"Storage error: {str(e)}")

        details = {
            "file_path": artifact.file_path,
            "file_size_bytes": artifact.file_size_bytes,
            "file_hash": artifact.file_hash,
            "compression_ratio": artifact.compression_ratio,
        }

        if self.verify:
            verified, error = self.store.verify(artifact.file_path, artifact.file_hash)
            if not verified:
                logger.error(f"Artifact verification failed for device {device_id}: {error}")
                return ReportResponse(success=False, message=error, details=details)

        return ReportResponse(success=True, message=artifact.file_path, details=details)


class CompositeReporter(ResultReporter):
    """Delivers each outcome to every reporter; succeeds only if all do."""

    def __init__(self, reporters: Iterable[ResultReporter]):
        self.reporters: List[ResultReporter] = list(reporters)

    def report_result(self, device_id: str, outcome: JobOutcome) -> ReportResponse:
        responses = []
        for reporter in self.reporters:
            try:
                responses.append(reporter.report_result(device_id, outcome))
            except Exception as e:
                logger.error(f"Reporter {type(reporter).__name__} failed for device {device_id}: {e}")
                responses.append(ReportResponse(success=False, message=str(e)))

        failed = [r for r in responses if not r.success]
        return ReportResponse(
            success=not failed,
            status_code=max((r.status_code for r in responses), default=0),
            message="; ".join(r.message for r in failed) if failed else "delivered",
            details={"responses": [asdict(r) for r in responses]},
        )

    def close(self):
        for reporter in self.reporters:
            reporter.close()
