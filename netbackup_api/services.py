"""
Service Layer
=============

Builds the netbackup core objects from settings: inventory, script library,
result reporter and the job scheduler handed to the API and the console.
"""

import logging
from functools import partial
from pathlib import Path
from typing import Optional

from netbackup.device_script import ScriptLibrary
from netbackup.error_handling import RetryConfig
from netbackup.inventory import Inventory, load_inventory
from netbackup.job_scheduler import JobScheduler, StopMode, TransportFactory
from netbackup.result_reporter import (
    ArtifactStore, CompositeReporter, FileResultReporter, HttpResultReporter, LoggingReporter,
    ResultReporter,
)
from netbackup.session_runner import SessionRunner
from netbackup.transport import open_transport

from netbackup_api.config import Settings

logger = logging.getLogger(__name__)


def build_inventory(settings: Settings) -> Inventory:
    """Load the inventory file, or start empty when it does not exist."""
    path = Path(settings.inventory_path)
    if not path.exists():
        logger.warning(f"Inventory file {path} not found, starting with an empty inventory")
        return Inventory()
    return load_inventory(path)


def build_scripts(settings: Settings) -> ScriptLibrary:
    library = ScriptLibrary(user_dir=settings.scripts_path)
    logger.info(f"Device scripts available: {', '.join(library.names())}")
    return library


def build_reporter(settings: Settings) -> ResultReporter:
    """Logging reporter plus the HTTP and file reporters that are configured."""
    reporters = [LoggingReporter()]

    if settings.report_api_url:
        reporters.append(HttpResultReporter(
            settings.report_api_url,
            token=settings.report_api_token,
            endpoint=settings.report_api_endpoint,
            timeout_seconds=settings.report_api_timeout,
        ))
        logger.info(f"Reporting results to {settings.report_api_url}")

    if settings.artifact_storage_path:
        reporters.append(FileResultReporter(
            ArtifactStore(settings.artifact_storage_path),
            compress=settings.artifact_compression,
        ))
        logger.info(f"Storing artifacts under {settings.artifact_storage_path}")

    if len(reporters) == 1:
        return reporters[0]
    return CompositeReporter(reporters)


def build_scheduler(settings: Settings,
                    inventory: Optional[Inventory] = None,
                    scripts: Optional[ScriptLibrary] = None,
                    transport_factory: Optional[TransportFactory] = None,
                    reporter: Optional[ResultReporter] = None) -> JobScheduler:
    """Create a scheduler from settings; any component may be injected."""
    retry_config = RetryConfig(
        max_attempts=settings.job_max_attempts,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
    )

    return JobScheduler(
        inventory=inventory if inventory is not None else build_inventory(settings),
        scripts=scripts if scripts is not None else build_scripts(settings),
        transport_factory=transport_factory or partial(open_transport, poll_interval=settings.read_poll_interval),
        reporter=reporter or build_reporter(settings),
        pool_size=settings.worker_pool_size,
        job_timeout=settings.job_timeout_seconds,
        retry_config=retry_config,
        stop_mode=StopMode(settings.stop_mode.lower()),
        session_runner=SessionRunner(default_timeout=settings.expect_timeout_seconds),
        timezone_name=settings.scheduler_timezone,
        history_size=settings.job_history_size,
    )
