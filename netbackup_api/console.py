"""
Local operator console.

Runs the scheduler in-process and reads operator commands from stdin, the
same command set the API accepts on ``POST /api/scheduler/command``.
"""

import logging
import sys

from netbackup.operator_commands import CommandDispatcher, serve_console

from netbackup_api.config import settings
from netbackup_api.main import configure_logging
from netbackup_api.services import build_scheduler

logger = logging.getLogger(__name__)


def main() -> int:
    configure_logging(settings)
    scheduler = build_scheduler(settings)

    if settings.scheduler_autostart:
        scheduler.start()

    try:
        serve_console(CommandDispatcher(scheduler), sys.stdin, sys.stdout)
    except KeyboardInterrupt:
        logger.info("Console interrupted")
    finally:
        scheduler.shutdown()
        scheduler.reporter.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
