"""
Background worker for automation steps and monthly credit resets.

Usage:
    python -m dojoflow.worker

Runs the automation scheduler and the credit reset job until interrupted.
For production, run this as a separate process (e.g., systemd service, Docker container).
"""

import asyncio
import logging

from dojoflow.core.config import settings
from dojoflow.core.structured_logging import build_log_context
from dojoflow.services.automation_scheduler import (
    AutomationScheduler,
    CreditResetJob,
    PeriodicJob,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def build_jobs() -> list[PeriodicJob]:
    """The periodic jobs a worker process hosts."""
    return [AutomationScheduler(), CreditResetJob()]


async def run_worker(jobs: list[PeriodicJob] | None = None) -> None:
    """Start every job and keep them running until cancelled."""
    jobs = jobs if jobs is not None else build_jobs()
    logger.info(
        "Worker starting (poll interval: %ss, batch size: %s)",
        settings.AUTOMATION_POLL_INTERVAL_SECONDS,
        settings.AUTOMATION_BATCH_SIZE,
    )
    if not settings.twilio_configured:
        logger.warning("Twilio credentials not set - SMS and calls will be logged but not sent")
    if not settings.sendgrid_configured:
        logger.warning("SENDGRID_API_KEY not set - emails will be logged but not sent")

    for job in jobs:
        job.start()
    try:
        await asyncio.Event().wait()
    finally:
        for job in jobs:
            await job.stop()


def main() -> None:
    """Entry point for the worker."""
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
    except Exception:
        logger.exception("Worker crashed", extra=build_log_context(job="worker"))
        raise


if __name__ == "__main__":
    main()
