"""
Scheduler Entry Point — runs in a separate container.

Usage:
    python -m boxpulse.scheduler_main
    boxpulse-scheduler

This does NOT run a web server. It runs the APScheduler background loop
for the scoring, escalation and outcome sweeps.
"""

import asyncio
import signal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from boxpulse.config import settings
from boxpulse.logging_config import configure_logging
from boxpulse.services.scheduler import RetentionScheduler

logger = structlog.get_logger(__name__)


async def main():
    """Initialize and run the scheduler."""
    configure_logging()
    logger.info("scheduler_starting", version=settings.app_version)

    engine_kwargs: dict = {"echo": settings.debug}
    if not settings.async_database_url.startswith("sqlite"):
        engine_kwargs.update(pool_size=5, max_overflow=5)
    engine = create_async_engine(settings.async_database_url, **engine_kwargs)
    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    scheduler = RetentionScheduler(session_factory=session_factory, config=settings)

    # Catch up on anything that went stale while the scheduler was down
    logger.info("running_initial_sweeps")
    await scheduler.run_scoring_sweep()
    await scheduler.run_escalation_sweep()

    scheduler.start()

    stop_event = asyncio.Event()

    def _handle_signal(signum, frame):
        logger.info("shutdown_signal_received", signal=signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    logger.info("scheduler_running", msg="Waiting for jobs... Ctrl+C to stop.")

    await stop_event.wait()

    scheduler.stop()
    await engine.dispose()
    logger.info("scheduler_shutdown_complete")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
