"""
Retention Scheduler — runs in a separate process (boxpulse-scheduler).

NOT inside the API process, so sweeps never compete with coach requests.

Jobs:
1. Scoring sweep (every 6 hours) — score members with no current score, evaluate alerts
2. Escalation sweep (every hour) — escalate stale or outgrown open alerts
3. Outcome sweep (daily 03:00) — measure interventions whose window closed
"""

from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker

from boxpulse.config import Settings, settings as default_settings
from boxpulse.db import queries as db_queries
from boxpulse.alerting.manager import AlertManager
from boxpulse.escalation.controller import EscalationController
from boxpulse.notifications.events import EventPublisher, build_publisher
from boxpulse.outcomes.evaluator import OutcomeEvaluator
from boxpulse.scoring.scorer import RiskScorer
from boxpulse.services.pipeline import ScoringPipeline
from boxpulse.services.report import SweepReport

logger = structlog.get_logger(__name__)


class RetentionScheduler:
    """Background scheduler for the retention sweeps."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        config: Optional[Settings] = None,
        publisher: Optional[EventPublisher] = None,
    ):
        config = config or default_settings
        self.session_factory = session_factory
        self.publisher = publisher or build_publisher(
            config.notification_webhook_url, config.notification_timeout_seconds
        )
        self.pipeline = ScoringPipeline(
            scorer=RiskScorer(config.scoring),
            alerts=AlertManager(config.alert_policy),
            publisher=self.publisher,
        )
        self.escalation = EscalationController(config.escalation)
        self.outcomes = OutcomeEvaluator(config.outcomes)
        self.scheduler = AsyncIOScheduler()

    def start(self):
        """Register and start all scheduled jobs."""
        self.scheduler.add_job(
            self.run_scoring_sweep,
            IntervalTrigger(hours=6),
            id="scoring_sweep",
            max_instances=1,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.run_escalation_sweep,
            IntervalTrigger(hours=1),
            id="escalation_sweep",
            max_instances=1,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.run_outcome_sweep,
            CronTrigger(hour=3, minute=0),
            id="outcome_sweep",
            max_instances=1,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("retention_scheduler_started")

    def stop(self):
        """Gracefully stop the scheduler."""
        self.scheduler.shutdown(wait=True)
        logger.info("retention_scheduler_stopped")

    async def run_scoring_sweep(self) -> list[SweepReport]:
        return await self._for_each_box(
            "scoring", lambda box_id: self.pipeline.sweep_box(self.session_factory, box_id)
        )

    async def run_escalation_sweep(self) -> list[SweepReport]:
        return await self._for_each_box(
            "escalation",
            lambda box_id: self.escalation.sweep_box(
                self.session_factory, box_id, publisher=self.publisher
            ),
        )

    async def run_outcome_sweep(self) -> list[SweepReport]:
        return await self._for_each_box(
            "outcomes", lambda box_id: self.outcomes.sweep_box(self.session_factory, box_id)
        )

    async def _for_each_box(self, job: str, run) -> list[SweepReport]:
        """Run one sweep per box; a failing box does not stop the others."""
        logger.info("sweep_started", job=job)
        async with self.session_factory() as session:
            boxes = await db_queries.get_boxes(session)
            box_ids = [b.id for b in boxes]

        reports: list[SweepReport] = []
        for box_id in box_ids:
            try:
                reports.append(await run(box_id))
            except Exception as e:
                logger.error("sweep_failed", job=job, box_id=str(box_id), error=str(e))

        logger.info("sweep_completed", job=job, boxes=len(box_ids))
        return reports
