"""
Scoring pipeline — Signal Store → Risk Scorer → Factor Recorder → Alert Manager.

For each member: signals are read first, then the score, its factors and
the resulting alert changes are written in one transaction. Notification
events go out only after that transaction commits.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boxpulse.alerting.manager import AlertManager
from boxpulse.alerting.schemas import AlertEvaluation, EvaluationOutcome
from boxpulse.db.compat import utcnow
from boxpulse.db.models import RiskScore
from boxpulse.db.queries import get_members_due_for_scoring, get_membership
from boxpulse.errors import InputIncompleteError, NotFoundError
from boxpulse.notifications.events import EventPublisher, LogEventPublisher
from boxpulse.scoring.scorer import RiskScorer
from boxpulse.services.report import SweepReport
from boxpulse.signals.store import DatabaseSignalStore, SignalStore, fetch_complete_snapshot

logger = structlog.get_logger(__name__)


@dataclass
class MemberScoringResult:
    score: RiskScore
    evaluations: list[AlertEvaluation] = field(default_factory=list)

    @property
    def events(self):
        return [e.event for e in self.evaluations if e.event is not None]

    @property
    def alerts_created(self) -> int:
        return sum(1 for e in self.evaluations if e.outcome == EvaluationOutcome.CREATED)


class ScoringPipeline:

    def __init__(
        self,
        scorer: Optional[RiskScorer] = None,
        alerts: Optional[AlertManager] = None,
        store: Optional[SignalStore] = None,
        publisher: Optional[EventPublisher] = None,
    ):
        self.scorer = scorer or RiskScorer()
        self.alerts = alerts or AlertManager()
        self.store = store or DatabaseSignalStore()
        self.publisher = publisher or LogEventPublisher()

    async def score_member(
        self,
        session: AsyncSession,
        box_id: uuid.UUID,
        membership_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> MemberScoringResult:
        """
        Score one member and evaluate alerts. Flushes but does not commit.

        Raises:
            InputIncompleteError: signals missing; nothing is written.
        """
        now = now or utcnow()
        snapshot = await fetch_complete_snapshot(self.store, session, box_id, membership_id, now)
        computation = self.scorer.compute(snapshot, now)
        score = await self.scorer.record(session, box_id, snapshot, computation)
        evaluations = await self.alerts.evaluate(session, score, now)
        return MemberScoringResult(score=score, evaluations=evaluations)

    async def recompute(
        self,
        session: AsyncSession,
        box_id: uuid.UUID,
        membership_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> MemberScoringResult:
        """On-demand recompute: score, evaluate, commit, then publish."""
        member = await get_membership(session, box_id, membership_id)
        if member is None or member.role != "athlete":
            raise NotFoundError("Member not found", membership_id=str(membership_id))
        result = await self.score_member(session, box_id, membership_id, now)
        await session.commit()
        await self._publish(result)
        return result

    async def sweep_box(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        box_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> SweepReport:
        """
        Score every active athlete whose current score is missing or expired.

        Pages are keyset-ordered by membership id, so deferred members
        never hold back the ones after them.
        """
        now = now or utcnow()
        page_size = self.scorer.policy.page_size
        report = SweepReport(job="scoring", box_id=str(box_id))
        log = logger.bind(job="scoring", box_id=str(box_id))

        after_id: Optional[uuid.UUID] = None
        while True:
            async with session_factory() as session:
                members = await get_members_due_for_scoring(
                    session, box_id, now=now, after_id=after_id, page_size=page_size
                )
                member_ids = [m.id for m in members]
            if not member_ids:
                break
            after_id = member_ids[-1]

            for member_id in member_ids:
                report.processed += 1
                try:
                    async with session_factory() as session:
                        async with session.begin():
                            result = await self.score_member(session, box_id, member_id, now)
                except InputIncompleteError as e:
                    log.info("scoring_deferred", membership_id=str(member_id), missing=e.missing)
                    report.deferred += 1
                    continue
                except Exception as e:
                    log.error("scoring_item_failed", membership_id=str(member_id), error=str(e))
                    report.record_failure(str(member_id), e)
                    continue

                report.changed += 1
                report.alerts_created += result.alerts_created
                report.events_published += await self._publish(result, log)

            if len(member_ids) < page_size:
                break

        log.info("scoring_sweep_complete", **report.as_log_fields())
        return report

    async def _publish(self, result: MemberScoringResult, log=logger) -> int:
        """Publish after commit. A failing publisher is logged; the score stands."""
        events = result.events
        if not events:
            return 0
        try:
            await self.publisher.publish(events)
        except Exception as e:
            log.error(
                "event_publish_failed",
                membership_id=str(result.score.membership_id),
                events=len(events),
                error=str(e),
            )
            return 0
        return len(events)
