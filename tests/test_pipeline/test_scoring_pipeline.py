"""
Tests for the scoring pipeline and the retention scheduler.

Covers:
- Sweep scores due athletes, defers incomplete ones, skips coaches
- Sweep is a no-op while scores are current
- Deferred members never block later pages
- Events are published only for created alerts
- On-demand recompute for a single member
- Scheduler runs each sweep across every box
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from boxpulse.config import ScoringPolicy, Settings
from boxpulse.db.compat import utcnow
from boxpulse.db.models import RiskScore
from boxpulse.errors import InputIncompleteError, NotFoundError
from boxpulse.notifications.events import AlertEventType
from boxpulse.scoring.scorer import RiskScorer
from boxpulse.services.pipeline import ScoringPipeline
from boxpulse.services.scheduler import RetentionScheduler
from tests.helpers import (
    AT_RISK_SIGNALS,
    HEALTHY_SIGNALS,
    RecordingPublisher,
    add_snapshot,
    create_member,
)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def pipeline(publisher):
    return ScoringPipeline(publisher=publisher)


async def _score_count(session, member) -> int:
    return await session.scalar(
        select(func.count()).select_from(RiskScore).where(RiskScore.membership_id == member.id)
    )


@pytest.mark.asyncio
async def test_sweep_scores_due_members(db, session_factory, athlete, second_athlete, coach, pipeline, publisher):
    now = utcnow()
    await add_snapshot(db, athlete, now - timedelta(hours=2), base=AT_RISK_SIGNALS)
    await add_snapshot(db, second_athlete, now - timedelta(hours=2), attendance_trend=None)
    await db.commit()

    report = await pipeline.sweep_box(session_factory, athlete.box_id, now=now)

    assert report.processed == 2
    assert report.changed == 1
    assert report.deferred == 1
    assert report.alerts_created == 4
    assert report.events_published == 4
    assert {e.event_type for e in publisher.events} == {AlertEventType.ALERT_CREATED}
    async with session_factory() as session:
        assert await _score_count(session, athlete) == 1
        assert await _score_count(session, second_athlete) == 0
        assert await _score_count(session, coach) == 0


@pytest.mark.asyncio
async def test_sweep_skips_members_with_current_score(db, session_factory, athlete, pipeline, publisher):
    now = utcnow()
    await add_snapshot(db, athlete, now - timedelta(hours=2), base=AT_RISK_SIGNALS)
    await db.commit()

    await pipeline.sweep_box(session_factory, athlete.box_id, now=now)
    again = await pipeline.sweep_box(session_factory, athlete.box_id, now=now + timedelta(hours=6))
    assert again.processed == 0

    # Once the score expires the member is due again; alerts refresh, not duplicate
    expired = await pipeline.sweep_box(session_factory, athlete.box_id, now=now + timedelta(days=8))
    assert expired.changed == 1
    assert expired.alerts_created == 0
    assert len(publisher.events) == 4


@pytest.mark.asyncio
async def test_sweep_pages_past_deferred_members(db, session_factory, box, athlete, second_athlete, publisher):
    extra = [await create_member(session_factory, box, "athlete") for _ in range(2)]
    members = sorted([athlete, second_athlete, *extra], key=lambda m: m.id)
    # Only the last member in id order has signals; the rest defer every run
    await add_snapshot(db, members[-1], utcnow() - timedelta(hours=1), base=AT_RISK_SIGNALS)
    await db.commit()

    pipeline = ScoringPipeline(scorer=RiskScorer(ScoringPolicy(page_size=3)), publisher=publisher)
    report = await pipeline.sweep_box(session_factory, box.id)

    assert report.processed == 4
    assert report.deferred == 3
    assert report.changed == 1
    async with session_factory() as session:
        assert await _score_count(session, members[-1]) == 1


@pytest.mark.asyncio
async def test_publisher_failure_does_not_undo_score(db, session_factory, athlete):
    class BrokenPublisher:
        async def publish(self, events):
            raise RuntimeError("notification service down")

    await add_snapshot(db, athlete, utcnow() - timedelta(hours=1), base=AT_RISK_SIGNALS)
    await db.commit()

    report = await ScoringPipeline(publisher=BrokenPublisher()).sweep_box(session_factory, athlete.box_id)
    assert report.changed == 1
    assert report.failed == 0
    assert report.events_published == 0
    async with session_factory() as session:
        assert await _score_count(session, athlete) == 1


@pytest.mark.asyncio
async def test_inactive_member_not_scored(session_factory, box, pipeline):
    inactive = await create_member(session_factory, box, "athlete", is_active=False)
    async with session_factory() as session:
        await add_snapshot(session, inactive, utcnow() - timedelta(hours=1))
        await session.commit()

    report = await pipeline.sweep_box(session_factory, box.id)
    assert report.processed == 0


@pytest.mark.asyncio
async def test_recompute_commits_and_publishes(db, athlete, pipeline, publisher):
    await add_snapshot(db, athlete, utcnow() - timedelta(hours=1), base=AT_RISK_SIGNALS)

    result = await pipeline.recompute(db, athlete.box_id, athlete.id)
    assert result.score.risk_level == "high"
    assert result.alerts_created == 4
    assert len(publisher.events) == 4


@pytest.mark.asyncio
async def test_recompute_healthy_member_raises_nothing(db, athlete, pipeline, publisher):
    await add_snapshot(db, athlete, utcnow() - timedelta(hours=1), base=HEALTHY_SIGNALS)
    result = await pipeline.recompute(db, athlete.box_id, athlete.id)
    assert result.score.risk_level == "low"
    assert result.evaluations == []
    assert publisher.events == []


@pytest.mark.asyncio
async def test_recompute_incomplete_writes_nothing(db, athlete, pipeline):
    await add_snapshot(db, athlete, utcnow() - timedelta(hours=1), days_since_last_pr=None)
    with pytest.raises(InputIncompleteError):
        await pipeline.recompute(db, athlete.box_id, athlete.id)
    assert await _score_count(db, athlete) == 0


@pytest.mark.asyncio
async def test_recompute_rejects_non_athlete(db, coach, pipeline):
    with pytest.raises(NotFoundError):
        await pipeline.recompute(db, coach.box_id, coach.id)


# ── Scheduler ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_scheduler_sweeps_every_box(db, session_factory, athlete, other_box, publisher):
    await add_snapshot(db, athlete, utcnow() - timedelta(hours=1), base=AT_RISK_SIGNALS)
    await db.commit()

    scheduler = RetentionScheduler(session_factory, config=Settings(), publisher=publisher)
    scoring = await scheduler.run_scoring_sweep()
    escalation = await scheduler.run_escalation_sweep()
    outcomes = await scheduler.run_outcome_sweep()

    assert {r.box_id for r in scoring} == {str(athlete.box_id), str(other_box.id)}
    assert sum(r.changed for r in scoring) == 1
    assert sum(r.processed for r in escalation) == 4
    assert sum(r.processed for r in outcomes) == 0


def test_scheduler_registers_jobs(session_factory):
    scheduler = RetentionScheduler(session_factory, config=Settings(), publisher=RecordingPublisher())
    scheduler.scheduler.start = lambda *a, **kw: None
    scheduler.start()
    jobs = {job.id for job in scheduler.scheduler.get_jobs()}
    assert jobs == {"scoring_sweep", "escalation_sweep", "outcome_sweep"}
