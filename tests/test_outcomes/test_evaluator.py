"""
Tests for the Outcome Evaluator.

Covers:
- Effectiveness score and category from pre/post deltas
- Category never contradicts the direction of the risk change
- Exactly one outcome per intervention, idempotent re-evaluation
- Deferral when signals or risk scores are not available yet
- Sweep only picks interventions whose window has closed
"""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from boxpulse.config import OutcomePolicy
from boxpulse.db.compat import utcnow
from boxpulse.db.models import InterventionOutcomeModel, RiskScore
from boxpulse.interventions.schemas import InterventionType
from boxpulse.interventions.tracker import InterventionTracker
from boxpulse.outcomes.evaluator import OutcomeEvaluator
from boxpulse.outcomes.schemas import Effectiveness, EvaluationStatus
from tests.helpers import AT_RISK_SIGNALS, HEALTHY_SIGNALS, add_score, add_snapshot, make_snapshot


@pytest.fixture
def evaluator():
    return OutcomeEvaluator(OutcomePolicy())


def _risk(value: float) -> RiskScore:
    return RiskScore(id=uuid.uuid4(), overall_risk_score=value)


def _pair(pre: dict, post: dict):
    member_id = uuid.uuid4()
    now = utcnow()
    return (
        make_snapshot(member_id, now - timedelta(days=30), **pre),
        make_snapshot(member_id, now, **post),
    )


# ── measure (pure) ─────────────────────────────────────────────────────


def test_improvement_is_positive(evaluator):
    pre, post = _pair(
        {"attendance_rate": 40.0, "checkin_rate": 30.0, "wellness_score": 40.0, "pr_activity_count": 1},
        {"attendance_rate": 60.0, "checkin_rate": 50.0, "wellness_score": 50.0, "pr_activity_count": 3},
    )
    m = evaluator.measure(pre, post, _risk(70.0), _risk(50.0))
    assert m.risk_score_change == -20.0
    assert m.attendance_rate_change == 20.0
    assert m.checkin_rate_change == 20.0
    assert m.wellness_score_change == 10.0
    assert m.pr_activity_change == 2
    assert m.effectiveness_score == pytest.approx(68.5)
    assert m.effectiveness == Effectiveness.POSITIVE
    assert "Risk score improved significantly" in m.notes


def test_decline_is_negative(evaluator):
    pre, post = _pair(
        {"attendance_rate": 60.0, "checkin_rate": 70.0, "wellness_score": 80.0, "pr_activity_count": 2},
        {"attendance_rate": 40.0, "checkin_rate": 50.0, "wellness_score": 70.0, "pr_activity_count": 1},
    )
    m = evaluator.measure(pre, post, _risk(50.0), _risk(60.0))
    assert m.risk_score_change == 10.0
    assert m.effectiveness_score == pytest.approx(35.5)
    assert m.effectiveness == Effectiveness.NEGATIVE
    assert "Attendance declined" in m.notes


def test_no_change_is_neutral(evaluator):
    pre, post = _pair({}, {})
    m = evaluator.measure(pre, post, _risk(40.0), _risk(40.0))
    assert m.effectiveness_score == 50.0
    assert m.effectiveness == Effectiveness.NEUTRAL
    assert m.notes == "No significant changes observed"


def test_score_clamped(evaluator):
    pre, post = _pair(
        {"attendance_rate": 0.0, "checkin_rate": 0.0, "wellness_score": 0.0, "pr_activity_count": 0},
        {"attendance_rate": 100.0, "checkin_rate": 100.0, "wellness_score": 100.0, "pr_activity_count": 20},
    )
    m = evaluator.measure(pre, post, _risk(100.0), _risk(0.0))
    assert m.effectiveness_score == 100.0
    assert m.effectiveness == Effectiveness.POSITIVE


@pytest.mark.parametrize(
    "pre_prs,post_prs,expected",
    [
        (0, 10, Effectiveness.POSITIVE),  # 60
        (0, 1, Effectiveness.NEUTRAL),  # 51
        (10, 0, Effectiveness.NEUTRAL),  # 40
        (11, 0, Effectiveness.NEGATIVE),  # 39
    ],
)
def test_category_thresholds_with_flat_risk(evaluator, pre_prs, post_prs, expected):
    pre, post = _pair({"pr_activity_count": pre_prs}, {"pr_activity_count": post_prs})
    assert evaluator.measure(pre, post, _risk(40.0), _risk(40.0)).effectiveness == expected


def test_small_risk_drop_is_positive(evaluator):
    pre, post = _pair({}, {})
    m = evaluator.measure(pre, post, _risk(70.0), _risk(60.0))
    assert m.effectiveness_score == pytest.approx(53.0)
    assert m.effectiveness == Effectiveness.POSITIVE


def test_risk_drop_with_attendance_dip_is_positive(evaluator):
    pre, post = _pair({"attendance_rate": 60.0}, {"attendance_rate": 20.0})
    m = evaluator.measure(pre, post, _risk(70.0), _risk(55.0))
    assert m.effectiveness_score == pytest.approx(44.5)
    assert m.effectiveness == Effectiveness.POSITIVE


def test_risk_drop_with_collapse_is_neutral(evaluator):
    pre, post = _pair(
        {"attendance_rate": 60.0, "checkin_rate": 70.0},
        {"attendance_rate": 0.0, "checkin_rate": 20.0},
    )
    m = evaluator.measure(pre, post, _risk(70.0), _risk(68.0))
    assert m.risk_score_change < 0
    assert m.effectiveness_score == pytest.approx(25.6)
    assert m.effectiveness == Effectiveness.NEUTRAL


def test_small_risk_rise_is_negative(evaluator):
    pre, post = _pair({}, {})
    m = evaluator.measure(pre, post, _risk(50.0), _risk(52.0))
    assert m.effectiveness_score == pytest.approx(49.4)
    assert m.effectiveness == Effectiveness.NEGATIVE


def test_risk_rise_with_big_gains_is_neutral(evaluator):
    pre, post = _pair(
        {"attendance_rate": 20.0, "checkin_rate": 20.0},
        {"attendance_rate": 60.0, "checkin_rate": 50.0},
    )
    m = evaluator.measure(pre, post, _risk(50.0), _risk(52.0))
    assert m.risk_score_change > 0
    assert m.effectiveness_score == pytest.approx(65.4)
    assert m.effectiveness == Effectiveness.NEUTRAL


def test_outcome_weights_validated():
    with pytest.raises(ValueError):
        OutcomePolicy(weights={"risk": 1.0})


def test_outcome_bands_validated():
    with pytest.raises(ValueError):
        OutcomePolicy(positive_threshold=40.0, negative_threshold=60.0)


# ── evaluate ───────────────────────────────────────────────────────────


async def _intervention(db, athlete, coach, at):
    return await InterventionTracker().record(
        db,
        box_id=athlete.box_id,
        membership_id=athlete.id,
        coach_id=coach.id,
        intervention_type=InterventionType.PHONE_CALL,
        description="Talked through schedule conflicts",
        intervention_at=at,
    )


async def _seed_window(db, athlete, t0, with_post_snapshot=True, **post_overrides):
    """Pre/post signals and scores around an intervention at t0."""
    await add_snapshot(db, athlete, t0 - timedelta(days=1), base=AT_RISK_SIGNALS)
    await add_score(db, athlete, t0 - timedelta(days=1), base=AT_RISK_SIGNALS)
    await add_score(db, athlete, t0 + timedelta(days=15), base=HEALTHY_SIGNALS)
    if with_post_snapshot:
        await add_snapshot(db, athlete, t0 + timedelta(days=31), base=HEALTHY_SIGNALS, **post_overrides)


async def _outcome_count(session, intervention_id) -> int:
    return await session.scalar(
        select(func.count())
        .select_from(InterventionOutcomeModel)
        .where(InterventionOutcomeModel.intervention_id == intervention_id)
    )


@pytest.mark.asyncio
async def test_evaluate_records_outcome_once(db, athlete, coach, evaluator):
    now = utcnow()
    t0 = now - timedelta(days=40)
    await _seed_window(db, athlete, t0)
    intervention = await _intervention(db, athlete, coach, t0)

    result = await evaluator.evaluate(db, intervention, now)
    assert result.status == EvaluationStatus.RECORDED
    assert result.effectiveness == Effectiveness.POSITIVE

    outcome = await db.get(InterventionOutcomeModel, uuid.UUID(result.outcome_id))
    assert outcome.risk_score_change == pytest.approx(29.04 - 73.43, abs=0.02)
    assert outcome.attendance_rate_change == 40.0
    assert outcome.pr_activity_change == 2
    assert outcome.outcome_period_start == t0
    assert outcome.outcome_period_end == t0 + timedelta(days=30)
    assert outcome.pre_risk_score_id is not None
    assert outcome.post_risk_score_id is not None

    again = await evaluator.evaluate(db, intervention, now)
    assert again.status == EvaluationStatus.ALREADY_RECORDED
    assert again.outcome_id == result.outcome_id
    assert await _outcome_count(db, intervention.id) == 1


@pytest.mark.asyncio
async def test_evaluate_risk_drop_alone_is_positive(db, athlete, coach, evaluator):
    now = utcnow()
    t0 = now - timedelta(days=40)
    await add_snapshot(db, athlete, t0 - timedelta(days=1))
    await add_snapshot(db, athlete, t0 + timedelta(days=31))
    await add_score(db, athlete, t0 - timedelta(days=1), base=AT_RISK_SIGNALS)
    await add_score(db, athlete, t0 + timedelta(days=15), base=AT_RISK_SIGNALS, attendance_score=40.0)
    intervention = await _intervention(db, athlete, coach, t0)

    result = await evaluator.evaluate(db, intervention, now)
    assert result.status == EvaluationStatus.RECORDED
    assert result.effectiveness == Effectiveness.POSITIVE

    outcome = await db.get(InterventionOutcomeModel, uuid.UUID(result.outcome_id))
    assert outcome.risk_score_change < 0
    assert outcome.attendance_rate_change == 0
    assert outcome.checkin_rate_change == 0
    assert outcome.pr_activity_change == 0
    assert 50.0 < float(outcome.effectiveness_score) < 60.0
    assert outcome.effectiveness == "positive"


@pytest.mark.asyncio
async def test_evaluate_not_due_inside_window(db, athlete, coach, evaluator):
    intervention = await _intervention(db, athlete, coach, utcnow() - timedelta(days=5))
    result = await evaluator.evaluate(db, intervention)
    assert result.status == EvaluationStatus.NOT_DUE
    assert await _outcome_count(db, intervention.id) == 0


@pytest.mark.asyncio
async def test_evaluate_defers_without_post_snapshot(db, athlete, coach, evaluator):
    now = utcnow()
    t0 = now - timedelta(days=40)
    await _seed_window(db, athlete, t0, with_post_snapshot=False)
    intervention = await _intervention(db, athlete, coach, t0)

    result = await evaluator.evaluate(db, intervention, now)
    assert result.status == EvaluationStatus.DEFERRED
    assert "no signal snapshot after window close" in result.reasons
    assert await _outcome_count(db, intervention.id) == 0


@pytest.mark.asyncio
async def test_evaluate_defers_on_missing_activity_metric(db, athlete, coach, evaluator):
    now = utcnow()
    t0 = now - timedelta(days=40)
    await _seed_window(db, athlete, t0, checkin_rate=None)
    intervention = await _intervention(db, athlete, coach, t0)

    result = await evaluator.evaluate(db, intervention, now)
    assert result.status == EvaluationStatus.DEFERRED
    assert result.reasons == ["post snapshot missing ['checkin_rate']"]


@pytest.mark.asyncio
async def test_evaluate_defers_without_risk_in_window(db, athlete, coach, evaluator):
    now = utcnow()
    t0 = now - timedelta(days=40)
    await add_snapshot(db, athlete, t0 - timedelta(days=1))
    await add_snapshot(db, athlete, t0 + timedelta(days=31))
    await add_score(db, athlete, t0 - timedelta(days=1))
    intervention = await _intervention(db, athlete, coach, t0)

    result = await evaluator.evaluate(db, intervention, now)
    assert result.status == EvaluationStatus.DEFERRED
    assert result.reasons == ["no risk score inside observation window"]


# ── Sweep ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_sweep_records_ready_and_defers_rest(
    db, session_factory, athlete, second_athlete, coach, evaluator
):
    now = utcnow()
    t0 = now - timedelta(days=40)
    await _seed_window(db, athlete, t0)
    ready = await _intervention(db, athlete, coach, t0)
    waiting = await _intervention(db, second_athlete, coach, t0)
    await _intervention(db, athlete, coach, now - timedelta(days=3))
    await db.commit()

    first = await evaluator.sweep_box(session_factory, athlete.box_id, now=now)
    assert first.processed == 2
    assert first.changed == 1
    assert first.deferred == 1

    second = await evaluator.sweep_box(session_factory, athlete.box_id, now=now)
    assert second.processed == 1
    assert second.changed == 0
    assert second.deferred == 1

    async with session_factory() as session:
        assert await _outcome_count(session, ready.id) == 1
        assert await _outcome_count(session, waiting.id) == 0
