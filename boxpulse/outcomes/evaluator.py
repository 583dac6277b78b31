"""
Outcome Evaluator — measures whether an intervention moved the member's
trajectory, once its observation window has closed.

Inputs per intervention (window = [intervention_at, intervention_at + N days]):
- pre signals:  latest snapshot captured at or before intervention_at
- post signals: earliest snapshot captured at or after window close
- pre risk:     latest RiskScore at or before intervention_at
- post risk:    latest RiskScore inside the window

If any of these is missing or lacks an activity metric, the evaluation is
deferred and retried on the next sweep. Nothing partial is ever written.

Effectiveness:
    score = clamp(50 + Σ w_k × change_k, 0, 100)
    where risk change counts as (pre − post) and the PR delta is scaled
    so one extra PR weighs like a ten point swing.

Category follows the direction of the risk change: a drop in risk is
positive unless the score falls below the negative cut-off (then
neutral), a rise is negative unless the score reaches the positive
cut-off (then neutral). With no risk change the score alone decides:
>= 60 positive, >= 40 neutral, below that negative.
"""

import uuid
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boxpulse.config import OutcomePolicy
from boxpulse.db.compat import utcnow
from boxpulse.db.models import Intervention, InterventionOutcomeModel, RiskScore
from boxpulse.db.queries import (
    get_intervention,
    get_interventions_due_for_outcome,
    get_latest_risk_score_between,
    get_outcome_for_intervention,
)
from boxpulse.outcomes.schemas import (
    Effectiveness,
    EvaluationStatus,
    OutcomeEvaluationResult,
    OutcomeMeasurement,
    window_bounds,
)
from boxpulse.services.report import SweepReport
from boxpulse.signals.schemas import SignalSnapshot
from boxpulse.signals.store import DatabaseSignalStore, SignalStore

logger = structlog.get_logger(__name__)


class OutcomeEvaluator:

    def __init__(
        self,
        policy: Optional[OutcomePolicy] = None,
        store: Optional[SignalStore] = None,
    ):
        self.policy = policy or OutcomePolicy()
        self.store = store or DatabaseSignalStore()

    # ── Measurement (pure) ────────────────────────────────────────────

    def measure(
        self,
        pre: SignalSnapshot,
        post: SignalSnapshot,
        pre_score: RiskScore,
        post_score: RiskScore,
    ) -> OutcomeMeasurement:
        risk_change = round(float(post_score.overall_risk_score) - float(pre_score.overall_risk_score), 2)
        attendance_change = round(float(post.attendance_rate) - float(pre.attendance_rate), 2)
        checkin_change = round(float(post.checkin_rate) - float(pre.checkin_rate), 2)
        wellness_change = round(float(post.wellness_score) - float(pre.wellness_score), 2)
        pr_change = int(post.pr_activity_count) - int(pre.pr_activity_count)

        w = self.policy.weights
        raw = (
            self.policy.neutral_score
            + w["risk"] * -risk_change
            + w["attendance"] * attendance_change
            + w["checkin"] * checkin_change
            + w["wellness"] * wellness_change
            + w["performance"] * pr_change * self.policy.pr_change_scale
        )
        score = round(max(0.0, min(100.0, raw)), 2)

        category = self._categorize(score, risk_change)

        return OutcomeMeasurement(
            risk_score_change=risk_change,
            attendance_rate_change=attendance_change,
            checkin_rate_change=checkin_change,
            wellness_score_change=wellness_change,
            pr_activity_change=pr_change,
            effectiveness_score=score,
            effectiveness=category,
            notes=_notes(risk_change, attendance_change, checkin_change, wellness_change, pr_change),
        )

    def _categorize(self, score: float, risk_change: float) -> Effectiveness:
        """
        Map a score to a category without contradicting the risk delta.

        A fall in risk is never negative and a rise is never positive; the
        cut-offs only decide between that direction and neutral. A flat
        risk score is banded by the cut-offs alone.
        """
        if risk_change < 0:
            if score >= self.policy.negative_threshold:
                return Effectiveness.POSITIVE
            return Effectiveness.NEUTRAL
        if risk_change > 0:
            if score < self.policy.positive_threshold:
                return Effectiveness.NEGATIVE
            return Effectiveness.NEUTRAL
        if score >= self.policy.positive_threshold:
            return Effectiveness.POSITIVE
        if score >= self.policy.negative_threshold:
            return Effectiveness.NEUTRAL
        return Effectiveness.NEGATIVE

    # ── Per-intervention evaluation ───────────────────────────────────

    async def evaluate(
        self,
        session: AsyncSession,
        intervention: Intervention,
        now: Optional[datetime] = None,
    ) -> OutcomeEvaluationResult:
        """
        Measure one intervention and write its outcome (flush, no commit).

        Returns a deferral instead of raising when inputs are not ready.
        """
        now = now or utcnow()
        iid = str(intervention.id)
        start, end = window_bounds(intervention.intervention_date, self.policy.window_days)
        if now < end:
            return OutcomeEvaluationResult(intervention_id=iid, status=EvaluationStatus.NOT_DUE)

        existing = await get_outcome_for_intervention(session, intervention.id)
        if existing is not None:
            return OutcomeEvaluationResult(
                intervention_id=iid,
                status=EvaluationStatus.ALREADY_RECORDED,
                outcome_id=str(existing.id),
                effectiveness=Effectiveness(existing.effectiveness),
            )

        box_id, member_id = intervention.box_id, intervention.membership_id
        pre = await self.store.get_snapshot(session, box_id, member_id, start)
        post = await self.store.get_snapshot_after(session, box_id, member_id, end)
        pre_score = await get_latest_risk_score_between(session, box_id, member_id, None, start)
        post_score = await get_latest_risk_score_between(session, box_id, member_id, start, end)

        reasons: list[str] = []
        if pre is None:
            reasons.append("no signal snapshot before intervention")
        elif pre.missing_activity_metrics():
            reasons.append(f"pre snapshot missing {pre.missing_activity_metrics()}")
        if post is None:
            reasons.append("no signal snapshot after window close")
        elif post.missing_activity_metrics():
            reasons.append(f"post snapshot missing {post.missing_activity_metrics()}")
        if pre_score is None:
            reasons.append("no risk score before intervention")
        if post_score is None:
            reasons.append("no risk score inside observation window")

        if reasons:
            logger.info("outcome_deferred", intervention_id=iid, reasons=reasons)
            return OutcomeEvaluationResult(
                intervention_id=iid, status=EvaluationStatus.DEFERRED, reasons=reasons
            )

        m = self.measure(pre, post, pre_score, post_score)
        outcome = InterventionOutcomeModel(
            intervention_id=intervention.id,
            membership_id=member_id,
            box_id=box_id,
            risk_score_change=m.risk_score_change,
            attendance_rate_change=m.attendance_rate_change,
            checkin_rate_change=m.checkin_rate_change,
            wellness_score_change=m.wellness_score_change,
            pr_activity_change=m.pr_activity_change,
            effectiveness=m.effectiveness.value,
            effectiveness_score=m.effectiveness_score,
            pre_risk_score_id=pre_score.id,
            post_risk_score_id=post_score.id,
            outcome_period_start=start,
            outcome_period_end=end,
            measured_at=now,
            notes=m.notes,
        )
        try:
            async with session.begin_nested():
                session.add(outcome)
                await session.flush()
        except IntegrityError:
            logger.info("outcome_already_recorded", intervention_id=iid)
            return OutcomeEvaluationResult(
                intervention_id=iid, status=EvaluationStatus.ALREADY_RECORDED
            )

        logger.info(
            "outcome_recorded",
            intervention_id=iid,
            outcome_id=str(outcome.id),
            effectiveness=m.effectiveness.value,
            effectiveness_score=m.effectiveness_score,
            risk_score_change=m.risk_score_change,
        )
        return OutcomeEvaluationResult(
            intervention_id=iid,
            status=EvaluationStatus.RECORDED,
            outcome_id=str(outcome.id),
            effectiveness=m.effectiveness,
        )

    # ── Sweep ─────────────────────────────────────────────────────────

    async def sweep_box(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        box_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> SweepReport:
        """Evaluate every intervention in the box whose window has closed."""
        now = now or utcnow()
        report = SweepReport(job="outcomes", box_id=str(box_id))
        log = logger.bind(job="outcomes", box_id=str(box_id))

        after_id: Optional[uuid.UUID] = None
        while True:
            async with session_factory() as session:
                page = await get_interventions_due_for_outcome(
                    session,
                    box_id,
                    window_days=self.policy.window_days,
                    now=now,
                    after_id=after_id,
                    page_size=self.policy.page_size,
                )
                ids = [i.id for i in page]
            if not ids:
                break
            after_id = ids[-1]

            for intervention_id in ids:
                report.processed += 1
                try:
                    result = await self._evaluate_one(session_factory, box_id, intervention_id, now)
                except Exception as e:
                    log.error(
                        "outcome_item_failed",
                        intervention_id=str(intervention_id),
                        error=str(e),
                    )
                    report.record_failure(str(intervention_id), e)
                    continue
                if result.status == EvaluationStatus.RECORDED:
                    report.changed += 1
                elif result.status == EvaluationStatus.DEFERRED:
                    report.deferred += 1
                else:
                    report.skipped += 1

            if len(ids) < self.policy.page_size:
                break

        log.info("outcome_sweep_complete", **report.as_log_fields())
        return report

    async def _evaluate_one(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        box_id: uuid.UUID,
        intervention_id: uuid.UUID,
        now: datetime,
    ) -> OutcomeEvaluationResult:
        async with session_factory() as session:
            async with session.begin():
                intervention = await get_intervention(session, box_id, intervention_id)
                if intervention is None:
                    return OutcomeEvaluationResult(
                        intervention_id=str(intervention_id),
                        status=EvaluationStatus.ALREADY_RECORDED,
                    )
                return await self.evaluate(session, intervention, now)


def _notes(risk: float, attendance: float, checkin: float, wellness: float, pr: int) -> str:
    notes: list[str] = []
    if risk < -5:
        notes.append("Risk score improved significantly")
    elif risk > 5:
        notes.append("Risk score worsened")
    if attendance > 10:
        notes.append("Attendance improved notably")
    elif attendance < -10:
        notes.append("Attendance declined")
    if checkin > 15:
        notes.append("Check-in engagement improved")
    elif checkin < -15:
        notes.append("Check-in engagement declined")
    if wellness > 5:
        notes.append("Wellness indicators improved")
    elif wellness < -5:
        notes.append("Wellness indicators declined")
    if pr > 0:
        notes.append("Performance activity increased")
    elif pr < 0:
        notes.append("Performance activity decreased")
    return "; ".join(notes) if notes else "No significant changes observed"
