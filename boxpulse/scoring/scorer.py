"""
Risk Scorer + Factor Recorder.

Turns a complete SignalSnapshot into a composite churn-risk score:

  effect_i       ∈ [-50, 50]   risk points relative to a neutral member
  contribution_i = weight_i × effect_i
  composite      = baseline + Σ contribution_i

Because the weights sum to 1 and every effect is bounded, the composite
always lands in [0, 100] and the factor breakdown reconciles with the
score by construction. Churn probability is a logistic transform of the
composite, calibrated separately from the bucket thresholds.
"""

import math
import uuid
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from boxpulse.config import (
    ALL_SIGNALS,
    COMPONENT_SIGNALS,
    RECENCY_SIGNALS,
    TREND_SIGNALS,
    ScoringPolicy,
)
from boxpulse.db.compat import utcnow
from boxpulse.db.models import RiskFactorModel, RiskScore
from boxpulse.errors import InputIncompleteError
from boxpulse.scoring.schemas import RiskComputation, ScoredFactor
from boxpulse.signals.schemas import SignalSnapshot

logger = structlog.get_logger(__name__)

MAX_EFFECT = 50.0
_LABELS = {
    "attendance_score": "Attendance score",
    "performance_score": "Performance score",
    "engagement_score": "Engagement score",
    "wellness_score": "Wellness score",
    "attendance_trend": "Attendance trend",
    "performance_trend": "Performance trend",
    "engagement_trend": "Engagement trend",
    "wellness_trend": "Wellness trend",
    "days_since_last_visit": "Days since last visit",
    "days_since_last_checkin": "Days since last check-in",
    "days_since_last_pr": "Days since last PR",
}


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


class RiskScorer:
    """
    Deterministic, stateless composite risk scorer.

    Usage:
        scorer = RiskScorer(settings.scoring)
        computation = scorer.compute(snapshot)
        score = await scorer.record(session, box_id, snapshot, computation)
    """

    def __init__(self, policy: Optional[ScoringPolicy] = None):
        self.policy = policy or ScoringPolicy()

    # ── Pure computation ──────────────────────────────────────────────

    def signal_effect(self, name: str, value: float) -> float:
        """Normalized risk effect of one signal, in [-50, 50]. Positive means riskier."""
        if name in COMPONENT_SIGNALS:
            return _clamp(MAX_EFFECT - value, -MAX_EFFECT, MAX_EFFECT)
        if name in TREND_SIGNALS:
            # Negative deltas (declines) increase risk
            return _clamp(-value / self.policy.trend_scale_pct, -1.0, 1.0) * MAX_EFFECT
        if name in RECENCY_SIGNALS:
            curve = self.policy.recency[name]
            span = curve.saturation_days - curve.neutral_days
            return _clamp((value - curve.neutral_days) / span, -1.0, 1.0) * MAX_EFFECT
        raise KeyError(f"unknown signal: {name}")

    def churn_probability(self, composite: float) -> float:
        k = self.policy.churn_steepness
        return round(1.0 / (1.0 + math.exp(-k * (composite - self.policy.churn_midpoint))), 4)

    def compute(self, snapshot: SignalSnapshot, now: Optional[datetime] = None) -> RiskComputation:
        """
        Score one snapshot.

        Raises:
            InputIncompleteError: if any required signal is missing.
        """
        missing = snapshot.missing_signals()
        if missing:
            raise InputIncompleteError(missing, member_id=str(snapshot.membership_id))

        now = now or utcnow()
        factors: list[ScoredFactor] = []
        for name in ALL_SIGNALS:
            value = float(snapshot.value(name))
            weight = self.policy.weights[name]
            effect = round(self.signal_effect(name, value), 4)
            contribution = round(weight * effect, 4)
            factors.append(ScoredFactor(
                factor_type=name,
                factor_value=value,
                effect=effect,
                weight=weight,
                contribution=contribution,
                description=_describe(name, value, contribution),
            ))

        baseline = self.policy.neutral_baseline
        raw = baseline + sum(f.contribution for f in factors)
        composite = round(_clamp(raw, 0.0, 100.0), 2)

        drivers = [
            f.factor_type
            for f in sorted(factors, key=lambda f: f.contribution, reverse=True)
            if f.contribution > 0
        ][:3]

        return RiskComputation(
            composite_score=composite,
            risk_level=self.policy.bucket_for(composite),
            churn_probability=self.churn_probability(composite),
            baseline=baseline,
            factors=factors,
            computed_at=now,
            valid_until=now + timedelta(days=self.policy.validity_days),
            drivers=drivers,
        )

    # ── Factor recorder ───────────────────────────────────────────────

    async def record(
        self,
        session: AsyncSession,
        box_id: uuid.UUID,
        snapshot: SignalSnapshot,
        computation: RiskComputation,
    ) -> RiskScore:
        """Persist a RiskScore plus one RiskFactor row per signal (flush, no commit)."""
        score = RiskScore(
            box_id=box_id,
            membership_id=snapshot.membership_id,
            overall_risk_score=computation.composite_score,
            risk_level=computation.risk_level.value,
            churn_probability=computation.churn_probability,
            attendance_score=_clamp(float(snapshot.attendance_score), 0.0, 100.0),
            performance_score=_clamp(float(snapshot.performance_score), 0.0, 100.0),
            engagement_score=_clamp(float(snapshot.engagement_score), 0.0, 100.0),
            wellness_score=_clamp(float(snapshot.wellness_score), 0.0, 100.0),
            attendance_trend=float(snapshot.attendance_trend),
            performance_trend=float(snapshot.performance_trend),
            engagement_trend=float(snapshot.engagement_trend),
            wellness_trend=float(snapshot.wellness_trend),
            days_since_last_visit=max(0, int(snapshot.days_since_last_visit)),
            days_since_last_checkin=max(0, int(snapshot.days_since_last_checkin)),
            days_since_last_pr=max(0, int(snapshot.days_since_last_pr)),
            factors={
                "baseline": computation.baseline,
                "drivers": computation.drivers,
                "contribution_total": round(computation.contribution_total, 4),
                "signals_captured_at": snapshot.captured_at.isoformat(),
            },
            calculated_at=computation.computed_at,
            valid_until=computation.valid_until,
        )
        score.factor_rows = [
            RiskFactorModel(
                membership_id=snapshot.membership_id,
                factor_type=f.factor_type,
                factor_value=f.factor_value,
                weight=f.weight,
                contribution=f.contribution,
                description=f.description,
                metadata_={"effect": f.effect},
            )
            for f in computation.factors
        ]
        session.add(score)
        await session.flush()

        logger.info(
            "risk_score_recorded",
            risk_score_id=str(score.id),
            membership_id=str(snapshot.membership_id),
            composite=computation.composite_score,
            risk_level=computation.risk_level.value,
            drivers=computation.drivers,
        )
        return score


def _describe(name: str, value: float, contribution: float) -> str:
    label = _LABELS.get(name, name)
    direction = "raises" if contribution > 0 else "lowers" if contribution < 0 else "does not change"
    if name in COMPONENT_SIGNALS:
        shown = f"{value:.0f}/100"
    elif name in TREND_SIGNALS:
        shown = f"{value:+.1f}% vs prior period"
    else:
        shown = f"{value:.0f} days"
    return f"{label} {shown} {direction} risk by {abs(contribution):.2f}"
