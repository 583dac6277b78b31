"""
Intervention Outcome Schemas.

Measured effect of a coach intervention over its observation window.
All stored deltas are post − pre; the effectiveness score flips the sign
of the risk delta so that a falling risk score counts in its favour.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel


class Effectiveness(StrEnum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class EvaluationStatus(StrEnum):
    RECORDED = "recorded"
    DEFERRED = "deferred"               # window closed but signals not ready
    NOT_DUE = "not_due"                 # window still open
    ALREADY_RECORDED = "already_recorded"


@dataclass(frozen=True)
class OutcomeMeasurement:
    """Pure result of comparing pre/post metrics."""
    risk_score_change: float
    attendance_rate_change: float
    checkin_rate_change: float
    wellness_score_change: float
    pr_activity_change: int
    effectiveness_score: float
    effectiveness: Effectiveness
    notes: str


@dataclass(frozen=True)
class OutcomeEvaluationResult:
    intervention_id: str
    status: EvaluationStatus
    outcome_id: Optional[str] = None
    effectiveness: Optional[Effectiveness] = None
    reasons: list[str] = field(default_factory=list)


class InterventionOutcomeView(BaseModel):
    id: str
    intervention_id: str
    membership_id: str
    risk_score_change: float
    attendance_rate_change: float
    checkin_rate_change: float
    wellness_score_change: float
    pr_activity_change: int
    effectiveness: Effectiveness
    effectiveness_score: float
    outcome_period_start: str
    outcome_period_end: str
    measured_at: str
    notes: Optional[str] = None


def window_bounds(intervention_at: datetime, window_days: int) -> tuple[datetime, datetime]:
    return intervention_at, intervention_at + timedelta(days=window_days)
