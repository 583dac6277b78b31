"""
Risk Scoring Schemas.

Risk levels, computed factor breakdowns, and API views of persisted scores.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field


class RiskLevel(StrEnum):
    """Ordinal risk bucket. Also used as alert severity."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    def next_level(self) -> Optional["RiskLevel"]:
        """One step up the ladder, or None when already critical."""
        if self.rank + 1 >= len(_RISK_ORDER):
            return None
        return _RISK_ORDER[self.rank + 1]


_RISK_ORDER = (RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL)


# ── Computation output (pure) ─────────────────────────────────────────


@dataclass(frozen=True)
class ScoredFactor:
    """How a single input signal moved the composite away from baseline."""
    factor_type: str
    factor_value: float          # raw signal value as supplied
    effect: float                # normalized effect in risk points, [-50, 50]
    weight: float                # [0, 1]
    contribution: float          # weight × effect
    description: str


@dataclass(frozen=True)
class RiskComputation:
    """
    Output of the Risk Scorer before persistence.

    composite = baseline + Σ contribution, so the factor list always
    reconciles with the score.
    """
    composite_score: float
    risk_level: RiskLevel
    churn_probability: float
    baseline: float
    factors: list[ScoredFactor]
    computed_at: datetime
    valid_until: datetime
    drivers: list[str] = field(default_factory=list)

    @property
    def contribution_total(self) -> float:
        return sum(f.contribution for f in self.factors)


# ── API views ─────────────────────────────────────────────────────────


class RiskFactorView(BaseModel):
    factor_type: str
    factor_value: float
    weight: float
    contribution: float
    description: Optional[str] = None


class RiskScoreView(BaseModel):
    """A persisted risk score snapshot."""
    id: str
    box_id: str
    membership_id: str
    overall_risk_score: float
    risk_level: RiskLevel
    churn_probability: float
    attendance_score: float
    performance_score: float
    engagement_score: float
    wellness_score: float
    attendance_trend: float
    performance_trend: float
    engagement_trend: float
    wellness_trend: float
    days_since_last_visit: int
    days_since_last_checkin: int
    days_since_last_pr: int
    calculated_at: str
    valid_until: str
    is_expired: bool = False
    factors: list[RiskFactorView] = Field(default_factory=list)
