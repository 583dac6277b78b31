"""
Alert & Escalation Schemas.

Closed vocabularies for alert type/status, trigger rules, the status
transition table, and API views.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Optional, Union

from pydantic import BaseModel, Field

from boxpulse.notifications.events import AlertEvent
from boxpulse.scoring.schemas import RiskLevel


# ── Enums ──────────────────────────────────────────────────────────────


class AlertType(StrEnum):
    DECLINING_PERFORMANCE = "declining_performance"
    POOR_ATTENDANCE = "poor_attendance"
    NEGATIVE_WELLNESS = "negative_wellness"
    NO_CHECKIN = "no_checkin"
    INJURY_RISK = "injury_risk"
    ENGAGEMENT_DROP = "engagement_drop"
    CHURN_RISK = "churn_risk"


class AlertStatus(StrEnum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


OPEN_STATUSES = (AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED)


class AlertAction(StrEnum):
    ACKNOWLEDGE = "acknowledge"
    RESOLVE = "resolve"
    DISMISS = "dismiss"


class RuleOperator(StrEnum):
    GT = "gt"           # greater than
    GTE = "gte"         # greater than or equal
    LT = "lt"           # less than
    LTE = "lte"         # less than or equal


# ── Transition table ───────────────────────────────────────────────────

TRANSITIONS: dict[AlertStatus, dict[AlertAction, AlertStatus]] = {
    AlertStatus.ACTIVE: {
        AlertAction.ACKNOWLEDGE: AlertStatus.ACKNOWLEDGED,
        AlertAction.RESOLVE: AlertStatus.RESOLVED,
        AlertAction.DISMISS: AlertStatus.DISMISSED,
    },
    AlertStatus.ACKNOWLEDGED: {
        AlertAction.RESOLVE: AlertStatus.RESOLVED,
        AlertAction.DISMISS: AlertStatus.DISMISSED,
    },
    AlertStatus.RESOLVED: {},
    AlertStatus.DISMISSED: {},
}


@dataclass(frozen=True)
class Ok:
    status: AlertStatus


@dataclass(frozen=True)
class InvalidTransition:
    current: AlertStatus
    action: AlertAction

    @property
    def message(self) -> str:
        return f"Cannot {self.action.value} an alert that is {self.current.value}"


@dataclass(frozen=True)
class Err:
    error: InvalidTransition


TransitionResult = Union[Ok, Err]


def apply_transition(current: AlertStatus, action: AlertAction) -> TransitionResult:
    """Pure transition function over the alert status state machine."""
    target = TRANSITIONS[current].get(action)
    if target is None:
        return Err(InvalidTransition(current=current, action=action))
    return Ok(target)


# ── Trigger rules ──────────────────────────────────────────────────────


class AlertTriggerRule(BaseModel):
    """
    A configurable alert trigger.

    Compares one metric of a risk score (composite, component score,
    trend or recency counter) against a threshold.
    """
    alert_type: AlertType
    metric: str
    operator: RuleOperator
    threshold: float
    min_risk_level: RiskLevel = RiskLevel.MEDIUM
    follow_up_days: int = Field(default=7, gt=0)
    title: str
    description: str = "{metric} is {value}"
    suggested_actions: list[str] = Field(default_factory=list)

    def matches(self, value: Optional[float]) -> bool:
        if value is None:
            return False
        if self.operator == RuleOperator.GT:
            return value > self.threshold
        if self.operator == RuleOperator.GTE:
            return value >= self.threshold
        if self.operator == RuleOperator.LT:
            return value < self.threshold
        return value <= self.threshold

    def render_description(self, value: float) -> str:
        return self.description.format(metric=self.metric, value=value)


# ── Results ────────────────────────────────────────────────────────────


class EvaluationOutcome(StrEnum):
    CREATED = "created"
    REFRESHED = "refreshed"


class AlertEvaluation(BaseModel):
    """What evaluate() did for one alert type."""
    alert_id: str
    alert_type: AlertType
    outcome: EvaluationOutcome
    severity: RiskLevel
    event: Optional[AlertEvent] = None


# ── API views ──────────────────────────────────────────────────────────


class EscalationView(BaseModel):
    id: str
    alert_id: str
    from_severity: RiskLevel
    to_severity: RiskLevel
    reason: str
    auto_escalated: bool
    escalated_at: str


class AlertView(BaseModel):
    id: str
    box_id: str
    membership_id: str
    assigned_coach_id: Optional[str] = None
    alert_type: AlertType
    severity: RiskLevel
    status: AlertStatus
    title: str
    description: str
    trigger_data: dict = Field(default_factory=dict)
    suggested_actions: dict = Field(default_factory=dict)
    acknowledged_at: Optional[str] = None
    acknowledged_by_id: Optional[str] = None
    resolved_at: Optional[str] = None
    resolved_by_id: Optional[str] = None
    resolution_notes: Optional[str] = None
    follow_up_at: Optional[str] = None
    reminders_sent: int = 0
    created_at: str = ""
    updated_at: str = ""
    escalations: list[EscalationView] = Field(default_factory=list)


class AlertListResponse(BaseModel):
    alerts: list[AlertView]
    total: int


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
