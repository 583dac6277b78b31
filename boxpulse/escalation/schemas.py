"""
Escalation Schemas.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel

from boxpulse.scoring.schemas import RiskLevel


class EscalationTrigger(StrEnum):
    SLA_BREACH = "sla_breach"           # follow-up overdue, never acknowledged
    RISK_INCREASE = "risk_increase"     # member's bucket now above alert severity
    MANUAL = "manual"


@dataclass(frozen=True)
class EscalationDecision:
    """What the controller intends to do to one alert."""
    triggers: tuple[EscalationTrigger, ...]
    from_severity: RiskLevel
    to_severity: RiskLevel
    reason: str
    rearm_follow_up_at: Optional[datetime] = None


class ManualEscalationRequest(BaseModel):
    reason: str
    to_severity: Optional[RiskLevel] = None
