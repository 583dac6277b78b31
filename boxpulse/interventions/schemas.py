"""
Intervention Schemas.
"""

from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class InterventionType(StrEnum):
    CHECK_IN_MESSAGE = "check_in_message"
    PHONE_CALL = "phone_call"
    IN_PERSON_CHAT = "in_person_chat"
    PROGRAM_ADJUSTMENT = "program_adjustment"
    GOAL_SETTING = "goal_setting"
    SOCIAL_INVITE = "social_invite"
    RECOVERY_PLAN = "recovery_plan"
    OTHER = "other"


class InterventionOutcome(StrEnum):
    """Coach-observed reaction at the time of the intervention."""
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"
    NO_RESPONSE = "no_response"


class InterventionCreate(BaseModel):
    membership_id: str
    intervention_type: InterventionType
    title: str = Field(min_length=1, max_length=500)
    description: str = Field(min_length=1)
    alert_id: Optional[str] = None
    outcome: Optional[InterventionOutcome] = None
    member_response: Optional[str] = None
    coach_notes: Optional[str] = None
    follow_up_required: bool = False
    follow_up_at: Optional[datetime] = None
    intervention_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_follow_up(self):
        if self.follow_up_at is not None and not self.follow_up_required:
            raise ValueError("follow_up_at requires follow_up_required")
        return self


class InterventionView(BaseModel):
    id: str
    box_id: str
    membership_id: str
    coach_id: str
    alert_id: Optional[str] = None
    intervention_type: InterventionType
    title: str
    description: str
    outcome: Optional[InterventionOutcome] = None
    member_response: Optional[str] = None
    coach_notes: Optional[str] = None
    follow_up_required: bool
    follow_up_at: Optional[str] = None
    follow_up_completed: bool
    follow_up_completed_at: Optional[str] = None
    intervention_date: str
    created_at: str = ""


class InterventionListResponse(BaseModel):
    interventions: list[InterventionView]
    total: int
