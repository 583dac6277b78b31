"""
Intervention Outcome API Endpoints.

GET /api/v1/interventions/{intervention_id}/outcome — measured outcome, 404 until the window is evaluated
"""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from boxpulse.alerting.schemas import iso
from boxpulse.auth.dependencies import get_box_id, get_db
from boxpulse.db.queries import get_intervention, get_outcome_for_intervention
from boxpulse.errors import NotFoundError
from boxpulse.outcomes.schemas import Effectiveness, InterventionOutcomeView

router = APIRouter(prefix="/api/v1/interventions", tags=["outcomes"])


@router.get("/{intervention_id}/outcome", response_model=InterventionOutcomeView)
async def get_intervention_outcome(
    intervention_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    box_id: uuid.UUID = Depends(get_box_id),
):
    if await get_intervention(db, box_id, intervention_id) is None:
        raise NotFoundError("Intervention not found", intervention_id=str(intervention_id))
    o = await get_outcome_for_intervention(db, intervention_id)
    if o is None:
        raise NotFoundError(
            "Outcome not measured yet", intervention_id=str(intervention_id)
        )
    return InterventionOutcomeView(
        id=str(o.id),
        intervention_id=str(o.intervention_id),
        membership_id=str(o.membership_id),
        risk_score_change=float(o.risk_score_change),
        attendance_rate_change=float(o.attendance_rate_change),
        checkin_rate_change=float(o.checkin_rate_change),
        wellness_score_change=float(o.wellness_score_change),
        pr_activity_change=o.pr_activity_change,
        effectiveness=Effectiveness(o.effectiveness),
        effectiveness_score=float(o.effectiveness_score),
        outcome_period_start=iso(o.outcome_period_start),
        outcome_period_end=iso(o.outcome_period_end),
        measured_at=iso(o.measured_at),
        notes=o.notes,
    )
