"""
Intervention API Endpoints.

POST /api/v1/interventions                              — record a coach intervention
GET  /api/v1/interventions                              — by member, or the caller's pending follow-ups
POST /api/v1/interventions/{intervention_id}/follow-up/complete
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from boxpulse.alerting.schemas import iso
from boxpulse.auth.dependencies import get_box_id, get_coach_id, get_db
from boxpulse.db.models import Intervention
from boxpulse.interventions.schemas import (
    InterventionCreate,
    InterventionListResponse,
    InterventionOutcome,
    InterventionType,
    InterventionView,
)
from boxpulse.interventions.tracker import InterventionTracker

router = APIRouter(prefix="/api/v1/interventions", tags=["interventions"])

_tracker = InterventionTracker()


def _parse_uuid(value: str, field: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"{field} is not a valid id")


def intervention_view(i: Intervention) -> InterventionView:
    return InterventionView(
        id=str(i.id),
        box_id=str(i.box_id),
        membership_id=str(i.membership_id),
        coach_id=str(i.coach_id),
        alert_id=str(i.alert_id) if i.alert_id else None,
        intervention_type=InterventionType(i.intervention_type),
        title=i.title,
        description=i.description,
        outcome=InterventionOutcome(i.outcome) if i.outcome else None,
        member_response=i.member_response,
        coach_notes=i.coach_notes,
        follow_up_required=i.follow_up_required,
        follow_up_at=iso(i.follow_up_at),
        follow_up_completed=i.follow_up_completed,
        follow_up_completed_at=iso(i.follow_up_completed_at),
        intervention_date=iso(i.intervention_date),
        created_at=iso(i.created_at) or "",
    )


@router.post("", response_model=InterventionView, status_code=201)
async def record_intervention(
    body: InterventionCreate,
    db: AsyncSession = Depends(get_db),
    box_id: uuid.UUID = Depends(get_box_id),
    coach_id: uuid.UUID = Depends(get_coach_id),
):
    """Record an intervention by the calling coach, optionally linked to an alert."""
    intervention = await _tracker.record(
        db,
        box_id=box_id,
        membership_id=_parse_uuid(body.membership_id, "membership_id"),
        coach_id=coach_id,
        intervention_type=body.intervention_type,
        description=body.description,
        alert_id=_parse_uuid(body.alert_id, "alert_id") if body.alert_id else None,
        title=body.title,
        outcome=body.outcome,
        member_response=body.member_response,
        coach_notes=body.coach_notes,
        follow_up_required=body.follow_up_required,
        follow_up_at=body.follow_up_at,
        intervention_at=body.intervention_at,
    )
    return intervention_view(intervention)


@router.get("", response_model=InterventionListResponse)
async def list_interventions(
    member_id: Optional[uuid.UUID] = Query(None),
    pending_follow_ups: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    box_id: uuid.UUID = Depends(get_box_id),
    coach_id: uuid.UUID = Depends(get_coach_id),
):
    if pending_follow_ups:
        rows = await _tracker.pending_follow_ups(db, box_id, coach_id)
    elif member_id is not None:
        rows = await _tracker.list_for_member(db, box_id, member_id, limit=limit)
    else:
        raise HTTPException(status_code=422, detail="member_id or pending_follow_ups is required")
    items = [intervention_view(i) for i in rows]
    return InterventionListResponse(interventions=items, total=len(items))


@router.post("/{intervention_id}/follow-up/complete", response_model=InterventionView)
async def complete_follow_up(
    intervention_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    box_id: uuid.UUID = Depends(get_box_id),
):
    intervention = await _tracker.complete_follow_up(db, box_id, intervention_id)
    return intervention_view(intervention)
