"""
Risk Score API Endpoints.

POST /api/v1/risk/members/{member_id}/recompute — score now, evaluate alerts
GET  /api/v1/risk/members/{member_id}/current   — current score with factor breakdown
GET  /api/v1/risk/members/{member_id}/history   — all scores, newest first
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from boxpulse.alerting.manager import AlertManager
from boxpulse.alerting.schemas import AlertEvaluation, iso
from boxpulse.auth.dependencies import get_box_id, get_db
from boxpulse.config import settings
from boxpulse.db.compat import utcnow
from boxpulse.db.models import RiskScore
from boxpulse.db.queries import get_current_risk_score, get_membership, get_risk_history
from boxpulse.errors import NotFoundError
from boxpulse.notifications.events import build_publisher
from boxpulse.scoring.schemas import RiskFactorView, RiskLevel, RiskScoreView
from boxpulse.scoring.scorer import RiskScorer
from boxpulse.services.pipeline import ScoringPipeline

router = APIRouter(prefix="/api/v1/risk", tags=["risk"])

_pipeline = ScoringPipeline(
    scorer=RiskScorer(settings.scoring),
    alerts=AlertManager(settings.alert_policy),
    publisher=build_publisher(
        settings.notification_webhook_url, settings.notification_timeout_seconds
    ),
)


class RecomputeResponse(BaseModel):
    score: RiskScoreView
    alerts: list[AlertEvaluation]


class RiskHistoryResponse(BaseModel):
    membership_id: str
    scores: list[RiskScoreView]
    total: int


def risk_score_view(score: RiskScore, with_factors: bool = True) -> RiskScoreView:
    factors = []
    if with_factors:
        factors = [
            RiskFactorView(
                factor_type=f.factor_type,
                factor_value=float(f.factor_value),
                weight=float(f.weight),
                contribution=float(f.contribution),
                description=f.description,
            )
            for f in score.factor_rows
        ]
    return RiskScoreView(
        id=str(score.id),
        box_id=str(score.box_id),
        membership_id=str(score.membership_id),
        overall_risk_score=float(score.overall_risk_score),
        risk_level=RiskLevel(score.risk_level),
        churn_probability=float(score.churn_probability),
        attendance_score=float(score.attendance_score),
        performance_score=float(score.performance_score),
        engagement_score=float(score.engagement_score),
        wellness_score=float(score.wellness_score),
        attendance_trend=float(score.attendance_trend),
        performance_trend=float(score.performance_trend),
        engagement_trend=float(score.engagement_trend),
        wellness_trend=float(score.wellness_trend),
        days_since_last_visit=score.days_since_last_visit,
        days_since_last_checkin=score.days_since_last_checkin,
        days_since_last_pr=score.days_since_last_pr,
        calculated_at=iso(score.calculated_at),
        valid_until=iso(score.valid_until),
        is_expired=score.valid_until <= utcnow(),
        factors=factors,
    )


@router.post("/members/{member_id}/recompute", response_model=RecomputeResponse)
async def recompute_member(
    member_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    box_id: uuid.UUID = Depends(get_box_id),
):
    """
    Score a member on demand.

    Fails with 422 input_incomplete if the signal store has no complete
    snapshot; no score is written in that case.
    """
    result = await _pipeline.recompute(db, box_id, member_id)
    return RecomputeResponse(
        score=risk_score_view(result.score),
        alerts=[e.model_copy(update={"event": None}) for e in result.evaluations],
    )


@router.get("/members/{member_id}/current", response_model=RiskScoreView)
async def get_current_score(
    member_id: uuid.UUID,
    include_expired: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    box_id: uuid.UUID = Depends(get_box_id),
):
    score = await get_current_risk_score(db, box_id, member_id, include_expired=include_expired)
    if score is None:
        raise NotFoundError("No current risk score", membership_id=str(member_id))
    return risk_score_view(score)


@router.get("/members/{member_id}/history", response_model=RiskHistoryResponse)
async def get_score_history(
    member_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    box_id: uuid.UUID = Depends(get_box_id),
):
    if await get_membership(db, box_id, member_id) is None:
        raise NotFoundError("Member not found", membership_id=str(member_id))
    scores = await get_risk_history(db, box_id, member_id, limit=limit)
    return RiskHistoryResponse(
        membership_id=str(member_id),
        scores=[risk_score_view(s, with_factors=False) for s in scores],
        total=len(scores),
    )
