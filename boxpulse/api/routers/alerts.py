"""
Alert API Endpoints.

GET  /api/v1/alerts                        — list alerts (open by default)
GET  /api/v1/alerts/{alert_id}             — alert detail with escalation history
POST /api/v1/alerts/{alert_id}/acknowledge — active → acknowledged
POST /api/v1/alerts/{alert_id}/resolve     — active|acknowledged → resolved
POST /api/v1/alerts/{alert_id}/dismiss     — active|acknowledged → dismissed (false positive)
POST /api/v1/alerts/{alert_id}/claim       — assign an unassigned alert to the caller
POST /api/v1/alerts/{alert_id}/escalate    — manual escalation
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from boxpulse.alerting.manager import AlertManager
from boxpulse.alerting.schemas import (
    AlertListResponse,
    AlertStatus,
    AlertType,
    AlertView,
    EscalationView,
    iso,
)
from boxpulse.auth.dependencies import get_box_id, get_coach_id, get_db
from boxpulse.config import settings
from boxpulse.db.models import Alert
from boxpulse.db.queries import list_alerts
from boxpulse.escalation.controller import EscalationController
from boxpulse.escalation.schemas import ManualEscalationRequest
from boxpulse.notifications.events import build_publisher
from boxpulse.scoring.schemas import RiskLevel

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])

_manager = AlertManager(settings.alert_policy)
_escalation = EscalationController(settings.escalation)
_publisher = build_publisher(
    settings.notification_webhook_url, settings.notification_timeout_seconds
)


class AlertNotesRequest(BaseModel):
    notes: Optional[str] = None


def alert_view(alert: Alert, with_escalations: bool = True) -> AlertView:
    escalations = []
    if with_escalations:
        escalations = [
            EscalationView(
                id=str(e.id),
                alert_id=str(e.alert_id),
                from_severity=RiskLevel(e.from_severity),
                to_severity=RiskLevel(e.to_severity),
                reason=e.reason,
                auto_escalated=e.auto_escalated,
                escalated_at=iso(e.escalated_at),
            )
            for e in alert.escalations
        ]
    return AlertView(
        id=str(alert.id),
        box_id=str(alert.box_id),
        membership_id=str(alert.membership_id),
        assigned_coach_id=str(alert.assigned_coach_id) if alert.assigned_coach_id else None,
        alert_type=AlertType(alert.alert_type),
        severity=RiskLevel(alert.severity),
        status=AlertStatus(alert.status),
        title=alert.title,
        description=alert.description,
        trigger_data=alert.trigger_data or {},
        suggested_actions=alert.suggested_actions or {},
        acknowledged_at=iso(alert.acknowledged_at),
        acknowledged_by_id=str(alert.acknowledged_by_id) if alert.acknowledged_by_id else None,
        resolved_at=iso(alert.resolved_at),
        resolved_by_id=str(alert.resolved_by_id) if alert.resolved_by_id else None,
        resolution_notes=alert.resolution_notes,
        follow_up_at=iso(alert.follow_up_at),
        reminders_sent=alert.reminders_sent,
        created_at=iso(alert.created_at) or "",
        updated_at=iso(alert.updated_at) or "",
        escalations=escalations,
    )


@router.get("", response_model=AlertListResponse)
async def get_alerts(
    status: Optional[AlertStatus] = Query(None),
    severity: Optional[RiskLevel] = Query(None),
    member_id: Optional[uuid.UUID] = Query(None),
    assigned_to_me: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    box_id: uuid.UUID = Depends(get_box_id),
    coach_id: uuid.UUID = Depends(get_coach_id),
):
    """List alerts for the box. Without a status filter only open alerts are returned."""
    rows = await list_alerts(
        db,
        box_id,
        status=status.value if status else None,
        assigned_coach_id=coach_id if assigned_to_me else None,
        severity=severity.value if severity else None,
        membership_id=member_id,
        limit=limit,
        offset=offset,
    )
    alerts = [alert_view(a, with_escalations=False) for a in rows]
    return AlertListResponse(alerts=alerts, total=len(alerts))


@router.get("/{alert_id}", response_model=AlertView)
async def get_alert_detail(
    alert_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    box_id: uuid.UUID = Depends(get_box_id),
):
    return alert_view(await _manager.get(db, box_id, alert_id))


@router.post("/{alert_id}/acknowledge", response_model=AlertView)
async def acknowledge_alert(
    alert_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    box_id: uuid.UUID = Depends(get_box_id),
    coach_id: uuid.UUID = Depends(get_coach_id),
):
    alert = await _manager.acknowledge(db, box_id, alert_id, coach_id)
    return alert_view(alert)


@router.post("/{alert_id}/resolve", response_model=AlertView)
async def resolve_alert(
    alert_id: uuid.UUID,
    body: AlertNotesRequest,
    db: AsyncSession = Depends(get_db),
    box_id: uuid.UUID = Depends(get_box_id),
    coach_id: uuid.UUID = Depends(get_coach_id),
):
    alert = await _manager.resolve(db, box_id, alert_id, coach_id, body.notes)
    return alert_view(alert)


@router.post("/{alert_id}/dismiss", response_model=AlertView)
async def dismiss_alert(
    alert_id: uuid.UUID,
    body: AlertNotesRequest,
    db: AsyncSession = Depends(get_db),
    box_id: uuid.UUID = Depends(get_box_id),
    coach_id: uuid.UUID = Depends(get_coach_id),
):
    alert = await _manager.dismiss(db, box_id, alert_id, coach_id, body.notes)
    return alert_view(alert)


@router.post("/{alert_id}/claim", response_model=AlertView)
async def claim_alert(
    alert_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    box_id: uuid.UUID = Depends(get_box_id),
    coach_id: uuid.UUID = Depends(get_coach_id),
):
    alert = await _manager.claim(db, box_id, alert_id, coach_id)
    return alert_view(alert)


@router.post("/{alert_id}/escalate", response_model=AlertView)
async def escalate_alert(
    alert_id: uuid.UUID,
    body: ManualEscalationRequest,
    db: AsyncSession = Depends(get_db),
    box_id: uuid.UUID = Depends(get_box_id),
    coach_id: uuid.UUID = Depends(get_coach_id),
):
    """Raise severity by hand. The escalation event is published after commit."""
    alert, event = await _escalation.escalate(
        db, box_id, alert_id, coach_id, body.reason, body.to_severity
    )
    view = alert_view(alert)
    await db.commit()
    await _publisher.publish([event])
    return view
