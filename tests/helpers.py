"""Sample data helpers shared by the test modules."""

import uuid
from datetime import datetime

from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from boxpulse.config import settings
from boxpulse.db.compat import utcnow
from boxpulse.db.models import Alert, Box, Membership, RiskScore, SignalSnapshotModel
from boxpulse.notifications.events import AlertEvent
from boxpulse.scoring.scorer import RiskScorer
from boxpulse.signals.schemas import SignalSnapshot

# Composite ≈ 29, low risk, no rule fires
HEALTHY_SIGNALS = {
    "attendance_score": 85.0,
    "performance_score": 80.0,
    "engagement_score": 80.0,
    "wellness_score": 80.0,
    "attendance_trend": 5.0,
    "performance_trend": 5.0,
    "engagement_trend": 5.0,
    "wellness_trend": 5.0,
    "days_since_last_visit": 1,
    "days_since_last_checkin": 1,
    "days_since_last_pr": 7,
    "attendance_rate": 60.0,
    "checkin_rate": 70.0,
    "pr_activity_count": 2,
}

# Composite ≈ 73.4, high risk; fires churn_risk, poor_attendance,
# negative_wellness and no_checkin
AT_RISK_SIGNALS = {
    "attendance_score": 20.0,
    "performance_score": 40.0,
    "engagement_score": 30.0,
    "wellness_score": 25.0,
    "attendance_trend": -15.0,
    "performance_trend": -15.0,
    "engagement_trend": -15.0,
    "wellness_trend": -15.0,
    "days_since_last_visit": 14,
    "days_since_last_checkin": 20,
    "days_since_last_pr": 45,
    "attendance_rate": 20.0,
    "checkin_rate": 15.0,
    "pr_activity_count": 0,
}

# Every effect saturated: composite 100, critical
CRITICAL_SIGNALS = {
    "attendance_score": 0.0,
    "performance_score": 0.0,
    "engagement_score": 0.0,
    "wellness_score": 0.0,
    "attendance_trend": -50.0,
    "performance_trend": -50.0,
    "engagement_trend": -50.0,
    "wellness_trend": -50.0,
    "days_since_last_visit": 30,
    "days_since_last_checkin": 30,
    "days_since_last_pr": 120,
    "attendance_rate": 0.0,
    "checkin_rate": 0.0,
    "pr_activity_count": 0,
}


def make_snapshot(
    membership_id: uuid.UUID,
    captured_at: datetime,
    base: dict | None = None,
    **overrides,
) -> SignalSnapshot:
    values = dict(base or HEALTHY_SIGNALS)
    values.update(overrides)
    return SignalSnapshot(membership_id=membership_id, captured_at=captured_at, **values)


async def add_snapshot(
    session: AsyncSession,
    member: Membership,
    captured_at: datetime,
    base: dict | None = None,
    **overrides,
) -> SignalSnapshotModel:
    """Insert a signal snapshot the way the upstream aggregation job would."""
    values = dict(base or HEALTHY_SIGNALS)
    values.update(overrides)
    row = SignalSnapshotModel(
        box_id=member.box_id,
        membership_id=member.id,
        captured_at=captured_at,
        **values,
    )
    session.add(row)
    await session.flush()
    return row


async def add_score(
    session: AsyncSession,
    member: Membership,
    at: datetime,
    base: dict | None = None,
    scorer: RiskScorer | None = None,
    **overrides,
) -> RiskScore:
    """Compute and persist a score as of `at`."""
    scorer = scorer or RiskScorer()
    snapshot = make_snapshot(member.id, at, base=base, **overrides)
    computation = scorer.compute(snapshot, now=at)
    return await scorer.record(session, member.box_id, snapshot, computation)


async def add_alert(
    session: AsyncSession,
    member: Membership,
    alert_type: str = "churn_risk",
    severity: str = "medium",
    status: str = "active",
    follow_up_at: datetime | None = None,
    created_at: datetime | None = None,
    **kwargs,
) -> Alert:
    created_at = created_at or utcnow()
    alert = Alert(
        box_id=member.box_id,
        membership_id=member.id,
        assigned_coach_id=kwargs.get("assigned_coach_id", member.assigned_coach_id),
        alert_type=alert_type,
        severity=severity,
        title=kwargs.get("title", "Elevated Churn Risk"),
        description=kwargs.get("description", "Composite risk score is 65/100."),
        trigger_data=kwargs.get("trigger_data", {}),
        suggested_actions={"actions": []},
        status=status,
        follow_up_at=follow_up_at,
        acknowledged_at=kwargs.get("acknowledged_at"),
        last_escalated_at=kwargs.get("last_escalated_at"),
        reminders_sent=0,
        created_at=created_at,
        updated_at=created_at,
    )
    session.add(alert)
    await session.flush()
    return alert


async def create_box(session_factory, name: str) -> Box:
    async with session_factory() as session:
        box = Box(id=uuid.uuid4(), name=name, slug=f"{name.lower()}-{uuid.uuid4().hex[:8]}")
        session.add(box)
        await session.commit()
        return box


async def create_member(
    session_factory, box: Box, role: str, coach: Membership | None = None, **kwargs
) -> Membership:
    async with session_factory() as session:
        member = Membership(
            id=uuid.uuid4(),
            box_id=box.id,
            display_name=kwargs.get("display_name", f"Test {role} {uuid.uuid4().hex[:4]}"),
            role=role,
            is_active=kwargs.get("is_active", True),
            assigned_coach_id=coach.id if coach else None,
        )
        session.add(member)
        await session.commit()
        return member


def make_token(member: Membership) -> str:
    return jwt.encode(
        {"box_id": str(member.box_id), "user_id": str(member.id), "role": member.role},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )


class RecordingPublisher:
    """Collects published events in memory."""

    def __init__(self):
        self.events: list[AlertEvent] = []

    async def publish(self, events: list[AlertEvent]) -> None:
        self.events.extend(events)
