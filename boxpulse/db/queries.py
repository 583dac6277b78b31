"""
Database query functions for the scorer, sweeps and API.

All functions require an explicit box_id so tenant scoping is visible at
every call site. Paged queries use keyset pagination on the primary key
so a sweep can stop between pages and resume without skipping rows.
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import and_, exists, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from boxpulse.alerting.schemas import OPEN_STATUSES, AlertStatus
from boxpulse.db.compat import utcnow
from boxpulse.db.models import (
    Alert,
    Box,
    Intervention,
    InterventionOutcomeModel,
    Membership,
    RiskScore,
)

COACH_ROLES = ("coach", "head_coach", "owner")


# ── Boxes & Members ──────────────────────────────────────────────────────


async def get_boxes(session: AsyncSession) -> Sequence[Box]:
    """All boxes (for scheduler iteration)."""
    result = await session.execute(select(Box).order_by(Box.created_at))
    return result.scalars().all()


async def get_membership(
    session: AsyncSession, box_id: uuid.UUID, membership_id: uuid.UUID
) -> Optional[Membership]:
    result = await session.execute(
        select(Membership).where(
            Membership.id == membership_id,
            Membership.box_id == box_id,
        )
    )
    return result.scalar_one_or_none()


async def get_coach(
    session: AsyncSession, box_id: uuid.UUID, coach_id: uuid.UUID
) -> Optional[Membership]:
    """An active coaching membership in the box, or None."""
    result = await session.execute(
        select(Membership).where(
            Membership.id == coach_id,
            Membership.box_id == box_id,
            Membership.role.in_(COACH_ROLES),
            Membership.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def get_members_due_for_scoring(
    session: AsyncSession,
    box_id: uuid.UUID,
    now: Optional[datetime] = None,
    after_id: Optional[uuid.UUID] = None,
    page_size: int = 500,
) -> Sequence[Membership]:
    """One keyset page of active athletes with no current (unexpired) risk score."""
    now = now or utcnow()
    has_current = exists().where(
        RiskScore.membership_id == Membership.id,
        RiskScore.box_id == box_id,
        RiskScore.valid_until > now,
    )
    query = select(Membership).where(
        Membership.box_id == box_id,
        Membership.role == "athlete",
        Membership.is_active.is_(True),
        ~has_current,
    )
    if after_id is not None:
        query = query.where(Membership.id > after_id)
    result = await session.execute(query.order_by(Membership.id).limit(page_size))
    return result.scalars().all()


# ── Risk Scores ──────────────────────────────────────────────────────────


async def get_current_risk_score(
    session: AsyncSession,
    box_id: uuid.UUID,
    membership_id: uuid.UUID,
    as_of: Optional[datetime] = None,
    include_expired: bool = False,
) -> Optional[RiskScore]:
    """
    The member's current risk score.

    Selection rule: latest calculated_at not after as_of; ties are broken
    by id descending. Expired scores are skipped unless include_expired
    is set, in which case the latest score is returned regardless.
    """
    as_of = as_of or utcnow()
    conditions = [
        RiskScore.box_id == box_id,
        RiskScore.membership_id == membership_id,
        RiskScore.calculated_at <= as_of,
    ]
    if not include_expired:
        conditions.append(RiskScore.valid_until > as_of)
    result = await session.execute(
        select(RiskScore)
        .options(selectinload(RiskScore.factor_rows))
        .where(and_(*conditions))
        .order_by(RiskScore.calculated_at.desc(), RiskScore.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_risk_history(
    session: AsyncSession,
    box_id: uuid.UUID,
    membership_id: uuid.UUID,
    limit: int = 50,
) -> Sequence[RiskScore]:
    """All scores for a member, newest first (same ordering as current)."""
    result = await session.execute(
        select(RiskScore)
        .where(
            RiskScore.box_id == box_id,
            RiskScore.membership_id == membership_id,
        )
        .order_by(RiskScore.calculated_at.desc(), RiskScore.id.desc())
        .limit(limit)
    )
    return result.scalars().all()


async def get_latest_risk_score_between(
    session: AsyncSession,
    box_id: uuid.UUID,
    membership_id: uuid.UUID,
    start: Optional[datetime],
    end: datetime,
) -> Optional[RiskScore]:
    """Latest score with start < calculated_at <= end (start=None means unbounded)."""
    conditions = [
        RiskScore.box_id == box_id,
        RiskScore.membership_id == membership_id,
        RiskScore.calculated_at <= end,
    ]
    if start is not None:
        conditions.append(RiskScore.calculated_at > start)
    result = await session.execute(
        select(RiskScore)
        .where(and_(*conditions))
        .order_by(RiskScore.calculated_at.desc(), RiskScore.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


# ── Alerts ───────────────────────────────────────────────────────────────


async def get_active_alert(
    session: AsyncSession, membership_id: uuid.UUID, alert_type: str
) -> Optional[Alert]:
    result = await session.execute(
        select(Alert).where(
            Alert.membership_id == membership_id,
            Alert.alert_type == alert_type,
            Alert.status == AlertStatus.ACTIVE.value,
        )
    )
    return result.scalar_one_or_none()


async def get_alert(
    session: AsyncSession, box_id: uuid.UUID, alert_id: uuid.UUID
) -> Optional[Alert]:
    result = await session.execute(
        select(Alert)
        .options(selectinload(Alert.escalations))
        .where(Alert.id == alert_id, Alert.box_id == box_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_alerts(
    session: AsyncSession,
    box_id: uuid.UUID,
    status: Optional[str] = None,
    assigned_coach_id: Optional[uuid.UUID] = None,
    severity: Optional[str] = None,
    membership_id: Optional[uuid.UUID] = None,
    limit: int = 50,
    offset: int = 0,
) -> Sequence[Alert]:
    """Alerts for a box, newest first. Defaults to open alerts."""
    query = select(Alert).where(Alert.box_id == box_id)
    if status:
        query = query.where(Alert.status == status)
    else:
        query = query.where(Alert.status.in_([s.value for s in OPEN_STATUSES]))
    if assigned_coach_id:
        query = query.where(Alert.assigned_coach_id == assigned_coach_id)
    if severity:
        query = query.where(Alert.severity == severity)
    if membership_id:
        query = query.where(Alert.membership_id == membership_id)
    result = await session.execute(
        query.order_by(Alert.created_at.desc(), Alert.id.desc()).limit(limit).offset(offset)
    )
    return result.scalars().all()


async def get_open_alerts_page(
    session: AsyncSession,
    box_id: uuid.UUID,
    after_id: Optional[uuid.UUID] = None,
    page_size: int = 200,
) -> Sequence[Alert]:
    """One keyset page of open alerts, ordered by id."""
    query = select(Alert).where(
        Alert.box_id == box_id,
        Alert.status.in_([s.value for s in OPEN_STATUSES]),
    )
    if after_id is not None:
        query = query.where(Alert.id > after_id)
    result = await session.execute(query.order_by(Alert.id).limit(page_size))
    return result.scalars().all()


# ── Interventions ────────────────────────────────────────────────────────


async def get_intervention(
    session: AsyncSession, box_id: uuid.UUID, intervention_id: uuid.UUID
) -> Optional[Intervention]:
    result = await session.execute(
        select(Intervention)
        .where(Intervention.id == intervention_id, Intervention.box_id == box_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_interventions_due_for_outcome(
    session: AsyncSession,
    box_id: uuid.UUID,
    window_days: int,
    now: Optional[datetime] = None,
    after_id: Optional[uuid.UUID] = None,
    page_size: int = 200,
) -> Sequence[Intervention]:
    """Interventions whose observation window has closed and that have no outcome yet."""
    now = now or utcnow()
    cutoff = now - timedelta(days=window_days)
    query = (
        select(Intervention)
        .outerjoin(
            InterventionOutcomeModel,
            InterventionOutcomeModel.intervention_id == Intervention.id,
        )
        .where(
            Intervention.box_id == box_id,
            Intervention.intervention_date <= cutoff,
            InterventionOutcomeModel.id.is_(None),
        )
    )
    if after_id is not None:
        query = query.where(Intervention.id > after_id)
    result = await session.execute(query.order_by(Intervention.id).limit(page_size))
    return result.scalars().all()


async def get_outcome_for_intervention(
    session: AsyncSession, intervention_id: uuid.UUID
) -> Optional[InterventionOutcomeModel]:
    result = await session.execute(
        select(InterventionOutcomeModel).where(
            InterventionOutcomeModel.intervention_id == intervention_id
        )
    )
    return result.scalar_one_or_none()
