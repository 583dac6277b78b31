"""
Intervention Tracker — records what coaches did about a member.

An intervention may point at one alert, but only an alert belonging to the
same member in the same box. The only mutation after creation is marking
the follow-up complete, done as a compare-and-swap so a double submit is
a conflict rather than a second completion.
"""

import uuid
from datetime import datetime
from typing import Optional, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from boxpulse.db.compat import utcnow
from boxpulse.db.models import Alert, Intervention
from boxpulse.db.queries import get_coach, get_intervention, get_membership
from boxpulse.errors import CrossEntityMismatchError, InvalidTransitionError, NotFoundError
from boxpulse.interventions.schemas import InterventionOutcome, InterventionType

logger = structlog.get_logger(__name__)


class InterventionTracker:

    async def record(
        self,
        session: AsyncSession,
        box_id: uuid.UUID,
        membership_id: uuid.UUID,
        coach_id: uuid.UUID,
        intervention_type: InterventionType,
        description: str,
        alert_id: Optional[uuid.UUID] = None,
        title: Optional[str] = None,
        outcome: Optional[InterventionOutcome] = None,
        member_response: Optional[str] = None,
        coach_notes: Optional[str] = None,
        follow_up_required: bool = False,
        follow_up_at: Optional[datetime] = None,
        intervention_at: Optional[datetime] = None,
    ) -> Intervention:
        """
        Create an intervention.

        Raises:
            NotFoundError: member or coach not in this box, or alert unknown.
            CrossEntityMismatchError: alert belongs to another member or box.
        """
        member = await get_membership(session, box_id, membership_id)
        if member is None:
            raise NotFoundError("Member not found", membership_id=str(membership_id))
        if await get_coach(session, box_id, coach_id) is None:
            raise NotFoundError("Coach not found in this box", coach_id=str(coach_id))

        if alert_id is not None:
            alert = await session.get(Alert, alert_id)
            if alert is None:
                raise NotFoundError("Alert not found", alert_id=str(alert_id))
            if alert.membership_id != membership_id or alert.box_id != box_id:
                logger.warning(
                    "intervention_alert_mismatch",
                    alert_id=str(alert_id),
                    membership_id=str(membership_id),
                    alert_membership_id=str(alert.membership_id),
                )
                raise CrossEntityMismatchError(
                    "Alert belongs to a different member",
                    alert_id=str(alert_id),
                    membership_id=str(membership_id),
                )

        now = utcnow()
        intervention = Intervention(
            box_id=box_id,
            membership_id=membership_id,
            coach_id=coach_id,
            alert_id=alert_id,
            intervention_type=InterventionType(intervention_type).value,
            title=title or InterventionType(intervention_type).value.replace("_", " ").title(),
            description=description,
            outcome=outcome.value if outcome else None,
            member_response=member_response,
            coach_notes=coach_notes,
            follow_up_required=follow_up_required,
            follow_up_at=follow_up_at,
            follow_up_completed=False,
            intervention_date=intervention_at or now,
            created_at=now,
            updated_at=now,
        )
        session.add(intervention)
        await session.flush()

        logger.info(
            "intervention_recorded",
            intervention_id=str(intervention.id),
            membership_id=str(membership_id),
            coach_id=str(coach_id),
            alert_id=str(alert_id) if alert_id else None,
            intervention_type=intervention.intervention_type,
        )
        return intervention

    async def complete_follow_up(
        self, session: AsyncSession, box_id: uuid.UUID, intervention_id: uuid.UUID
    ) -> Intervention:
        intervention = await get_intervention(session, box_id, intervention_id)
        if intervention is None:
            raise NotFoundError("Intervention not found", intervention_id=str(intervention_id))
        if not intervention.follow_up_required:
            raise InvalidTransitionError(
                "Intervention does not require a follow-up",
                intervention_id=str(intervention_id),
            )

        now = utcnow()
        cas = await session.execute(
            update(Intervention)
            .where(
                Intervention.id == intervention_id,
                Intervention.box_id == box_id,
                Intervention.follow_up_required.is_(True),
                Intervention.follow_up_completed.is_(False),
            )
            .values(follow_up_completed=True, follow_up_completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if cas.rowcount == 0:
            raise InvalidTransitionError(
                "Follow-up already completed", intervention_id=str(intervention_id)
            )

        logger.info("follow_up_completed", intervention_id=str(intervention_id))
        return await get_intervention(session, box_id, intervention_id)

    async def list_for_member(
        self,
        session: AsyncSession,
        box_id: uuid.UUID,
        membership_id: uuid.UUID,
        limit: int = 50,
    ) -> Sequence[Intervention]:
        result = await session.execute(
            select(Intervention)
            .where(Intervention.box_id == box_id, Intervention.membership_id == membership_id)
            .order_by(Intervention.intervention_date.desc(), Intervention.id.desc())
            .limit(limit)
        )
        return result.scalars().all()

    async def pending_follow_ups(
        self,
        session: AsyncSession,
        box_id: uuid.UUID,
        coach_id: uuid.UUID,
        due_before: Optional[datetime] = None,
    ) -> Sequence[Intervention]:
        """Open follow-ups owned by a coach, soonest first."""
        query = select(Intervention).where(
            Intervention.box_id == box_id,
            Intervention.coach_id == coach_id,
            Intervention.follow_up_required.is_(True),
            Intervention.follow_up_completed.is_(False),
        )
        if due_before is not None:
            query = query.where(Intervention.follow_up_at <= due_before)
        result = await session.execute(
            query.order_by(Intervention.follow_up_at.asc(), Intervention.id.asc())
        )
        return result.scalars().all()
