"""
Alert Manager — evaluate risk scores against trigger rules and drive the
alert status state machine.

Deduplication:
    bp_alerts carries a partial unique index on (membership_id, alert_type)
    WHERE status = 'active'. evaluate() looks for the active alert first;
    if a concurrent evaluator inserts between the lookup and our insert,
    the savepoint rolls back on IntegrityError and the losing writer
    refreshes the winner's row instead.

Transitions:
    Legality comes from the pure apply_transition() table. Persistence is
    a compare-and-swap (UPDATE ... WHERE status = :expected) so a status
    that moved on underneath the caller surfaces as a conflict.
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional, Sequence

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from boxpulse.alerting.schemas import (
    OPEN_STATUSES,
    AlertAction,
    AlertEvaluation,
    AlertStatus,
    AlertTriggerRule,
    AlertType,
    Err,
    EvaluationOutcome,
    apply_transition,
)
from boxpulse.config import AlertPolicy
from boxpulse.db.compat import utcnow
from boxpulse.db.models import Alert, Membership, RiskScore
from boxpulse.db.queries import get_active_alert, get_alert, get_coach
from boxpulse.errors import InvalidTransitionError, NotFoundError
from boxpulse.notifications.events import AlertEventType, alert_event
from boxpulse.scoring.schemas import RiskLevel

logger = structlog.get_logger(__name__)

# Insert/refresh attempts before giving up on a flapping alert row
_MAX_DEDUP_ATTEMPTS = 3


class AlertManager:
    """
    Creates, deduplicates and transitions alerts.

    Methods flush but never commit; the caller owns the transaction so that
    scoring and alert evaluation land atomically.
    """

    def __init__(self, policy: Optional[AlertPolicy] = None):
        self.policy = policy or AlertPolicy()

    # ── Rule evaluation (pure) ────────────────────────────────────────

    def triggered_rules(
        self, score: RiskScore
    ) -> dict[AlertType, list[tuple[AlertTriggerRule, float]]]:
        """Rules that fire for this score, grouped by alert type in policy order."""
        level = RiskLevel(score.risk_level)
        fired: dict[AlertType, list[tuple[AlertTriggerRule, float]]] = {}
        for rule in self.policy.rules:
            if level.rank < rule.min_risk_level.rank:
                continue
            value = getattr(score, rule.metric, None)
            if value is None:
                continue
            value = float(value)
            if rule.matches(value):
                fired.setdefault(rule.alert_type, []).append((rule, value))
        return fired

    # ── evaluate ──────────────────────────────────────────────────────

    async def evaluate(
        self,
        session: AsyncSession,
        score: RiskScore,
        now: Optional[datetime] = None,
    ) -> list[AlertEvaluation]:
        """
        Create or refresh one active alert per triggered alert type.

        Returns one AlertEvaluation per type; created ones carry an
        alert.created event for the caller to publish after commit.
        """
        now = now or utcnow()
        fired = self.triggered_rules(score)
        if not fired:
            return []

        member = await session.get(Membership, score.membership_id)
        coach_id = member.assigned_coach_id if member else None
        severity = RiskLevel(score.risk_level)

        evaluations: list[AlertEvaluation] = []
        for alert_type, matches in fired.items():
            snapshot = _trigger_snapshot(score, matches, now)
            evaluation = await self._upsert(
                session, score, alert_type, matches, snapshot, severity, coach_id, now
            )
            evaluations.append(evaluation)

        logger.info(
            "alerts_evaluated",
            membership_id=str(score.membership_id),
            risk_score_id=str(score.id),
            created=sum(1 for e in evaluations if e.outcome == EvaluationOutcome.CREATED),
            refreshed=sum(1 for e in evaluations if e.outcome == EvaluationOutcome.REFRESHED),
        )
        return evaluations

    async def _upsert(
        self,
        session: AsyncSession,
        score: RiskScore,
        alert_type: AlertType,
        matches: list[tuple[AlertTriggerRule, float]],
        snapshot: dict,
        severity: RiskLevel,
        coach_id: Optional[uuid.UUID],
        now: datetime,
    ) -> AlertEvaluation:
        for _ in range(_MAX_DEDUP_ATTEMPTS):
            existing = await get_active_alert(session, score.membership_id, alert_type.value)
            if existing is not None:
                if await self._refresh(session, existing, snapshot, now):
                    return AlertEvaluation(
                        alert_id=str(existing.id),
                        alert_type=alert_type,
                        outcome=EvaluationOutcome.REFRESHED,
                        severity=RiskLevel(existing.severity),
                    )
                # Active alert was transitioned between lookup and update
                continue

            rule, value = matches[0]
            alert = Alert(
                box_id=score.box_id,
                membership_id=score.membership_id,
                assigned_coach_id=coach_id,
                alert_type=alert_type.value,
                severity=severity.value,
                title=rule.title,
                description=rule.render_description(value),
                trigger_data=snapshot,
                suggested_actions={"actions": _suggested_actions(matches)},
                status=AlertStatus.ACTIVE.value,
                follow_up_at=now + timedelta(days=rule.follow_up_days),
                reminders_sent=0,
                last_evaluated_at=now,
                created_at=now,
                updated_at=now,
            )
            try:
                async with session.begin_nested():
                    session.add(alert)
                    await session.flush()
            except IntegrityError:
                logger.info(
                    "alert_insert_race_lost",
                    membership_id=str(score.membership_id),
                    alert_type=alert_type.value,
                )
                continue

            logger.info(
                "alert_created",
                alert_id=str(alert.id),
                membership_id=str(score.membership_id),
                alert_type=alert_type.value,
                severity=severity.value,
                assigned_coach_id=str(coach_id) if coach_id else None,
            )
            return AlertEvaluation(
                alert_id=str(alert.id),
                alert_type=alert_type,
                outcome=EvaluationOutcome.CREATED,
                severity=severity,
                event=alert_event(alert, AlertEventType.ALERT_CREATED, now),
            )

        raise RuntimeError(
            f"could not settle active {alert_type.value} alert for member {score.membership_id}"
        )

    async def _refresh(
        self, session: AsyncSession, alert: Alert, snapshot: dict, now: datetime
    ) -> bool:
        """Replace the trigger snapshot and bump reminder metadata. Severity is left alone."""
        result = await session.execute(
            update(Alert)
            .where(Alert.id == alert.id, Alert.status == AlertStatus.ACTIVE.value)
            .values(
                trigger_data=snapshot,
                reminders_sent=Alert.reminders_sent + 1,
                last_evaluated_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False
        await session.refresh(alert)
        logger.debug("alert_refreshed", alert_id=str(alert.id), reminders_sent=alert.reminders_sent)
        return True

    # ── Status transitions ────────────────────────────────────────────

    async def acknowledge(
        self, session: AsyncSession, box_id: uuid.UUID, alert_id: uuid.UUID, coach_id: uuid.UUID
    ) -> Alert:
        return await self._transition(session, box_id, alert_id, AlertAction.ACKNOWLEDGE, coach_id)

    async def resolve(
        self,
        session: AsyncSession,
        box_id: uuid.UUID,
        alert_id: uuid.UUID,
        coach_id: uuid.UUID,
        notes: Optional[str] = None,
    ) -> Alert:
        return await self._transition(session, box_id, alert_id, AlertAction.RESOLVE, coach_id, notes)

    async def dismiss(
        self,
        session: AsyncSession,
        box_id: uuid.UUID,
        alert_id: uuid.UUID,
        coach_id: uuid.UUID,
        notes: Optional[str] = None,
    ) -> Alert:
        """Mark as a false positive. Terminal."""
        return await self._transition(session, box_id, alert_id, AlertAction.DISMISS, coach_id, notes)

    async def _transition(
        self,
        session: AsyncSession,
        box_id: uuid.UUID,
        alert_id: uuid.UUID,
        action: AlertAction,
        coach_id: uuid.UUID,
        notes: Optional[str] = None,
    ) -> Alert:
        if await get_coach(session, box_id, coach_id) is None:
            raise NotFoundError("Coach not found in this box", coach_id=str(coach_id))
        alert = await get_alert(session, box_id, alert_id)
        if alert is None:
            raise NotFoundError("Alert not found", alert_id=str(alert_id))

        current = AlertStatus(alert.status)
        result = apply_transition(current, action)
        if isinstance(result, Err):
            raise InvalidTransitionError(
                result.error.message, alert_id=str(alert_id), status=current.value
            )

        now = utcnow()
        values: dict = {"status": result.status.value, "updated_at": now}
        if action == AlertAction.ACKNOWLEDGE:
            values.update(acknowledged_at=now, acknowledged_by_id=coach_id)
        else:
            values.update(resolved_at=now, resolved_by_id=coach_id, resolution_notes=notes)

        cas = await session.execute(
            update(Alert)
            .where(Alert.id == alert.id, Alert.status == current.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if cas.rowcount == 0:
            raise InvalidTransitionError(
                f"Alert status changed concurrently; it is no longer {current.value}",
                alert_id=str(alert_id),
            )

        logger.info(
            "alert_transitioned",
            alert_id=str(alert_id),
            action=action.value,
            from_status=current.value,
            to_status=result.status.value,
            coach_id=str(coach_id),
        )
        return await get_alert(session, box_id, alert_id)

    async def claim(
        self, session: AsyncSession, box_id: uuid.UUID, alert_id: uuid.UUID, coach_id: uuid.UUID
    ) -> Alert:
        """Assign an unassigned open alert to the calling coach."""
        if await get_coach(session, box_id, coach_id) is None:
            raise NotFoundError("Coach not found in this box", coach_id=str(coach_id))
        alert = await get_alert(session, box_id, alert_id)
        if alert is None:
            raise NotFoundError("Alert not found", alert_id=str(alert_id))
        if alert.status not in [s.value for s in OPEN_STATUSES]:
            raise InvalidTransitionError(
                f"Cannot claim an alert that is {alert.status}", alert_id=str(alert_id)
            )
        if alert.assigned_coach_id == coach_id:
            return alert
        if alert.assigned_coach_id is not None:
            raise InvalidTransitionError(
                "Alert is already assigned to another coach", alert_id=str(alert_id)
            )

        cas = await session.execute(
            update(Alert)
            .where(
                Alert.id == alert.id,
                Alert.assigned_coach_id.is_(None),
                Alert.status.in_([s.value for s in OPEN_STATUSES]),
            )
            .values(assigned_coach_id=coach_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if cas.rowcount == 0:
            raise InvalidTransitionError(
                "Alert was claimed or closed concurrently", alert_id=str(alert_id)
            )
        logger.info("alert_claimed", alert_id=str(alert_id), coach_id=str(coach_id))
        return await get_alert(session, box_id, alert_id)

    # ── Reads ─────────────────────────────────────────────────────────

    async def get(self, session: AsyncSession, box_id: uuid.UUID, alert_id: uuid.UUID) -> Alert:
        alert = await get_alert(session, box_id, alert_id)
        if alert is None:
            raise NotFoundError("Alert not found", alert_id=str(alert_id))
        return alert


def _trigger_snapshot(
    score: RiskScore, matches: Sequence[tuple[AlertTriggerRule, float]], now: datetime
) -> dict:
    return {
        "risk_score_id": str(score.id),
        "overall_risk_score": float(score.overall_risk_score),
        "risk_level": score.risk_level,
        "churn_probability": float(score.churn_probability),
        "calculated_at": score.calculated_at.isoformat(),
        "triggers": [
            {
                "metric": rule.metric,
                "operator": rule.operator.value,
                "threshold": rule.threshold,
                "value": value,
            }
            for rule, value in matches
        ],
        "evaluated_at": now.isoformat(),
    }


def _suggested_actions(matches: Sequence[tuple[AlertTriggerRule, float]]) -> list[str]:
    actions: list[str] = []
    for rule, _ in matches:
        for action in rule.suggested_actions:
            if action not in actions:
                actions.append(action)
    return actions
