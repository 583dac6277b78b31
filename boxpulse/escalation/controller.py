"""
Escalation Controller — raises severity on open alerts that are going stale
or that the member's latest risk score has outgrown.

Rules (auto):
1. SLA breach: status active, never acknowledged, follow_up_at in the past.
2. Risk increase: the member's current score bucket ranks above the alert.

Either trigger raises severity exactly one step and appends an
AlertEscalation with auto_escalated=True. An alert auto-escalated within
the cool-down, or already critical, is left alone. Severity never goes
down; a closed alert followed by a fresh evaluation simply produces a
new alert at whatever the current bucket is.

The severity write is a compare-and-swap on (id, severity, open status),
so two sweeps racing over the same alert escalate it once.
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boxpulse.alerting.schemas import OPEN_STATUSES, AlertStatus
from boxpulse.config import EscalationPolicy
from boxpulse.db.compat import utcnow
from boxpulse.db.models import Alert, AlertEscalation, RiskScore
from boxpulse.db.queries import (
    get_alert,
    get_coach,
    get_current_risk_score,
    get_open_alerts_page,
)
from boxpulse.errors import InvalidTransitionError, NotFoundError
from boxpulse.escalation.schemas import EscalationDecision, EscalationTrigger
from boxpulse.notifications.events import (
    AlertEvent,
    AlertEventType,
    EventPublisher,
    LogEventPublisher,
    alert_event,
)
from boxpulse.scoring.schemas import RiskLevel
from boxpulse.services.report import SweepReport

logger = structlog.get_logger(__name__)


class EscalationController:
    """Auto and manual alert escalation."""

    def __init__(self, policy: Optional[EscalationPolicy] = None):
        self.policy = policy or EscalationPolicy()

    # ── Decision (pure) ───────────────────────────────────────────────

    def assess(
        self, alert: Alert, current_score: Optional[RiskScore], now: datetime
    ) -> Optional[EscalationDecision]:
        """Decide whether an open alert should auto-escalate right now."""
        if alert.status not in [s.value for s in OPEN_STATUSES]:
            return None
        severity = RiskLevel(alert.severity)
        target = severity.next_level()
        if target is None:
            return None
        if alert.last_escalated_at is not None:
            if now - alert.last_escalated_at < timedelta(hours=self.policy.cooldown_hours):
                return None

        triggers: list[EscalationTrigger] = []
        reasons: list[str] = []

        if (
            alert.status == AlertStatus.ACTIVE.value
            and alert.acknowledged_at is None
            and alert.follow_up_at is not None
            and alert.follow_up_at < now
        ):
            overdue_hours = (now - alert.follow_up_at).total_seconds() / 3600
            triggers.append(EscalationTrigger.SLA_BREACH)
            reasons.append(f"Follow-up overdue by {overdue_hours:.0f}h with no acknowledgement")

        if current_score is not None:
            bucket = RiskLevel(current_score.risk_level)
            if bucket.rank > severity.rank:
                triggers.append(EscalationTrigger.RISK_INCREASE)
                reasons.append(
                    f"Risk score {float(current_score.overall_risk_score):.0f} is now "
                    f"{bucket.value}, above alert severity {severity.value}"
                )

        if not triggers:
            return None

        rearm = None
        if EscalationTrigger.SLA_BREACH in triggers:
            rearm = now + timedelta(days=self.policy.rearm_days.get(target, 1))

        return EscalationDecision(
            triggers=tuple(triggers),
            from_severity=severity,
            to_severity=target,
            reason="; ".join(reasons),
            rearm_follow_up_at=rearm,
        )

    # ── Persistence ───────────────────────────────────────────────────

    async def apply(
        self,
        session: AsyncSession,
        alert: Alert,
        decision: EscalationDecision,
        now: datetime,
        auto: bool = True,
        escalated_by_id: Optional[uuid.UUID] = None,
    ) -> Optional[AlertEvent]:
        """
        CAS the severity change and append the escalation record.

        Returns the alert.escalated event, or None when another writer
        changed the alert first.
        """
        if decision.to_severity.rank <= decision.from_severity.rank:
            raise InvalidTransitionError(
                "Escalation must raise severity",
                alert_id=str(alert.id),
                from_severity=decision.from_severity.value,
                to_severity=decision.to_severity.value,
            )

        values: dict = {
            "severity": decision.to_severity.value,
            "last_escalated_at": now,
            "updated_at": now,
        }
        if decision.rearm_follow_up_at is not None:
            values["follow_up_at"] = decision.rearm_follow_up_at

        cas = await session.execute(
            update(Alert)
            .where(
                Alert.id == alert.id,
                Alert.severity == decision.from_severity.value,
                Alert.status.in_([s.value for s in OPEN_STATUSES]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if cas.rowcount == 0:
            logger.info("escalation_race_lost", alert_id=str(alert.id))
            return None

        session.add(AlertEscalation(
            alert_id=alert.id,
            from_severity=decision.from_severity.value,
            to_severity=decision.to_severity.value,
            reason=decision.reason,
            auto_escalated=auto,
            escalated_by_id=escalated_by_id,
            escalated_at=now,
        ))
        await session.flush()
        await session.refresh(alert)

        logger.info(
            "alert_escalated",
            alert_id=str(alert.id),
            from_severity=decision.from_severity.value,
            to_severity=decision.to_severity.value,
            triggers=[t.value for t in decision.triggers],
            auto=auto,
        )
        return alert_event(
            alert,
            AlertEventType.ALERT_ESCALATED,
            now,
            previous_severity=decision.from_severity.value,
        )

    # ── Manual ────────────────────────────────────────────────────────

    async def escalate(
        self,
        session: AsyncSession,
        box_id: uuid.UUID,
        alert_id: uuid.UUID,
        coach_id: uuid.UUID,
        reason: str,
        to_severity: Optional[RiskLevel] = None,
    ) -> tuple[Alert, AlertEvent]:
        """
        Coach-triggered escalation. One step by default, or straight to
        an explicit higher severity. Not subject to the auto cool-down.
        """
        if await get_coach(session, box_id, coach_id) is None:
            raise NotFoundError("Coach not found in this box", coach_id=str(coach_id))
        alert = await get_alert(session, box_id, alert_id)
        if alert is None:
            raise NotFoundError("Alert not found", alert_id=str(alert_id))
        if alert.status not in [s.value for s in OPEN_STATUSES]:
            raise InvalidTransitionError(
                f"Cannot escalate an alert that is {alert.status}", alert_id=str(alert_id)
            )

        current = RiskLevel(alert.severity)
        target = to_severity or current.next_level()
        if target is None or target.rank <= current.rank:
            raise InvalidTransitionError(
                f"Cannot escalate from {current.value} to "
                f"{target.value if target else 'beyond critical'}",
                alert_id=str(alert_id),
            )

        now = utcnow()
        decision = EscalationDecision(
            triggers=(EscalationTrigger.MANUAL,),
            from_severity=current,
            to_severity=target,
            reason=reason,
        )
        event = await self.apply(
            session, alert, decision, now, auto=False, escalated_by_id=coach_id
        )
        if event is None:
            raise InvalidTransitionError(
                "Alert changed concurrently; reload and retry", alert_id=str(alert_id)
            )
        return await get_alert(session, box_id, alert_id), event

    # ── Sweep ─────────────────────────────────────────────────────────

    async def sweep_box(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        box_id: uuid.UUID,
        now: Optional[datetime] = None,
        publisher: Optional[EventPublisher] = None,
    ) -> SweepReport:
        """
        Walk every open alert in the box, one transaction per alert.

        Pages are keyset-ordered by id, so the sweep can stop between
        pages and a rerun picks up where it left off.
        """
        now = now or utcnow()
        publisher = publisher or LogEventPublisher()
        report = SweepReport(job="escalation", box_id=str(box_id))
        log = logger.bind(job="escalation", box_id=str(box_id))

        after_id: Optional[uuid.UUID] = None
        while True:
            async with session_factory() as session:
                page = await get_open_alerts_page(
                    session, box_id, after_id=after_id, page_size=self.policy.page_size
                )
                alert_ids = [a.id for a in page]
            if not alert_ids:
                break
            after_id = alert_ids[-1]

            for alert_id in alert_ids:
                report.processed += 1
                try:
                    event = await self._sweep_one(session_factory, box_id, alert_id, now)
                except Exception as e:
                    log.error("escalation_item_failed", alert_id=str(alert_id), error=str(e))
                    report.record_failure(str(alert_id), e)
                    continue
                if event is None:
                    report.skipped += 1
                    continue
                report.changed += 1
                try:
                    await publisher.publish([event])
                except Exception as e:
                    # Escalation is already committed; only delivery failed
                    log.error("escalation_publish_failed", alert_id=str(alert_id), error=str(e))
                    continue
                report.events_published += 1

            if len(alert_ids) < self.policy.page_size:
                break

        log.info("escalation_sweep_complete", **report.as_log_fields())
        return report

    async def _sweep_one(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        box_id: uuid.UUID,
        alert_id: uuid.UUID,
        now: datetime,
    ) -> Optional[AlertEvent]:
        async with session_factory() as session:
            async with session.begin():
                alert = await get_alert(session, box_id, alert_id)
                if alert is None:
                    return None
                score = await get_current_risk_score(
                    session, box_id, alert.membership_id, as_of=now
                )
                decision = self.assess(alert, score, now)
                if decision is None:
                    return None
                return await self.apply(session, alert, decision, now)
