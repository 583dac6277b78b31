"""
Outbound alert events for the notification subsystem.

The retention engine only emits {alert.created, alert.escalated} payloads;
fan-out, templating and delivery belong to the consumer. Publishers are
called after the state change has committed and must never raise, so a
delivery failure cannot undo an alert transition.
"""

from datetime import datetime
from enum import StrEnum
from typing import Optional, Protocol

import httpx
import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


class AlertEventType(StrEnum):
    ALERT_CREATED = "alert.created"
    ALERT_ESCALATED = "alert.escalated"


class AlertEvent(BaseModel):
    event_type: AlertEventType
    box_id: str
    member_id: str
    alert_id: str
    alert_type: str
    severity: str
    assigned_coach_id: Optional[str] = None
    trigger_snapshot: dict = Field(default_factory=dict)
    previous_severity: Optional[str] = None
    occurred_at: str


def alert_event(alert, event_type: AlertEventType, occurred_at: datetime,
                previous_severity: Optional[str] = None) -> AlertEvent:
    """Build the outbound payload from an Alert row."""
    return AlertEvent(
        event_type=event_type,
        box_id=str(alert.box_id),
        member_id=str(alert.membership_id),
        alert_id=str(alert.id),
        alert_type=alert.alert_type,
        severity=alert.severity,
        assigned_coach_id=str(alert.assigned_coach_id) if alert.assigned_coach_id else None,
        trigger_snapshot=dict(alert.trigger_data or {}),
        previous_severity=previous_severity,
        occurred_at=occurred_at.isoformat(),
    )


class EventPublisher(Protocol):
    async def publish(self, events: list[AlertEvent]) -> None:
        ...


class LogEventPublisher:
    """Writes events to the structured log. Default when no webhook is configured."""

    async def publish(self, events: list[AlertEvent]) -> None:
        for event in events:
            logger.info(
                "alert_event",
                event_type=event.event_type.value,
                alert_id=event.alert_id,
                member_id=event.member_id,
                alert_type=event.alert_type,
                severity=event.severity,
                assigned_coach_id=event.assigned_coach_id,
            )


class WebhookEventPublisher:
    """POSTs each event as JSON to the notification service."""

    def __init__(self, url: str, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def publish(self, events: list[AlertEvent]) -> None:
        if not events:
            return
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for event in events:
                try:
                    response = await client.post(self.url, json=event.model_dump(mode="json"))
                    if response.status_code < 400:
                        logger.info(
                            "alert_event_delivered",
                            alert_id=event.alert_id,
                            event_type=event.event_type.value,
                            status=response.status_code,
                        )
                    else:
                        logger.warning(
                            "alert_event_rejected",
                            alert_id=event.alert_id,
                            event_type=event.event_type.value,
                            status=response.status_code,
                        )
                except httpx.HTTPError as e:
                    logger.error(
                        "alert_event_delivery_error",
                        alert_id=event.alert_id,
                        event_type=event.event_type.value,
                        error=str(e),
                    )


def build_publisher(webhook_url: str = "", timeout: float = 10.0) -> EventPublisher:
    if webhook_url:
        return WebhookEventPublisher(webhook_url, timeout=timeout)
    return LogEventPublisher()
