"""
Signal Store value objects.

A SignalSnapshot is what the upstream aggregation job publishes for a
member at a point in time. Every field is optional at this layer; the
scorer checks completeness before it does anything else.
"""

import uuid
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Optional

from boxpulse.config import ALL_SIGNALS


@dataclass(frozen=True)
class SignalSnapshot:
    membership_id: uuid.UUID
    captured_at: datetime

    attendance_score: Optional[float] = None
    performance_score: Optional[float] = None
    engagement_score: Optional[float] = None
    wellness_score: Optional[float] = None

    attendance_trend: Optional[float] = None
    performance_trend: Optional[float] = None
    engagement_trend: Optional[float] = None
    wellness_trend: Optional[float] = None

    days_since_last_visit: Optional[int] = None
    days_since_last_checkin: Optional[int] = None
    days_since_last_pr: Optional[int] = None

    # Window activity metrics, only needed for outcome measurement
    attendance_rate: Optional[float] = None
    checkin_rate: Optional[float] = None
    pr_activity_count: Optional[int] = None

    def missing_signals(self) -> list[str]:
        """Required scoring inputs that are absent."""
        return [name for name in ALL_SIGNALS if getattr(self, name) is None]

    def missing_activity_metrics(self) -> list[str]:
        return [
            name
            for name in ("attendance_rate", "checkin_rate", "wellness_score", "pr_activity_count")
            if getattr(self, name) is None
        ]

    def value(self, name: str) -> Optional[float]:
        return getattr(self, name)

    @classmethod
    def from_row(cls, row) -> "SignalSnapshot":
        names = [f.name for f in fields(cls)]
        return cls(**{name: getattr(row, name) for name in names})
