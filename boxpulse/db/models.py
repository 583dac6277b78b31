"""
BoxPulse SQLAlchemy Models.

Tenant/membership tables, the upstream signal snapshot view, and the
retention engine's own records. Uses compatibility types for SQLite (dev)
+ PostgreSQL (prod).

Append-only: RiskScore, RiskFactor, AlertEscalation, InterventionOutcome.
Mutable through guarded transitions: Alert, Intervention.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from boxpulse.db.compat import GUID, JSONType, UTCDateTime, utcnow
from boxpulse.db.engine import Base


def _genuuid():
    return uuid.uuid4()


def _score(precision: int = 5, scale: int = 2) -> Numeric:
    return Numeric(precision, scale, asdecimal=False)


# ──────────────────────────────────────────────────────────────────────────────
# 1. Tenant & Membership
# ──────────────────────────────────────────────────────────────────────────────


class Box(Base):
    """A gym — the tenant boundary."""

    __tablename__ = "bp_boxes"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    timezone: Mapped[str] = mapped_column(String(50), default="UTC")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    memberships: Mapped[list["Membership"]] = relationship(
        back_populates="box", cascade="all, delete-orphan", passive_deletes=True
    )


class Membership(Base):
    """A person in a box: athlete, coach, head coach or owner."""

    __tablename__ = "bp_memberships"
    __table_args__ = (
        Index("ix_memberships_box_role_active", "box_id", "role", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    box_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("bp_boxes.id", ondelete="CASCADE"), nullable=False
    )
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="athlete")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    assigned_coach_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("bp_memberships.id", ondelete="SET NULL")
    )
    joined_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    box: Mapped["Box"] = relationship(back_populates="memberships")


# ──────────────────────────────────────────────────────────────────────────────
# 2. Signal Store (populated upstream, read-only here)
# ──────────────────────────────────────────────────────────────────────────────


class SignalSnapshotModel(Base):
    """
    Pre-aggregated member signals as of captured_at.

    Component columns are nullable because the upstream job may publish
    partial rows; the scorer refuses incomplete snapshots.
    """

    __tablename__ = "bp_signal_snapshots"
    __table_args__ = (
        Index("ix_signal_snapshots_member_captured", "membership_id", "captured_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    box_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("bp_boxes.id", ondelete="CASCADE"), nullable=False
    )
    membership_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("bp_memberships.id", ondelete="CASCADE"), nullable=False
    )
    captured_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    attendance_score: Mapped[Optional[float]] = mapped_column(_score())
    performance_score: Mapped[Optional[float]] = mapped_column(_score())
    engagement_score: Mapped[Optional[float]] = mapped_column(_score())
    wellness_score: Mapped[Optional[float]] = mapped_column(_score())

    attendance_trend: Mapped[Optional[float]] = mapped_column(_score(8, 2))
    performance_trend: Mapped[Optional[float]] = mapped_column(_score(8, 2))
    engagement_trend: Mapped[Optional[float]] = mapped_column(_score(8, 2))
    wellness_trend: Mapped[Optional[float]] = mapped_column(_score(8, 2))

    days_since_last_visit: Mapped[Optional[int]] = mapped_column(Integer)
    days_since_last_checkin: Mapped[Optional[int]] = mapped_column(Integer)
    days_since_last_pr: Mapped[Optional[int]] = mapped_column(Integer)

    # Window activity metrics (outcome measurement)
    attendance_rate: Mapped[Optional[float]] = mapped_column(_score())
    checkin_rate: Mapped[Optional[float]] = mapped_column(_score())
    pr_activity_count: Mapped[Optional[int]] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)


# ──────────────────────────────────────────────────────────────────────────────
# 3. Risk Scores & Factors
# ──────────────────────────────────────────────────────────────────────────────


class RiskScore(Base):
    """One risk snapshot per member per computation run. Never updated."""

    __tablename__ = "bp_risk_scores"
    __table_args__ = (
        Index("ix_risk_scores_box_member", "box_id", "membership_id"),
        Index("ix_risk_scores_member_calculated", "membership_id", "calculated_at"),
        Index("ix_risk_scores_box_level", "box_id", "risk_level"),
        Index("ix_risk_scores_valid_until", "valid_until"),
        CheckConstraint("overall_risk_score >= 0 AND overall_risk_score <= 100", name="ck_overall_risk_score_range"),
        CheckConstraint("churn_probability >= 0 AND churn_probability <= 1", name="ck_churn_probability_range"),
        CheckConstraint("attendance_score >= 0 AND attendance_score <= 100", name="ck_attendance_score_range"),
        CheckConstraint("performance_score >= 0 AND performance_score <= 100", name="ck_performance_score_range"),
        CheckConstraint("engagement_score >= 0 AND engagement_score <= 100", name="ck_engagement_score_range"),
        CheckConstraint("wellness_score >= 0 AND wellness_score <= 100", name="ck_wellness_score_range"),
        CheckConstraint(
            "days_since_last_visit >= 0 AND days_since_last_checkin >= 0 AND days_since_last_pr >= 0",
            name="ck_recency_non_negative",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    box_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("bp_boxes.id", ondelete="CASCADE"), nullable=False
    )
    membership_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("bp_memberships.id", ondelete="CASCADE"), nullable=False
    )

    overall_risk_score: Mapped[float] = mapped_column(_score(), nullable=False)
    risk_level: Mapped[str] = mapped_column(String(20), nullable=False)
    churn_probability: Mapped[float] = mapped_column(_score(5, 4), nullable=False)

    attendance_score: Mapped[float] = mapped_column(_score(), nullable=False)
    performance_score: Mapped[float] = mapped_column(_score(), nullable=False)
    engagement_score: Mapped[float] = mapped_column(_score(), nullable=False)
    wellness_score: Mapped[float] = mapped_column(_score(), nullable=False)

    attendance_trend: Mapped[float] = mapped_column(_score(8, 2), nullable=False)
    performance_trend: Mapped[float] = mapped_column(_score(8, 2), nullable=False)
    engagement_trend: Mapped[float] = mapped_column(_score(8, 2), nullable=False)
    wellness_trend: Mapped[float] = mapped_column(_score(8, 2), nullable=False)

    days_since_last_visit: Mapped[int] = mapped_column(Integer, nullable=False)
    days_since_last_checkin: Mapped[int] = mapped_column(Integer, nullable=False)
    days_since_last_pr: Mapped[int] = mapped_column(Integer, nullable=False)

    # Summary of the top drivers; full breakdown lives in bp_risk_factors
    factors: Mapped[dict] = mapped_column(JSONType(), default=dict)

    calculated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    valid_until: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    factor_rows: Mapped[list["RiskFactorModel"]] = relationship(
        back_populates="risk_score",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="RiskFactorModel.created_at",
    )


class RiskFactorModel(Base):
    """One weighted contributor behind a RiskScore. Write-once."""

    __tablename__ = "bp_risk_factors"
    __table_args__ = (
        Index("ix_risk_factors_risk_score_id", "risk_score_id"),
        Index("ix_risk_factors_member_type", "membership_id", "factor_type"),
        CheckConstraint("weight >= 0 AND weight <= 1", name="ck_risk_factor_weight_range"),
        CheckConstraint("contribution >= -100 AND contribution <= 100", name="ck_risk_factor_contribution_range"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    risk_score_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("bp_risk_scores.id", ondelete="CASCADE"), nullable=False
    )
    membership_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False)

    factor_type: Mapped[str] = mapped_column(String(64), nullable=False)
    factor_value: Mapped[float] = mapped_column(_score(10, 4), nullable=False)
    weight: Mapped[float] = mapped_column(_score(5, 4), nullable=False)
    contribution: Mapped[float] = mapped_column(_score(8, 4), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONType(), default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    risk_score: Mapped["RiskScore"] = relationship(back_populates="factor_rows")


# ──────────────────────────────────────────────────────────────────────────────
# 4. Alerts & Escalations
# ──────────────────────────────────────────────────────────────────────────────


class Alert(Base):
    """
    Coach-facing concern about a member.

    The partial unique index guarantees at most one active alert per
    (member, type); concurrent evaluators collapse onto an update.
    """

    __tablename__ = "bp_alerts"
    __table_args__ = (
        Index("ix_alerts_box_member", "box_id", "membership_id"),
        Index("ix_alerts_box_status_severity", "box_id", "status", "severity"),
        Index("ix_alerts_assigned_status", "assigned_coach_id", "status"),
        Index("ix_alerts_follow_up_at", "follow_up_at"),
        Index(
            "uq_alerts_one_active_per_type",
            "membership_id",
            "alert_type",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        CheckConstraint("reminders_sent >= 0", name="ck_alerts_reminders_sent_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    box_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("bp_boxes.id", ondelete="CASCADE"), nullable=False
    )
    membership_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("bp_memberships.id", ondelete="CASCADE"), nullable=False
    )
    assigned_coach_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("bp_memberships.id", ondelete="SET NULL")
    )

    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    trigger_data: Mapped[dict] = mapped_column(JSONType(), default=dict)
    suggested_actions: Mapped[dict] = mapped_column(JSONType(), default=dict)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    acknowledged_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID())
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    resolved_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID())
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text)

    follow_up_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    reminders_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_evaluated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    last_escalated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow)

    escalations: Mapped[list["AlertEscalation"]] = relationship(
        back_populates="alert",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="AlertEscalation.escalated_at",
    )


class AlertEscalation(Base):
    """Immutable record of a severity increase on an alert."""

    __tablename__ = "bp_alert_escalations"
    __table_args__ = (
        Index("ix_alert_escalations_alert_id", "alert_id"),
        Index("ix_alert_escalations_escalated_at", "escalated_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    alert_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("bp_alerts.id", ondelete="CASCADE"), nullable=False
    )
    from_severity: Mapped[str] = mapped_column(String(20), nullable=False)
    to_severity: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    auto_escalated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalated_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID())
    escalated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    alert: Mapped["Alert"] = relationship(back_populates="escalations")


# ──────────────────────────────────────────────────────────────────────────────
# 5. Interventions & Outcomes
# ──────────────────────────────────────────────────────────────────────────────


class Intervention(Base):
    """A coach action taken for a member, optionally in response to an alert."""

    __tablename__ = "bp_interventions"
    __table_args__ = (
        Index("ix_interventions_box_member", "box_id", "membership_id"),
        Index("ix_interventions_member_date", "membership_id", "intervention_date"),
        Index("ix_interventions_coach_date", "coach_id", "intervention_date"),
        Index("ix_interventions_alert_id", "alert_id"),
        Index(
            "ix_interventions_pending_follow_ups",
            "follow_up_required",
            "follow_up_completed",
            "follow_up_at",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    box_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("bp_boxes.id", ondelete="CASCADE"), nullable=False
    )
    membership_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("bp_memberships.id", ondelete="CASCADE"), nullable=False
    )
    coach_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("bp_memberships.id", ondelete="CASCADE"), nullable=False
    )
    alert_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("bp_alerts.id", ondelete="SET NULL")
    )

    intervention_type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    outcome: Mapped[Optional[str]] = mapped_column(String(20))
    member_response: Mapped[Optional[str]] = mapped_column(Text)
    coach_notes: Mapped[Optional[str]] = mapped_column(Text)

    follow_up_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    follow_up_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    follow_up_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    follow_up_completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    intervention_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow)

    measured_outcome: Mapped[Optional["InterventionOutcomeModel"]] = relationship(
        back_populates="intervention",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class InterventionOutcomeModel(Base):
    """Measured effect of an intervention over its observation window. Write-once."""

    __tablename__ = "bp_intervention_outcomes"
    __table_args__ = (
        Index("ix_intervention_outcomes_member", "membership_id"),
        Index("ix_intervention_outcomes_box_measured", "box_id", "measured_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    intervention_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("bp_interventions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    membership_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False)
    box_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False)

    risk_score_change: Mapped[float] = mapped_column(_score(), nullable=False)
    attendance_rate_change: Mapped[float] = mapped_column(_score(), nullable=False)
    checkin_rate_change: Mapped[float] = mapped_column(_score(), nullable=False)
    wellness_score_change: Mapped[float] = mapped_column(_score(), nullable=False)
    pr_activity_change: Mapped[int] = mapped_column(Integer, nullable=False)

    effectiveness: Mapped[str] = mapped_column(String(20), nullable=False)
    effectiveness_score: Mapped[float] = mapped_column(_score(), nullable=False)

    pre_risk_score_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID())
    post_risk_score_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID())

    outcome_period_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    outcome_period_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    measured_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    intervention: Mapped["Intervention"] = relationship(back_populates="measured_outcome")
