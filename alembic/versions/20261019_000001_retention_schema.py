"""Retention engine schema.

Creates tenant/membership tables, the upstream signal snapshot table and
the retention engine's own records, including the partial unique index
that allows at most one active alert per (member, alert type).

Revision ID: retention_001
Revises:
Create Date: 2026-10-19
"""

from alembic import op

# revision identifiers, used by Alembic.
revision = "retention_001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ──────────────────────────────────────────────────────────────────────
    # 1. Tenant & Membership
    # ──────────────────────────────────────────────────────────────────────
    op.execute("""
    CREATE TABLE IF NOT EXISTS bp_boxes (
        id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        name            VARCHAR(255) NOT NULL,
        slug            VARCHAR(100) UNIQUE NOT NULL,
        timezone        VARCHAR(50) DEFAULT 'UTC',
        created_at      TIMESTAMPTZ DEFAULT NOW()
    )
    """)

    op.execute("""
    CREATE TABLE IF NOT EXISTS bp_memberships (
        id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        box_id              UUID NOT NULL REFERENCES bp_boxes(id) ON DELETE CASCADE,
        display_name        VARCHAR(255) NOT NULL,
        role                VARCHAR(20) NOT NULL DEFAULT 'athlete',
        is_active           BOOLEAN NOT NULL DEFAULT TRUE,
        assigned_coach_id   UUID REFERENCES bp_memberships(id) ON DELETE SET NULL,
        joined_at           TIMESTAMPTZ DEFAULT NOW(),
        created_at          TIMESTAMPTZ DEFAULT NOW()
    )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_memberships_box_role_active "
        "ON bp_memberships(box_id, role, is_active)"
    )

    # ──────────────────────────────────────────────────────────────────────
    # 2. Signal Store (written by the upstream aggregation job)
    # ──────────────────────────────────────────────────────────────────────
    op.execute("""
    CREATE TABLE IF NOT EXISTS bp_signal_snapshots (
        id                      UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        box_id                  UUID NOT NULL REFERENCES bp_boxes(id) ON DELETE CASCADE,
        membership_id           UUID NOT NULL REFERENCES bp_memberships(id) ON DELETE CASCADE,
        captured_at             TIMESTAMPTZ NOT NULL,
        attendance_score        NUMERIC(5,2),
        performance_score       NUMERIC(5,2),
        engagement_score        NUMERIC(5,2),
        wellness_score          NUMERIC(5,2),
        attendance_trend        NUMERIC(8,2),
        performance_trend       NUMERIC(8,2),
        engagement_trend        NUMERIC(8,2),
        wellness_trend          NUMERIC(8,2),
        days_since_last_visit   INTEGER,
        days_since_last_checkin INTEGER,
        days_since_last_pr      INTEGER,
        attendance_rate         NUMERIC(5,2),
        checkin_rate            NUMERIC(5,2),
        pr_activity_count       INTEGER,
        created_at              TIMESTAMPTZ DEFAULT NOW()
    )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_signal_snapshots_member_captured "
        "ON bp_signal_snapshots(membership_id, captured_at)"
    )

    # ──────────────────────────────────────────────────────────────────────
    # 3. Risk Scores & Factors (append-only)
    # ──────────────────────────────────────────────────────────────────────
    op.execute("""
    CREATE TABLE IF NOT EXISTS bp_risk_scores (
        id                      UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        box_id                  UUID NOT NULL REFERENCES bp_boxes(id) ON DELETE CASCADE,
        membership_id           UUID NOT NULL REFERENCES bp_memberships(id) ON DELETE CASCADE,
        overall_risk_score      NUMERIC(5,2) NOT NULL,
        risk_level              VARCHAR(20) NOT NULL,
        churn_probability       NUMERIC(5,4) NOT NULL,
        attendance_score        NUMERIC(5,2) NOT NULL,
        performance_score       NUMERIC(5,2) NOT NULL,
        engagement_score        NUMERIC(5,2) NOT NULL,
        wellness_score          NUMERIC(5,2) NOT NULL,
        attendance_trend        NUMERIC(8,2) NOT NULL,
        performance_trend       NUMERIC(8,2) NOT NULL,
        engagement_trend        NUMERIC(8,2) NOT NULL,
        wellness_trend          NUMERIC(8,2) NOT NULL,
        days_since_last_visit   INTEGER NOT NULL,
        days_since_last_checkin INTEGER NOT NULL,
        days_since_last_pr      INTEGER NOT NULL,
        factors                 JSONB DEFAULT '{}',
        calculated_at           TIMESTAMPTZ NOT NULL,
        valid_until             TIMESTAMPTZ NOT NULL,
        created_at              TIMESTAMPTZ DEFAULT NOW(),
        CONSTRAINT ck_overall_risk_score_range CHECK (overall_risk_score >= 0 AND overall_risk_score <= 100),
        CONSTRAINT ck_churn_probability_range CHECK (churn_probability >= 0 AND churn_probability <= 1),
        CONSTRAINT ck_attendance_score_range CHECK (attendance_score >= 0 AND attendance_score <= 100),
        CONSTRAINT ck_performance_score_range CHECK (performance_score >= 0 AND performance_score <= 100),
        CONSTRAINT ck_engagement_score_range CHECK (engagement_score >= 0 AND engagement_score <= 100),
        CONSTRAINT ck_wellness_score_range CHECK (wellness_score >= 0 AND wellness_score <= 100),
        CONSTRAINT ck_recency_non_negative CHECK (
            days_since_last_visit >= 0 AND days_since_last_checkin >= 0 AND days_since_last_pr >= 0
        )
    )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_risk_scores_box_member ON bp_risk_scores(box_id, membership_id)")
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_risk_scores_member_calculated "
        "ON bp_risk_scores(membership_id, calculated_at DESC)"
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_risk_scores_box_level ON bp_risk_scores(box_id, risk_level)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_risk_scores_valid_until ON bp_risk_scores(valid_until)")

    op.execute("""
    CREATE TABLE IF NOT EXISTS bp_risk_factors (
        id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        risk_score_id   UUID NOT NULL REFERENCES bp_risk_scores(id) ON DELETE CASCADE,
        membership_id   UUID NOT NULL,
        factor_type     VARCHAR(64) NOT NULL,
        factor_value    NUMERIC(10,4) NOT NULL,
        weight          NUMERIC(5,4) NOT NULL,
        contribution    NUMERIC(8,4) NOT NULL,
        description     TEXT,
        metadata        JSONB DEFAULT '{}',
        created_at      TIMESTAMPTZ DEFAULT NOW(),
        CONSTRAINT ck_risk_factor_weight_range CHECK (weight >= 0 AND weight <= 1),
        CONSTRAINT ck_risk_factor_contribution_range CHECK (contribution >= -100 AND contribution <= 100)
    )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_risk_factors_risk_score_id ON bp_risk_factors(risk_score_id)")
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_risk_factors_member_type "
        "ON bp_risk_factors(membership_id, factor_type)"
    )

    # ──────────────────────────────────────────────────────────────────────
    # 4. Alerts & Escalations
    # ──────────────────────────────────────────────────────────────────────
    op.execute("""
    CREATE TABLE IF NOT EXISTS bp_alerts (
        id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        box_id              UUID NOT NULL REFERENCES bp_boxes(id) ON DELETE CASCADE,
        membership_id       UUID NOT NULL REFERENCES bp_memberships(id) ON DELETE CASCADE,
        assigned_coach_id   UUID REFERENCES bp_memberships(id) ON DELETE SET NULL,
        alert_type          VARCHAR(50) NOT NULL,
        severity            VARCHAR(20) NOT NULL,
        title               VARCHAR(500) NOT NULL,
        description         TEXT NOT NULL,
        trigger_data        JSONB DEFAULT '{}',
        suggested_actions   JSONB DEFAULT '{}',
        status              VARCHAR(20) NOT NULL DEFAULT 'active',
        acknowledged_at     TIMESTAMPTZ,
        acknowledged_by_id  UUID,
        resolved_at         TIMESTAMPTZ,
        resolved_by_id      UUID,
        resolution_notes    TEXT,
        follow_up_at        TIMESTAMPTZ,
        reminders_sent      INTEGER NOT NULL DEFAULT 0,
        last_evaluated_at   TIMESTAMPTZ,
        last_escalated_at   TIMESTAMPTZ,
        created_at          TIMESTAMPTZ DEFAULT NOW(),
        updated_at          TIMESTAMPTZ DEFAULT NOW(),
        CONSTRAINT ck_alerts_reminders_sent_positive CHECK (reminders_sent >= 0)
    )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_alerts_box_member ON bp_alerts(box_id, membership_id)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_alerts_box_status_severity ON bp_alerts(box_id, status, severity)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_alerts_assigned_status ON bp_alerts(assigned_coach_id, status)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_alerts_follow_up_at ON bp_alerts(follow_up_at)")
    op.execute("""
    CREATE UNIQUE INDEX IF NOT EXISTS uq_alerts_one_active_per_type
        ON bp_alerts(membership_id, alert_type)
        WHERE status = 'active'
    """)

    op.execute("""
    CREATE TABLE IF NOT EXISTS bp_alert_escalations (
        id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        alert_id            UUID NOT NULL REFERENCES bp_alerts(id) ON DELETE CASCADE,
        from_severity       VARCHAR(20) NOT NULL,
        to_severity         VARCHAR(20) NOT NULL,
        reason              TEXT NOT NULL,
        auto_escalated      BOOLEAN NOT NULL DEFAULT FALSE,
        escalated_by_id     UUID,
        escalated_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        created_at          TIMESTAMPTZ DEFAULT NOW()
    )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_alert_escalations_alert_id ON bp_alert_escalations(alert_id)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_alert_escalations_escalated_at ON bp_alert_escalations(escalated_at)")

    # ──────────────────────────────────────────────────────────────────────
    # 5. Interventions & Outcomes
    # ──────────────────────────────────────────────────────────────────────
    op.execute("""
    CREATE TABLE IF NOT EXISTS bp_interventions (
        id                      UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        box_id                  UUID NOT NULL REFERENCES bp_boxes(id) ON DELETE CASCADE,
        membership_id           UUID NOT NULL REFERENCES bp_memberships(id) ON DELETE CASCADE,
        coach_id                UUID NOT NULL REFERENCES bp_memberships(id) ON DELETE CASCADE,
        alert_id                UUID REFERENCES bp_alerts(id) ON DELETE SET NULL,
        intervention_type       VARCHAR(50) NOT NULL,
        title                   VARCHAR(500) NOT NULL,
        description             TEXT NOT NULL,
        outcome                 VARCHAR(20),
        member_response         TEXT,
        coach_notes             TEXT,
        follow_up_required      BOOLEAN NOT NULL DEFAULT FALSE,
        follow_up_at            TIMESTAMPTZ,
        follow_up_completed     BOOLEAN NOT NULL DEFAULT FALSE,
        follow_up_completed_at  TIMESTAMPTZ,
        intervention_date       TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        created_at              TIMESTAMPTZ DEFAULT NOW(),
        updated_at              TIMESTAMPTZ DEFAULT NOW()
    )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_interventions_box_member ON bp_interventions(box_id, membership_id)")
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_interventions_member_date "
        "ON bp_interventions(membership_id, intervention_date)"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_interventions_coach_date "
        "ON bp_interventions(coach_id, intervention_date)"
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_interventions_alert_id ON bp_interventions(alert_id)")
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_interventions_pending_follow_ups "
        "ON bp_interventions(follow_up_required, follow_up_completed, follow_up_at)"
    )

    op.execute("""
    CREATE TABLE IF NOT EXISTS bp_intervention_outcomes (
        id                      UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        intervention_id         UUID NOT NULL UNIQUE REFERENCES bp_interventions(id) ON DELETE CASCADE,
        membership_id           UUID NOT NULL,
        box_id                  UUID NOT NULL,
        risk_score_change       NUMERIC(5,2) NOT NULL,
        attendance_rate_change  NUMERIC(5,2) NOT NULL,
        checkin_rate_change     NUMERIC(5,2) NOT NULL,
        wellness_score_change   NUMERIC(5,2) NOT NULL,
        pr_activity_change      INTEGER NOT NULL,
        effectiveness           VARCHAR(20) NOT NULL,
        effectiveness_score     NUMERIC(5,2) NOT NULL,
        pre_risk_score_id       UUID,
        post_risk_score_id      UUID,
        outcome_period_start    TIMESTAMPTZ NOT NULL,
        outcome_period_end      TIMESTAMPTZ NOT NULL,
        measured_at             TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        notes                   TEXT
    )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_intervention_outcomes_member "
        "ON bp_intervention_outcomes(membership_id)"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_intervention_outcomes_box_measured "
        "ON bp_intervention_outcomes(box_id, measured_at)"
    )


def downgrade() -> None:
    drop_order = [
        "bp_intervention_outcomes",
        "bp_interventions",
        "bp_alert_escalations",
        "bp_alerts",
        "bp_risk_factors",
        "bp_risk_scores",
        "bp_signal_snapshots",
        "bp_memberships",
        "bp_boxes",
    ]
    for tbl in drop_order:
        op.execute(f"DROP TABLE IF EXISTS {tbl} CASCADE")
