"""
BoxPulse Retention Engine.

Architecture:
    boxpulse/
    ├── api/             # FastAPI routers (coach-facing HTTP layer)
    ├── auth/            # JWT verification, request identity
    ├── db/              # SQLAlchemy models, engine, query helpers
    ├── middleware/      # Tenant context, request context, error handling
    ├── signals/         # Signal Store read contract
    ├── scoring/         # Risk Scorer + Factor Recorder
    ├── alerting/        # Alert Manager (dedup, state machine)
    ├── escalation/      # Escalation Controller
    ├── interventions/   # Intervention Tracker
    ├── outcomes/        # Outcome Evaluator
    ├── notifications/   # Outbound alert events
    └── services/        # Scoring pipeline, scheduler

Data Flow:
    Signal Store → Risk Scorer → Factor Recorder → Alert Manager
    → Escalation Controller / Intervention Tracker → Outcome Evaluator
"""

__version__ = "1.0.0"
