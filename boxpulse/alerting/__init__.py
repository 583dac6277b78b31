"""
BoxPulse Alerting.

Components:
- schemas: Alert types, statuses, trigger rules, transition table
- manager: Rule evaluation, deduplicated create/refresh, status transitions
"""
