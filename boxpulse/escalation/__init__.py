"""
BoxPulse Escalation.

Components:
- schemas: Escalation triggers and decisions
- controller: SLA / risk-increase sweep and manual escalation
"""
