"""
BoxPulse Risk Scoring.

Components:
- schemas: Risk levels, factor breakdowns, score views
- scorer: Composite score, churn probability, factor recording
"""
