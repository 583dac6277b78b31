"""
BoxPulse Outcome Evaluation.

Components:
- schemas: Effectiveness categories, measurements, views
- evaluator: Pre/post window comparison and write-once recording
"""
