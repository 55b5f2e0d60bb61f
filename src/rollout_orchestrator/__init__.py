"""
Model Rollout Orchestrator
Zero-downtime replacement of a serving model artifact using stable/candidate tracks
"""

__version__ = "1.0.0"
