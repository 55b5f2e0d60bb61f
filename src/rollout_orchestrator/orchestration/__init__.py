"""
Rollout Orchestration Package
Data model and state machine; the driver lives in orchestration.orchestrator
"""

from .models import (
    ArtifactSpec, BenchmarkResult, BenchmarkThresholds, LoadProfile, ModelArtifact, Phase,
    RolloutRequest, RolloutState, TrackBinding, TrackRole, TrafficTarget, ValidationResult, Verdict
)
from .state_machine import RolloutStateMachine

__all__ = [
    'ArtifactSpec',
    'BenchmarkResult',
    'BenchmarkThresholds',
    'LoadProfile',
    'ModelArtifact',
    'Phase',
    'RolloutRequest',
    'RolloutState',
    'RolloutStateMachine',
    'TrackBinding',
    'TrackRole',
    'TrafficTarget',
    'ValidationResult',
    'Verdict'
]
