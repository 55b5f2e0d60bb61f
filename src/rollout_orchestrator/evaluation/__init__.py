"""
Evaluation Package
Health validation and stable/candidate benchmark comparison
"""

from .benchmark import BenchmarkComparator, compute_verdict, reduce_samples
from .health import HealthValidator, ProbeConfig
from .probe import HTTPProbeClient, ProbeClient, ProbeResult

__all__ = [
    'BenchmarkComparator',
    'HTTPProbeClient',
    'HealthValidator',
    'ProbeClient',
    'ProbeConfig',
    'ProbeResult',
    'compute_verdict',
    'reduce_samples'
]
