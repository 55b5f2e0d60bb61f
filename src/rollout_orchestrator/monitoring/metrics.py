"""
Prometheus metrics for rollouts, fed by the orchestrator's revision listener
"""

from typing import Optional

from prometheus_client import Counter, Gauge, Histogram

from ..orchestration.models import Phase, RolloutState

# Prometheus metrics
ROLLOUTS_STARTED = Counter('rollouts_started_total', 'Rollouts accepted', ['service'])
ROLLOUTS_FINISHED = Counter('rollouts_finished_total', 'Rollouts that reached a terminal phase', ['service', 'phase'])
PHASE_TRANSITIONS = Counter('rollout_phase_transitions_total', 'Rollout phase transitions', ['from_phase', 'to_phase'])
ACTIVE_ROLLOUTS = Gauge('rollouts_active', 'Non-terminal rollouts', ['service'])
PHASE_DURATION = Histogram(
    'rollout_phase_duration_seconds',
    'Time spent in a phase before leaving it',
    ['phase'],
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800, 3600),
)
BENCHMARK_VERDICTS = Counter('rollout_benchmark_verdicts_total', 'Benchmark verdicts', ['service', 'verdict'])
AWAITING_CONFIRMATION = Gauge('rollouts_awaiting_confirmation', 'Rollouts paused for operator confirmation', ['service'])


class RolloutMetrics:
    """Orchestrator listener translating persisted revisions into metric updates"""

    def __init__(self):
        self._awaiting = set()

    def __call__(self, state: RolloutState, previous_phase: Optional[Phase]):
        service = state.service

        if previous_phase is None:
            ROLLOUTS_STARTED.labels(service=service).inc()
            ACTIVE_ROLLOUTS.labels(service=service).inc()
            return

        if state.awaiting_confirmation and state.id not in self._awaiting:
            self._awaiting.add(state.id)
            AWAITING_CONFIRMATION.labels(service=service).inc()
        elif not state.awaiting_confirmation and state.id in self._awaiting:
            self._awaiting.discard(state.id)
            AWAITING_CONFIRMATION.labels(service=service).dec()

        if previous_phase is state.phase:
            return

        PHASE_TRANSITIONS.labels(from_phase=previous_phase.value, to_phase=state.phase.value).inc()

        history = state.phase_history
        if len(history) >= 2:
            elapsed = (history[-1].entered_at - history[-2].entered_at).total_seconds()
            PHASE_DURATION.labels(phase=previous_phase.value).observe(max(elapsed, 0.0))

        if state.phase is Phase.BENCHMARKED and state.benchmark_result is not None:
            BENCHMARK_VERDICTS.labels(service=service, verdict=state.benchmark_result.verdict.value).inc()

        if state.is_terminal:
            ROLLOUTS_FINISHED.labels(service=service, phase=state.phase.value).inc()
            ACTIVE_ROLLOUTS.labels(service=service).dec()
