#!/usr/bin/env python3
"""
Rollout Metrics Tests
"""

from prometheus_client import REGISTRY

from conftest import make_request
from rollout_orchestrator.monitoring.metrics import RolloutMetrics
from rollout_orchestrator.orchestration.models import (
    BenchmarkResult, Phase, TrackStats, Verdict
)
from rollout_orchestrator.orchestration.state_machine import RolloutStateMachine


def sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


def benchmark(verdict):
    stats = TrackStats(p50=10.0, p95=12.0, p99=15.0, error_rate=0.0, throughput_rps=50.0)
    return BenchmarkResult(stable=stats, candidate=stats, verdict=verdict)


class TestRolloutMetrics:
    """Listener translating revisions into Prometheus series"""

    def test_rollout_lifecycle(self):
        service = "metrics-lifecycle"
        metrics = RolloutMetrics()
        machine = RolloutStateMachine()

        started = sample("rollouts_started_total", service=service)
        finished = sample("rollouts_finished_total", service=service, phase="switched")
        transitions = sample("rollout_phase_transitions_total", from_phase="pending", to_phase="artifact_ready")
        verdicts = sample("rollout_benchmark_verdicts_total", service=service, verdict="pass")

        state = RolloutStateMachine.initial("m-1", make_request(service=service))
        metrics(state, None)
        assert sample("rollouts_started_total", service=service) == started + 1
        assert sample("rollouts_active", service=service) == 1

        previous = state.phase
        for phase in (Phase.ARTIFACT_READY, Phase.CANDIDATE_DEPLOYED, Phase.VALIDATED):
            state = machine.transition(state, phase)
            metrics(state, previous)
            previous = phase

        state = machine.transition(state, Phase.BENCHMARKED, benchmark_result=benchmark(Verdict.PASS))
        metrics(state, previous)

        waiting = machine.record(state, awaiting_confirmation=True)
        metrics(waiting, Phase.BENCHMARKED)
        assert sample("rollouts_awaiting_confirmation", service=service) == 1

        switched = machine.transition(waiting, Phase.SWITCHED)
        metrics(switched, Phase.BENCHMARKED)

        assert sample("rollouts_awaiting_confirmation", service=service) == 0
        assert sample("rollouts_active", service=service) == 0
        assert sample("rollouts_finished_total", service=service, phase="switched") == finished + 1
        assert sample(
            "rollout_phase_transitions_total", from_phase="pending", to_phase="artifact_ready"
        ) == transitions + 1
        assert sample("rollout_benchmark_verdicts_total", service=service, verdict="pass") == verdicts + 1
        assert sample("rollout_phase_duration_seconds_count", phase="validated") >= 1

    def test_record_without_phase_change_is_not_a_transition(self):
        service = "metrics-record"
        metrics = RolloutMetrics()
        machine = RolloutStateMachine()
        state = RolloutStateMachine.initial("m-2", make_request(service=service))
        metrics(state, None)
        before = sample("rollout_phase_transitions_total", from_phase="pending", to_phase="pending")

        metrics(machine.record(state, retry_count=1), Phase.PENDING)

        assert sample("rollout_phase_transitions_total", from_phase="pending", to_phase="pending") == before
        assert sample("rollouts_active", service=service) == 1


class TestOrchestratorMetrics:
    async def test_listener_attached_to_orchestrator(self, harness, orchestrator):
        """Test a real rollout drives the counters through the listener hook"""
        service = "llm-chat"
        orchestrator.add_listener(RolloutMetrics())
        before = sample("rollouts_finished_total", service=service, phase="switched")
        await harness.seed_stable()

        await orchestrator.run_rollout(make_request(auto_switch=True))

        assert sample("rollouts_finished_total", service=service, phase="switched") == before + 1
