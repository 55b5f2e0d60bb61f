#!/usr/bin/env python3
"""
Benchmark Comparator Tests
Sample reduction, verdict policy and concurrent load against both tracks
"""

from datetime import datetime

import pytest

from conftest import ScriptedProbeClient
from rollout_orchestrator.evaluation.benchmark import (
    BenchmarkComparator, BenchmarkSample, SampleLog, compute_verdict, reduce_samples
)
from rollout_orchestrator.orchestration.models import BenchmarkThresholds, LoadProfile, TrackStats, Verdict

STABLE_URL = "http://stable.test:8080"
CANDIDATE_URL = "http://candidate.test:8080"


def stats(p95, error_rate, rps):
    return TrackStats(p50=p95, p95=p95, p99=p95, error_rate=error_rate, throughput_rps=rps, sample_count=100,
                      success_count=int(round(100 * (1 - error_rate))))


def sample(latency_ms, success=True, track="candidate"):
    return BenchmarkSample(timestamp=datetime.utcnow(), track=track, latency_ms=latency_ms, success=success)


class TestVerdict:
    """Threshold policy over reduced statistics"""

    def test_small_regression_within_policy_passes(self):
        """Test p95 +5% and throughput -10% pass the default policy"""
        verdict, reasons = compute_verdict(stats(200, 0.0, 50), stats(210, 0.0, 45), BenchmarkThresholds())

        assert verdict is Verdict.PASS
        assert reasons == []

    def test_error_rate_over_threshold_fails(self):
        """Test a 2% error rate fails against the 1% threshold, alongside the latency regression"""
        verdict, reasons = compute_verdict(stats(200, 0.0, 50), stats(300, 0.02, 45), BenchmarkThresholds())

        assert verdict is Verdict.FAIL
        assert any("error_rate" in reason for reason in reasons)
        assert any("p95 latency" in reason for reason in reasons)

    def test_throughput_floor(self):
        """Test throughput below the ratio of stable fails"""
        verdict, reasons = compute_verdict(stats(200, 0.0, 50), stats(200, 0.0, 30), BenchmarkThresholds())

        assert verdict is Verdict.FAIL
        assert reasons == ["throughput 30.00rps below floor 40.00rps"]

    def test_exact_ties_pass(self):
        """Test values exactly at each limit pass"""
        thresholds = BenchmarkThresholds(error_rate_threshold=0.01, latency_regression_factor=1.2, min_throughput_ratio=0.8)

        verdict, reasons = compute_verdict(stats(200, 0.0, 50), stats(240, 0.01, 40), thresholds)

        assert verdict is Verdict.PASS, reasons

    def test_no_baseline_fails_by_default(self):
        """Test a missing stable baseline fails unless the no-baseline policy is enabled"""
        candidate = stats(100, 0.0, 50)

        verdict, reasons = compute_verdict(None, candidate, BenchmarkThresholds())
        assert verdict is Verdict.FAIL
        assert "baseline" in reasons[0]

        verdict, reasons = compute_verdict(None, candidate, BenchmarkThresholds(), allow_no_baseline=True)
        assert verdict is Verdict.PASS

    def test_no_baseline_still_checks_error_rate(self):
        """Test the no-baseline policy keeps the absolute error-rate gate"""
        verdict, _ = compute_verdict(None, stats(100, 0.5, 50), BenchmarkThresholds(), allow_no_baseline=True)

        assert verdict is Verdict.FAIL

    def test_stable_without_successes_is_no_baseline(self):
        """Test a stable track that served nothing cannot act as a baseline"""
        dead_stable = TrackStats(p50=None, p95=None, p99=None, error_rate=1.0, throughput_rps=0.0)

        verdict, reasons = compute_verdict(dead_stable, stats(100, 0.0, 50), BenchmarkThresholds())

        assert verdict is Verdict.FAIL
        assert "baseline" in reasons[0]


class TestReduceSamples:
    """Per-track statistics"""

    def test_percentiles_use_successful_requests_only(self):
        """Test failed samples count towards error_rate but not latency"""
        samples = [sample(float(ms)) for ms in range(1, 101)] + [sample(5000.0, success=False)] * 25

        result = reduce_samples(samples, duration_seconds=10.0)

        assert result.sample_count == 125
        assert result.success_count == 100
        assert result.error_rate == pytest.approx(0.2)
        assert result.p50 == pytest.approx(50.5)
        assert result.p95 == pytest.approx(95.05)
        assert result.p99 < 100.0
        assert result.throughput_rps == pytest.approx(10.0)

    def test_empty_samples(self):
        """Test a track with no samples reports total failure"""
        result = reduce_samples([], duration_seconds=1.0)

        assert result.error_rate == 1.0
        assert result.p95 is None
        assert result.throughput_rps == 0.0

    def test_all_failed(self):
        result = reduce_samples([sample(10.0, success=False)] * 4, duration_seconds=1.0)

        assert result.error_rate == 1.0
        assert result.p50 is None and result.p95 is None and result.p99 is None

    def test_sample_log_filters_by_track(self):
        log = SampleLog()
        log.append(sample(1.0, track="stable"))
        log.append(sample(2.0, track="candidate"))
        log.append(sample(3.0, track="candidate"))

        assert len(log) == 3
        assert [s.latency_ms for s in log.snapshot("candidate")] == [2.0, 3.0]
        assert list(log.to_frame()["track"]) == ["stable", "candidate", "candidate"]


class RaisingProbeClient(ScriptedProbeClient):
    async def send(self, endpoint, payload, timeout):
        if "candidate" in endpoint:
            raise RuntimeError("connection pool exhausted")
        return await super().send(endpoint, payload, timeout)


class TestBenchmarkComparator:
    """Load generation against both endpoints"""

    async def test_request_count_profile(self):
        """Test each track receives exactly request_count requests"""
        probe = ScriptedProbeClient()
        comparator = BenchmarkComparator(probe)

        result = await comparator.compare(
            STABLE_URL, CANDIDATE_URL, LoadProfile(concurrency=3, request_count=12),
            thresholds=BenchmarkThresholds(min_throughput_ratio=0.0),
        )

        assert result.stable.sample_count == 12
        assert result.candidate.sample_count == 12
        assert probe.calls.count(STABLE_URL) == 12
        assert result.passed
        assert result.baseline

    async def test_duration_profile(self):
        """Test a duration-bounded profile stops sending after the deadline"""
        probe = ScriptedProbeClient()
        probe.default.delay = 0.01
        comparator = BenchmarkComparator(probe)

        result = await comparator.compare(
            None, CANDIDATE_URL, LoadProfile(concurrency=2, request_count=None, duration_seconds=0.1),
            allow_no_baseline=True,
        )

        assert result.stable is None
        assert not result.baseline
        assert 2 <= result.candidate.sample_count <= 40
        assert result.candidate.duration_seconds >= 0.1

    async def test_slow_candidate_fails(self):
        """Test a candidate with triple the latency of stable is rejected"""
        probe = ScriptedProbeClient()
        probe.script("candidate", latency_ms=30.0)
        comparator = BenchmarkComparator(probe)

        result = await comparator.compare(
            STABLE_URL, CANDIDATE_URL, LoadProfile(concurrency=2, request_count=10),
            thresholds=BenchmarkThresholds(min_throughput_ratio=0.0),
        )

        assert result.verdict is Verdict.FAIL
        assert result.candidate.p95 == pytest.approx(30.0)
        assert result.stable.p95 == pytest.approx(10.0)

    async def test_probe_exceptions_count_as_failures(self):
        """Test an exception from the probe client becomes a failed sample"""
        comparator = BenchmarkComparator(RaisingProbeClient())

        result = await comparator.compare(STABLE_URL, CANDIDATE_URL, LoadProfile(concurrency=2, request_count=6))

        assert result.candidate.sample_count == 6
        assert result.candidate.error_rate == 1.0
        assert result.verdict is Verdict.FAIL

    async def test_payload_template_rendered(self):
        """Test {index} placeholders are substituted per request"""
        profile = LoadProfile(concurrency=1, request_count=2, payload_template={"prompt": "q-{index}", "n": 1})

        assert profile.render_payload(7) == {"prompt": "q-7", "n": 1}
