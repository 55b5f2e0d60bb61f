#!/usr/bin/env python3
"""
Benchmark Comparator
Concurrent synthetic load against stable and candidate tracks with a threshold-based verdict
"""

import asyncio
import itertools
import logging
import math
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..orchestration.models import (
    BenchmarkResult, BenchmarkThresholds, LoadProfile, TrackStats, Verdict
)
from ..utils.logging_config import log_benchmark_stats
from .probe import ProbeClient, ProbeResult

logger = logging.getLogger("rollout.app")

STABLE = "stable"
CANDIDATE = "candidate"


@dataclass(frozen=True)
class BenchmarkSample:
    timestamp: datetime
    track: str
    latency_ms: float
    success: bool
    status: Optional[int] = None


class SampleLog:
    """Append-only sample log shared by all load workers"""

    def __init__(self):
        self._samples: List[BenchmarkSample] = []
        self._lock = threading.Lock()

    def append(self, sample: BenchmarkSample):
        with self._lock:
            self._samples.append(sample)

    def snapshot(self, track: Optional[str] = None) -> List[BenchmarkSample]:
        with self._lock:
            samples = list(self._samples)
        if track is None:
            return samples
        return [s for s in samples if s.track == track]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([asdict(s) for s in self.snapshot()])

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)


def reduce_samples(samples: Sequence[BenchmarkSample], duration_seconds: float) -> TrackStats:
    """
    Reduce one track's samples.

    Latency percentiles use successful requests only; error_rate counts every
    sample; throughput is successful requests per second of the run.
    """
    if not samples:
        return TrackStats(
            p50=None, p95=None, p99=None, error_rate=1.0, throughput_rps=0.0,
            sample_count=0, success_count=0, duration_seconds=duration_seconds,
        )

    data = pd.DataFrame([asdict(s) for s in samples])
    successful = data[data["success"]]
    latencies = successful["latency_ms"].to_numpy(dtype=float)

    if len(latencies) > 0:
        p50, p95, p99 = (float(v) for v in np.percentile(latencies, [50, 95, 99]))
    else:
        p50 = p95 = p99 = None

    return TrackStats(
        p50=p50,
        p95=p95,
        p99=p99,
        error_rate=float(1.0 - len(successful) / len(data)),
        throughput_rps=float(len(successful) / duration_seconds) if duration_seconds > 0 else 0.0,
        sample_count=int(len(data)),
        success_count=int(len(successful)),
        duration_seconds=duration_seconds,
    )


def _at_most(value: float, limit: float) -> bool:
    return value <= limit or math.isclose(value, limit, rel_tol=1e-9, abs_tol=1e-12)


def _at_least(value: float, limit: float) -> bool:
    return value >= limit or math.isclose(value, limit, rel_tol=1e-9, abs_tol=1e-12)


def has_baseline(stable: Optional[TrackStats]) -> bool:
    return stable is not None and stable.success_count > 0 and stable.p95 is not None


def compute_verdict(
    stable: Optional[TrackStats],
    candidate: TrackStats,
    thresholds: BenchmarkThresholds,
    allow_no_baseline: bool = False
) -> Tuple[Verdict, List[str]]:
    """
    Candidate passes iff
      error_rate_candidate <= error_rate_threshold
      p95_candidate <= p95_stable * latency_regression_factor
      throughput_candidate >= throughput_stable * min_throughput_ratio
    Exact ties pass. Without a usable stable baseline the result can only
    pass when allow_no_baseline is set.
    """
    reasons: List[str] = []

    if not _at_most(candidate.error_rate, thresholds.error_rate_threshold):
        reasons.append(
            f"error_rate {candidate.error_rate:.4f} exceeds threshold {thresholds.error_rate_threshold:.4f}"
        )

    if candidate.p95 is None:
        reasons.append("candidate produced no successful requests")

    if not has_baseline(stable):
        if not allow_no_baseline:
            reasons.append("no stable baseline to compare against and no-baseline policy is not enabled")
        return (Verdict.FAIL if reasons else Verdict.PASS), reasons

    if candidate.p95 is not None:
        latency_limit = stable.p95 * thresholds.latency_regression_factor
        if not _at_most(candidate.p95, latency_limit):
            reasons.append(f"p95 latency {candidate.p95:.1f}ms exceeds limit {latency_limit:.1f}ms")

    throughput_floor = stable.throughput_rps * thresholds.min_throughput_ratio
    if not _at_least(candidate.throughput_rps, throughput_floor):
        reasons.append(
            f"throughput {candidate.throughput_rps:.2f}rps below floor {throughput_floor:.2f}rps"
        )

    return (Verdict.FAIL if reasons else Verdict.PASS), reasons


class BenchmarkComparator:
    """Drives load against both tracks concurrently and compares the reduced statistics"""

    def __init__(self, probe_client: ProbeClient):
        self.probe_client = probe_client

    async def compare(
        self,
        stable_endpoint: Optional[str],
        candidate_endpoint: str,
        load_profile: LoadProfile,
        thresholds: Optional[BenchmarkThresholds] = None,
        allow_no_baseline: bool = False
    ) -> BenchmarkResult:
        thresholds = thresholds or BenchmarkThresholds()
        load_profile.validate()

        targets: Dict[str, str] = {CANDIDATE: candidate_endpoint}
        if stable_endpoint:
            targets[STABLE] = stable_endpoint

        sample_log = SampleLog()
        durations = await asyncio.gather(*(
            self._drive(track, endpoint, load_profile, sample_log)
            for track, endpoint in targets.items()
        ))
        duration_by_track = dict(zip(targets, durations))

        candidate_stats = reduce_samples(sample_log.snapshot(CANDIDATE), duration_by_track[CANDIDATE])
        stable_stats = None
        if STABLE in targets:
            stable_stats = reduce_samples(sample_log.snapshot(STABLE), duration_by_track[STABLE])
            log_benchmark_stats(STABLE, stable_stats.to_dict(), endpoint=stable_endpoint)
        log_benchmark_stats(CANDIDATE, candidate_stats.to_dict(), endpoint=candidate_endpoint)

        verdict, reasons = compute_verdict(stable_stats, candidate_stats, thresholds, allow_no_baseline)
        logger.info(f"Benchmark verdict: {verdict.value}" + (f" ({'; '.join(reasons)})" if reasons else ""))

        return BenchmarkResult(
            stable=stable_stats,
            candidate=candidate_stats,
            verdict=verdict,
            reasons=reasons,
            baseline=has_baseline(stable_stats),
            thresholds=thresholds,
        )

    async def _drive(self, track: str, endpoint: str, profile: LoadProfile, sample_log: SampleLog) -> float:
        """Run profile.concurrency workers against one endpoint; returns wall-clock seconds"""
        start_time = time.monotonic()
        deadline = start_time + profile.duration_seconds if profile.duration_seconds else None
        indices = itertools.count()

        async def worker():
            while True:
                index = next(indices)
                if profile.request_count is not None and index >= profile.request_count:
                    return
                if deadline is not None and time.monotonic() >= deadline:
                    return

                sent_at = time.perf_counter()
                try:
                    result = await self.probe_client.send(endpoint, profile.render_payload(index), profile.request_timeout)
                except Exception as e:
                    # recorded as a failed sample so it counts towards error_rate
                    result = ProbeResult(
                        latency_ms=(time.perf_counter() - sent_at) * 1000,
                        success=False,
                        error=str(e),
                    )

                sample_log.append(BenchmarkSample(
                    timestamp=datetime.utcnow(),
                    track=track,
                    latency_ms=result.latency_ms,
                    success=result.success,
                    status=result.status,
                ))

        await asyncio.gather(*(worker() for _ in range(profile.concurrency)))
        return time.monotonic() - start_time
