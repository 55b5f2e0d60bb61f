"""
Shared fixtures: scripted probes, simulated cluster, temporary artifact store, in-memory SQLite
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from rollout_orchestrator.artifacts.pipeline import ArtifactPipeline, artifact_key
from rollout_orchestrator.artifacts.sources import LocalModelSource, Quantizer
from rollout_orchestrator.artifacts.store import LocalArtifactStore
from rollout_orchestrator.config import OrchestratorSettings
from rollout_orchestrator.database.connection import create_session_factory
from rollout_orchestrator.database.repository import RolloutRepository
from rollout_orchestrator.deployment.cleanup import Reconciler
from rollout_orchestrator.deployment.cluster import InMemoryClusterAPI
from rollout_orchestrator.deployment.controller import DeploymentController
from rollout_orchestrator.evaluation.benchmark import BenchmarkComparator
from rollout_orchestrator.evaluation.health import HealthValidator, ProbeConfig
from rollout_orchestrator.evaluation.probe import ProbeClient, ProbeResult
from rollout_orchestrator.orchestration.models import (
    ArtifactSpec, BenchmarkThresholds, LoadProfile, RolloutRequest, TrackRole
)
from rollout_orchestrator.orchestration.orchestrator import RolloutOrchestrator
from rollout_orchestrator.utils.error_handling import DownloadError, RetryPolicy

SERVICE = "llm-chat"
BASE_MODEL = "base-7b"


@dataclass
class ProbeScript:
    latency_ms: float = 10.0
    success: bool = True
    status: Optional[int] = 200
    delay: float = 0.001
    fail_every: Optional[int] = None
    error: Optional[str] = None
    sent: int = 0


class ScriptedProbeClient(ProbeClient):
    """Answers probes from per-endpoint scripts; endpoints are matched by substring"""

    def __init__(self):
        self.scripts: Dict[str, ProbeScript] = {}
        self.calls: List[str] = []
        self.default = ProbeScript()

    def script(self, match: str, **kwargs) -> ProbeScript:
        self.scripts[match] = ProbeScript(**kwargs)
        return self.scripts[match]

    def _script_for(self, endpoint: str) -> ProbeScript:
        for match, script in self.scripts.items():
            if match in endpoint:
                return script
        return self.default

    async def send(self, endpoint, payload, timeout):
        script = self._script_for(endpoint)
        index = script.sent
        script.sent += 1
        self.calls.append(endpoint)
        await asyncio.sleep(script.delay)

        success = script.success
        if script.fail_every and index % script.fail_every == 0:
            success = False
        status = script.status if success or script.status != 200 else 500
        return ProbeResult(latency_ms=script.latency_ms, success=success, status=status, error=script.error)


class CopyQuantizer(Quantizer):
    """Renames every file with a method/bits suffix; can be told to fail"""

    def __init__(self):
        self.calls = 0
        self.fail_with: Optional[Exception] = None

    async def quantize(self, files, method, bit_width):
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return {f"{name}.{method}{bit_width}": data for name, data in files.items()}


class FlakyModelSource(LocalModelSource):
    """Raises DownloadError for the first `failures` fetches"""

    def __init__(self, root):
        super().__init__(root)
        self.failures = 0
        self.fetches = 0

    async def fetch(self, source_model_id):
        self.fetches += 1
        if self.failures > 0:
            self.failures -= 1
            raise DownloadError(f"connection reset while fetching {source_model_id}")
        return await super().fetch(source_model_id)


def candidate_handle(fingerprint: str, bit_width: int = 4, method: str = "bnb", service: str = SERVICE) -> str:
    return DeploymentController.deployment_name(service, artifact_key(BASE_MODEL, method, bit_width, fingerprint))


def make_request(fingerprint: str = "v2", **overrides) -> RolloutRequest:
    options = dict(
        service=SERVICE,
        artifact=ArtifactSpec(BASE_MODEL, "bnb", 4, fingerprint),
        load_profile=LoadProfile(concurrency=2, request_count=10, request_timeout=1.0),
        thresholds=BenchmarkThresholds(min_throughput_ratio=0.0),
    )
    options.update(overrides)
    return RolloutRequest(**options)


async def wait_until(orchestrator: RolloutOrchestrator, rollout_id: str, predicate: Callable, timeout: float = 5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        state = await orchestrator.get_rollout(rollout_id)
        if predicate(state):
            return state
        if loop.time() > deadline:
            raise AssertionError(f"Rollout {rollout_id} stuck in {state.phase.value}")
        await asyncio.sleep(0.01)


class Harness:
    """All collaborators of one orchestrator, wired to fakes"""

    def __init__(self, root: Path):
        model_dir = root / "models" / BASE_MODEL
        model_dir.mkdir(parents=True)
        (model_dir / "config.json").write_text('{"hidden_size": 4096}')
        (model_dir / "weights.bin").write_bytes(b"\x00\x01" * 512)

        self.store = LocalArtifactStore(root / "artifacts")
        self.source = FlakyModelSource(root / "models")
        self.quantizer = CopyQuantizer()
        self.pipeline = ArtifactPipeline(self.store, self.source, self.quantizer)
        self.cluster = InMemoryClusterAPI(namespace="test")
        self.controller = DeploymentController(
            self.cluster,
            poll_interval=0.01,
            requery_attempts=2,
            requery_delay=0.01,
            retry_policy=RetryPolicy(max_attempts=2, base_delay=0.01, max_delay=0.01),
        )
        self.probe = ScriptedProbeClient()
        self.repository = RolloutRepository(create_session_factory("sqlite://"))
        self.settings = OrchestratorSettings(
            cluster_backend="memory",
            artifact_timeout=5.0,
            deploy_timeout=2.0,
            validation_timeout=2.0,
            benchmark_timeout=5.0,
            artifact_max_retries=3,
            retry_base_delay=0.01,
            retry_max_delay=0.01,
            ready_poll_interval=0.01,
            traffic_requery_attempts=2,
            candidate_grace_period=3600.0,
        )
        self.orchestrators: List[RolloutOrchestrator] = []

    def build(self, **settings) -> RolloutOrchestrator:
        for name, value in settings.items():
            setattr(self.settings, name, value)
        orchestrator = RolloutOrchestrator(
            pipeline=self.pipeline,
            controller=self.controller,
            validator=HealthValidator(self.probe, ProbeConfig(count=3, interval=0.0, request_timeout=1.0)),
            comparator=BenchmarkComparator(self.probe),
            reconciler=Reconciler(self.cluster, grace_period=self.settings.candidate_grace_period),
            repository=self.repository,
            settings=self.settings,
        )
        self.orchestrators.append(orchestrator)
        return orchestrator

    async def seed_stable(self, fingerprint: str = "v1", bit_width: int = 8):
        """Publish an artifact and route the service to it, as a previous rollout would have"""
        artifact = await self.pipeline.produce(BASE_MODEL, "bnb", bit_width, fingerprint)
        binding = await self.controller.ensure_track(SERVICE, TrackRole.STABLE, artifact, 1)
        await self.controller.set_traffic(SERVICE, binding)
        return artifact, binding

    async def close(self):
        for orchestrator in self.orchestrators:
            await orchestrator.shutdown()


@pytest.fixture
async def harness(tmp_path):
    h = Harness(tmp_path)
    yield h
    await h.close()


@pytest.fixture
async def orchestrator(harness):
    return harness.build()
