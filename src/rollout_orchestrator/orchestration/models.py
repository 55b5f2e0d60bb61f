"""
Rollout data model: phases, tracks, artifacts, requests and the persisted rollout record
"""

import copy
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.error_handling import ConfigurationError


class Phase(Enum):
    PENDING = "pending"
    ARTIFACT_READY = "artifact_ready"
    CANDIDATE_DEPLOYED = "candidate_deployed"
    VALIDATED = "validated"
    BENCHMARKED = "benchmarked"
    SWITCHED = "switched"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset({Phase.SWITCHED, Phase.ROLLED_BACK, Phase.FAILED, Phase.ABORTED})

# Forward progress order; terminal phases follow BENCHMARKED
PROGRESS_ORDER = [
    Phase.PENDING,
    Phase.ARTIFACT_READY,
    Phase.CANDIDATE_DEPLOYED,
    Phase.VALIDATED,
    Phase.BENCHMARKED,
]


class TrackRole(Enum):
    STABLE = "stable"
    CANDIDATE = "candidate"


class TrafficTarget(Enum):
    STABLE = "stable"
    CANDIDATE = "candidate"
    NONE = "none"
    UNKNOWN = "unknown"


class Verdict(Enum):
    PASS = "pass"
    FAIL = "fail"


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class ModelArtifact:
    """Immutable reference to a published model artifact"""

    id: str
    source_model_id: str
    quantization_method: str
    bit_width: int
    storage_uri: str
    created_at: datetime
    fingerprint: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelArtifact":
        return cls(**{**data, "created_at": _dt(data["created_at"])})


@dataclass(frozen=True)
class ArtifactSpec:
    """What the artifact pipeline should produce, or which published artifact to reuse"""

    source_model_id: str = ""
    quantization_method: str = ""
    bit_width: int = 0
    fingerprint: str = ""
    artifact_id: Optional[str] = None

    def validate(self):
        if self.artifact_id:
            return
        if not self.source_model_id:
            raise ConfigurationError("artifact.source_model_id is required")
        if not self.quantization_method:
            raise ConfigurationError("artifact.quantization_method is required")
        if self.bit_width <= 0:
            raise ConfigurationError(f"artifact.bit_width must be positive, got {self.bit_width}")
        if not self.fingerprint:
            raise ConfigurationError("artifact.fingerprint is required to key artifact freshness")


@dataclass(frozen=True)
class BenchmarkThresholds:
    """Verdict policy inputs"""

    error_rate_threshold: float = 0.01
    latency_regression_factor: float = 1.2
    min_throughput_ratio: float = 0.8

    def validate(self):
        if not 0.0 <= self.error_rate_threshold <= 1.0:
            raise ConfigurationError(
                f"error_rate_threshold must be within [0, 1], got {self.error_rate_threshold}"
            )
        if self.latency_regression_factor <= 0:
            raise ConfigurationError(
                f"latency_regression_factor must be positive, got {self.latency_regression_factor}"
            )
        if self.min_throughput_ratio < 0:
            raise ConfigurationError(
                f"min_throughput_ratio must be non-negative, got {self.min_throughput_ratio}"
            )


@dataclass(frozen=True)
class LoadProfile:
    """Synthetic load driven against each endpoint during benchmarking"""

    concurrency: int = 4
    request_count: Optional[int] = 100
    duration_seconds: Optional[float] = None
    payload_template: Dict[str, Any] = field(default_factory=dict)
    request_timeout: float = 10.0

    def validate(self):
        if self.concurrency <= 0:
            raise ConfigurationError(f"load_profile.concurrency must be positive, got {self.concurrency}")
        if self.request_count is None and self.duration_seconds is None:
            raise ConfigurationError("load_profile needs request_count or duration_seconds")
        if self.request_count is not None and self.request_count <= 0:
            raise ConfigurationError("load_profile.request_count must be positive")
        if self.duration_seconds is not None and self.duration_seconds <= 0:
            raise ConfigurationError("load_profile.duration_seconds must be positive")
        if self.request_timeout <= 0:
            raise ConfigurationError("load_profile.request_timeout must be positive")

    def render_payload(self, index: int) -> Dict[str, Any]:
        """Substitute {index} in string values of the payload template"""

        def render(value):
            if isinstance(value, str):
                return value.replace("{index}", str(index))
            if isinstance(value, dict):
                return {k: render(v) for k, v in value.items()}
            if isinstance(value, list):
                return [render(v) for v in value]
            return value

        return render(self.payload_template)


@dataclass(frozen=True)
class RolloutRequest:
    """Operator request; immutable once accepted"""

    service: str
    artifact: ArtifactSpec
    skip_validation: bool = False
    auto_switch: bool = False
    thresholds: BenchmarkThresholds = field(default_factory=BenchmarkThresholds)
    load_profile: LoadProfile = field(default_factory=LoadProfile)
    replicas: int = 1
    allow_no_baseline: bool = False
    keep_stable_warm: bool = False

    def validate(self):
        if not self.service:
            raise ConfigurationError("service is required")
        if self.replicas <= 0:
            raise ConfigurationError(f"replicas must be positive, got {self.replicas}")
        self.artifact.validate()
        self.thresholds.validate()
        self.load_profile.validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RolloutRequest":
        data = dict(data)
        data["artifact"] = ArtifactSpec(**data["artifact"])
        data["thresholds"] = BenchmarkThresholds(**data.get("thresholds") or {})
        data["load_profile"] = LoadProfile(**data.get("load_profile") or {})
        return cls(**data)


@dataclass
class TrackBinding:
    """A logical track role bound to one underlying deployment"""

    role: TrackRole
    deployment_id: str
    artifact_id: Optional[str] = None
    endpoint: Optional[str] = None
    replicas: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "deployment_id": self.deployment_id,
            "artifact_id": self.artifact_id,
            "endpoint": self.endpoint,
            "replicas": self.replicas,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["TrackBinding"]:
        if not data:
            return None
        return cls(**{**data, "role": TrackRole(data["role"])})


@dataclass
class ValidationResult:
    status: str
    skipped: bool = False
    probes_sent: int = 0
    probes_succeeded: int = 0
    success_ratio: Optional[float] = None
    reason: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.status == "ready"

    @classmethod
    def skipped_result(cls) -> "ValidationResult":
        return cls(status="skipped", skipped=True, reason="skip_validation requested")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ValidationResult"]:
        return cls(**data) if data else None


@dataclass
class TrackStats:
    """Reduced benchmark statistics for one track"""

    p50: Optional[float]
    p95: Optional[float]
    p99: Optional[float]
    error_rate: float
    throughput_rps: float
    sample_count: int = 0
    success_count: int = 0
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["TrackStats"]:
        return cls(**data) if data else None


@dataclass
class BenchmarkResult:
    stable: Optional[TrackStats]
    candidate: TrackStats
    verdict: Verdict
    reasons: List[str] = field(default_factory=list)
    baseline: bool = True
    thresholds: BenchmarkThresholds = field(default_factory=BenchmarkThresholds)

    @property
    def passed(self) -> bool:
        return self.verdict is Verdict.PASS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stable": self.stable.to_dict() if self.stable else None,
            "candidate": self.candidate.to_dict(),
            "verdict": self.verdict.value,
            "reasons": list(self.reasons),
            "baseline": self.baseline,
            "thresholds": asdict(self.thresholds),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["BenchmarkResult"]:
        if not data:
            return None
        return cls(
            stable=TrackStats.from_dict(data.get("stable")),
            candidate=TrackStats.from_dict(data["candidate"]),
            verdict=Verdict(data["verdict"]),
            reasons=list(data.get("reasons") or []),
            baseline=data.get("baseline", True),
            thresholds=BenchmarkThresholds(**data.get("thresholds") or {}),
        )


@dataclass
class PhaseRecord:
    phase: Phase
    entered_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"phase": self.phase.value, "entered_at": self.entered_at.isoformat()}


@dataclass
class RolloutState:
    """The mutable rollout record; every change is persisted as a new revision"""

    id: str
    request: RolloutRequest
    phase: Phase = Phase.PENDING
    stable_track: Optional[TrackBinding] = None
    candidate_track: Optional[TrackBinding] = None
    validation_result: Optional[ValidationResult] = None
    benchmark_result: Optional[BenchmarkResult] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    revision: int = 0
    artifact_id: Optional[str] = None
    retry_count: int = 0
    awaiting_confirmation: bool = False
    traffic: TrafficTarget = TrafficTarget.NONE
    last_successful_phase: Optional[Phase] = None
    reason: Optional[str] = None
    error_kind: Optional[str] = None
    phase_history: List[PhaseRecord] = field(default_factory=list)

    @property
    def service(self) -> str:
        return self.request.service

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    def copy(self) -> "RolloutState":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "service": self.service,
            "request": self.request.to_dict(),
            "phase": self.phase.value,
            "stable_track": self.stable_track.to_dict() if self.stable_track else None,
            "candidate_track": self.candidate_track.to_dict() if self.candidate_track else None,
            "validation_result": self.validation_result.to_dict() if self.validation_result else None,
            "benchmark_result": self.benchmark_result.to_dict() if self.benchmark_result else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "revision": self.revision,
            "artifact_id": self.artifact_id,
            "retry_count": self.retry_count,
            "awaiting_confirmation": self.awaiting_confirmation,
            "traffic": self.traffic.value,
            "last_successful_phase": self.last_successful_phase.value if self.last_successful_phase else None,
            "reason": self.reason,
            "error_kind": self.error_kind,
            "phase_history": [record.to_dict() for record in self.phase_history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RolloutState":
        last = data.get("last_successful_phase")
        return cls(
            id=data["id"],
            request=RolloutRequest.from_dict(data["request"]),
            phase=Phase(data["phase"]),
            stable_track=TrackBinding.from_dict(data.get("stable_track")),
            candidate_track=TrackBinding.from_dict(data.get("candidate_track")),
            validation_result=ValidationResult.from_dict(data.get("validation_result")),
            benchmark_result=BenchmarkResult.from_dict(data.get("benchmark_result")),
            created_at=_dt(data["created_at"]),
            updated_at=_dt(data["updated_at"]),
            revision=data.get("revision", 0),
            artifact_id=data.get("artifact_id"),
            retry_count=data.get("retry_count", 0),
            awaiting_confirmation=data.get("awaiting_confirmation", False),
            traffic=TrafficTarget(data.get("traffic", TrafficTarget.NONE.value)),
            last_successful_phase=Phase(last) if last else None,
            reason=data.get("reason"),
            error_kind=data.get("error_kind"),
            phase_history=[
                PhaseRecord(Phase(r["phase"]), _dt(r["entered_at"]))
                for r in data.get("phase_history") or []
            ],
        )
