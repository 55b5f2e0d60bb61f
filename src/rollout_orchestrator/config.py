"""
Orchestrator configuration
Environment-driven settings and YAML rollout policy files
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml
from dotenv import load_dotenv

from .evaluation.health import ProbeConfig
from .orchestration.models import BenchmarkThresholds, LoadProfile
from .utils.error_handling import ConfigurationError

load_dotenv()

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

RolloutPolicy = Tuple[BenchmarkThresholds, LoadProfile, ProbeConfig]


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    return value if value not in (None, "") else default


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = _env_str(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _env_int(name: str, default: int) -> int:
    value = _env_str(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _env_bool(name: str, default: bool) -> bool:
    value = _env_str(name)
    if value is None:
        return default
    if value.lower() in _TRUE:
        return True
    if value.lower() in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


@dataclass
class OrchestratorSettings:
    database_url: str = "sqlite:///./data/rollouts.db"
    artifact_root: str = "./data/artifacts"
    model_root: str = "./data/models"
    quantize_command: Optional[str] = None
    policy_file: Optional[str] = None

    cluster_backend: str = "http"
    cluster_api_url: Optional[str] = None
    cluster_api_token: Optional[str] = None
    namespace: str = "default"

    # Phase deadlines (seconds)
    artifact_timeout: float = 1800.0
    deploy_timeout: float = 600.0
    validation_timeout: float = 60.0
    benchmark_timeout: float = 900.0
    confirmation_timeout: Optional[float] = None

    artifact_max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    ready_poll_interval: float = 2.0
    traffic_requery_attempts: int = 3

    candidate_grace_period: float = 3600.0
    scale_down_stable: bool = True

    probe_count: int = 5
    probe_interval: float = 1.0
    min_success_ratio: float = 1.0

    environment: str = "development"
    log_level: str = "INFO"
    log_dir: Optional[str] = None

    @classmethod
    def from_env(cls) -> "OrchestratorSettings":
        settings = cls(
            database_url=_env_str("ROLLOUT_DATABASE_URL", cls.database_url),
            artifact_root=_env_str("ROLLOUT_ARTIFACT_ROOT", cls.artifact_root),
            model_root=_env_str("ROLLOUT_MODEL_ROOT", cls.model_root),
            quantize_command=_env_str("ROLLOUT_QUANTIZE_COMMAND"),
            policy_file=_env_str("ROLLOUT_POLICY_FILE"),
            cluster_backend=_env_str("ROLLOUT_CLUSTER_BACKEND", cls.cluster_backend).lower(),
            cluster_api_url=_env_str("ROLLOUT_CLUSTER_API_URL"),
            cluster_api_token=_env_str("ROLLOUT_CLUSTER_API_TOKEN"),
            namespace=_env_str("ROLLOUT_NAMESPACE", cls.namespace),
            artifact_timeout=_env_float("ROLLOUT_ARTIFACT_TIMEOUT", cls.artifact_timeout),
            deploy_timeout=_env_float("ROLLOUT_DEPLOY_TIMEOUT", cls.deploy_timeout),
            validation_timeout=_env_float("ROLLOUT_VALIDATION_TIMEOUT", cls.validation_timeout),
            benchmark_timeout=_env_float("ROLLOUT_BENCHMARK_TIMEOUT", cls.benchmark_timeout),
            confirmation_timeout=_env_float("ROLLOUT_CONFIRMATION_TIMEOUT", None),
            artifact_max_retries=_env_int("ROLLOUT_ARTIFACT_MAX_RETRIES", cls.artifact_max_retries),
            retry_base_delay=_env_float("ROLLOUT_RETRY_BASE_DELAY", cls.retry_base_delay),
            retry_max_delay=_env_float("ROLLOUT_RETRY_MAX_DELAY", cls.retry_max_delay),
            ready_poll_interval=_env_float("ROLLOUT_READY_POLL_INTERVAL", cls.ready_poll_interval),
            traffic_requery_attempts=_env_int("ROLLOUT_TRAFFIC_REQUERY_ATTEMPTS", cls.traffic_requery_attempts),
            candidate_grace_period=_env_float("ROLLOUT_CANDIDATE_GRACE_PERIOD", cls.candidate_grace_period),
            scale_down_stable=_env_bool("ROLLOUT_SCALE_DOWN_STABLE", cls.scale_down_stable),
            probe_count=_env_int("ROLLOUT_PROBE_COUNT", cls.probe_count),
            probe_interval=_env_float("ROLLOUT_PROBE_INTERVAL", cls.probe_interval),
            min_success_ratio=_env_float("ROLLOUT_MIN_SUCCESS_RATIO", cls.min_success_ratio),
            environment=_env_str("ENVIRONMENT", cls.environment),
            log_level=_env_str("LOG_LEVEL", cls.log_level).upper(),
            log_dir=_env_str("LOG_DIR"),
        )
        settings.validate()
        return settings

    def validate(self):
        if self.cluster_backend not in ("http", "memory"):
            raise ConfigurationError(
                f"ROLLOUT_CLUSTER_BACKEND must be 'http' or 'memory', got {self.cluster_backend!r}"
            )
        if self.cluster_backend == "http" and not self.cluster_api_url:
            raise ConfigurationError("ROLLOUT_CLUSTER_API_URL is required for the http cluster backend")

        for name in ("artifact_timeout", "deploy_timeout", "validation_timeout", "benchmark_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.confirmation_timeout is not None and self.confirmation_timeout <= 0:
            raise ConfigurationError("confirmation_timeout must be positive when set")
        if self.artifact_max_retries < 0:
            raise ConfigurationError("artifact_max_retries must be non-negative")
        if self.traffic_requery_attempts <= 0:
            raise ConfigurationError("traffic_requery_attempts must be positive")
        if self.candidate_grace_period < 0:
            raise ConfigurationError("candidate_grace_period must be non-negative")
        self.probe_config().validate()

    def probe_config(self) -> ProbeConfig:
        return ProbeConfig(
            count=self.probe_count,
            interval=self.probe_interval,
            min_success_ratio=self.min_success_ratio,
        )

    def load_policy(self) -> Optional[RolloutPolicy]:
        """Rollout policy defaults from ROLLOUT_POLICY_FILE, None when no file is configured"""
        return load_policy_file(self.policy_file) if self.policy_file else None


def _section(policy: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = policy.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Policy section {name!r} must be a mapping")
    return section


def load_policy_file(path: Union[str, Path]) -> RolloutPolicy:
    """
    Read a YAML rollout policy.

    The thresholds and load profile fill in rollout requests that omit them;
    the health section replaces the ROLLOUT_PROBE_* settings.

    Example:
        thresholds:
          error_rate_threshold: 0.01
          latency_regression_factor: 1.2
          min_throughput_ratio: 0.8
        load_profile:
          concurrency: 8
          request_count: 500
          payload_template: {"prompt": "request {index}"}
        health:
          count: 5
          interval: 1.0
    """
    try:
        with open(path) as f:
            policy = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"Cannot read policy file {path}: {e}", cause=e)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Malformed policy file {path}: {e}", cause=e)

    if not isinstance(policy, dict):
        raise ConfigurationError(f"Policy file {path} must contain a mapping")

    try:
        thresholds = BenchmarkThresholds(**_section(policy, "thresholds"))
        load_profile = LoadProfile(**_section(policy, "load_profile"))
        probe_config = ProbeConfig(**_section(policy, "health"))
    except TypeError as e:
        raise ConfigurationError(f"Unknown field in policy file {path}: {e}", cause=e)

    thresholds.validate()
    load_profile.validate()
    probe_config.validate()
    return thresholds, load_profile, probe_config
