"""
Health Validator
Bounded synthetic probing of a freshly deployed track
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..orchestration.models import ValidationResult
from ..utils.error_handling import (
    ConfigurationError, ProbeTimeoutError, UnhealthyResponseError, UnreachableError
)
from .probe import ProbeClient

logger = logging.getLogger("rollout.app")


@dataclass(frozen=True)
class ProbeConfig:
    count: int = 5
    interval: float = 1.0
    min_success_ratio: float = 1.0
    request_timeout: float = 5.0
    payload: Dict[str, Any] = field(default_factory=dict)

    def validate(self):
        if self.count <= 0:
            raise ConfigurationError(f"probe count must be positive, got {self.count}")
        if self.interval < 0:
            raise ConfigurationError(f"probe interval must be non-negative, got {self.interval}")
        if not 0.0 < self.min_success_ratio <= 1.0:
            raise ConfigurationError(
                f"min_success_ratio must be within (0, 1], got {self.min_success_ratio}"
            )


class HealthValidator:
    """Classifies an endpoint ready or unready from a bounded number of probes"""

    def __init__(self, probe_client: ProbeClient, config: Optional[ProbeConfig] = None):
        self.probe_client = probe_client
        self.config = config or ProbeConfig()
        self.config.validate()

    async def validate(self, endpoint: str, timeout: float) -> ValidationResult:
        """
        Probe the endpoint; return a ready ValidationResult or raise
        UnreachableError / UnhealthyResponseError / ProbeTimeoutError.

        The whole call is bounded by `timeout`.
        """
        counters = {"sent": 0, "succeeded": 0}
        try:
            return await asyncio.wait_for(self._probe(endpoint, counters), timeout=timeout)
        except asyncio.TimeoutError:
            raise ProbeTimeoutError(
                f"Health validation of {endpoint} exceeded {timeout}s",
                probes_sent=counters["sent"],
                probes_succeeded=counters["succeeded"],
            )

    async def _probe(self, endpoint: str, counters: Dict[str, int]) -> ValidationResult:
        config = self.config
        required = math.ceil(round(config.min_success_ratio * config.count, 9))
        reachable = False
        last_failure: Optional[str] = None

        for index in range(config.count):
            result = await self.probe_client.send(endpoint, config.payload, config.request_timeout)
            counters["sent"] += 1
            reachable = reachable or result.reachable

            if result.success:
                counters["succeeded"] += 1
            else:
                last_failure = result.error or f"status {result.status}"
                logger.warning(f"Probe {index + 1}/{config.count} to {endpoint} failed: {last_failure}")

            remaining = config.count - counters["sent"]
            if counters["succeeded"] + remaining < required:
                break
            if remaining > 0 and config.interval > 0:
                await asyncio.sleep(config.interval)

        sent, succeeded = counters["sent"], counters["succeeded"]
        ratio = succeeded / sent if sent else 0.0

        if succeeded >= required:
            logger.info(f"Endpoint {endpoint} ready: {succeeded}/{sent} probes succeeded")
            return ValidationResult(
                status="ready",
                probes_sent=sent,
                probes_succeeded=succeeded,
                success_ratio=ratio,
            )

        if not reachable:
            raise UnreachableError(
                f"Endpoint {endpoint} unreachable: {last_failure}",
                probes_sent=sent,
                probes_succeeded=succeeded,
            )
        raise UnhealthyResponseError(
            f"Endpoint {endpoint} unhealthy: {succeeded}/{sent} probes succeeded, "
            f"{required}/{config.count} required (last failure: {last_failure})",
            probes_sent=sent,
            probes_succeeded=succeeded,
        )
