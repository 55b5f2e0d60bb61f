#!/usr/bin/env python3
"""
Deployment Controller
Idempotent track reconciliation, traffic switching and scaling over the cluster orchestration API
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Optional

from ..orchestration.models import ModelArtifact, TrackBinding, TrackRole
from ..utils.error_handling import (
    ConfigurationError, DeploymentTimeoutError, RetryPolicy, TrafficStateUnknownError, call_with_retry
)
from ..utils.logging_config import log_performance_metric
from .cluster import ClusterAPI, TrackSpec

logger = logging.getLogger("rollout.app")


@dataclass
class TrackStatus:
    ready_replicas: int
    desired_replicas: int
    endpoint: Optional[str]

    @property
    def is_ready(self) -> bool:
        return self.desired_replicas > 0 and self.ready_replicas >= self.desired_replicas


class DeploymentController:
    """
    Thin wrapper over the cluster orchestration API.

    Stateless with respect to rollout history: callers pass TrackBinding
    records in and get updated bindings back.
    """

    def __init__(
        self,
        cluster: ClusterAPI,
        poll_interval: float = 2.0,
        requery_attempts: int = 3,
        requery_delay: float = 0.5,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.cluster = cluster
        self.poll_interval = poll_interval
        self.requery_attempts = requery_attempts
        self.requery_delay = requery_delay
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=5.0)

    @staticmethod
    def deployment_name(service: str, artifact_id: str) -> str:
        """One deployment per (service, artifact); repeated ensure_track calls converge on it"""
        slug = re.sub(r"[^a-z0-9-]+", "-", service.lower()).strip("-")
        return f"{slug}-{artifact_id[:12].lower()}"

    async def ensure_track(
        self,
        service: str,
        role: TrackRole,
        artifact: ModelArtifact,
        replica_count: int
    ) -> TrackBinding:
        if replica_count <= 0:
            raise ConfigurationError(f"replica_count must be positive, got {replica_count}")

        spec = TrackSpec(
            service=service,
            name=self.deployment_name(service, artifact.id),
            artifact_id=artifact.id,
            storage_uri=artifact.storage_uri,
            replicas=replica_count,
            labels={
                "rollout.service": service,
                "rollout.artifact": artifact.id,
                "rollout.quantization": f"{artifact.quantization_method}-{artifact.bit_width}",
            },
        )

        handle = await call_with_retry(self.cluster.create_or_update, spec, policy=self.retry_policy)
        status = await self.cluster.get_status(handle)
        logger.info(f"Ensured {role.value} track {handle} for {service} ({replica_count} replicas)")

        return TrackBinding(
            role=role,
            deployment_id=handle,
            artifact_id=artifact.id,
            endpoint=status.endpoint if status else None,
            replicas=replica_count,
        )

    async def status(self, binding: TrackBinding) -> TrackStatus:
        status = await call_with_retry(self.cluster.get_status, binding.deployment_id, policy=self.retry_policy)
        if status is None:
            return TrackStatus(ready_replicas=0, desired_replicas=0, endpoint=None)
        return TrackStatus(ready_replicas=status.ready, desired_replicas=status.desired, endpoint=status.endpoint)

    async def scale(self, binding: TrackBinding, replica_count: int) -> TrackBinding:
        await call_with_retry(self.cluster.scale, binding.deployment_id, replica_count, policy=self.retry_policy)
        logger.info(f"Scaled {binding.role.value} track {binding.deployment_id} to {replica_count} replicas")
        binding.replicas = replica_count
        return binding

    async def wait_ready(self, binding: TrackBinding, timeout: float) -> TrackStatus:
        """Poll until ready replicas meet desired; DeploymentTimeoutError on expiry"""
        start_time = time.monotonic()
        deadline = start_time + timeout

        while True:
            status = await self.status(binding)
            if status.is_ready:
                if status.endpoint:
                    binding.endpoint = status.endpoint
                log_performance_metric(
                    operation="track_ready",
                    duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                    deployment_id=binding.deployment_id,
                )
                return status

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise DeploymentTimeoutError(
                    f"Track {binding.deployment_id} not ready after {timeout}s "
                    f"({status.ready_replicas}/{status.desired_replicas} replicas)",
                    timeout=timeout,
                    context={"deployment_id": binding.deployment_id},
                )
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def route(self, service: str) -> Optional[str]:
        return await call_with_retry(self.cluster.get_route, service, policy=self.retry_policy)

    async def find_track(self, service: str, role: TrackRole, artifact_id: str) -> Optional[TrackBinding]:
        """Binding for the deployment of (service, artifact) if the cluster has one"""
        handle = self.deployment_name(service, artifact_id)
        status = await call_with_retry(self.cluster.get_status, handle, policy=self.retry_policy)
        if status is None:
            return None
        return TrackBinding(
            role=role,
            deployment_id=handle,
            artifact_id=artifact_id,
            endpoint=status.endpoint,
            replicas=status.desired,
        )

    async def current_traffic(self, service: str) -> Optional[TrackBinding]:
        """The deployment currently receiving traffic, bound to the stable role"""
        handle = await self.route(service)
        if handle is None:
            return None

        status = await self.cluster.get_status(handle)
        if status is None:
            logger.warning(f"Service {service} routes to missing deployment {handle}")
            return TrackBinding(role=TrackRole.STABLE, deployment_id=handle)

        return TrackBinding(
            role=TrackRole.STABLE,
            deployment_id=handle,
            artifact_id=status.artifact_id,
            endpoint=status.endpoint,
            replicas=status.desired,
        )

    async def set_traffic(self, service: str, binding: TrackBinding):
        """
        Route all live traffic of the service to one track.

        The route update is a single call to the orchestration API, then it is
        confirmed by re-querying. If the re-query never shows the requested
        deployment the traffic state is unknown and TrafficStateUnknownError
        is raised with the last observed route.
        """
        await call_with_retry(self.cluster.route_traffic, service, binding.deployment_id, policy=self.retry_policy)

        observed = None
        for attempt in range(self.requery_attempts):
            observed = await self.cluster.get_route(service)
            if observed == binding.deployment_id:
                logger.info(f"Traffic for {service} now on {binding.role.value} track {binding.deployment_id}")
                return
            if attempt + 1 < self.requery_attempts:
                await asyncio.sleep(self.requery_delay)

        raise TrafficStateUnknownError(
            f"Route for {service} not confirmed on {binding.deployment_id}; observed {observed}",
            observed=observed,
            context={"service": service, "requested": binding.deployment_id},
        )
