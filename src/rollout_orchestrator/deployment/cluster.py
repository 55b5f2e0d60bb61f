#!/usr/bin/env python3
"""
Cluster Orchestration API clients
REST client for the orchestration API and an in-memory simulated cluster for dry runs
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

import aiohttp

from ..utils.error_handling import (
    ConfigurationError, ImagePullError, QuotaExceededError, RouteError, TransientInfraError
)

logger = logging.getLogger("rollout.app")


@dataclass
class TrackSpec:
    """Desired state of one deployment"""

    service: str
    name: str
    artifact_id: str
    storage_uri: str
    replicas: int
    labels: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "name": self.name,
            "artifact_id": self.artifact_id,
            "storage_uri": self.storage_uri,
            "replicas": self.replicas,
            "labels": dict(self.labels),
        }


@dataclass
class DeploymentStatus:
    handle: str
    ready: int
    desired: int
    endpoint: Optional[str]
    artifact_id: Optional[str] = None
    service: Optional[str] = None


class ClusterAPI:
    """Interface consumed by the deployment controller and reconciler"""

    async def create_or_update(self, spec: TrackSpec) -> str:
        raise NotImplementedError

    async def scale(self, handle: str, replicas: int):
        raise NotImplementedError

    async def get_status(self, handle: str) -> Optional[DeploymentStatus]:
        raise NotImplementedError

    async def route_traffic(self, service: str, handle: Optional[str]):
        raise NotImplementedError

    async def get_route(self, service: str) -> Optional[str]:
        raise NotImplementedError

    async def list_deployments(self, service: str) -> List[DeploymentStatus]:
        raise NotImplementedError

    async def delete(self, handle: str):
        raise NotImplementedError

    async def close(self):
        pass


class HTTPClusterAPI(ClusterAPI):
    """
    aiohttp client for a REST orchestration API.

    Credentials are a pre-issued bearer token passed through unchanged.
    """

    TRANSIENT_STATUSES = {429, 500, 502, 503, 504}

    def __init__(
        self,
        base_url: str,
        namespace: str = "default",
        token: Optional[str] = None,
        timeout: float = 30.0
    ):
        if not base_url:
            raise ConfigurationError("Cluster API base URL is required")
        self.base_url = base_url.rstrip("/")
        self.namespace = namespace
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}/namespaces/{self.namespace}/{path.lstrip('/')}"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=headers)
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        allow_statuses: Set[int] = frozenset()
    ) -> Optional[Dict[str, Any]]:
        session = await self._get_session()
        url = self._url(path)

        try:
            async with session.request(method, url, json=json_body, params=params) as response:
                text = await response.text()
                if response.status in allow_statuses:
                    return None
                if response.status >= 400:
                    self._raise_for_status(method, url, response.status, text)
                if not text:
                    return {}
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientInfraError(f"Cluster API {method} {url} failed: {e}", cause=e) from e

    def _raise_for_status(self, method: str, url: str, status: int, body: str):
        message = f"Cluster API {method} {url} returned {status}: {body[:300]}"
        lowered = body.lower()
        if status in self.TRANSIENT_STATUSES:
            raise TransientInfraError(message, error_code=str(status))
        if status == 403 and "quota" in lowered:
            raise QuotaExceededError(message, error_code=str(status))
        if "imagepull" in lowered.replace(" ", "").replace("_", ""):
            raise ImagePullError(message, error_code=str(status))
        raise ConfigurationError(message, error_code=str(status))

    @staticmethod
    def _status_from(data: Dict[str, Any], handle: str) -> DeploymentStatus:
        return DeploymentStatus(
            handle=data.get("name", handle),
            ready=int(data.get("ready_replicas", 0)),
            desired=int(data.get("desired_replicas", 0)),
            endpoint=data.get("endpoint"),
            artifact_id=data.get("artifact_id"),
            service=data.get("service"),
        )

    async def create_or_update(self, spec: TrackSpec) -> str:
        data = await self._request("PUT", f"deployments/{spec.name}", json_body=spec.to_dict())
        return (data or {}).get("name", spec.name)

    async def scale(self, handle: str, replicas: int):
        await self._request("PATCH", f"deployments/{handle}/scale", json_body={"replicas": replicas})

    async def get_status(self, handle: str) -> Optional[DeploymentStatus]:
        data = await self._request("GET", f"deployments/{handle}", allow_statuses={404})
        return self._status_from(data, handle) if data is not None else None

    async def route_traffic(self, service: str, handle: Optional[str]):
        try:
            await self._request("PUT", f"services/{service}/route", json_body={"deployment": handle})
        except TransientInfraError as e:
            raise RouteError(str(e), cause=e) from e

    async def get_route(self, service: str) -> Optional[str]:
        data = await self._request("GET", f"services/{service}/route", allow_statuses={404})
        return (data or {}).get("deployment")

    async def list_deployments(self, service: str) -> List[DeploymentStatus]:
        data = await self._request("GET", "deployments", params={"service": service})
        return [self._status_from(item, item.get("name", "")) for item in (data or {}).get("items", [])]

    async def delete(self, handle: str):
        await self._request("DELETE", f"deployments/{handle}", allow_statuses={404})

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()


@dataclass
class _SimulatedDeployment:
    spec: TrackSpec
    desired: int
    scaled_at: float
    created_at: datetime = field(default_factory=datetime.utcnow)


class InMemoryClusterAPI(ClusterAPI):
    """
    Simulated orchestration API.

    Replicas become ready `ready_delay` seconds after a scale-up. Failure
    injection knobs cover quota limits, image pull failures, transient route
    failures and routes that are silently not applied.
    """

    def __init__(
        self,
        namespace: str = "default",
        ready_delay: float = 0.0,
        replica_quota: Optional[int] = None
    ):
        self.namespace = namespace
        self.ready_delay = ready_delay
        self.replica_quota = replica_quota
        self.deployments: Dict[str, _SimulatedDeployment] = {}
        self.routes: Dict[str, Optional[str]] = {}
        self.route_history: List[Dict[str, Optional[str]]] = []
        self.resources_created = 0
        self.failing_artifacts: Set[str] = set()
        self.route_failures = 0
        self.drop_routes = 0
        self.never_ready: Set[str] = set()

    def endpoint_for(self, handle: str) -> str:
        return f"http://{handle}.{self.namespace}.svc.cluster.local:8080"

    def _total_replicas(self, excluding: Optional[str] = None) -> int:
        return sum(d.desired for name, d in self.deployments.items() if name != excluding)

    def _check_quota(self, handle: str, replicas: int):
        if self.replica_quota is not None and self._total_replicas(excluding=handle) + replicas > self.replica_quota:
            raise QuotaExceededError(
                f"Replica quota {self.replica_quota} exceeded by {handle} requesting {replicas}"
            )

    async def create_or_update(self, spec: TrackSpec) -> str:
        if spec.artifact_id in self.failing_artifacts:
            raise ImagePullError(f"ImagePullBackOff for deployment {spec.name}")
        self._check_quota(spec.name, spec.replicas)

        existing = self.deployments.get(spec.name)
        if existing is None:
            self.deployments[spec.name] = _SimulatedDeployment(spec, spec.replicas, time.monotonic())
            self.resources_created += 1
            logger.info(f"[simulated] created deployment {spec.name} ({spec.replicas} replicas)")
        else:
            if existing.desired != spec.replicas:
                existing.scaled_at = time.monotonic()
            existing.spec = spec
            existing.desired = spec.replicas
        return spec.name

    async def scale(self, handle: str, replicas: int):
        deployment = self.deployments.get(handle)
        if deployment is None:
            raise ConfigurationError(f"Unknown deployment: {handle}")
        self._check_quota(handle, replicas)
        if deployment.desired != replicas:
            deployment.desired = replicas
            deployment.scaled_at = time.monotonic()

    def _ready(self, handle: str, deployment: _SimulatedDeployment) -> int:
        if handle in self.never_ready:
            return 0
        if time.monotonic() - deployment.scaled_at >= self.ready_delay:
            return deployment.desired
        return 0

    async def get_status(self, handle: str) -> Optional[DeploymentStatus]:
        deployment = self.deployments.get(handle)
        if deployment is None:
            return None
        return DeploymentStatus(
            handle=handle,
            ready=self._ready(handle, deployment),
            desired=deployment.desired,
            endpoint=self.endpoint_for(handle),
            artifact_id=deployment.spec.artifact_id,
            service=deployment.spec.service,
        )

    async def route_traffic(self, service: str, handle: Optional[str]):
        if self.route_failures > 0:
            self.route_failures -= 1
            raise RouteError(f"Route update for {service} rejected")
        if self.drop_routes > 0:
            self.drop_routes -= 1
            return
        if handle is not None and handle not in self.deployments:
            raise ConfigurationError(f"Cannot route {service} to unknown deployment {handle}")
        self.routes[service] = handle
        self.route_history.append({"service": service, "deployment": handle})

    async def get_route(self, service: str) -> Optional[str]:
        return self.routes.get(service)

    async def list_deployments(self, service: str) -> List[DeploymentStatus]:
        statuses = []
        for handle, deployment in self.deployments.items():
            if deployment.spec.service == service:
                statuses.append(await self.get_status(handle))
        return statuses

    async def delete(self, handle: str):
        if self.deployments.pop(handle, None) is not None:
            logger.info(f"[simulated] deleted deployment {handle}")
