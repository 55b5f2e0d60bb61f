"""
Cleanup / Reconciler
Idempotently scales down and removes tracks that no longer serve a rollout
"""

import asyncio
import logging
import time
from typing import Dict, Iterable, List, Optional

from ..orchestration.models import TrackBinding
from .cluster import ClusterAPI

logger = logging.getLogger("rollout.app")


class Reconciler:
    """
    Retires deployments: scale to zero first, delete after a grace period.

    A deployment that is the current traffic recipient is never scaled down
    or deleted, whatever the caller asks for.
    """

    def __init__(self, cluster: ClusterAPI, grace_period: float = 3600.0):
        self.cluster = cluster
        self.grace_period = grace_period
        self._retired_at: Dict[str, float] = {}
        self._teardown_tasks: Dict[str, asyncio.Task] = {}

    async def _is_routed(self, service: str, handle: str) -> bool:
        return await self.cluster.get_route(service) == handle

    async def scale_to_zero(self, service: str, binding: TrackBinding) -> bool:
        if await self._is_routed(service, binding.deployment_id):
            logger.warning(f"Refusing to scale down {binding.deployment_id}: it receives traffic for {service}")
            return False

        status = await self.cluster.get_status(binding.deployment_id)
        if status is not None and status.desired > 0:
            await self.cluster.scale(binding.deployment_id, 0)
            logger.info(f"Scaled {binding.deployment_id} to zero")
        binding.replicas = 0
        self._retired_at.setdefault(binding.deployment_id, time.monotonic())
        return True

    async def retire(self, service: str, binding: TrackBinding, grace_period: Optional[float] = None) -> bool:
        """Scale a track to zero and schedule its deletion after the grace period"""
        grace = self.grace_period if grace_period is None else grace_period
        if not await self.scale_to_zero(service, binding):
            return False

        if grace <= 0:
            await self._delete(service, binding.deployment_id)
        else:
            self._schedule_teardown(service, binding.deployment_id, grace)
        return True

    def _schedule_teardown(self, service: str, handle: str, delay: float):
        if handle in self._teardown_tasks:
            return
        self._teardown_tasks[handle] = asyncio.create_task(self._teardown_after(service, handle, delay))
        logger.info(f"Retained {handle} for {round(delay, 2)}s before teardown")

    async def _teardown_after(self, service: str, handle: str, delay: float):
        try:
            await asyncio.sleep(delay)
            status = await self.cluster.get_status(handle)
            if status is not None and status.desired == 0:
                await self._delete(service, handle)
        except Exception as e:
            # the next reconcile() sweep will pick the deployment up again
            logger.error(f"Deferred teardown of {handle} failed: {e}")
        finally:
            self._teardown_tasks.pop(handle, None)

    async def _delete(self, service: str, handle: str) -> bool:
        if await self._is_routed(service, handle):
            return False
        await self.cluster.delete(handle)
        self._retired_at.pop(handle, None)
        logger.info(f"Deleted deployment {handle}")
        return True

    async def reconcile(self, service: str, keep: Iterable[str] = ()) -> Dict[str, List[str]]:
        """
        Sweep the service's deployments: scale down anything that is neither
        routed nor kept, delete zero-replica deployments past the grace period
        and schedule the teardown of the others.
        """
        keep = set(keep)
        route = await self.cluster.get_route(service)
        now = time.monotonic()
        summary = {"scaled_down": [], "deleted": []}

        for status in await self.cluster.list_deployments(service):
            handle = status.handle
            if handle == route or handle in keep:
                continue

            if status.desired > 0:
                await self.cluster.scale(handle, 0)
                self._retired_at[handle] = now
                summary["scaled_down"].append(handle)
                if self.grace_period > 0:
                    self._schedule_teardown(service, handle, self.grace_period)
                continue

            retired_at = self._retired_at.setdefault(handle, now)
            remaining = self.grace_period - (now - retired_at)
            if remaining <= 0:
                if await self._delete(service, handle):
                    summary["deleted"].append(handle)
            else:
                # deferred teardowns are lost on restart; the sweep re-arms them
                self._schedule_teardown(service, handle, remaining)

        if summary["scaled_down"] or summary["deleted"]:
            logger.info(f"Reconciled {service}: {summary}")
        return summary

    async def shutdown(self):
        tasks = list(self._teardown_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._teardown_tasks.clear()
