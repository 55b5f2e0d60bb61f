"""
Probe/Load interface: send one synthetic request to an inference endpoint
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

logger = logging.getLogger("rollout.app")


@dataclass
class ProbeResult:
    latency_ms: float
    success: bool
    status: Optional[int] = None
    error: Optional[str] = None

    @property
    def reachable(self) -> bool:
        return self.status is not None


class ProbeClient:
    async def send(self, endpoint: str, payload: Dict[str, Any], timeout: float) -> ProbeResult:
        """Never raises for request failures; they come back as success=False"""
        raise NotImplementedError

    async def close(self):
        pass


class HTTPProbeClient(ProbeClient):
    """POSTs the payload as JSON to <endpoint><path>; any 2xx counts as success"""

    def __init__(self, path: str = "/predict", headers: Optional[Dict[str, str]] = None):
        self.path = path
        self.headers = headers or {}
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self.headers)
        return self._session

    async def send(self, endpoint: str, payload: Dict[str, Any], timeout: float) -> ProbeResult:
        session = await self._get_session()
        url = f"{endpoint.rstrip('/')}{self.path}"
        start_time = time.perf_counter()

        try:
            async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
                await response.read()
                latency_ms = (time.perf_counter() - start_time) * 1000
                return ProbeResult(
                    latency_ms=latency_ms,
                    success=200 <= response.status < 300,
                    status=response.status,
                )
        except asyncio.TimeoutError:
            return ProbeResult(
                latency_ms=(time.perf_counter() - start_time) * 1000,
                success=False,
                error=f"timeout after {timeout}s",
            )
        except aiohttp.ClientError as e:
            return ProbeResult(
                latency_ms=(time.perf_counter() - start_time) * 1000,
                success=False,
                error=str(e) or type(e).__name__,
            )

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
