#!/usr/bin/env python3
"""
HTTP Client Tests
Cluster orchestration REST client and inference probe client against local aiohttp servers
"""

import asyncio

import pytest
from aiohttp import test_utils, web

from rollout_orchestrator.deployment.cluster import HTTPClusterAPI, TrackSpec
from rollout_orchestrator.evaluation.probe import HTTPProbeClient
from rollout_orchestrator.utils.error_handling import (
    ConfigurationError, ImagePullError, QuotaExceededError, RouteError, TransientInfraError
)

NAMESPACE = "serving"


def cluster_app():
    """Minimal orchestration API keeping deployments and routes in memory"""
    state = {"deployments": {}, "routes": {}, "fail_next": None, "auth": []}

    def maybe_fail(request):
        state["auth"].append(request.headers.get("Authorization"))
        failure = state["fail_next"]
        if failure is not None:
            state["fail_next"] = None
            status, body = failure
            return web.Response(status=status, text=body)
        return None

    async def put_deployment(request):
        failure = maybe_fail(request)
        if failure is not None:
            return failure
        spec = await request.json()
        name = request.match_info["name"]
        state["deployments"][name] = {
            "name": name,
            "service": spec["service"],
            "artifact_id": spec["artifact_id"],
            "desired_replicas": spec["replicas"],
            "ready_replicas": spec["replicas"],
            "endpoint": f"http://{name}.{NAMESPACE}:8080",
        }
        return web.json_response({"name": name})

    async def get_deployment(request):
        deployment = state["deployments"].get(request.match_info["name"])
        if deployment is None:
            return web.json_response({"error": "not found"}, status=404)
        return web.json_response(deployment)

    async def delete_deployment(request):
        if state["deployments"].pop(request.match_info["name"], None) is None:
            return web.json_response({"error": "not found"}, status=404)
        return web.Response(status=204)

    async def scale_deployment(request):
        body = await request.json()
        deployment = state["deployments"][request.match_info["name"]]
        deployment["desired_replicas"] = deployment["ready_replicas"] = body["replicas"]
        return web.json_response(deployment)

    async def list_deployments(request):
        service = request.query.get("service")
        items = [d for d in state["deployments"].values() if d["service"] == service]
        return web.json_response({"items": items})

    async def put_route(request):
        failure = maybe_fail(request)
        if failure is not None:
            return failure
        body = await request.json()
        state["routes"][request.match_info["service"]] = body["deployment"]
        return web.json_response({"deployment": body["deployment"]})

    async def get_route(request):
        service = request.match_info["service"]
        if service not in state["routes"]:
            return web.json_response({"error": "no route"}, status=404)
        return web.json_response({"deployment": state["routes"][service]})

    prefix = f"/namespaces/{NAMESPACE}"
    app = web.Application()
    app["state"] = state
    app.router.add_put(prefix + "/deployments/{name}", put_deployment)
    app.router.add_get(prefix + "/deployments/{name}", get_deployment)
    app.router.add_delete(prefix + "/deployments/{name}", delete_deployment)
    app.router.add_patch(prefix + "/deployments/{name}/scale", scale_deployment)
    app.router.add_get(prefix + "/deployments", list_deployments)
    app.router.add_put(prefix + "/services/{service}/route", put_route)
    app.router.add_get(prefix + "/services/{service}/route", get_route)
    return app


@pytest.fixture
async def cluster_server():
    server = test_utils.TestServer(cluster_app())
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
async def cluster(cluster_server):
    client = HTTPClusterAPI(str(cluster_server.make_url("")), namespace=NAMESPACE, token="pre-issued-token")
    yield client
    await client.close()


def spec(name="llm-chat-abc", replicas=2):
    return TrackSpec(service="llm-chat", name=name, artifact_id="abc", storage_uri="local://artifacts/abc",
                     replicas=replicas)


class TestHTTPClusterAPI:
    """REST orchestration client"""

    async def test_deployment_lifecycle(self, cluster):
        handle = await cluster.create_or_update(spec())

        status = await cluster.get_status(handle)
        assert status.desired == 2 and status.ready == 2
        assert status.endpoint == f"http://{handle}.{NAMESPACE}:8080"
        assert status.artifact_id == "abc"

        await cluster.scale(handle, 0)
        assert (await cluster.get_status(handle)).desired == 0
        assert [s.handle for s in await cluster.list_deployments("llm-chat")] == [handle]

        await cluster.delete(handle)
        assert await cluster.get_status(handle) is None
        await cluster.delete(handle)

    async def test_routes(self, cluster):
        assert await cluster.get_route("llm-chat") is None

        handle = await cluster.create_or_update(spec())
        await cluster.route_traffic("llm-chat", handle)

        assert await cluster.get_route("llm-chat") == handle

    async def test_bearer_token_passed_through(self, cluster, cluster_server):
        await cluster.create_or_update(spec())

        assert cluster_server.app["state"]["auth"] == ["Bearer pre-issued-token"]

    @pytest.mark.parametrize("status,body,error", [
        (503, "upstream unavailable", TransientInfraError),
        (429, "slow down", TransientInfraError),
        (403, "exceeded quota: replicas", QuotaExceededError),
        (400, "ImagePullBackOff: manifest unknown", ImagePullError),
        (400, "invalid spec", ConfigurationError),
    ])
    async def test_error_classification(self, cluster, cluster_server, status, body, error):
        cluster_server.app["state"]["fail_next"] = (status, body)

        with pytest.raises(error):
            await cluster.create_or_update(spec())

    async def test_route_failure_is_route_error(self, cluster, cluster_server):
        handle = await cluster.create_or_update(spec())
        cluster_server.app["state"]["fail_next"] = (502, "bad gateway")

        with pytest.raises(RouteError) as exc_info:
            await cluster.route_traffic("llm-chat", handle)
        assert exc_info.value.retryable

    async def test_connection_failure_is_transient(self):
        client = HTTPClusterAPI("http://127.0.0.1:1", namespace=NAMESPACE, timeout=2.0)
        try:
            with pytest.raises(TransientInfraError):
                await client.get_status("anything")
        finally:
            await client.close()

    def test_base_url_required(self):
        with pytest.raises(ConfigurationError):
            HTTPClusterAPI("")


@pytest.fixture
async def model_server():
    async def predict(request):
        payload = await request.json()
        if payload.get("mode") == "error":
            return web.json_response({"error": "model crashed"}, status=500)
        if payload.get("mode") == "slow":
            await asyncio.sleep(0.5)
        return web.json_response({"output": "ok"})

    app = web.Application()
    app.router.add_post("/predict", predict)
    server = test_utils.TestServer(app)
    await server.start_server()
    yield str(server.make_url(""))
    await server.close()


@pytest.fixture
async def probe_client():
    client = HTTPProbeClient()
    yield client
    await client.close()


class TestHTTPProbeClient:
    """Single synthetic requests; failures are results, never exceptions"""

    async def test_success(self, probe_client, model_server):
        result = await probe_client.send(model_server, {"prompt": "hi"}, timeout=2.0)

        assert result.success
        assert result.status == 200
        assert result.latency_ms > 0

    async def test_error_status(self, probe_client, model_server):
        result = await probe_client.send(model_server, {"mode": "error"}, timeout=2.0)

        assert not result.success
        assert result.status == 500
        assert result.reachable

    async def test_timeout(self, probe_client, model_server):
        result = await probe_client.send(model_server, {"mode": "slow"}, timeout=0.05)

        assert not result.success
        assert result.status is None
        assert "timeout" in result.error

    async def test_unreachable(self, probe_client):
        result = await probe_client.send("http://127.0.0.1:1", {}, timeout=2.0)

        assert not result.success
        assert not result.reachable
        assert result.error
