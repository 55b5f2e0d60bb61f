#!/usr/bin/env python3
"""
Rollout Operator API
HTTP surface for starting, inspecting, confirming, rejecting and aborting model rollouts
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from .. import __version__
from ..config import OrchestratorSettings, RolloutPolicy
from ..monitoring.metrics import RolloutMetrics
from ..orchestration.models import RolloutRequest
from ..orchestration.orchestrator import RolloutOrchestrator
from ..utils.error_handling import RolloutError, general_error_handler, rollout_error_handler
from ..utils.logging_config import LoggingMiddleware, setup_logging

logger = logging.getLogger("rollout.app")


# API Models
class ArtifactSpecModel(BaseModel):
    source_model_id: str = Field("", description="Base model to quantize")
    quantization_method: str = Field("", description="Quantization method, e.g. bnb or gptq")
    bit_width: int = Field(0, ge=0)
    fingerprint: str = Field("", description="Content fingerprint of the source model")
    artifact_id: Optional[str] = Field(None, description="Roll out an already published artifact instead")


class ThresholdsModel(BaseModel):
    error_rate_threshold: float = Field(0.01, ge=0.0, le=1.0)
    latency_regression_factor: float = Field(1.2, gt=0.0)
    min_throughput_ratio: float = Field(0.8, ge=0.0)


class LoadProfileModel(BaseModel):
    concurrency: int = Field(4, gt=0)
    request_count: Optional[int] = Field(100, gt=0)
    duration_seconds: Optional[float] = Field(None, gt=0.0)
    payload_template: Dict[str, Any] = Field(default_factory=dict)
    request_timeout: float = Field(10.0, gt=0.0)


class RolloutRequestModel(BaseModel):
    service: str = Field(..., min_length=1)
    artifact: ArtifactSpecModel
    skip_validation: bool = False
    auto_switch: bool = False
    thresholds: ThresholdsModel = Field(default_factory=ThresholdsModel)
    load_profile: LoadProfileModel = Field(default_factory=LoadProfileModel)
    replicas: int = Field(1, gt=0)
    allow_no_baseline: bool = False
    keep_stable_warm: bool = False

    def to_request(self, policy: Optional[RolloutPolicy] = None) -> RolloutRequest:
        data = self.model_dump()
        if policy is not None:
            thresholds, load_profile, _ = policy
            # omitted sections fall back to the configured policy
            if "thresholds" not in self.model_fields_set:
                data["thresholds"] = asdict(thresholds)
            if "load_profile" not in self.model_fields_set:
                data["load_profile"] = asdict(load_profile)
        return RolloutRequest.from_dict(data)


class AbortRequestModel(BaseModel):
    reason: Optional[str] = None


def create_app(
    orchestrator: Optional[RolloutOrchestrator] = None,
    settings: Optional[OrchestratorSettings] = None,
    policy: Optional[RolloutPolicy] = None
) -> FastAPI:
    """
    Build the operator API.

    Without an orchestrator one is built from the environment on startup,
    resumes persisted rollouts and is shut down with the app. Rollout
    requests that omit thresholds or a load profile take them from the
    policy, or from ROLLOUT_POLICY_FILE when the orchestrator is built here.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = orchestrator is None
        if owned:
            app_settings = settings or OrchestratorSettings.from_env()
            setup_logging(
                environment=app_settings.environment,
                log_level=app_settings.log_level,
                log_dir=app_settings.log_dir,
            )
            app.state.policy = policy or app_settings.load_policy()
            app.state.orchestrator = RolloutOrchestrator.from_settings(app_settings, app.state.policy)
            app.state.orchestrator.add_listener(RolloutMetrics())
            resumed = await app.state.orchestrator.recover()
            logger.info(f"Rollout orchestrator started ({len(resumed)} rollout(s) resumed)")
        else:
            app.state.policy = policy
            app.state.orchestrator = orchestrator

        yield

        if owned:
            await app.state.orchestrator.shutdown()
            logger.info("Rollout orchestrator stopped")

    app = FastAPI(
        title="Model Rollout Orchestrator",
        description="Zero-downtime model artifact rollouts with stable/candidate tracks",
        version=__version__,
        lifespan=lifespan,
    )

    app.middleware("http")(LoggingMiddleware())
    app.add_exception_handler(RolloutError, rollout_error_handler)
    app.add_exception_handler(Exception, general_error_handler)

    def get_orchestrator(request: Request) -> RolloutOrchestrator:
        return request.app.state.orchestrator

    @app.get("/health")
    async def health_check():
        return {
            "service": "model-rollout-orchestrator",
            "status": "healthy",
            "version": __version__,
            "timestamp": datetime.utcnow().isoformat() + "Z",
        }

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint"""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.post("/rollouts", status_code=202)
    async def start_rollout(body: RolloutRequestModel, request: Request):
        orchestrator_ = get_orchestrator(request)
        rollout_id = await orchestrator_.start_rollout(body.to_request(request.app.state.policy))
        state = await orchestrator_.get_rollout(rollout_id)
        return {"rollout_id": rollout_id, "rollout": state.to_dict()}

    @app.get("/rollouts")
    async def list_rollouts(
        request: Request,
        service: Optional[str] = None,
        limit: int = Query(50, gt=0, le=500)
    ):
        states = await get_orchestrator(request).list_rollouts(service=service, limit=limit)
        return {"rollouts": [state.to_dict() for state in states]}

    @app.get("/rollouts/{rollout_id}")
    async def get_rollout(rollout_id: str, request: Request):
        state = await get_orchestrator(request).get_rollout(rollout_id)
        return state.to_dict()

    @app.get("/rollouts/{rollout_id}/history")
    async def get_history(rollout_id: str, request: Request):
        history = await get_orchestrator(request).get_history(rollout_id)
        return {"rollout_id": rollout_id, "revisions": [state.to_dict() for state in history]}

    @app.post("/rollouts/{rollout_id}/confirm")
    async def confirm_rollout(rollout_id: str, request: Request):
        state = await get_orchestrator(request).confirm(rollout_id)
        return state.to_dict()

    @app.post("/rollouts/{rollout_id}/reject")
    async def reject_rollout(rollout_id: str, request: Request):
        state = await get_orchestrator(request).reject(rollout_id)
        return state.to_dict()

    @app.post("/rollouts/{rollout_id}/abort")
    async def abort_rollout(rollout_id: str, request: Request, body: Optional[AbortRequestModel] = None):
        state = await get_orchestrator(request).abort(rollout_id, reason=body.reason if body else None)
        return state.to_dict()

    return app


def run():
    uvicorn.run(create_app(), host="0.0.0.0", port=8000, log_level="info")


if __name__ == "__main__":
    run()
