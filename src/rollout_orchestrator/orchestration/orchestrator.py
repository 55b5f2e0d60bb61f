#!/usr/bin/env python3
"""
Rollout Orchestrator
Sequences artifact production, candidate deployment, validation and benchmarking into one
resumable, auditable rollout per service, and owns the traffic switch and rollback decisions
"""

import asyncio
import functools
import inspect
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..artifacts.pipeline import ArtifactPipeline
from ..artifacts.sources import CommandQuantizer, LocalModelSource, UnavailableQuantizer
from ..artifacts.store import LocalArtifactStore
from ..config import OrchestratorSettings, RolloutPolicy
from ..database.connection import create_session_factory
from ..database.repository import RolloutRepository
from ..deployment.cleanup import Reconciler
from ..deployment.cluster import HTTPClusterAPI, InMemoryClusterAPI
from ..deployment.controller import DeploymentController
from ..evaluation.benchmark import BenchmarkComparator
from ..evaluation.health import HealthValidator
from ..evaluation.probe import HTTPProbeClient
from ..utils.error_handling import (
    AlreadyTerminalError, ConfigurationError, ErrorKind, NotAwaitingConfirmationError, PhaseTimeoutError,
    RetryPolicy, RolloutCancelledError, RolloutError, RolloutInProgressError, RolloutNotFoundError,
    TrafficStateUnknownError, ValidationFailureError, call_with_retry, error_handler
)
from ..utils.logging_config import (
    log_operator_action, log_performance_metric, log_phase_transition, set_rollout_context
)
from .models import Phase, RolloutRequest, RolloutState, TrackBinding, TrackRole, TrafficTarget, ValidationResult
from .state_machine import RolloutStateMachine

logger = logging.getLogger("rollout.app")

Listener = Callable[[RolloutState, Optional[Phase]], Any]

CONFIRM = "confirm"
REJECT = "reject"


class RolloutOrchestrator:
    """
    Operator surface and driver for rollouts.

    Each accepted rollout runs as one asyncio task that walks the phases in
    order. Every state change is appended to the repository as a new revision
    before the next step starts, so a restarted orchestrator can resume from
    the last persisted phase with recover().

    The traffic switch, the rollback and failure finalisation run as commit
    sections: they are shielded from cancellation, and an abort that arrives
    while one is running waits for it and then reports the terminal phase.
    """

    def __init__(
        self,
        pipeline: ArtifactPipeline,
        controller: DeploymentController,
        validator: HealthValidator,
        comparator: BenchmarkComparator,
        reconciler: Reconciler,
        repository: RolloutRepository,
        settings: Optional[OrchestratorSettings] = None
    ):
        self.pipeline = pipeline
        self.controller = controller
        self.validator = validator
        self.comparator = comparator
        self.reconciler = reconciler
        self.repository = repository
        self.settings = settings or OrchestratorSettings(cluster_backend="memory")

        self.machine = RolloutStateMachine()
        self._states: Dict[str, RolloutState] = {}
        self._active: Dict[str, str] = {}
        self._service_locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._commits: Dict[str, asyncio.Future] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self._decisions: Dict[str, asyncio.Future] = {}
        self._abort_reasons: Dict[str, Optional[str]] = {}
        self._listeners: List[Listener] = []

        self._steps: Dict[Phase, Callable[[RolloutState], Awaitable[RolloutState]]] = {
            Phase.PENDING: self._prepare_artifact,
            Phase.ARTIFACT_READY: self._deploy_candidate,
            Phase.CANDIDATE_DEPLOYED: self._validate_candidate,
            Phase.VALIDATED: self._benchmark_candidate,
            Phase.BENCHMARKED: self._decide,
        }

    @classmethod
    def from_settings(
        cls, settings: OrchestratorSettings, policy: Optional[RolloutPolicy] = None
    ) -> "RolloutOrchestrator":
        """Wire the default collaborators (local artifact store, HTTP or simulated cluster, HTTP probes)"""
        settings.validate()
        if policy is None:
            policy = settings.load_policy()
        probe_config = policy[2] if policy is not None else settings.probe_config()

        quantizer = (
            CommandQuantizer(settings.quantize_command, timeout=settings.artifact_timeout)
            if settings.quantize_command else UnavailableQuantizer()
        )
        pipeline = ArtifactPipeline(
            LocalArtifactStore(settings.artifact_root),
            LocalModelSource(settings.model_root),
            quantizer,
        )

        if settings.cluster_backend == "memory":
            cluster = InMemoryClusterAPI(namespace=settings.namespace)
        else:
            cluster = HTTPClusterAPI(
                settings.cluster_api_url,
                namespace=settings.namespace,
                token=settings.cluster_api_token,
            )

        retry_policy = RetryPolicy(base_delay=settings.retry_base_delay, max_delay=settings.retry_max_delay)
        controller = DeploymentController(
            cluster,
            poll_interval=settings.ready_poll_interval,
            requery_attempts=settings.traffic_requery_attempts,
            retry_policy=retry_policy,
        )

        probe_client = HTTPProbeClient()
        return cls(
            pipeline=pipeline,
            controller=controller,
            validator=HealthValidator(probe_client, probe_config),
            comparator=BenchmarkComparator(probe_client),
            reconciler=Reconciler(cluster, grace_period=settings.candidate_grace_period),
            repository=RolloutRepository(create_session_factory(settings.database_url)),
            settings=settings,
        )

    # Operator surface

    async def start_rollout(self, request: RolloutRequest) -> str:
        """Accept a rollout request; RolloutInProgressError if the service already has an active rollout"""
        request.validate()
        service = request.service

        lock = self._service_locks.setdefault(service, asyncio.Lock())
        async with lock:
            active_id = self._active.get(service)
            if active_id is None:
                active = await self._db(self.repository.active_for_service, service)
                active_id = active.id if active else None
            if active_id is not None:
                raise RolloutInProgressError(service, active_id)

            rollout_id = str(uuid.uuid4())
            state = RolloutStateMachine.initial(rollout_id, request)
            await self._persist(state, None)
            self._active[service] = rollout_id
            self._tasks[rollout_id] = asyncio.create_task(self._run(rollout_id))

        log_operator_action(
            rollout_id, "start", f"Rollout {rollout_id} started for {service}",
            service=service, auto_switch=request.auto_switch, skip_validation=request.skip_validation,
        )
        return rollout_id

    async def run_rollout(self, request: RolloutRequest, timeout: Optional[float] = None) -> RolloutState:
        """Synchronous mode: start a rollout and block until it settles"""
        rollout_id = await self.start_rollout(request)
        return await self.wait(rollout_id, timeout=timeout)

    async def wait(self, rollout_id: str, timeout: Optional[float] = None) -> RolloutState:
        """Wait until the rollout's task stops (terminal, or paused for confirmation if timeout expires)"""
        task = self._tasks.get(rollout_id)
        if task is not None:
            await asyncio.wait([task], timeout=timeout)
        return await self.get_rollout(rollout_id)

    async def get_rollout(self, rollout_id: str) -> RolloutState:
        state = self._states.get(rollout_id)
        if state is None:
            state = await self._db(self.repository.latest, rollout_id)
        if state is None:
            raise RolloutNotFoundError(rollout_id)
        return state.copy()

    async def get_history(self, rollout_id: str) -> List[RolloutState]:
        history = await self._db(self.repository.history, rollout_id)
        if not history:
            raise RolloutNotFoundError(rollout_id)
        return history

    async def list_rollouts(self, service: Optional[str] = None, limit: int = 50) -> List[RolloutState]:
        return await self._db(self.repository.list_rollouts, service, limit)

    async def confirm(self, rollout_id: str) -> RolloutState:
        """Approve the traffic switch of a rollout paused in Benchmarked"""
        return await self._resolve_decision(rollout_id, CONFIRM)

    async def reject(self, rollout_id: str) -> RolloutState:
        """Decline the traffic switch of a rollout paused in Benchmarked; it rolls back"""
        return await self._resolve_decision(rollout_id, REJECT)

    async def abort(self, rollout_id: str, reason: Optional[str] = None) -> RolloutState:
        """
        Cancel a non-terminal rollout.

        Returns once the rollout is Aborted and its candidate track is scaled
        to zero. Raises AlreadyTerminalError if the rollout finished first,
        including when a switch or rollback was already committing. A repeated
        abort waits for the first one and returns the same Aborted state.
        """
        state = await self.get_rollout(rollout_id)
        if state.is_terminal:
            raise AlreadyTerminalError(rollout_id, state.phase.value)

        task = self._tasks.get(rollout_id)
        reason = reason or "aborted by operator"
        log_operator_action(rollout_id, "abort", f"Abort requested for rollout {rollout_id}", reason=reason)

        commit = self._commits.get(rollout_id)
        if rollout_id in self._abort_reasons or commit is not None:
            # an earlier abort or a commit section owns the rollout; never cancel twice
            await asyncio.wait([task if task is not None else commit])
            final = await self.get_rollout(rollout_id)
        elif task is None or task.done():
            # not driven by this process (not yet recovered)
            final = await self._commit(state, self._finish_abort, reason)
            await self._sweep(final)
        else:
            self._abort_reasons[rollout_id] = reason
            task.cancel()
            await asyncio.wait([task])
            final = await self.get_rollout(rollout_id)

        if final.phase is not Phase.ABORTED:
            raise AlreadyTerminalError(rollout_id, final.phase.value)
        return final

    async def recover(self) -> List[str]:
        """
        Resume every persisted non-terminal rollout from its last recorded
        phase, and reconcile the services whose last rollout has settled.
        Resumed services are reconciled when their rollout finishes.
        """
        resumed = []
        for state in await self._db(self.repository.non_terminal):
            if state.id in self._tasks:
                continue
            self._states[state.id] = state
            self._active[state.service] = state.id
            self._tasks[state.id] = asyncio.create_task(self._run(state.id))
            resumed.append(state.id)

        if resumed:
            logger.info(f"Resumed {len(resumed)} rollout(s) from {', '.join(sorted(resumed))}")

        settled = {}
        for state in await self._db(self.repository.list_rollouts, None, 500):
            if state.service not in self._active:
                settled.setdefault(state.service, state)
        for state in settled.values():
            await self._sweep(state)
        return resumed

    def add_listener(self, listener: Listener):
        """Call listener(state, previous_phase) after every persisted revision"""
        self._listeners.append(listener)

    async def shutdown(self):
        """Stop driving rollouts without aborting them; recover() picks them up again"""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.reconciler.shutdown()
        await self.controller.cluster.close()
        await self.validator.probe_client.close()
        if self.comparator.probe_client is not self.validator.probe_client:
            await self.comparator.probe_client.close()

    # Driver

    async def _run(self, rollout_id: str):
        set_rollout_context(rollout_id)
        try:
            await self._drive(rollout_id)
        except asyncio.CancelledError:
            commit = self._commits.get(rollout_id)
            if commit is not None:
                await asyncio.wait([commit])
            elif rollout_id in self._abort_reasons:
                await self._commit(
                    self._states[rollout_id], self._finish_abort, self._abort_reasons[rollout_id]
                )
            else:
                raise
        finally:
            self._tasks.pop(rollout_id, None)
            self._commits.pop(rollout_id, None)
            self._decisions.pop(rollout_id, None)
            self._abort_reasons.pop(rollout_id, None)

        await self._sweep(self._states[rollout_id])

    async def _drive(self, rollout_id: str):
        state = self._states[rollout_id]
        while not state.is_terminal:
            step = self._steps[state.phase]
            started = time.monotonic()
            try:
                state = await step(state)
            except Exception as e:
                # the step may have recorded revisions before raising
                state = await self._commit(self._states[rollout_id], self._fail, e)
            log_performance_metric(
                operation=f"phase_{step.__name__.lstrip('_')}",
                duration_ms=round((time.monotonic() - started) * 1000, 2),
                rollout=rollout_id,
            )

    async def _commit(self, state: RolloutState, operation, *args) -> RolloutState:
        future = asyncio.ensure_future(operation(state, *args))
        self._commits[state.id] = future
        try:
            return await asyncio.shield(future)
        finally:
            if future.done():
                self._commits.pop(state.id, None)

    async def _in_flight(self, rollout_id: str, coro):
        """Cluster calls that create resources complete even if the rollout is cancelled meanwhile"""
        future = asyncio.ensure_future(coro)
        self._inflight[rollout_id] = future
        try:
            return await asyncio.shield(future)
        finally:
            if future.done():
                self._inflight.pop(rollout_id, None)

    async def _with_timeout(self, coro, timeout: Optional[float], what: str):
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            raise PhaseTimeoutError(f"{what} exceeded {timeout}s", timeout=timeout)

    # Phase steps

    async def _prepare_artifact(self, state: RolloutState) -> RolloutState:
        """Pending -> ArtifactReady; transient failures stay Pending with a retry count"""
        spec = state.request.artifact
        max_attempts = max(1, self.settings.artifact_max_retries + 1 - state.retry_count)
        policy = RetryPolicy(
            max_attempts=max_attempts,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
        )

        async def record_retry(attempt: int, error: Exception, delay: float):
            nonlocal state
            state = await self._record(
                state,
                retry_count=state.retry_count + 1,
                reason=f"artifact attempt failed, retrying in {delay}s: {error}",
            )

        artifact = await self._with_timeout(
            call_with_retry(self.pipeline.produce_from_spec, spec, policy=policy, on_retry=record_retry),
            self.settings.artifact_timeout,
            "Artifact production",
        )

        stable = await self.controller.current_traffic(state.service)
        if stable is not None and stable.artifact_id == artifact.id:
            raise ConfigurationError(
                f"Artifact {artifact.id} already serves traffic for {state.service}",
                context={"deployment_id": stable.deployment_id},
            )

        return await self._transition(
            state,
            Phase.ARTIFACT_READY,
            artifact_id=artifact.id,
            stable_track=stable,
            traffic=TrafficTarget.STABLE if stable else TrafficTarget.NONE,
            reason=None,
        )

    async def _deploy_candidate(self, state: RolloutState) -> RolloutState:
        """ArtifactReady -> CandidateDeployed once ready replicas meet desired"""
        artifact = await self.pipeline.resolve(state.artifact_id)
        deadline = time.monotonic() + self.settings.deploy_timeout

        binding = await self._in_flight(state.id, self._with_timeout(
            self.controller.ensure_track(state.service, TrackRole.CANDIDATE, artifact, state.request.replicas),
            self.settings.deploy_timeout,
            "Candidate deployment",
        ))
        state = await self._record(state, candidate_track=binding)

        remaining = max(deadline - time.monotonic(), 0.0)
        await self.controller.wait_ready(binding, timeout=remaining)
        return await self._transition(state, Phase.CANDIDATE_DEPLOYED, candidate_track=binding)

    async def _validate_candidate(self, state: RolloutState) -> RolloutState:
        """CandidateDeployed -> Validated, or RolledBack when the candidate is not healthy"""
        if state.request.skip_validation:
            return await self._transition(
                state, Phase.VALIDATED, validation_result=ValidationResult.skipped_result()
            )

        try:
            result = await self.validator.validate(
                state.candidate_track.endpoint, timeout=self.settings.validation_timeout
            )
        except ValidationFailureError as e:
            failed = ValidationResult(
                status="unready",
                probes_sent=e.probes_sent,
                probes_succeeded=e.probes_succeeded,
                success_ratio=(e.probes_succeeded / e.probes_sent) if e.probes_sent else 0.0,
                reason=f"{type(e).__name__}: {e.message}",
            )
            state = await self._record(state, validation_result=failed)
            return await self._commit(state, self._roll_back, f"health validation failed: {e.message}")

        return await self._transition(state, Phase.VALIDATED, validation_result=result)

    async def _benchmark_candidate(self, state: RolloutState) -> RolloutState:
        request = state.request
        stable_endpoint = state.stable_track.endpoint if state.stable_track else None

        result = await self._with_timeout(
            self.comparator.compare(
                stable_endpoint,
                state.candidate_track.endpoint,
                request.load_profile,
                thresholds=request.thresholds,
                allow_no_baseline=request.allow_no_baseline,
            ),
            self.settings.benchmark_timeout,
            "Benchmark",
        )
        return await self._transition(state, Phase.BENCHMARKED, benchmark_result=result)

    async def _decide(self, state: RolloutState) -> RolloutState:
        """Benchmarked -> Switched | RolledBack"""
        result = state.benchmark_result
        if not result.passed:
            return await self._commit(
                state, self._roll_back, f"benchmark verdict fail: {'; '.join(result.reasons)}"
            )
        if state.request.auto_switch:
            return await self._commit(state, self._switch, "benchmark passed, auto switch")

        decision_future = asyncio.get_running_loop().create_future()
        self._decisions[state.id] = decision_future
        try:
            if not state.awaiting_confirmation:
                state = await self._record(state, awaiting_confirmation=True, reason="awaiting operator confirmation")
            logger.info(f"Rollout {state.id} passed benchmarking and awaits operator confirmation")
            try:
                decision = await asyncio.wait_for(decision_future, timeout=self.settings.confirmation_timeout)
            except asyncio.TimeoutError:
                return await self._commit(
                    state, self._roll_back, f"no confirmation within {self.settings.confirmation_timeout}s"
                )
        finally:
            self._decisions.pop(state.id, None)

        if decision == CONFIRM:
            return await self._commit(state, self._switch, "confirmed by operator")
        return await self._commit(state, self._roll_back, "rejected by operator")

    async def _resolve_decision(self, rollout_id: str, decision: str) -> RolloutState:
        state = await self.get_rollout(rollout_id)
        if state.is_terminal:
            raise AlreadyTerminalError(rollout_id, state.phase.value)

        future = self._decisions.get(rollout_id)
        if not state.awaiting_confirmation or future is None or future.done():
            raise NotAwaitingConfirmationError(
                f"Rollout {rollout_id} is in phase {state.phase.value} and not awaiting confirmation",
                context={"rollout_id": rollout_id, "phase": state.phase.value},
            )

        log_operator_action(rollout_id, decision, f"Operator {decision}ed rollout {rollout_id}")
        future.set_result(decision)
        return await self.wait(rollout_id)

    # Commit sections

    async def _switch(self, state: RolloutState, reason: str) -> RolloutState:
        """Route all traffic to the candidate, then optionally retire the previous stable track"""
        candidate = state.candidate_track
        attempts = self.settings.traffic_requery_attempts

        for attempt in range(1, attempts + 1):
            try:
                await self.controller.set_traffic(state.service, candidate)
                break
            except TrafficStateUnknownError as e:
                state = await self._record(state, traffic=TrafficTarget.UNKNOWN, reason=e.message)
                if attempt >= attempts:
                    raise
                logger.warning(f"Traffic state unknown for {state.service} (attempt {attempt}/{attempts}), re-applying")

        stable = state.stable_track
        if stable is not None and self.settings.scale_down_stable and not state.request.keep_stable_warm:
            try:
                await self.reconciler.retire(state.service, stable)
            except RolloutError as e:
                # traffic is already on the candidate; the sweep after the switch retries the scale-down
                error_handler.handle_error(
                    e, error_handler.build_context(e, service=state.service, rollout_id=state.id), reraise=False
                )

        return await self._transition(
            state, Phase.SWITCHED, reason=reason, traffic=TrafficTarget.CANDIDATE, stable_track=stable
        )

    async def _roll_back(self, state: RolloutState, reason: str) -> RolloutState:
        """Keep traffic on stable and retire the candidate (scaled to zero, deleted after the grace period)"""
        candidate = state.candidate_track
        if candidate is not None:
            await self.reconciler.retire(state.service, candidate, self.settings.candidate_grace_period)

        traffic = await self._observe_traffic(state)
        return await self._transition(
            state, Phase.ROLLED_BACK, reason=reason, candidate_track=candidate, traffic=traffic
        )

    async def _fail(self, state: RolloutState, error: Exception) -> RolloutState:
        if isinstance(error, RolloutError):
            error_kind = error.kind.value
            message = error.message
        else:
            error_kind = "internal"
            message = str(error) or type(error).__name__

        error_handler.handle_error(
            error,
            error_handler.build_context(error, service=state.service, rollout_id=state.id, phase=state.phase.value),
            reraise=False,
        )

        candidate = state.candidate_track
        if isinstance(error, TrafficStateUnknownError):
            # nothing is scaled down while the route is unconfirmed
            traffic = TrafficTarget.UNKNOWN
        else:
            candidate = await self._release_candidate(state)
            traffic = await self._observe_traffic(state)

        return await self._transition(
            state,
            Phase.FAILED,
            reason=f"{type(error).__name__} during {state.phase.value}: {message}",
            error_kind=error_kind,
            candidate_track=candidate,
            traffic=traffic,
        )

    async def _finish_abort(self, state: RolloutState, reason: Optional[str]) -> RolloutState:
        candidate = state.candidate_track
        inflight = self._inflight.pop(state.id, None)
        if inflight is not None:
            await asyncio.wait([inflight])
            if not inflight.cancelled() and inflight.exception() is None:
                candidate = inflight.result()

        candidate = await self._release_candidate(state, candidate)
        traffic = await self._observe_traffic(state)

        final = await self._transition(
            state,
            Phase.ABORTED,
            reason=reason or "aborted by operator",
            error_kind=ErrorKind.CANCELLED.value,
            candidate_track=candidate,
            traffic=traffic,
        )
        cancelled = RolloutCancelledError(f"Rollout {state.id} aborted during {state.phase.value}: {final.reason}")
        error_handler.handle_error(
            cancelled,
            error_handler.build_context(
                cancelled, service=state.service, rollout_id=state.id, phase=state.phase.value
            ),
            reraise=False,
        )
        return final

    async def _release_candidate(
        self,
        state: RolloutState,
        candidate: Optional[TrackBinding] = None
    ) -> Optional[TrackBinding]:
        """Scale the rollout's candidate to zero; a candidate that receives traffic is left alone"""
        candidate = candidate or state.candidate_track
        try:
            if candidate is None and state.artifact_id:
                candidate = await self.controller.find_track(state.service, TrackRole.CANDIDATE, state.artifact_id)
            if candidate is not None:
                await self.reconciler.retire(state.service, candidate, self.settings.candidate_grace_period)
        except RolloutError as e:
            error_handler.handle_error(
                e, error_handler.build_context(e, service=state.service, rollout_id=state.id), reraise=False
            )
        return candidate

    async def _sweep(self, state: RolloutState):
        """Reconcile the service's deployments against a settled rollout"""
        if not state.is_terminal or state.traffic is TrafficTarget.UNKNOWN:
            return
        if self._active.get(state.service) not in (None, state.id):
            # a newer rollout owns the service and sweeps once it settles
            return

        keep = []
        stable, candidate = state.stable_track, state.candidate_track
        if state.phase is Phase.SWITCHED:
            keep.append(candidate.deployment_id)
            if stable is not None and (state.request.keep_stable_warm or not self.settings.scale_down_stable):
                keep.append(stable.deployment_id)
        elif stable is not None:
            keep.append(stable.deployment_id)

        try:
            await self.reconciler.reconcile(state.service, keep=keep)
        except RolloutError as e:
            error_handler.handle_error(
                e, error_handler.build_context(e, service=state.service, rollout_id=state.id), reraise=False
            )

    async def _observe_traffic(self, state: RolloutState) -> TrafficTarget:
        try:
            route = await self.controller.route(state.service)
        except RolloutError as e:
            logger.warning(f"Could not observe route for {state.service}: {e}")
            return TrafficTarget.UNKNOWN

        if route is None:
            return TrafficTarget.NONE
        if state.candidate_track is not None and route == state.candidate_track.deployment_id:
            return TrafficTarget.CANDIDATE
        if state.stable_track is not None and route == state.stable_track.deployment_id:
            return TrafficTarget.STABLE
        return TrafficTarget.UNKNOWN

    # Persistence

    async def _db(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    async def _transition(self, state: RolloutState, target: Phase, reason: Optional[str] = None, **changes):
        new_state = self.machine.transition(state, target, reason=reason, **changes)
        await self._persist(new_state, state.phase)
        return new_state

    async def _record(self, state: RolloutState, **changes) -> RolloutState:
        new_state = self.machine.record(state, **changes)
        await self._persist(new_state, state.phase)
        return new_state

    async def _persist(self, state: RolloutState, previous_phase: Optional[Phase]):
        write = asyncio.ensure_future(self._db(self.repository.append, state))
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            # the executor finishes the insert anyway; keep memory in step with the store
            await asyncio.wait([write])
            if not write.cancelled() and write.exception() is None:
                self._states[state.id] = state
            raise
        self._states[state.id] = state

        if state.is_terminal and self._active.get(state.service) == state.id:
            del self._active[state.service]

        if previous_phase is not state.phase:
            log_phase_transition(
                state.id,
                state.service,
                previous_phase.value if previous_phase else None,
                state.phase.value,
                state.revision,
                reason=state.reason,
                traffic=state.traffic.value,
            )

        for listener in self._listeners:
            try:
                result = listener(state.copy(), previous_phase)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                error_handler.handle_error(
                    e, error_handler.build_context(e, rollout_id=state.id), reraise=False
                )
