#!/usr/bin/env python3
"""
Rollout Error Handling
Typed error taxonomy, bounded retry with backoff, and centralized error reporting
"""

import asyncio
import functools
import logging
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorKind(Enum):
    TRANSIENT_INFRA = "transient_infra"
    CONFIGURATION = "configuration"
    VALIDATION_FAILURE = "validation_failure"
    BENCHMARK_FAILURE = "benchmark_failure"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    OPERATOR = "operator"


@dataclass
class ErrorContext:
    """Context information for error tracking and debugging"""

    error_id: str
    timestamp: datetime
    severity: ErrorSeverity
    kind: ErrorKind
    service: Optional[str] = None
    rollout_id: Optional[str] = None
    phase: Optional[str] = None
    additional_context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_id": self.error_id,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "kind": self.kind.value,
            "service": self.service,
            "rollout_id": self.rollout_id,
            "phase": self.phase,
            "additional_context": self.additional_context,
        }


class RolloutError(Exception):
    """Base exception class for rollout orchestration errors"""

    kind = ErrorKind.CONFIGURATION
    severity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        severity: Optional[ErrorSeverity] = None,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        if severity is not None:
            self.severity = severity
        self.error_code = error_code
        self.context = context or {}
        self.cause = cause
        self.timestamp = datetime.utcnow()
        self.error_id = str(uuid.uuid4())

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT_INFRA


class TransientInfraError(RolloutError):
    """Momentary infrastructure failure; safe to retry with backoff"""

    kind = ErrorKind.TRANSIENT_INFRA


class ConfigurationError(RolloutError):
    """Malformed request or settings; surfaced immediately"""

    kind = ErrorKind.CONFIGURATION


class ResourceExhaustionError(RolloutError):
    """Cluster or storage limits reached; needs an operator to raise limits"""

    kind = ErrorKind.RESOURCE_EXHAUSTION
    severity = ErrorSeverity.HIGH


class PhaseTimeoutError(RolloutError):
    """A phase exceeded its deadline"""

    kind = ErrorKind.TIMEOUT
    severity = ErrorSeverity.HIGH

    def __init__(self, message: str, timeout: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.timeout = timeout


class RolloutCancelledError(RolloutError):
    kind = ErrorKind.CANCELLED
    severity = ErrorSeverity.LOW


# Artifact pipeline

class DownloadError(TransientInfraError):
    """Base model could not be fetched"""


class StorageError(TransientInfraError):
    """Artifact store read/write failure"""


class QuantizationError(RolloutError):
    """The requested method/bit width could not be produced"""

    kind = ErrorKind.CONFIGURATION
    severity = ErrorSeverity.HIGH


# Deployment controller

class QuotaExceededError(ResourceExhaustionError):
    pass


class ImagePullError(ConfigurationError):
    severity = ErrorSeverity.HIGH


class DeploymentTimeoutError(PhaseTimeoutError):
    pass


class RouteError(TransientInfraError):
    """Traffic route could not be applied"""


class TrafficStateUnknownError(RolloutError):
    """Route update was not confirmed by a re-query"""

    kind = ErrorKind.TRANSIENT_INFRA
    severity = ErrorSeverity.HIGH

    def __init__(self, message: str, observed: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.observed = observed


# Health validation: expected outcomes, recorded on the rollout rather than propagated

class ValidationFailureError(RolloutError):
    kind = ErrorKind.VALIDATION_FAILURE

    def __init__(self, message: str, probes_sent: int = 0, probes_succeeded: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.probes_sent = probes_sent
        self.probes_succeeded = probes_succeeded


class UnreachableError(ValidationFailureError):
    pass


class UnhealthyResponseError(ValidationFailureError):
    pass


class ProbeTimeoutError(ValidationFailureError):
    pass


# Operator surface

class OperatorError(RolloutError):
    kind = ErrorKind.OPERATOR
    severity = ErrorSeverity.LOW


class RolloutInProgressError(OperatorError):
    def __init__(self, service: str, active_rollout_id: str, **kwargs):
        super().__init__(
            f"Rollout {active_rollout_id} is already active for service {service}",
            **kwargs
        )
        self.service = service
        self.active_rollout_id = active_rollout_id


class RolloutNotFoundError(OperatorError):
    def __init__(self, rollout_id: str, **kwargs):
        super().__init__(f"Rollout not found: {rollout_id}", **kwargs)
        self.rollout_id = rollout_id


class AlreadyTerminalError(OperatorError):
    def __init__(self, rollout_id: str, phase: str, **kwargs):
        super().__init__(f"Rollout {rollout_id} already reached terminal phase {phase}", **kwargs)
        self.rollout_id = rollout_id
        self.phase = phase


class InvalidTransitionError(OperatorError):
    severity = ErrorSeverity.HIGH


class NotAwaitingConfirmationError(OperatorError):
    pass


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient infrastructure errors"""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)"""
        return min(self.base_delay * (self.backoff_factor ** (attempt - 1)), self.max_delay)


async def call_with_retry(
    func: Callable[..., Awaitable[Any]],
    *args,
    policy: Optional[RetryPolicy] = None,
    on_retry: Optional[Callable[[int, Exception, float], Awaitable[None]]] = None,
    **kwargs
) -> Any:
    """Await func, retrying only TransientInfraError up to policy.max_attempts"""

    policy = policy or RetryPolicy()
    logger = logging.getLogger("rollout.app")
    attempt = 0

    while True:
        attempt += 1
        try:
            return await func(*args, **kwargs)
        except TransientInfraError as e:
            if attempt >= policy.max_attempts:
                logging.getLogger("rollout.errors").error(
                    f"Function {func.__name__} failed after {attempt} attempts",
                    extra={"function": func.__name__, "attempt": attempt, "error": str(e)},
                )
                raise

            delay = policy.delay_for(attempt)
            logger.warning(
                f"Function {func.__name__} failed on attempt {attempt}, retrying in {delay}s",
                extra={"function": func.__name__, "attempt": attempt, "delay": delay, "error": str(e)},
            )
            if on_retry is not None:
                await on_retry(attempt, e, delay)
            await asyncio.sleep(delay)


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    backoff_factor: float = 2.0,
):
    """Decorator for exponential backoff retry of async calls"""

    policy = RetryPolicy(max_attempts, base_delay, max_delay, backoff_factor)

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await call_with_retry(func, *args, policy=policy, **kwargs)
        return wrapper
    return decorator


class ErrorHandler:
    """Centralized error handling and reporting"""

    def __init__(self):
        self.logger = logging.getLogger("rollout.errors")
        self.error_stats: Dict[str, int] = {}

    def handle_error(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None,
        reraise: bool = True
    ) -> Optional[ErrorContext]:
        """Handle and log error with context"""

        if context is None:
            context = self.build_context(error)

        self._log_error(error, context)
        self._update_error_stats(context)

        if reraise:
            raise error

        return context

    @staticmethod
    def build_context(error: Exception, **kwargs) -> ErrorContext:
        if isinstance(error, RolloutError):
            return ErrorContext(
                error_id=error.error_id,
                timestamp=error.timestamp,
                severity=error.severity,
                kind=error.kind,
                **kwargs
            )
        return ErrorContext(
            error_id=str(uuid.uuid4()),
            timestamp=datetime.utcnow(),
            severity=ErrorSeverity.HIGH,
            kind=ErrorKind.CONFIGURATION,
            **kwargs
        )

    def _log_error(self, error: Exception, context: ErrorContext):
        """Log error with structured context"""

        error_info = {
            "error_type": type(error).__name__,
            "error_message": str(error),
            "error_context": context.to_dict(),
        }

        if isinstance(error, RolloutError):
            error_info["rollout_error_code"] = error.error_code
            error_info["rollout_context"] = error.context
            error_info["cause"] = str(error.cause) if error.cause else None
        else:
            error_info["traceback"] = traceback.format_exc()

        if context.severity == ErrorSeverity.CRITICAL:
            self.logger.critical(f"CRITICAL ERROR: {error_info['error_message']}", extra=error_info)
        elif context.severity == ErrorSeverity.HIGH:
            self.logger.error(f"HIGH SEVERITY ERROR: {error_info['error_message']}", extra=error_info)
        elif context.severity == ErrorSeverity.MEDIUM:
            self.logger.warning(f"ERROR: {error_info['error_message']}", extra=error_info)
        else:
            self.logger.info(f"LOW SEVERITY ERROR: {error_info['error_message']}", extra=error_info)

    def _update_error_stats(self, context: ErrorContext):
        stat_key = f"{context.kind.value}_{context.severity.value}"
        self.error_stats[stat_key] = self.error_stats.get(stat_key, 0) + 1


# Global error handler instance
error_handler = ErrorHandler()


def _status_code_for(exc: RolloutError) -> int:
    if isinstance(exc, RolloutNotFoundError):
        return 404
    if isinstance(exc, (RolloutInProgressError, AlreadyTerminalError,
                        NotAwaitingConfirmationError, InvalidTransitionError)):
        return 409
    if exc.kind is ErrorKind.CONFIGURATION:
        return 422
    if exc.kind is ErrorKind.TRANSIENT_INFRA:
        return 503
    return 500


# FastAPI exception handlers
async def rollout_error_handler(request: Request, exc: RolloutError) -> JSONResponse:
    """Handle rollout-specific errors"""

    error_handler.handle_error(
        exc,
        error_handler.build_context(exc, additional_context={"request_path": str(request.url.path)}),
        reraise=False,
    )

    return JSONResponse(
        status_code=_status_code_for(exc),
        content={
            "error": {
                "id": exc.error_id,
                "message": exc.message,
                "type": type(exc).__name__,
                "kind": exc.kind.value,
                "severity": exc.severity.value,
                "timestamp": exc.timestamp.isoformat(),
                "code": exc.error_code,
            }
        },
    )


async def general_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle general unexpected errors"""

    context = ErrorContext(
        error_id=str(uuid.uuid4()),
        timestamp=datetime.utcnow(),
        severity=ErrorSeverity.HIGH,
        kind=ErrorKind.CONFIGURATION,
        additional_context={"request_path": str(request.url.path)},
    )
    error_handler.handle_error(exc, context, reraise=False)

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "id": context.error_id,
                "message": "Internal server error",
                "type": "InternalError",
                "timestamp": context.timestamp.isoformat(),
            }
        },
    )
