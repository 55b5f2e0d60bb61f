#!/usr/bin/env python3
"""
Rollout Logging Configuration
Structured JSON logging with rollout correlation, audit trail, and performance tracking
"""

import contextvars
import json
import logging
import logging.handlers
import sys
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# Context variables for rollout and request correlation
rollout_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar('rollout_id', default=None)
correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar('correlation_id', default=None)

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
    'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'getMessage', 'message', 'taskName'
}


class StructuredFormatter(logging.Formatter):
    """
    Custom formatter for structured JSON logging with rollout correlation
    """

    def __init__(self, service_name: str = "model-rollout-orchestrator", environment: str = "production"):
        super().__init__()
        self.service_name = service_name
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON"""

        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": self.service_name,
            "environment": self.environment,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        rollout_id = rollout_id_var.get()
        if rollout_id:
            log_entry["rollout_id"] = rollout_id

        corr_id = correlation_id.get()
        if corr_id:
            log_entry["correlation_id"] = corr_id

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info)
            }

        extra_fields = {}
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            if isinstance(value, (str, int, float, bool, list, dict)) or value is None:
                extra_fields[key] = value
            else:
                extra_fields[key] = str(value)

        if extra_fields:
            log_entry["extra"] = extra_fields

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class AuditFormatter(StructuredFormatter):
    """
    Formatter for the rollout audit trail (phase transitions, operator actions)
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = json.loads(super().format(record))
        log_entry["log_type"] = "rollout_audit"

        for attr in ('event_type', 'from_phase', 'to_phase', 'revision', 'operator_action', 'service'):
            if hasattr(record, attr):
                log_entry[attr] = getattr(record, attr)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class PerformanceFormatter(StructuredFormatter):
    """
    Formatter for phase durations and benchmark statistics
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = json.loads(super().format(record))
        log_entry["log_type"] = "performance"

        for attr in ('operation', 'duration_ms', 'track', 'p50_ms', 'p95_ms', 'p99_ms',
                     'error_rate', 'throughput_rps', 'sample_count'):
            if hasattr(record, attr):
                log_entry[attr] = getattr(record, attr)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging(
    service_name: str = "model-rollout-orchestrator",
    environment: str = "production",
    log_level: str = "INFO",
    log_dir: Optional[str] = None
) -> Dict[str, logging.Logger]:
    """
    Set up orchestrator logging configuration

    Args:
        service_name: Name of the service
        environment: Environment (development, staging, production)
        log_level: Logging level
        log_dir: Directory for rotating log files; console only when omitted

    Returns:
        Dictionary of configured loggers
    """

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StructuredFormatter(service_name, environment))
    root_logger.addHandler(console_handler)

    loggers = {
        "app": logging.getLogger("rollout.app"),
        "audit": logging.getLogger("rollout.audit"),
        "performance": logging.getLogger("rollout.performance"),
        "errors": logging.getLogger("rollout.errors"),
    }
    loggers["audit"].setLevel(logging.INFO)
    loggers["performance"].setLevel(logging.INFO)
    loggers["errors"].setLevel(logging.WARNING)

    if log_dir:
        Path(log_dir).mkdir(parents=True, exist_ok=True)

        files = {
            "app": ("application.log", StructuredFormatter, 100, 10),
            "audit": ("audit.log", AuditFormatter, 50, 30),
            "performance": ("performance.log", PerformanceFormatter, 100, 15),
            "errors": ("errors.log", StructuredFormatter, 50, 30),
        }
        for name, (filename, formatter_cls, max_mb, backups) in files.items():
            handler = logging.handlers.RotatingFileHandler(
                filename=f"{log_dir}/{filename}",
                maxBytes=max_mb * 1024 * 1024,
                backupCount=backups
            )
            handler.setFormatter(formatter_cls(service_name, environment))
            loggers[name].addHandler(handler)

    return loggers


def set_rollout_context(rollout_id: Optional[str]):
    """Bind the rollout id to log records emitted from the current task"""
    rollout_id_var.set(rollout_id)


def log_phase_transition(
    rollout_id: str,
    service: str,
    from_phase: Optional[str],
    to_phase: str,
    revision: int,
    reason: Optional[str] = None,
    **kwargs
):
    """Log a rollout phase transition to the audit trail"""
    audit_logger = logging.getLogger("rollout.audit")

    extra = {
        "event_type": "phase_transition",
        "rollout": rollout_id,
        "service": service,
        "from_phase": from_phase,
        "to_phase": to_phase,
        "revision": revision,
        "reason": reason,
        **kwargs
    }

    audit_logger.info(f"Rollout {rollout_id}: {from_phase} -> {to_phase}", extra=extra)


def log_operator_action(rollout_id: str, operator_action: str, message: str, **kwargs):
    """Log an operator action (start, confirm, reject, abort)"""
    audit_logger = logging.getLogger("rollout.audit")

    extra = {
        "event_type": "operator_action",
        "rollout": rollout_id,
        "operator_action": operator_action,
        **kwargs
    }

    audit_logger.info(message, extra=extra)


def log_performance_metric(
    operation: str,
    duration_ms: float,
    message: str = None,
    **kwargs
):
    """Log performance metric"""
    performance_logger = logging.getLogger("rollout.performance")

    extra = {
        "operation": operation,
        "duration_ms": duration_ms,
        **kwargs
    }

    msg = message or f"Operation {operation} completed in {duration_ms}ms"
    performance_logger.info(msg, extra=extra)


def log_benchmark_stats(track: str, stats: Dict[str, Any], **kwargs):
    """Log reduced benchmark statistics for one track"""
    performance_logger = logging.getLogger("rollout.performance")

    extra = {
        "operation": "benchmark",
        "track": track,
        "p50_ms": stats.get("p50"),
        "p95_ms": stats.get("p95"),
        "p99_ms": stats.get("p99"),
        "error_rate": stats.get("error_rate"),
        "throughput_rps": stats.get("throughput_rps"),
        "sample_count": stats.get("sample_count"),
        **kwargs
    }

    performance_logger.info(
        f"Benchmark {track}: p95={stats.get('p95')}ms error_rate={stats.get('error_rate')} "
        f"throughput={stats.get('throughput_rps')}rps",
        extra=extra
    )


class LoggingMiddleware:
    """
    FastAPI middleware for automatic request logging
    """

    def __init__(self):
        self.app_logger = logging.getLogger("rollout.app")

    async def __call__(self, request, call_next):
        """Process request with logging"""

        corr_id = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        correlation_id.set(corr_id)

        start_time = time.time()
        method = request.method
        path = request.url.path

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = round((time.time() - start_time) * 1000, 2)
            self.app_logger.error(
                f"Request failed: {method} {path} - {str(e)}",
                extra={"http_method": method, "path": path, "duration_ms": duration_ms},
                exc_info=True
            )
            raise

        duration_ms = round((time.time() - start_time) * 1000, 2)
        self.app_logger.info(
            f"Request completed: {method} {path} - {response.status_code}",
            extra={
                "http_method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            }
        )
        response.headers["x-correlation-id"] = corr_id
        return response
