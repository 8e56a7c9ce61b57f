"""
Structured logging helpers for worker observability.

Logging contract:
- correlation_id: Unique identifier for one scan (worker iteration)
- component: Component name (worker, scanner, dispatcher)
- operation: Operation name (queue_notifier_iteration, ...)
- outcome: success | degraded | failed | skipped

Failure taxonomy:
- infra_error: Infrastructure errors (DB, network, timeouts)
- dependency_error: External dependency errors (SMS provider)
- domain_error: Queue notification errors (fatal fetch, delivery, flag write)
- unexpected_error: Unexpected errors (bugs, unhandled exceptions)
"""

import asyncio
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

logger = logging.getLogger(__name__)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: Optional[str]) -> None:
    _correlation_id.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _emit(log_data: dict, outcome: Optional[str] = None) -> None:
    """Emit as JSON with a level field matching the Python logging level"""
    if outcome == "failed":
        log_data["level"] = "ERROR"
        logger.error(json.dumps(log_data))
    elif outcome == "degraded":
        log_data["level"] = "WARNING"
        logger.warning(json.dumps(log_data))
    else:
        log_data["level"] = "INFO"
        logger.info(json.dumps(log_data))


def log_worker_iteration_start(
    worker_name: str,
    iteration_number: Optional[int] = None,
    **kwargs
) -> str:
    """
    Log worker iteration start and bind a fresh correlation id.

    Args:
        worker_name: Name of the worker (e.g., "queue_notifier")
        iteration_number: Iteration number (optional)
        **kwargs: Additional context to log

    Returns:
        Correlation ID for this iteration
    """
    correlation_id = generate_correlation_id()
    set_correlation_id(correlation_id)

    log_data = {
        "event": "ITERATION_START",
        "worker": worker_name,
        "correlation_id": correlation_id,
        "component": "worker",
        "operation": f"{worker_name}_iteration",
        "timestamp": _utc_timestamp(),
    }

    if iteration_number is not None:
        log_data["iteration_number"] = iteration_number

    if kwargs:
        log_data.update(kwargs)

    _emit(log_data)
    return correlation_id


def log_worker_iteration_end(
    worker_name: str,
    outcome: str,  # "success" | "degraded" | "failed" | "skipped"
    items_processed: Optional[int] = None,
    error_type: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
) -> None:
    """
    Log worker iteration end.

    Args:
        worker_name: Name of the worker
        outcome: Outcome of the iteration ("success" | "degraded" | "failed" | "skipped")
        items_processed: Number of candidates processed (optional)
        error_type: Type of error if outcome is "failed" (optional)
        duration_ms: Duration of the iteration in milliseconds (optional)
        **kwargs: Additional context to log
    """
    log_data = {
        "event": "ITERATION_END",
        "worker": worker_name,
        "correlation_id": get_correlation_id(),
        "component": "worker",
        "operation": f"{worker_name}_iteration",
        "outcome": outcome,
        "timestamp": _utc_timestamp(),
    }

    if items_processed is not None:
        log_data["items_processed"] = items_processed

    if error_type:
        log_data["error_type"] = error_type

    if duration_ms is not None:
        log_data["duration_ms"] = duration_ms

    if kwargs:
        log_data.update(kwargs)

    _emit(log_data, outcome)


def classify_error(exception: Exception) -> str:
    """
    Classify error type for the failure taxonomy.

    Returns:
        "infra_error" | "dependency_error" | "domain_error" | "unexpected_error"
    """
    import asyncpg
    import httpx
    from sms_service import SmsError
    from app.services.queue_notifications.exceptions import QueueNotificationError

    # A fatal fetch wraps the store error; classify by the underlying cause
    cause = exception.__cause__
    if isinstance(exception, QueueNotificationError) and isinstance(cause, Exception):
        underlying = classify_error(cause)
        if underlying != "unexpected_error":
            return underlying

    if isinstance(exception, QueueNotificationError):
        return "domain_error"

    if isinstance(exception, (SmsError, httpx.HTTPError)):
        return "dependency_error"

    if isinstance(exception, (
        asyncpg.PostgresError,
        asyncio.TimeoutError,
        ConnectionError,
        OSError,
    )):
        return "infra_error"

    return "unexpected_error"
