"""
Structured logging normalization.

Single contract for per-entry lifecycle logs of the queue notifier:
- component
- operation
- correlation_id (optional, defaults to the current scan's id)
- outcome
- entry_id / shop_id (optional)
- reason (optional)

Do not log secrets or full phone numbers.
"""
from logging import Logger
from typing import Optional

from app.utils.logging_helpers import get_correlation_id


def log_event(
    logger: Logger,
    *,
    component: str,
    operation: str,
    outcome: str,
    correlation_id: Optional[str] = None,
    entry_id: Optional[str] = None,
    shop_id: Optional[str] = None,
    duration_ms: Optional[int] = None,
    reason: Optional[str] = None,
    level: str = "info",
    message: Optional[str] = None,
) -> None:
    """
    Emit structured log event.

    Args:
        logger: Logger instance
        component: Component name (e.g., "scanner", "dispatcher", "sms")
        operation: Operation name (e.g., "evaluate_entry", "send_ready_message")
        outcome: Outcome (e.g., "notified", "skipped", "not_ready", "failed")
        correlation_id: Scan identifier (defaults to the context's correlation id)
        entry_id: Queue entry id (optional)
        shop_id: Shop id (optional)
        duration_ms: Duration in milliseconds (omitted if None)
        reason: Short non-PII explanation (optional)
        level: Log level ("info", "warning", "error", "critical", "debug")
        message: Optional override message
    """
    extra: dict = {
        "component": component,
        "operation": operation,
        "outcome": outcome,
    }
    correlation_id = correlation_id or get_correlation_id()
    if correlation_id is not None:
        extra["correlation_id"] = str(correlation_id)
    if entry_id is not None:
        extra["entry_id"] = str(entry_id)
    if shop_id is not None:
        extra["shop_id"] = str(shop_id)
    if duration_ms is not None:
        extra["duration_ms"] = duration_ms
    if reason is not None:
        extra["reason"] = reason

    msg = message or f"{component} {operation} outcome={outcome}"
    if reason and not message:
        msg = f"{msg} reason={reason}"
    if entry_id is not None and not message:
        msg = f"{msg} entry={entry_id}"
    log_method = getattr(logger, level.lower(), logger.info)
    log_method(msg, extra=extra)
