"""Queue notifier worker: texts waiting customers when it is their turn to come back.

One scan fetches every waiting, not-yet-notified entry and handles them one at
a time. Processing is strictly sequential: an entry's eligibility depends on
the live position of the other entries in the same shop line, so the next
entry's context is only fetched after the previous entry's send and flag write
have finished.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from app.core.structured_logger import log_event
from app.services.queue_notifications import service as queue_service
from app.services.queue_notifications.exceptions import (
    MessageDeliveryError,
    NotifiedFlagWriteError,
    QueueFetchError,
)
from app.services.queue_notifications.service import QueueEntry, QueueMode, QueueStatus
from app.utils.logging_helpers import (
    log_worker_iteration_start,
    log_worker_iteration_end,
    classify_error,
)

logger = logging.getLogger(__name__)

WORKER_NAME = "queue_notifier"

# Back-off after a failed iteration in loop mode
MINIMUM_SAFE_SLEEP_ON_FAILURE = 15  # seconds


class DispatchOutcome(str, Enum):
    SENT = "sent"
    SEND_FAILED = "send_failed"
    MARK_FAILED = "mark_failed"
    ALREADY_NOTIFIED = "already_notified"


class EntryOutcome(str, Enum):
    NOTIFIED = "notified"
    NOT_READY = "not_ready"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ScanResult:
    """Counters for one scan"""
    candidates: int = 0
    notified: int = 0
    not_ready: int = 0
    skipped: int = 0
    failed: int = 0
    # candidates left unprocessed when the time budget ran out
    deferred: int = 0
    timed_out: bool = False

    def record(self, outcome: EntryOutcome) -> None:
        if outcome == EntryOutcome.NOTIFIED:
            self.notified += 1
        elif outcome == EntryOutcome.NOT_READY:
            self.not_ready += 1
        elif outcome == EntryOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    @property
    def processed(self) -> int:
        return self.notified + self.not_ready + self.skipped + self.failed


# ====================================================================================
# Notification Dispatcher
# ====================================================================================

async def send_ready_message(messenger, entry: QueueEntry) -> str:
    """
    Send the fixed ready message to the entry's phone number.

    Returns:
        Provider message id

    Raises:
        MessageDeliveryError: wrapping whatever the channel raised
    """
    body = queue_service.format_ready_message(entry.customer_name)
    try:
        return await messenger.send_message(entry.phone_number, body)
    except Exception as e:
        raise MessageDeliveryError(f"Failed to text entry {entry.id}") from e


async def mark_entry_notified(store, entry: QueueEntry) -> bool:
    """
    Persist notified = TRUE.

    Returns:
        True if this call flipped the flag, False if it was already set

    Raises:
        NotifiedFlagWriteError: wrapping the store error
    """
    try:
        return await store.set_notified(entry.id)
    except Exception as e:
        raise NotifiedFlagWriteError(f"Failed to mark entry {entry.id} notified") from e


async def dispatch_notification(store, messenger, entry: QueueEntry) -> DispatchOutcome:
    """
    Send the ready message, then mark the entry notified.

    A failed send is NOT marked, so the next scan retries it. A failed write
    after a successful send is logged as an anomaly and not retried in this
    scan; the customer may get a second text on the next scan.

    Args:
        store: QueueStore (set_notified)
        messenger: SMS channel (send_message)
        entry: Entry already decided as should_notify
    """
    try:
        message_id = await send_ready_message(messenger, entry)
    except MessageDeliveryError as e:
        log_event(
            logger,
            component="dispatcher",
            operation="send_ready_message",
            outcome="failed",
            entry_id=entry.id,
            shop_id=entry.shop_id,
            reason=f"{classify_error(e)}:{type(e.__cause__).__name__}",
            level="error",
        )
        return DispatchOutcome.SEND_FAILED

    try:
        flipped = await mark_entry_notified(store, entry)
    except NotifiedFlagWriteError as e:
        log_event(
            logger,
            component="dispatcher",
            operation="mark_notified",
            outcome="failed",
            entry_id=entry.id,
            shop_id=entry.shop_id,
            reason=f"sent_but_not_marked:{type(e.__cause__).__name__}",
            level="error",
            message=(
                f"NOTIFIED_FLAG_WRITE_FAILED entry={entry.id} message_id={message_id} - "
                f"customer may be texted again on the next scan"
            ),
        )
        return DispatchOutcome.MARK_FAILED

    if not flipped:
        log_event(
            logger,
            component="dispatcher",
            operation="mark_notified",
            outcome="degraded",
            entry_id=entry.id,
            shop_id=entry.shop_id,
            reason="already_notified_by_another_run",
            level="warning",
        )
        return DispatchOutcome.ALREADY_NOTIFIED

    logger.info(f"Marked entry {entry.id} as notified (message_id={message_id})")
    return DispatchOutcome.SENT


# ====================================================================================
# Queue Scanner
# ====================================================================================

async def process_queue_entry(store, messenger, entry: QueueEntry) -> EntryOutcome:
    """
    Evaluate one candidate and dispatch if it is time.

    Store errors raised while fetching context propagate; the scan loop
    catches them per entry.
    """
    if not entry.phone_number:
        log_event(
            logger,
            component="scanner",
            operation="evaluate_entry",
            outcome="skipped",
            entry_id=entry.id,
            shop_id=entry.shop_id,
            reason="missing_phone_number",
        )
        return EntryOutcome.SKIPPED

    barbers = await store.get_barbers(entry.shop_id)
    shop_config = await store.get_shop_config(entry.shop_id)

    skip_reason = queue_service.get_skip_reason(entry, barbers, shop_config)
    if skip_reason:
        log_event(
            logger,
            component="scanner",
            operation="evaluate_entry",
            outcome="skipped",
            entry_id=entry.id,
            shop_id=entry.shop_id,
            reason=skip_reason,
            level="warning",
            message=f"Skipping entry {entry.id} - missing barber/shop data ({skip_reason})",
        )
        return EntryOutcome.SKIPPED

    # Exactly one of the two line queries is issued, picked by requested_barber_id
    if queue_service.get_queue_mode(entry) == QueueMode.SPECIFIC_BARBER:
        shop_queue = await store.list_waiting_by_shop(
            entry.shop_id,
            requested_barber_id=entry.requested_barber_id,
            status=QueueStatus.WAITING,
        )
    else:
        shop_queue = await store.list_waiting_by_shop(entry.shop_id, status=QueueStatus.WAITING)

    decision = queue_service.evaluate_notification(
        entry, shop_queue, barbers, shop_config.notify_threshold
    )

    if not decision.should_notify:
        logger.info(
            f"Entry {entry.id} not yet ready to notify "
            f"(mode={decision.mode.value}, position={decision.position}, "
            f"estimated_wait={decision.estimated_wait}, reason={decision.reason})"
        )
        return EntryOutcome.NOT_READY

    outcome = await dispatch_notification(store, messenger, entry)
    if outcome in (DispatchOutcome.SEND_FAILED, DispatchOutcome.MARK_FAILED):
        return EntryOutcome.FAILED
    return EntryOutcome.NOTIFIED


async def check_queue_and_notify(store, messenger, timeout: Optional[float] = None) -> ScanResult:
    """
    Run one scan over every waiting, unnotified entry.

    The time budget is checked between candidates, never during one: an entry
    whose send has started always gets its flag write. Candidates left when
    the budget runs out stay unnotified and are picked up by the next scan.

    Args:
        store: QueueStore
        messenger: SMS channel
        timeout: Time budget in seconds for the whole scan (None = unbounded)

    Returns:
        ScanResult counters

    Raises:
        QueueFetchError: if the candidate fetch fails or times out (nothing is processed)
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout is not None else None

    logger.info("Checking for waiting queue entries...")

    try:
        entries = await asyncio.wait_for(
            store.list_waiting(status=QueueStatus.WAITING, notified=False),
            timeout=timeout,
        )
    except Exception as e:
        logger.error(f"Error fetching entries: {type(e).__name__}: {e}")
        raise QueueFetchError("Failed to fetch waiting queue entries") from e

    result = ScanResult(candidates=len(entries or []))
    if not entries:
        logger.info("No entries to notify.")
        return result

    logger.info(f"Found {len(entries)} waiting entries to check")

    for index, entry in enumerate(entries):
        if deadline is not None and loop.time() >= deadline:
            result.timed_out = True
            result.deferred = len(entries) - index
            logger.warning(
                f"Queue scan time budget of {timeout}s exhausted - "
                f"{result.deferred} entries deferred to the next scan"
            )
            break

        try:
            outcome = await process_queue_entry(store, messenger, entry)
        except Exception as e:
            # One entry's failure must not stop the scan
            log_event(
                logger,
                component="scanner",
                operation="evaluate_entry",
                outcome="failed",
                entry_id=entry.id,
                shop_id=entry.shop_id,
                reason=f"{classify_error(e)}:{type(e).__name__}",
                level="error",
            )
            logger.debug("scanner: full traceback for entry failure", exc_info=True)
            outcome = EntryOutcome.FAILED
        result.record(outcome)

    logger.info(
        f"Queue scan finished: candidates={result.candidates} notified={result.notified} "
        f"not_ready={result.not_ready} skipped={result.skipped} failed={result.failed} "
        f"deferred={result.deferred}"
    )
    return result


# ====================================================================================
# Worker entry points
# ====================================================================================

async def run_queue_notifier_once(
    store,
    messenger,
    iteration_number: int = 1,
    timeout: Optional[float] = None,
) -> ScanResult:
    """
    One logged scan (ITERATION_START / ITERATION_END).

    Raises:
        QueueFetchError: propagated from check_queue_and_notify
    """
    log_worker_iteration_start(worker_name=WORKER_NAME, iteration_number=iteration_number)
    iteration_start_time = time.time()

    outcome = "success"
    error_type = None
    result = None
    try:
        result = await check_queue_and_notify(store, messenger, timeout=timeout)
        if result.timed_out:
            outcome = "failed"
            error_type = "infra_error"
        elif result.failed:
            outcome = "degraded"
        elif result.candidates == 0:
            outcome = "skipped"
        return result
    except asyncio.CancelledError:
        outcome = "failed"
        error_type = "infra_error"
        raise
    except Exception as e:
        outcome = "failed"
        error_type = classify_error(e)
        raise
    finally:
        log_worker_iteration_end(
            worker_name=WORKER_NAME,
            outcome=outcome,
            items_processed=result.processed if result else 0,
            error_type=error_type,
            duration_ms=int((time.time() - iteration_start_time) * 1000),
        )


async def queue_notifier_task(
    store,
    messenger,
    interval_seconds: float = 60,
    iteration_timeout: float = 120.0,
    max_iterations: Optional[int] = None,
):
    """
    Long-running variant: scan every interval_seconds until cancelled.

    Each scan gets a budget of iteration_timeout seconds. A failed or
    timed-out scan is followed by a shorter sleep.

    Args:
        store: QueueStore
        messenger: SMS channel
        interval_seconds: Pause between scans
        iteration_timeout: Time budget in seconds for one scan
        max_iterations: Stop after this many scans (None = run forever)
    """
    iteration_number = 0
    while max_iterations is None or iteration_number < max_iterations:
        iteration_number += 1
        failed = False

        try:
            result = await run_queue_notifier_once(
                store, messenger, iteration_number, timeout=iteration_timeout
            )
            if result.timed_out:
                logger.error(
                    f"WORKER_TIMEOUT worker={WORKER_NAME} exceeded {iteration_timeout}s - "
                    f"{result.deferred} entries deferred"
                )
                failed = True
        except asyncio.CancelledError:
            logger.info("Queue notifier task cancelled")
            raise
        except Exception as e:
            logger.error(f"{WORKER_NAME}: iteration failed: {type(e).__name__}: {str(e)[:100]}")
            logger.debug(f"{WORKER_NAME}: full traceback for iteration failure", exc_info=True)
            failed = True

        if max_iterations is not None and iteration_number >= max_iterations:
            break

        if failed:
            await asyncio.sleep(min(MINIMUM_SAFE_SLEEP_ON_FAILURE, interval_seconds))
        else:
            await asyncio.sleep(interval_seconds)
