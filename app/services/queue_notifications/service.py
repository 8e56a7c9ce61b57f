"""
Queue Notification Service Layer

This module decides when a waiting customer should get the "you're up next" alert.

All functions are pure business logic:
- No database access
- No SMS calls
- No logging of per-entry decisions (the worker logs them)

Two queueing disciplines are supported:
- Specific barber: a dedicated FIFO line per barber, only its head is notified.
- Any barber: a shared FIFO line for the shop, the head is always notified and
  anyone behind it is notified once the optimistic wait estimate fits the
  shop's notify threshold.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Sequence


# ====================================================================================
# Constants
# ====================================================================================

# Minutes per customer used when a barber has no average cut time recorded
DEFAULT_AVERAGE_CUT_TIME = 15

READY_MESSAGE_TEMPLATE = "Hi {customer_name}, you're up next! Please return to the barbershop."


# ====================================================================================
# Domain Types
# ====================================================================================

class QueueStatus(str, Enum):
    """Queue entry lifecycle states"""
    WAITING = "waiting"
    SERVED = "served"
    CANCELLED = "cancelled"


class QueueMode(str, Enum):
    """Queueing discipline applied to an entry"""
    SPECIFIC_BARBER = "specific_barber"
    ANY_BARBER = "any_barber"


@dataclass(frozen=True)
class QueueEntry:
    """One customer's visit record"""
    id: str
    customer_name: str
    phone_number: Optional[str]
    shop_id: str
    requested_barber_id: Optional[str]
    status: QueueStatus
    notified: bool
    joined_at: datetime


@dataclass(frozen=True)
class Barber:
    id: str
    shop_id: str
    average_cut_time: Optional[float] = None


@dataclass(frozen=True)
class ShopConfig:
    shop_id: str
    notify_threshold: float


@dataclass
class NotifyDecision:
    """Decision about whether to notify a waiting entry"""
    should_notify: bool
    mode: QueueMode
    position: Optional[int] = None  # zero-based position in the relevant queue
    estimated_wait: Optional[float] = None  # minutes, any-barber mode only
    reason: Optional[str] = None


# ====================================================================================
# Helpers
# ====================================================================================

def get_queue_mode(entry: QueueEntry) -> QueueMode:
    """
    Select the queueing discipline for an entry.

    Decided solely by whether a specific barber was requested.
    """
    if entry.requested_barber_id:
        return QueueMode.SPECIFIC_BARBER
    return QueueMode.ANY_BARBER


def resolve_average_cut_time(barbers: Sequence[Barber]) -> float:
    """
    Per-position wait estimate for the any-barber queue.

    Uses the fastest barber (best case). Missing cut times count as
    DEFAULT_AVERAGE_CUT_TIME; zero or negative values are taken as-is.

    Raises:
        ValueError: if barbers is empty
    """
    if not barbers:
        raise ValueError("Cannot estimate cut time without barbers")
    return min(
        b.average_cut_time if b.average_cut_time is not None else DEFAULT_AVERAGE_CUT_TIME
        for b in barbers
    )


def find_queue_position(entry_id: str, queue: Sequence[QueueEntry]) -> Optional[int]:
    """Zero-based index of entry_id in queue, or None if absent"""
    for index, queued in enumerate(queue):
        if queued.id == entry_id:
            return index
    return None


def filter_barber_queue(queue: Sequence[QueueEntry], barber_id: str) -> List[QueueEntry]:
    """Waiting entries that requested barber_id, order preserved"""
    return [
        e for e in queue
        if e.status == QueueStatus.WAITING and e.requested_barber_id == barber_id
    ]


def estimate_wait_minutes(position: int, average_cut_time: float) -> float:
    return average_cut_time * position


# ====================================================================================
# Eligibility Decision Logic
# ====================================================================================

def evaluate_notification(
    entry: QueueEntry,
    shop_queue: Sequence[QueueEntry],
    barbers: Sequence[Barber],
    notify_threshold: float,
) -> NotifyDecision:
    """
    Decide whether a waiting entry should be notified right now.

    Args:
        entry: Target entry
        shop_queue: Waiting entries relevant to the entry's mode, ordered by
            joined_at ascending. For the specific-barber mode this is the
            barber's line; for the any-barber mode it is the whole shop line.
            Entries for other barbers are filtered out in specific-barber mode.
        barbers: Barbers of the entry's shop (must be non-empty)
        notify_threshold: Shop's notify threshold in minutes

    Returns:
        NotifyDecision with should_notify flag and the reasoning inputs
    """
    mode = get_queue_mode(entry)

    if mode == QueueMode.SPECIFIC_BARBER:
        barber_queue = filter_barber_queue(shop_queue, entry.requested_barber_id)
        position = find_queue_position(entry.id, barber_queue)
        if position is None:
            return NotifyDecision(
                should_notify=False,
                mode=mode,
                reason="not_in_queue",
            )
        if position == 0:
            return NotifyDecision(should_notify=True, mode=mode, position=0, reason="head_of_barber_queue")
        return NotifyDecision(
            should_notify=False,
            mode=mode,
            position=position,
            reason="behind_in_barber_queue",
        )

    # ANY BARBER
    position = find_queue_position(entry.id, shop_queue)
    if position is None:
        return NotifyDecision(should_notify=False, mode=mode, reason="not_in_queue")

    if position == 0:
        return NotifyDecision(should_notify=True, mode=mode, position=0, reason="front_of_shop_queue")

    average_cut_time = resolve_average_cut_time(barbers)
    estimated_wait = estimate_wait_minutes(position, average_cut_time)

    if estimated_wait <= notify_threshold:
        return NotifyDecision(
            should_notify=True,
            mode=mode,
            position=position,
            estimated_wait=estimated_wait,
            reason="within_notify_threshold",
        )

    return NotifyDecision(
        should_notify=False,
        mode=mode,
        position=position,
        estimated_wait=estimated_wait,
        reason="wait_exceeds_threshold",
    )


def should_notify(
    entry: QueueEntry,
    shop_queue: Sequence[QueueEntry],
    barbers: Sequence[Barber],
    notify_threshold: float,
) -> bool:
    return evaluate_notification(entry, shop_queue, barbers, notify_threshold).should_notify


def get_skip_reason(
    entry: QueueEntry,
    barbers: Optional[Sequence[Barber]],
    shop_config: Optional[ShopConfig],
) -> Optional[str]:
    """
    Check whether an entry can be evaluated at all.

    Returns:
        Reason string if the entry must be skipped, None if it is ready to evaluate
    """
    if not entry.phone_number:
        return "missing_phone_number"
    if not barbers:
        return "no_barbers"
    if shop_config is None:
        return "missing_shop_config"
    return None


# ====================================================================================
# Message Formatting
# ====================================================================================

def format_ready_message(customer_name: str) -> str:
    """Format the fixed 'return to the shop' message"""
    return READY_MESSAGE_TEMPLATE.format(customer_name=customer_name)


def mask_phone_number(phone_number: Optional[str]) -> str:
    """Mask a phone number for logs, keeping the last 4 digits"""
    if not phone_number:
        return "<none>"
    if len(phone_number) <= 4:
        return "****"
    return f"***{phone_number[-4:]}"
