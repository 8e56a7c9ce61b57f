"""
Pytest configuration and shared fixtures for queue notifier tests.
"""
import pytest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

from app.services.queue_notifications.service import (
    Barber,
    QueueEntry,
    QueueStatus,
    ShopConfig,
)

SHOP_ID = "shop-1"
BASE_TIME = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def make_entry(
    entry_id: str,
    minutes_after_open: int = 0,
    requested_barber_id: Optional[str] = None,
    phone_number: Optional[str] = "+15550000000",
    shop_id: str = SHOP_ID,
    status: QueueStatus = QueueStatus.WAITING,
    notified: bool = False,
    customer_name: Optional[str] = None,
) -> QueueEntry:
    return QueueEntry(
        id=entry_id,
        customer_name=customer_name or f"Customer {entry_id}",
        phone_number=phone_number,
        shop_id=shop_id,
        requested_barber_id=requested_barber_id,
        status=status,
        notified=notified,
        joined_at=BASE_TIME + timedelta(minutes=minutes_after_open),
    )


def make_barbers(*cut_times, shop_id: str = SHOP_ID) -> List[Barber]:
    return [
        Barber(id=f"barber-{i}", shop_id=shop_id, average_cut_time=cut_time)
        for i, cut_time in enumerate(cut_times, start=1)
    ]


class FakeQueueStore:
    """In-memory QueueStore with the same ordering and filtering rules"""

    def __init__(
        self,
        entries: List[QueueEntry],
        barbers: Optional[Dict[str, List[Barber]]] = None,
        shop_configs: Optional[Dict[str, ShopConfig]] = None,
    ):
        self.entries: Dict[str, QueueEntry] = {e.id: e for e in entries}
        self.barbers = barbers or {}
        self.shop_configs = shop_configs or {}
        self.set_notified_calls: List[str] = []

    def _ordered(self) -> List[QueueEntry]:
        return sorted(self.entries.values(), key=lambda e: (e.joined_at, e.id))

    async def list_waiting(self, status=QueueStatus.WAITING, notified=False):
        return [e for e in self._ordered() if e.status == status and e.notified == notified]

    async def list_waiting_by_shop(self, shop_id, requested_barber_id=None, status=QueueStatus.WAITING):
        return [
            e for e in self._ordered()
            if e.shop_id == shop_id
            and e.status == status
            and (requested_barber_id is None or e.requested_barber_id == requested_barber_id)
        ]

    async def get_barbers(self, shop_id):
        return list(self.barbers.get(shop_id, []))

    async def get_shop_config(self, shop_id):
        return self.shop_configs.get(shop_id)

    async def set_notified(self, entry_id):
        self.set_notified_calls.append(entry_id)
        entry = self.entries[entry_id]
        if entry.notified:
            return False
        self.entries[entry_id] = replace(entry, notified=True)
        return True


@pytest.fixture
def shop_config():
    return ShopConfig(shop_id=SHOP_ID, notify_threshold=20)


@pytest.fixture
def three_barbers():
    """Cut times {10, 20, 15}: fastest is 10 minutes"""
    return make_barbers(10, 20, 15)


@pytest.fixture
def mock_messenger():
    """Mock SMS channel that always succeeds"""
    messenger = MagicMock()
    messenger.send_message = AsyncMock(return_value="SM123")
    return messenger


@pytest.fixture
def mock_store():
    """Mock QueueStore with empty defaults"""
    store = MagicMock()
    store.list_waiting = AsyncMock(return_value=[])
    store.list_waiting_by_shop = AsyncMock(return_value=[])
    store.get_barbers = AsyncMock(return_value=[])
    store.get_shop_config = AsyncMock(return_value=None)
    store.set_notified = AsyncMock(return_value=True)
    return store
