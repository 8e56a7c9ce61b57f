import asyncpg
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import config
from app.services.queue_notifications.service import (
    Barber,
    QueueEntry,
    QueueStatus,
    ShopConfig,
)
from app.utils.retry import retry_async

logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL


# ====================================================================================
# UTC HELPERS: DB boundary
# ====================================================================================
# joined_at may be TIMESTAMP (naive, stored as UTC) or TIMESTAMPTZ depending on
# who provisioned the store. The application layer always sees aware UTC.
# ====================================================================================

def _from_db_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert a DB datetime to aware UTC (naive values are assumed UTC)"""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc)
    return dt.replace(tzinfo=timezone.utc)


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _row_to_queue_entry(row: Dict[str, Any]) -> QueueEntry:
    return QueueEntry(
        id=str(row["id"]),
        customer_name=row["customer_name"],
        phone_number=row["phone_number"] or None,
        shop_id=str(row["shop_id"]),
        requested_barber_id=_str_or_none(row["requested_barber_id"]),
        status=QueueStatus(row["status"]),
        notified=bool(row["notified"]),
        joined_at=_from_db_utc(row["joined_at"]),
    )


def _row_to_barber(row: Dict[str, Any]) -> Barber:
    average_cut_time = row["average_cut_time"]
    return Barber(
        id=str(row["id"]),
        shop_id=str(row["shop_id"]),
        average_cut_time=float(average_cut_time) if average_cut_time is not None else None,
    )


# ====================================================================================
# DB POOL CONFIG: ENV-overridable, single source of truth
# ====================================================================================
def _get_pool_config() -> dict:
    """Build asyncpg.create_pool kwargs"""
    return {
        "min_size": int(os.getenv("DB_POOL_MIN_SIZE", "1")),
        "max_size": int(os.getenv("DB_POOL_MAX_SIZE", "5")),
        "max_inactive_connection_lifetime": 300,
        "timeout": int(os.getenv("DB_POOL_ACQUIRE_TIMEOUT", "10")),
        "command_timeout": int(os.getenv("DB_POOL_COMMAND_TIMEOUT", "30")),
    }


_pool: Optional[asyncpg.Pool] = None


async def get_pool() -> asyncpg.Pool:
    """
    Get the connection pool, creating it on first use.

    Pool creation is retried once on transient asyncpg errors.

    Raises:
        RuntimeError: if DATABASE_URL is not configured
    """
    global _pool
    if not DATABASE_URL:
        raise RuntimeError(f"{config.APP_ENV.upper()}_DATABASE_URL is not configured")
    if _pool is None:
        pool_config = _get_pool_config()
        _pool = await retry_async(
            lambda: asyncpg.create_pool(DATABASE_URL, **pool_config),
            retries=1,
            base_delay=0.5,
            max_delay=5.0,
            retry_on=(asyncpg.PostgresError, OSError),
        )
        logger.info(
            "DB_POOL_CONFIG min=%s max=%s acquire_timeout=%s command_timeout=%s",
            pool_config["min_size"], pool_config["max_size"],
            pool_config["timeout"], pool_config["command_timeout"],
        )
    return _pool


async def close_pool():
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database connection pool closed")


# ====================================================================================
# QUEUE STORE
# ====================================================================================

_QUEUE_ENTRY_COLUMNS = """
    id, customer_name, phone_number, shop_id, requested_barber_id,
    status, notified, joined_at
"""

# joined_at ties are broken by id so every query sees the same total order
_QUEUE_ORDER = "ORDER BY joined_at ASC, id ASC"


class QueueStore:
    """
    Read/write access to the walk-in queue.

    The only write is the one-field notified flag; everything else is read.
    Errors from asyncpg propagate to the caller.
    """

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def list_waiting(
        self,
        status: QueueStatus = QueueStatus.WAITING,
        notified: bool = False,
    ) -> List[QueueEntry]:
        """Candidate entries across all shops"""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""SELECT {_QUEUE_ENTRY_COLUMNS}
                   FROM queue_entries
                   WHERE status = $1 AND notified = $2
                   {_QUEUE_ORDER}""",
                status.value, notified
            )
        return [_row_to_queue_entry(row) for row in rows]

    async def list_waiting_by_shop(
        self,
        shop_id: str,
        requested_barber_id: Optional[str] = None,
        status: QueueStatus = QueueStatus.WAITING,
    ) -> List[QueueEntry]:
        """
        Waiting entries of one shop ordered by joined_at ascending.

        Args:
            shop_id: Shop to read
            requested_barber_id: When set, only that barber's line is returned;
                when None, the whole shop line regardless of barber
            status: Status filter (waiting)
        """
        async with self.pool.acquire() as conn:
            if requested_barber_id is None:
                rows = await conn.fetch(
                    f"""SELECT {_QUEUE_ENTRY_COLUMNS}
                       FROM queue_entries
                       WHERE shop_id = $1 AND status = $2
                       {_QUEUE_ORDER}""",
                    shop_id, status.value
                )
            else:
                rows = await conn.fetch(
                    f"""SELECT {_QUEUE_ENTRY_COLUMNS}
                       FROM queue_entries
                       WHERE shop_id = $1 AND status = $2 AND requested_barber_id = $3
                       {_QUEUE_ORDER}""",
                    shop_id, status.value, requested_barber_id
                )
        return [_row_to_queue_entry(row) for row in rows]

    async def get_barbers(self, shop_id: str) -> List[Barber]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT id, shop_id, average_cut_time FROM barbers WHERE shop_id = $1 ORDER BY id",
                shop_id
            )
        return [_row_to_barber(row) for row in rows]

    async def get_shop_config(self, shop_id: str) -> Optional[ShopConfig]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id, notify_threshold FROM barbershops WHERE id = $1",
                shop_id
            )
        if row is None or row["notify_threshold"] is None:
            return None
        return ShopConfig(shop_id=str(row["id"]), notify_threshold=float(row["notify_threshold"]))

    async def set_notified(self, entry_id: str) -> bool:
        """
        Flip notified to TRUE (idempotent).

        Returns:
            True if the flag was flipped by this call, False if it was already set
        """
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE queue_entries SET notified = TRUE WHERE id = $1 AND notified = FALSE",
                entry_id
            )
        # asyncpg execute returns a status string such as "UPDATE 1" or "UPDATE 0"
        return result.split()[-1] != "0"
