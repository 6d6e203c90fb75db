"""
Sliding-window rate limiter backed by the rate_limit table.

One row per (table, key) holds window_start and count. A window that
has fully elapsed is reset on the next call; otherwise the count grows
until it reaches the configured max.

Invariants:
    - Rows are created on first use and never deleted
    - A rejected call does not increment the count
    - Check-and-increment relies on the enclosing store transaction
"""

from __future__ import annotations

import logging

from .config import RateLimit
from .errors import ErrorCode, err
from .store.base import DocumentStore

logger = logging.getLogger(__name__)


async def check_rate_limit(
    db: DocumentStore,
    table: str,
    key: str,
    limit: RateLimit,
    now: int,
    op: str = "create",
) -> None:
    """Count one call for (table, key).

    Raises:
        CrudError: RATE_LIMITED with retry_after in ms
    """
    row = await (
        db.query("rate_limit").with_index("by_table_key", {"table": table, "key": key}).unique()
    )
    if row is None:
        await db.insert("rate_limit", {"table": table, "key": key, "count": 1, "window_start": now})
        return

    if now - row["window_start"] >= limit.window_ms:
        await db.patch(row["_id"], {"count": 1, "window_start": now})
        return

    if row["count"] >= limit.max:
        retry_after = row["window_start"] + limit.window_ms - now
        logger.info(
            "rate_limit:exceeded",
            extra={"table": table, "key": key, "count": row["count"], "retry_after": retry_after},
        )
        raise err(ErrorCode.RATE_LIMITED, f"{table}:{op}", retry_after=retry_after)

    await db.patch(row["_id"], {"count": row["count"] + 1})
