from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from cylinder_ledger.core.config import settings
from cylinder_ledger.db.session import engine

logger = logging.getLogger(__name__)

RETRY_SECONDS = 15
_lock_engine: AsyncEngine | None = None

Work = Callable[[asyncio.Event], Awaitable[None]]


def advisory_key(name: str) -> int:
    """Stable signed-BIGINT key for ``pg_try_advisory_lock``."""
    digest = hashlib.sha256((name or "").encode("utf-8")).digest()[:8]
    return int.from_bytes(digest, "big", signed=False) % (2**63 - 1)


def supports_advisory_locks() -> bool:
    return engine.url.get_backend_name().lower() == "postgresql"


def _engine_for_locks() -> AsyncEngine:
    # Session-scoped lock: the leader holds this connection for the whole loop.
    global _lock_engine
    if _lock_engine is None:
        _lock_engine = create_async_engine(settings.database_url, pool_size=1, max_overflow=0, pool_pre_ping=True)
    return _lock_engine


async def _try_acquire(conn: AsyncConnection, key: int) -> bool:
    return bool((await conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": key})).scalar())


async def _wait(stop: asyncio.Event, seconds: float) -> None:
    with suppress(asyncio.TimeoutError):
        await asyncio.wait_for(stop.wait(), timeout=seconds)


async def run_as_leader(*, name: str, stop: asyncio.Event, work: Work, retry_seconds: int = RETRY_SECONDS) -> None:
    """Run ``work`` on exactly one replica.

    Replicas that lose the advisory lock poll again every ``retry_seconds`` until ``stop``
    is set. Backends without advisory locks (sqlite) run ``work`` directly.
    """
    if not supports_advisory_locks():
        await work(stop)
        return

    key = advisory_key(name)
    retry = max(5, int(retry_seconds or RETRY_SECONDS))
    while not stop.is_set():
        try:
            async with _engine_for_locks().connect() as conn:
                if not await _try_acquire(conn, key):
                    await _wait(stop, retry)
                    continue
                logger.info("leader_lock_acquired", extra={"lock_name": name})
                try:
                    await work(stop)
                finally:
                    await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
                return
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.warning("leader_lock_failed", extra={"lock_name": name, "error": str(exc)})
            await _wait(stop, retry)
