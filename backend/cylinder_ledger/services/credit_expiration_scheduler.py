from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from fastapi import FastAPI

from cylinder_ledger.core.config import settings
from cylinder_ledger.db.session import SessionLocal
from cylinder_ledger.services import credits, leader_lock
from cylinder_ledger.services.policy import get_policy

logger = logging.getLogger(__name__)

LOCK_NAME = "credit_expiration_scheduler"


async def run_once() -> credits.ExpirySweepResult:
    limit = max(1, int(settings.credit_expiry_batch_limit or 200))
    async with SessionLocal() as session:
        return await credits.expire_overdue(session, policy=get_policy(), limit=limit)


async def _loop(stop: asyncio.Event) -> None:
    interval = max(60, int(settings.credit_expiry_poll_interval_seconds or 3600))
    while not stop.is_set():
        try:
            await run_once()
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.warning("credit_expiration_scheduler_failed", extra={"error": str(exc)})

        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=interval)


def start(app: FastAPI) -> None:
    if not settings.credit_expiry_enabled:
        return
    if getattr(app.state, "credit_expiration_task", None) is not None:
        return
    stop_event = asyncio.Event()
    app.state.credit_expiration_stop = stop_event
    app.state.credit_expiration_task = asyncio.create_task(
        leader_lock.run_as_leader(name=LOCK_NAME, stop=stop_event, work=_loop)
    )


async def stop(app: FastAPI) -> None:
    stop_event = getattr(app.state, "credit_expiration_stop", None)
    task = getattr(app.state, "credit_expiration_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.credit_expiration_stop = None
    app.state.credit_expiration_task = None
