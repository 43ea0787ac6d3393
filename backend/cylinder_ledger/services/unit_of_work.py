from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from cylinder_ledger.core import metrics
from cylinder_ledger.core.errors import ConcurrentModification

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 2


async def run_atomic(session: AsyncSession, work: Callable[[], Awaitable[T]], *, operation: str) -> T:
    """Run ``work`` and commit, retrying once when a concurrent writer got there first.

    ``work`` must (re)load every row it mutates, since a rollback expires the session.
    Version mismatches and unique-key races are retried; anything else rolls back and
    propagates unchanged.
    """
    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            result = await work()
            await session.commit()
            return result
        except (StaleDataError, IntegrityError) as exc:
            await session.rollback()
            metrics.record_optimistic_conflict()
            logger.warning(
                "optimistic_conflict",
                extra={"operation": operation, "attempt": attempt, "error": exc.__class__.__name__},
            )
            if attempt >= MAX_ATTEMPTS:
                raise ConcurrentModification(
                    f"{operation} conflicted with a concurrent update; reload and try again",
                    operation=operation,
                ) from exc
        except BaseException:
            await session.rollback()
            raise
    raise AssertionError("unreachable")  # pragma: no cover
