from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Protocol

from ephemera.logging import get_logger, sanitize_error_message
from ephemera.storage.models import SessionRecord, utcnow

logger = get_logger(__name__)


class ExpiredSessionStore(Protocol):
    def list_expired_sessions(self, cutoff: datetime, limit: int = 1000) -> List[SessionRecord]: ...

    def delete_expired_sessions(self, cutoff: datetime) -> int: ...


class SessionSweeper:
    """Deletes session rows that expired more than ``retention`` ago.

    Token validity never depends on this running; an expired row is already
    rejected by ``find_active_session``. The grace period keeps recent rows
    around for audit.
    """

    def __init__(
        self,
        store: ExpiredSessionStore,
        *,
        retention: timedelta = timedelta(days=14),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.retention = retention
        self._clock = clock

    def cutoff(self, now: Optional[datetime] = None) -> datetime:
        return (now or self._clock()) - self.retention

    def pending(self, limit: int = 1000) -> List[SessionRecord]:
        return self.store.list_expired_sessions(self.cutoff(), limit=limit)

    def purge(self) -> int:
        cutoff = self.cutoff()
        deleted = self.store.delete_expired_sessions(cutoff)
        logger.info("expired_sessions_purged", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted


async def run_session_sweep(
    sweeper: SessionSweeper,
    interval_seconds: float,
    *,
    acquire_lock: Optional[Callable[[], Awaitable[bool]]] = None,
) -> None:
    """Purge periodically until cancelled.

    When ``acquire_lock`` is given the purge only runs in intervals where the
    lock was obtained, so several workers can share one database.
    """
    while True:
        try:
            should_run = True if acquire_lock is None else await acquire_lock()
            if should_run:
                await asyncio.to_thread(sweeper.purge)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "session_sweep_failed",
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
        await asyncio.sleep(interval_seconds)
