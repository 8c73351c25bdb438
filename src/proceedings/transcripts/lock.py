"""Single-flight pipeline lock per transcript.

Thin coordination layer over the repository's compare-and-swap primitive.
There is no heartbeat: a lock older than the repository's timeout is
treated as abandoned and can be taken by the next caller, even if the
original holder is still working.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Protocol

import structlog

from src.proceedings.core.monitoring import pipeline_lock_attempts_total

logger = structlog.get_logger(__name__)


class LockStore(Protocol):
    async def try_acquire_lock(self, transcript_id: str) -> bool: ...

    async def release_lock(self, transcript_id: str) -> None: ...


class PipelineLockManager:
    """Acquire and release the per-transcript pipeline lock.

    Args:
        store: Anything exposing ``try_acquire_lock`` / ``release_lock``
            (normally the TranscriptRepository).
    """

    def __init__(self, store: LockStore) -> None:
        self._store = store

    async def try_acquire(self, transcript_id: str) -> bool:
        """Take the lock if it is free or stale.

        Returns:
            True if the caller now owns the run; False means another worker
            is processing the transcript and the caller should keep polling.
        """
        acquired = await self._store.try_acquire_lock(transcript_id)
        pipeline_lock_attempts_total.labels(
            outcome="acquired" if acquired else "contended"
        ).inc()
        if acquired:
            logger.info("pipeline_lock.acquired", transcript_id=transcript_id)
        else:
            logger.info("pipeline_lock.contended", transcript_id=transcript_id)
        return acquired

    async def release(self, transcript_id: str) -> None:
        await self._store.release_lock(transcript_id)
        logger.info("pipeline_lock.released", transcript_id=transcript_id)

    @asynccontextmanager
    async def hold(self, transcript_id: str) -> AsyncGenerator[bool, None]:
        """Context manager yielding whether the lock was acquired.

        The lock is released on every exit path, but only if it was taken
        here.

        Usage:
            async with locks.hold(transcript_id) as acquired:
                if not acquired:
                    return False
                ...
        """
        acquired = await self.try_acquire(transcript_id)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(transcript_id)
