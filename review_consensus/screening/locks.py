"""Per-(study, phase) mutual exclusion for screening units of work."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Tuple

from review_consensus.errors import ContentionError
from review_consensus.models import ScreeningPhase
from review_consensus.utils.structured_log import log_contention

logger = logging.getLogger(__name__)

LockKey = Tuple[str, ScreeningPhase]


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class KeyedLockRegistry:
    """Hands out one asyncio.Lock per key.

    Entries are created on first use and dropped once nobody holds or waits on
    them, so the registry stays proportional to in-flight work. Different keys
    never share a lock.
    """

    def __init__(self, default_timeout: float | None = 5.0):
        self.default_timeout = default_timeout
        self._locks: Dict[LockKey, _KeyLock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def is_locked(self, project_work_id: str, phase: ScreeningPhase) -> bool:
        entry = self._locks.get((project_work_id, phase))
        return entry is not None and entry.lock.locked()

    @asynccontextmanager
    async def acquire(
        self,
        project_work_id: str,
        phase: ScreeningPhase,
        timeout: float | None = None,
    ) -> AsyncIterator[None]:
        key: LockKey = (project_work_id, phase)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.holders += 1
        wait = self.default_timeout if timeout is None else timeout
        started = time.monotonic()
        try:
            try:
                await asyncio.wait_for(entry.lock.acquire(), timeout=wait)
            except asyncio.TimeoutError:
                waited = time.monotonic() - started
                logger.warning(
                    f"Timed out after {waited:.2f}s waiting for {project_work_id}/{phase.value}"
                )
                log_contention(project_work_id, phase.value, waited)
                raise ContentionError(
                    f"Study {project_work_id} is busy in phase {phase.value}; retry shortly"
                ) from None
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._locks.get(key) is entry:
                del self._locks[key]
