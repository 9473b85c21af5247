"""
Degraded-mode write queue.

While the storage backend is down the engine serves reads and writes from
an in-memory cache and queues every write here. The queue retries with
exponential backoff and replays writes in their original order once the
backend answers again.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, List, Optional

from hindsight.errors import StorageUnavailableError
from hindsight.models import Fragment
from hindsight.storage.protocols import StorageAdapter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingWrite:
    fragment_id: str
    fragment: Fragment


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (0-based): ``min(base * 2**attempt, max)``."""
    return min(base_delay * (2 ** attempt), max_delay)


class WriteRetryQueue:
    """
    FIFO of writes waiting for the backend.

    Args:
        adapter: Backend to replay writes into
        max_attempts: Flush attempts before giving up
        base_delay: First backoff delay in seconds
        max_delay: Ceiling on the backoff delay
        sleep: Awaitable sleep; injectable for tests
    """

    def __init__(
        self,
        adapter: StorageAdapter,
        max_attempts: int = 5,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.adapter = adapter
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._pending: Deque[PendingWrite] = deque()
        self.exhausted = False
        self.last_error: Optional[str] = None

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending(self) -> List[PendingWrite]:
        return list(self._pending)

    def enqueue_write(self, fragment: Fragment) -> None:
        self._pending.append(PendingWrite(fragment.id, fragment))
        logger.debug(f"Queued write of fragment {fragment.id} ({len(self._pending)} pending)")

    def flush_once(self) -> int:
        """
        Replay queued writes in order, stopping at the first failure.

        Returns:
            Number of writes applied; the failed write and everything after
            it stay queued
        """
        if not self._pending:
            return 0
        if not self.adapter.is_available():
            self.last_error = "storage backend unavailable"
            return 0

        applied = 0
        while self._pending:
            item = self._pending[0]
            try:
                self.adapter.write(item.fragment)
            except Exception as e:
                self.last_error = str(e)
                logger.warning(f"Replay of queued write for {item.fragment_id} failed: {e}")
                break
            self._pending.popleft()
            applied += 1

        if not self._pending:
            self.exhausted = False
            self.last_error = None
            logger.info(f"Storage backend recovered; flushed {applied} queued writes")
        return applied

    async def drain(self) -> int:
        """
        Retry with exponential backoff until the queue is empty.

        Returns:
            Total number of writes applied

        Raises:
            StorageUnavailableError: If the queue is still not empty after
                ``max_attempts`` attempts
        """
        applied = 0
        for attempt in range(self.max_attempts):
            applied += self.flush_once()
            if not self._pending:
                return applied
            delay = backoff_delay(attempt, self.base_delay, self.max_delay)
            logger.warning(
                f"{len(self._pending)} writes pending; retry {attempt + 1}/{self.max_attempts} in {delay:.2f}s"
            )
            await self._sleep(delay)

        applied += self.flush_once()
        if self._pending:
            self.exhausted = True
            logger.error(
                f"Storage backend still unavailable after {self.max_attempts} attempts; "
                f"{len(self._pending)} writes pending"
            )
            raise StorageUnavailableError(
                f"Storage backend unavailable after {self.max_attempts} retries: {self.last_error}"
            )
        return applied
