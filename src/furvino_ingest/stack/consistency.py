"""Wait for freshly written files to become visible in STACK.

The backend indexes new files through an asynchronous watcher, so a file
written to the mounted storage root is not immediately resolvable by path.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from furvino_ingest.core.exceptions import ConsistencyTimeoutError, StackError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollDecision:
    retry: bool
    delay_seconds: float = 0.0


def next_poll(attempt: int, max_attempts: int, interval_ms: int) -> PollDecision:
    """Decide what follows the ``attempt``-th (1-based) empty lookup."""
    if attempt >= max_attempts:
        return PollDecision(retry=False)
    return PollDecision(retry=True, delay_seconds=interval_ms / 1000)


class ConsistencyWaiter:
    """Poll a path lookup until the node appears or the attempt bound is hit."""

    def __init__(
        self,
        storage_client,
        interval_ms: int = 1000,
        max_attempts: int = 300,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        log_every: int = 30,
    ):
        self.storage_client = storage_client
        self.interval_ms = interval_ms
        self.max_attempts = max_attempts
        self._sleep = sleep
        self.log_every = log_every

    @classmethod
    def from_settings(cls, storage_client, settings) -> "ConsistencyWaiter":
        return cls(
            storage_client,
            interval_ms=settings.CONSISTENCY_POLL_INTERVAL_MS,
            max_attempts=settings.CONSISTENCY_MAX_ATTEMPTS,
        )

    async def wait_for_node(self, path: str, expected_id: Optional[int] = None) -> int:
        """Return the node id for ``path`` once the backend reports it.

        Not-found answers and retryable backend errors count as "not yet";
        fatal backend errors propagate immediately.

        Raises:
            ConsistencyTimeoutError: If the node is still missing after max_attempts
        """
        attempt = 0
        while True:
            attempt += 1
            node_id = None
            try:
                node_id = await self.storage_client.get_node_id_by_path(path)
            except StackError as e:
                if not e.retryable:
                    raise
                logger.warning(
                    "Transient error while waiting for node",
                    extra={"path": path, "attempt": attempt, "error": str(e)},
                )

            if node_id is not None and (expected_id is None or node_id == expected_id):
                if attempt > 1:
                    logger.info("Node became visible", extra={"path": path, "node_id": node_id, "attempt": attempt})
                return node_id

            decision = next_poll(attempt, self.max_attempts, self.interval_ms)
            if not decision.retry:
                logger.error("Node did not become visible in time", extra={"path": path, "attempts": attempt})
                raise ConsistencyTimeoutError(path, attempt)

            if attempt % self.log_every == 1:
                logger.info(
                    f"Waiting for STACK sync ({attempt}/{self.max_attempts})",
                    extra={"path": path},
                )
            await self._sleep(decision.delay_seconds)
