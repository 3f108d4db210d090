"""
Best-Effort Side Effects

Real-time broadcasts, auto-reply requests and state-change events run after
the inbound message is committed. They must never delay or fail the webhook
acknowledgement, so each one runs as its own task with its own timeout and
its failures end in a log line.
"""

import asyncio
import logging
from collections.abc import Awaitable

logger = logging.getLogger(__name__)


class BestEffortDispatcher:
    """Fire-and-forget runner for side effects."""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, name: str, awaitable: Awaitable) -> asyncio.Task:
        """Schedule a side effect on the running loop and return immediately."""
        task = asyncio.ensure_future(self._run(name, awaitable))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, awaitable: Awaitable) -> bool:
        try:
            await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Side effect '{name}' timed out after {self.timeout}s", extra={"side_effect": name})
            return False
        except Exception as e:
            logger.error(f"Side effect '{name}' failed: {e}", exc_info=True, extra={"side_effect": name})
            return False
        return True

    async def drain(self) -> None:
        """Wait for every outstanding side effect (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
