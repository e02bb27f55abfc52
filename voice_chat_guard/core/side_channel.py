"""
Best-effort side channel for analytics and secondary logging.

Dispatched work runs as a detached task. Its failures are logged and
discarded; they never reach the conversation turn that triggered them.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Dict, Optional, Set

from voice_chat_guard.storage.models import Tier

from .errors import ErrorKind

logger = logging.getLogger(__name__)


class AnalyticsSink(ABC):
    """Receiver of turn-level analytics events."""

    @abstractmethod
    async def log_conversation(
        self,
        user_id: str,
        tier: Tier,
        response_time_ms: float,
        question_length: int,
        response_length: int,
    ) -> None:
        """Record a completed conversation turn."""

    @abstractmethod
    async def log_usage_limit(self, user_id: str, limit_type: str, limit_reached: bool) -> None:
        """Record a usage-limit decision."""

    @abstractmethod
    async def log_error(self, user_id: str, kind: ErrorKind, details: Dict[str, Any]) -> None:
        """Record a failed turn."""


class SideChannel:
    """Fire-and-forget dispatcher with an error sink."""

    def __init__(self):
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def dispatch(self, awaitable: Awaitable[Any], label: str) -> Optional[asyncio.Task]:
        """Schedule ``awaitable`` without awaiting it.

        Must be called from a running event loop. Returns the task, or None
        when scheduling itself failed.
        """
        try:
            task = asyncio.ensure_future(awaitable)
        except Exception:
            logger.exception("Failed to schedule side-channel task %s", label)
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            return None

        self._pending.add(task)
        task.add_done_callback(lambda t: self._finish(t, label))
        return task

    def _finish(self, task: asyncio.Task, label: str) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(
                "Side-channel task %s failed: %s", label, error,
                extra={"side_channel": label},
            )

    async def drain(self) -> None:
        """Wait for every pending task; failures stay discarded."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
