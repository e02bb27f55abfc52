"""
Repository pattern for data access.

Declares the persistence boundary for conversation contexts and usage
states. Storage engines plug in by subclassing the abstract repositories;
atomic updates (conditional writes, compare-and-swap) are the storage
engine's responsibility, not the caller's.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .models import ConversationContext, UsageState, utc_now


class ConversationContextRepository(ABC):
    """Persistence port for conversation contexts, keyed by user."""

    @abstractmethod
    async def get(self, user_id: str) -> Optional[ConversationContext]:
        """Return the stored context for a user, or None."""

    @abstractmethod
    async def save(self, context: ConversationContext) -> None:
        """Insert or replace the context for ``context.user_id``."""

    @abstractmethod
    async def delete(self, user_id: str) -> None:
        """Remove the stored context for a user (no-op when absent)."""


class UsageStateRepository(ABC):
    """Persistence port for usage states, keyed by user."""

    @abstractmethod
    async def get(self, user_id: str) -> Optional[UsageState]:
        """Return the stored usage state for a user, or None."""

    @abstractmethod
    async def save(self, state: UsageState) -> None:
        """Insert or replace the usage state for ``state.user_id``."""


class InMemoryContextRepository(ConversationContextRepository):
    """Dict-backed context store for tests and single-process hosts.

    Contexts idle for longer than ``ttl`` are removed by
    :meth:`cleanup_expired`, mirroring a storage-level TTL sweep.
    """

    def __init__(self, ttl: timedelta = timedelta(hours=24)):
        self.ttl = ttl
        self._contexts: Dict[str, ConversationContext] = {}

    async def get(self, user_id: str) -> Optional[ConversationContext]:
        return self._contexts.get(user_id)

    async def save(self, context: ConversationContext) -> None:
        self._contexts[context.user_id] = context

    async def delete(self, user_id: str) -> None:
        self._contexts.pop(user_id, None)

    async def cleanup_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Delete contexts idle past the TTL and return their user ids."""
        cutoff = (now or utc_now()) - self.ttl
        expired = [
            user_id for user_id, context in self._contexts.items()
            if context.last_updated < cutoff
        ]
        for user_id in expired:
            del self._contexts[user_id]
        return expired


class InMemoryUsageRepository(UsageStateRepository):
    """Dict-backed usage store for tests and single-process hosts."""

    def __init__(self):
        self._states: Dict[str, UsageState] = {}

    async def get(self, user_id: str) -> Optional[UsageState]:
        return self._states.get(user_id)

    async def save(self, state: UsageState) -> None:
        self._states[state.user_id] = state

    def all_states(self) -> List[UsageState]:
        """Snapshot of every stored state, for scheduled sweeps."""
        return list(self._states.values())
