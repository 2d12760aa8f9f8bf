"""
Conversation state storage.

The workflow only talks to the ConversationStateStore protocol, so the
in-memory store below can be swapped for a database-backed one.
"""

import logging
import time
from collections import OrderedDict
from typing import Callable, Optional, Protocol, Tuple, runtime_checkable

from store_assistant.models import ConversationState

logger = logging.getLogger(__name__)


@runtime_checkable
class ConversationStateStore(Protocol):
    """Protocol for per-conversation state persistence."""

    async def get(self, conversation_id: str) -> ConversationState:
        """Return the stored state, or a fresh default state for unseen ids."""
        ...

    async def save(self, conversation_id: str, state: ConversationState) -> None:
        ...

    async def clear(self, conversation_id: str) -> None:
        ...


class InMemoryConversationStore:
    """Process-local store with least-recently-used eviction and a max-age TTL.

    `max_entries <= 0` disables the size cap and `ttl_seconds <= 0` disables
    expiry. Expiry is checked on access and on every save.
    """

    def __init__(self, max_entries: int = 1000, ttl_seconds: float = 86400,
                 clock: Callable[[], float] = time.monotonic):
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, ConversationState]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, conversation_id: str) -> bool:
        return self._live_entry(conversation_id) is not None

    def _expired(self, stored_at: float) -> bool:
        return self.ttl_seconds > 0 and (self._clock() - stored_at) > self.ttl_seconds

    def _live_entry(self, conversation_id: str) -> Optional[ConversationState]:
        entry = self._entries.get(conversation_id)
        if entry is None:
            return None
        stored_at, state = entry
        if self._expired(stored_at):
            logger.info(f"Conversation {conversation_id} expired, discarding state")
            del self._entries[conversation_id]
            return None
        return state

    async def get(self, conversation_id: str) -> ConversationState:
        state = self._live_entry(conversation_id)
        if state is None:
            logger.debug(f"Creating default state for conversation {conversation_id}")
            return ConversationState(conversation_id=conversation_id)
        self._entries.move_to_end(conversation_id)
        return state.model_copy(deep=True)

    async def save(self, conversation_id: str, state: ConversationState) -> None:
        self._entries[conversation_id] = (self._clock(), state.model_copy(deep=True))
        self._entries.move_to_end(conversation_id)
        self._evict()

    async def clear(self, conversation_id: str) -> None:
        self._entries.pop(conversation_id, None)

    def _evict(self) -> None:
        if self.ttl_seconds > 0:
            for conversation_id in [cid for cid, (ts, _) in self._entries.items() if self._expired(ts)]:
                del self._entries[conversation_id]
        if self.max_entries > 0:
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.info(f"Evicted least recently used conversation {evicted}")
