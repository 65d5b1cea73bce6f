"""Ephemeral typing state with TTL-based expiry.

Typing state is relayed, never persisted. Each (conversation, identity)
pair maps to an absolute monotonic deadline that is refreshed on every
``typing`` signal. Expired entries are dropped lazily on read and by an
optional background sweep; expiry never produces an event, since the
typing client is responsible for sending ``stopTyping``.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

_Key = Tuple[str, str]  # (conversation_id, identity_id)


class TypingTracker:
    """Expiring cache of who is typing where."""

    def __init__(self, ttl_seconds: float = 5.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._deadlines: Dict[_Key, float] = {}
        self._sweep_task: Optional[asyncio.Task] = None  # type: ignore[type-arg]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start background sweep task."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info("TypingTracker sweep task started (TTL=%ss)", self._ttl)

    async def stop(self) -> None:
        """Cancel sweep task and forget all typing state."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self._deadlines.clear()

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def set_typing(self, conversation_id: str, identity_id: str) -> bool:
        """Start or refresh the deadline.

        Returns:
            True if the identity was not already typing in the conversation.
        """
        key = (conversation_id, identity_id)
        now = self._clock()
        started = not self._is_live(key, now)
        self._deadlines[key] = now + self._ttl
        return started

    def stop_typing(self, conversation_id: str, identity_id: str) -> bool:
        """Drop the entry. Returns True if one was live."""
        deadline = self._deadlines.pop((conversation_id, identity_id), None)
        return deadline is not None and deadline > self._clock()

    def is_typing(self, conversation_id: str, identity_id: str) -> bool:
        return self._is_live((conversation_id, identity_id), self._clock())

    def typing_users(self, conversation_id: str) -> List[str]:
        """Identities with an unexpired entry in the conversation."""
        self.sweep()
        return [identity for (conv, identity) in self._deadlines if conv == conversation_id]

    def clear_identity(self, identity_id: str) -> int:
        """Silently drop every entry of an identity (last connection gone)."""
        keys = [key for key in self._deadlines if key[1] == identity_id]
        for key in keys:
            del self._deadlines[key]
        return len(keys)

    def clear_conversation(self, conversation_id: str, identity_id: Optional[str] = None) -> None:
        """Drop entries in a conversation, for one identity or for everyone."""
        keys = [
            key for key in self._deadlines
            if key[0] == conversation_id and (identity_id is None or key[1] == identity_id)
        ]
        for key in keys:
            del self._deadlines[key]

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def _is_live(self, key: _Key, now: float) -> bool:
        deadline = self._deadlines.get(key)
        if deadline is None:
            return False
        if deadline <= now:
            del self._deadlines[key]
            return False
        return True

    def sweep(self) -> int:
        """Evict all expired entries."""
        now = self._clock()
        expired = [key for key, deadline in self._deadlines.items() if deadline <= now]
        for key in expired:
            del self._deadlines[key]
        return len(expired)

    async def _sweep_loop(self) -> None:
        interval = max(1.0, self._ttl)
        while True:
            await asyncio.sleep(interval)
            evicted = self.sweep()
            if evicted:
                logger.debug("TypingTracker sweep: evicted %d expired entries", evicted)

    def __len__(self) -> int:
        return len(self._deadlines)
