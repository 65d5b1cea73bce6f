"""Presence tracking for connected identities.

An identity is online while it holds at least one live connection. Only
the 0 -> 1 and N -> 0 transitions change presence; they are written
through to the store so profile lookups elsewhere see the same flag.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Set

from app.store.service import RelayStore, utcnow

from .errors import PersistenceError

logger = logging.getLogger(__name__)


@dataclass
class PresenceState:
    is_online:      bool               = False
    last_seen:      Optional[datetime] = None
    connection_ids: Set[str]           = field(default_factory=set)


class PresenceStore:
    """In-memory presence per identity, mirrored to the identities table."""

    def __init__(self, store: RelayStore) -> None:
        self._store = store
        self._states: Dict[str, PresenceState] = {}

    def mark_connected(self, identity_id: str, connection_id: str) -> bool:
        """Record a new connection.

        Returns:
            True if this was the identity's first connection (went online).
        """
        state = self._states.setdefault(identity_id, PresenceState())
        went_online = not state.connection_ids
        state.connection_ids.add(connection_id)
        if went_online:
            state.is_online = True
            self._persist(identity_id, True, None)
            logger.info(f"[Presence] {identity_id} is online")
        return went_online

    def mark_disconnected(self, identity_id: str, connection_id: str) -> Optional[datetime]:
        """Record a dropped connection.

        Returns:
            The lastSeen stamp if this was the identity's last connection
            (went offline), otherwise None.
        """
        state = self._states.get(identity_id)
        if state is None or connection_id not in state.connection_ids:
            return None
        state.connection_ids.discard(connection_id)
        if state.connection_ids:
            return None
        state.is_online = False
        state.last_seen = utcnow()
        self._persist(identity_id, False, state.last_seen)
        logger.info(f"[Presence] {identity_id} is offline (lastSeen={state.last_seen.isoformat()})")
        return state.last_seen

    def is_online(self, identity_id: str) -> bool:
        state = self._states.get(identity_id)
        return bool(state and state.is_online)

    def _persist(self, identity_id: str, is_online: bool, last_seen: Optional[datetime]) -> None:
        # The in-memory flag stays authoritative for live fan-out.
        try:
            self._store.set_presence(identity_id, is_online, last_seen)
        except PersistenceError:
            logger.error(f"[Presence] Could not persist presence for {identity_id}")
