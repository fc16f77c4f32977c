"""
Peer Registry - table of discovered mesh peers.

Peers are keyed by their opaque ephemeral id. Liveness is derived from
``last_seen`` and never stored: a peer older than the staleness window is
simply not live. Only the owning ``MeshTransport`` writes to a registry;
everything else reads through the transport.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from .types import MeshPeer

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = 300.0  # seconds


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PeerRegistry:
    """
    Table of discovered peers.

    Provides:
    - Insert/refresh from discovery
    - Derived liveness with a fixed staleness window
    - Pruning of stale entries
    """

    def __init__(
        self,
        stale_after: float = DEFAULT_STALE_AFTER,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.stale_after = timedelta(seconds=stale_after)
        self._clock = clock
        self._peers: Dict[str, MeshPeer] = {}

    def __len__(self) -> int:
        return len(self._peers)

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._peers

    def upsert(self, peer: MeshPeer) -> bool:
        """
        Insert a peer or refresh an existing entry.

        Returns:
            True if the peer was not known before
        """
        now = self._clock().isoformat()
        existing = self._peers.get(peer.peer_id)
        if existing is None:
            self._peers[peer.peer_id] = replace(peer, last_seen=now)
            logger.debug(f"Registered peer {peer.peer_id} via {peer.transport.value}")
            return True

        self._peers[peer.peer_id] = replace(
            existing, last_seen=now, signal_strength=peer.signal_strength
        )
        return False

    def refresh(self, peer_id: str, signal_strength: Optional[float] = None) -> bool:
        """Update ``last_seen`` (and optionally signal strength) of a known peer."""
        existing = self._peers.get(peer_id)
        if existing is None:
            return False
        changes = {"last_seen": self._clock().isoformat()}
        if signal_strength is not None:
            changes["signal_strength"] = signal_strength
        self._peers[peer_id] = replace(existing, **changes)
        return True

    def remove(self, peer_id: str) -> bool:
        return self._peers.pop(peer_id, None) is not None

    def get(self, peer_id: str) -> Optional[MeshPeer]:
        return self._peers.get(peer_id)

    def is_live(self, peer_id: str) -> bool:
        peer = self._peers.get(peer_id)
        return peer is not None and self._is_fresh(peer)

    def _is_fresh(self, peer: MeshPeer) -> bool:
        if not peer.last_seen:
            return False
        last_seen = datetime.fromisoformat(peer.last_seen)
        return self._clock() - last_seen <= self.stale_after

    def all_peers(self) -> List[MeshPeer]:
        return list(self._peers.values())

    def live_peers(self) -> List[MeshPeer]:
        return [p for p in self._peers.values() if self._is_fresh(p)]

    def prune_stale(self) -> List[str]:
        """Drop expired peers and return their ids."""
        stale = [pid for pid, p in self._peers.items() if not self._is_fresh(p)]
        for peer_id in stale:
            del self._peers[peer_id]
        if stale:
            logger.info(f"Pruned {len(stale)} stale peer(s)")
        return stale
