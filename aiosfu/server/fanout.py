"""Delivery of server messages to one or many peers."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from aiosfu.models.types import ServerMessage

from .registry import SessionRegistry

logger = logging.getLogger(__name__)


class Notifier:
    """Fans messages out to registered peers."""

    def __init__(self, registry: SessionRegistry) -> None:
        """Initialize a notifier delivering to the peers of a registry."""
        self._registry = registry

    def send(self, peer_id: str, message: ServerMessage) -> bool:
        """
        Deliver a message to a single peer.

        Returns False if the peer is not registered or its connection refused the message.
        """
        peer = self._registry.find(peer_id)
        if peer is None:
            logger.debug("Not sending %s to unknown peer %s", type(message).__name__, peer_id)
            return False
        try:
            peer.connection.send_message(message)
        except Exception:
            logger.exception("Failed to deliver %s to peer %s", type(message).__name__, peer_id)
            return False
        return True

    def notify(self, message: ServerMessage, exclude: str | None = None) -> int:
        """
        Deliver a message to every registered peer except exclude.

        Each peer is attempted independently. Returns the number of peers reached.
        """
        return self.notify_peers(
            (peer.peer_id for peer in self._registry.peers() if peer.peer_id != exclude),
            message,
        )

    def notify_peers(self, peer_ids: Iterable[str], message: ServerMessage) -> int:
        """Deliver a message once to each of the given peers."""
        delivered = 0
        for peer_id in dict.fromkeys(peer_ids):
            if self.send(peer_id, message):
                delivered += 1
        logger.debug("Delivered %s to %d peer(s)", type(message).__name__, delivered)
        return delivered
