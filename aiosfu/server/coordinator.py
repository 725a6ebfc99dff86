"""Wiring of registry, negotiation, fan-out and cleanup around one router."""

from __future__ import annotations

import logging

from aiosfu.config import SfuConfig
from aiosfu.engine.base import Router
from aiosfu.exceptions import NotFoundError
from aiosfu.models.core import RouterCapabilitiesMessage, RouterCapabilitiesPayload

from .capability import CapabilityClient
from .cleanup import CleanupCoordinator
from .fanout import Notifier
from .negotiation import PeerNegotiator
from .registry import PeerConnection, SessionRegistry

logger = logging.getLogger(__name__)


class SignalingCoordinator:
    """
    Session orchestration for every peer sharing a router.

    Independent of the channel: anything implementing PeerConnection can join, which is
    how the WebSocket server and the unit tests both drive it.
    """

    def __init__(
        self,
        router: Router,
        config: SfuConfig | None = None,
        registry: SessionRegistry | None = None,
    ) -> None:
        """
        Initialize a coordinator.

        Args:
            router: Process wide router created at startup.
            config: Server configuration, defaults are used if None.
            registry: Registry to use, a new empty one if None.
        """
        self._config = config or SfuConfig()
        self._registry = registry or SessionRegistry()
        self._capability = CapabilityClient(router, self._config.webrtc_transport)
        self._notifier = Notifier(self._registry)
        self._cleanup = CleanupCoordinator(self._registry, self._notifier)
        self._negotiators: dict[str, PeerNegotiator] = {}

    @property
    def registry(self) -> SessionRegistry:
        """Registry holding the state of every peer."""
        return self._registry

    @property
    def capability(self) -> CapabilityClient:
        """Client used to call into the media engine."""
        return self._capability

    @property
    def notifier(self) -> Notifier:
        """Fan-out used for replies and broadcasts."""
        return self._notifier

    @property
    def cleanup(self) -> CleanupCoordinator:
        """Coordinator releasing resources."""
        return self._cleanup

    def join(self, connection: PeerConnection) -> PeerNegotiator:
        """
        Register a new peer and greet it.

        The greeting carries the router capabilities and a snapshot of every active
        producer. Registration and snapshot happen without yielding, so the peer receives
        a newProducer broadcast for any producer created afterwards and for none before.
        """
        peer_id = self._registry.register(connection)
        negotiator = PeerNegotiator(
            peer_id,
            self._registry,
            self._capability,
            self._notifier,
            self._cleanup,
            self._config,
        )
        self._negotiators[peer_id] = negotiator
        existing = self._registry.existing_producers(exclude_peer_id=peer_id)
        self._notifier.send(
            peer_id,
            RouterCapabilitiesMessage(
                data=RouterCapabilitiesPayload(
                    peer_id=peer_id,
                    router_rtp_capabilities=self._capability.rtp_capabilities,
                    existing_producers=existing,
                )
            ),
        )
        logger.info("Peer %s joined (%d existing producers)", peer_id, len(existing))
        return negotiator

    def negotiator(self, peer_id: str) -> PeerNegotiator:
        """
        Return the negotiator of a joined peer.

        Raises:
            NotFoundError: If the peer is not (or no longer) registered.
        """
        if (negotiator := self._negotiators.get(peer_id)) is None:
            raise NotFoundError(f"Peer {peer_id} not found")
        return negotiator

    async def leave(self, peer_id: str) -> bool:
        """
        Release a peer once its channel closed.

        Waits for a request of the peer that is still being handled. Returns False if
        the peer was already released.
        """
        self._negotiators.pop(peer_id, None)
        try:
            lock = self._registry.peer_lock(peer_id)
        except NotFoundError:
            return False
        async with lock:
            released = self._cleanup.release_peer(peer_id)
        if released:
            logger.info("Peer %s left", peer_id)
        return released

    def close(self) -> None:
        """Release every peer without waiting for in-flight requests."""
        for peer in self._registry.peers():
            self._cleanup.release_peer(peer.peer_id)
        self._negotiators.clear()
