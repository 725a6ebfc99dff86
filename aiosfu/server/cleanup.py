"""Release of transports, producers, consumers and whole peers."""

from __future__ import annotations

import logging

from aiosfu.models.core import (
    PeerDepartedMessage,
    PeerDepartedPayload,
    ProducerClosedMessage,
    ProducerClosedPayload,
)

from .capability import CapabilityClient
from .fanout import Notifier
from .registry import ConsumerEntry, ProducerEntry, SessionRegistry, TransportEntry

logger = logging.getLogger(__name__)


def _producer_closed(entry: ProducerEntry) -> ProducerClosedMessage:
    return ProducerClosedMessage(
        data=ProducerClosedPayload(
            producer_id=entry.producer_id, peer_id=entry.peer_id, kind=entry.kind
        )
    )


class CleanupCoordinator:
    """
    Cascades closure through the registry and tells the surviving peers about it.

    Registry entries are always removed before the matching engine entity is closed, so
    close events the engine emits for entities this coordinator closed itself find
    nothing left to do.
    """

    _releasing: set[str]
    """Peers whose release is in progress."""

    def __init__(self, registry: SessionRegistry, notifier: Notifier) -> None:
        """Initialize a coordinator working on the given registry."""
        self._registry = registry
        self._notifier = notifier
        self._releasing = set()

    def close_consumer(self, consumer_id: str) -> ConsumerEntry | None:
        """Remove a consumer from the registry and close it on the engine."""
        entry = self._registry.remove_consumer(consumer_id)
        if entry is None:
            return None
        CapabilityClient.close(entry.handle)
        logger.debug(
            "Closed consumer %s of peer %s (producer %s)",
            consumer_id,
            entry.peer_id,
            entry.producer_id,
        )
        return entry

    def close_producer(self, producer_id: str) -> ProducerEntry | None:
        """
        Remove a producer with every consumer fed by it.

        Every peer except the owner receives one producerClosed.
        """
        entry = self._registry.remove_producer(producer_id)
        if entry is None:
            return None
        for consumer in self._registry.consumers_of_producer(producer_id):
            self.close_consumer(consumer.consumer_id)
        CapabilityClient.close(entry.handle)
        logger.info("Closed %s producer %s of peer %s", entry.kind.value, producer_id, entry.peer_id)
        self._notifier.notify(_producer_closed(entry), exclude=entry.peer_id)
        return entry

    def close_transport(self, transport_id: str) -> TransportEntry | None:
        """Remove a transport with the producers and consumers bound to it."""
        entry = self._registry.remove_transport(transport_id)
        if entry is None:
            return None
        for producer in self._registry.producers_on_transport(transport_id):
            self.close_producer(producer.producer_id)
        for consumer in self._registry.consumers_on_transport(transport_id):
            self.close_consumer(consumer.consumer_id)
        CapabilityClient.close(entry.handle)
        logger.info(
            "Closed %s transport %s of peer %s", entry.role.value, transport_id, entry.peer_id
        )
        return entry

    def release_peer(self, peer_id: str) -> bool:
        """
        Release everything a departing peer owns and announce its departure.

        Runs at most once per peer. Safe for peers that never finished negotiating.
        Returns False if the peer was already released (or never registered).
        """
        if peer_id in self._releasing or peer_id not in self._registry:
            return False
        self._releasing.add(peer_id)
        try:
            for transport in self._registry.transports_of(peer_id):
                self.close_transport(transport.transport_id)
            for producer in self._registry.producers_of(peer_id):
                self.close_producer(producer.producer_id)
            for consumer in self._registry.consumers_of(peer_id):
                self.close_consumer(consumer.consumer_id)
            self._registry.remove(peer_id)
        finally:
            self._releasing.discard(peer_id)
        logger.info("Released peer %s", peer_id)
        self._notifier.notify(
            PeerDepartedMessage(data=PeerDepartedPayload(peer_id=peer_id)), exclude=peer_id
        )
        return True

    # Engine side closures

    def watch_transport(self, entry: TransportEntry) -> None:
        """Cascade closures of the transport that originate in the media engine."""
        transport_id = entry.transport_id

        def _on_close(reason: str) -> None:
            if self._registry.find_transport(transport_id) is None:
                return
            logger.warning("Transport %s closed by the media engine (%s)", transport_id, reason)
            self.close_transport(transport_id)

        entry.handle.add_close_listener(_on_close)

    def watch_producer(self, entry: ProducerEntry) -> None:
        """Cascade closures of the producer that originate in the media engine."""
        producer_id = entry.producer_id

        def _on_close(reason: str) -> None:
            if self._registry.find_producer(producer_id) is None:
                return
            logger.warning("Producer %s closed by the media engine (%s)", producer_id, reason)
            self.close_producer(producer_id)

        entry.handle.add_close_listener(_on_close)

    def watch_consumer(self, entry: ConsumerEntry) -> None:
        """
        Drop the consumer when the engine closes it, e.g. because its source producer closed.

        The consuming peer receives producerClosed for the consumer's source.
        """
        consumer_id = entry.consumer_id

        def _on_close(reason: str) -> None:
            consumer = self._registry.find_consumer(consumer_id)
            if consumer is None:
                return
            logger.warning("Consumer %s closed by the media engine (%s)", consumer_id, reason)
            self.close_consumer(consumer_id)
            self._notifier.send(
                consumer.peer_id,
                ProducerClosedMessage(
                    data=ProducerClosedPayload(
                        producer_id=consumer.producer_id,
                        peer_id=consumer.producer_peer_id,
                        kind=consumer.kind,
                    )
                ),
            )

        entry.handle.add_close_listener(_on_close)
