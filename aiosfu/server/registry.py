"""
Session registry: the single source of truth of who is connected to what.

Every peer, transport, producer and consumer lives in exactly one entry of the registry,
addressed by id. Relations between entities are id based reverse indexes, never live
references, so closing one entity is a matter of walking the indexes.

No method of the registry awaits. Callers run a check-and-write sequence without
yielding to the event loop, which makes every method atomic with respect to other peers.
Per-peer locks serialize the multi-step negotiation of a single peer.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from aiosfu.engine.base import Consumer, Producer, Transport
from aiosfu.exceptions import NotFoundError
from aiosfu.models.core import ProducerInfo
from aiosfu.models.types import (
    ConsumerState,
    MediaKind,
    ServerMessage,
    TransportRole,
    TransportState,
)
from aiosfu.util import generate_id

logger = logging.getLogger(__name__)


class PeerConnection(Protocol):
    """Outbound side of a peer's channel."""

    def send_message(self, message: ServerMessage) -> None:
        """Enqueue a message for the peer without blocking."""


@dataclass
class Peer:
    """One connected participant."""

    peer_id: str
    connection: PeerConnection
    producer_transport_id: str | None = None
    consumer_transport_id: str | None = None
    producer_ids: set[str] = field(default_factory=set)
    consumer_ids: set[str] = field(default_factory=set)

    def transport_id(self, role: TransportRole) -> str | None:
        """Id of the transport this peer holds for a role."""
        if role == TransportRole.PRODUCER:
            return self.producer_transport_id
        return self.consumer_transport_id


@dataclass
class TransportEntry:
    """A negotiated transport owned by a peer."""

    transport_id: str
    peer_id: str
    role: TransportRole
    handle: Transport
    state: TransportState = TransportState.CREATED
    producer_ids: set[str] = field(default_factory=set)
    consumer_ids: set[str] = field(default_factory=set)


@dataclass
class ProducerEntry:
    """An outbound media stream owned by a peer."""

    producer_id: str
    peer_id: str
    kind: MediaKind
    transport_id: str
    handle: Producer

    def to_info(self) -> ProducerInfo:
        """Wire representation announced to other peers."""
        return ProducerInfo(producer_id=self.producer_id, peer_id=self.peer_id, kind=self.kind)


@dataclass
class ConsumerEntry:
    """A subscription of a peer to another peer's producer."""

    consumer_id: str
    peer_id: str
    producer_id: str
    producer_peer_id: str
    kind: MediaKind
    transport_id: str
    handle: Consumer
    state: ConsumerState = ConsumerState.CREATED


class SessionRegistry:
    """Arena of peers, transports, producers and consumers keyed by id."""

    _peers: dict[str, Peer]
    _transports: dict[str, TransportEntry]
    _producers: dict[str, ProducerEntry]
    _consumers: dict[str, ConsumerEntry]
    _consumers_by_producer: dict[str, set[str]]
    """Reverse index: producer id -> ids of the consumers fed by it."""
    _subscriptions: dict[tuple[str, str], str]
    """Reverse index: (subscriber peer id, producer id) -> consumer id."""
    _locks: dict[str, asyncio.Lock]
    _id_factory: Callable[[], str]

    def __init__(self, id_factory: Callable[[], str] = generate_id) -> None:
        """
        Initialize an empty registry.

        Args:
            id_factory: Generates session ids for newly registered peers.
        """
        self._peers = {}
        self._transports = {}
        self._producers = {}
        self._consumers = {}
        self._consumers_by_producer = {}
        self._subscriptions = {}
        self._locks = {}
        self._id_factory = id_factory

    # Peers

    def register(self, connection: PeerConnection) -> str:
        """Add a new peer for a freshly opened channel and return its session id."""
        peer_id = self._id_factory()
        while peer_id in self._peers:
            peer_id = self._id_factory()
        self._peers[peer_id] = Peer(peer_id=peer_id, connection=connection)
        self._locks[peer_id] = asyncio.Lock()
        logger.debug("Registered peer %s", peer_id)
        return peer_id

    def get(self, peer_id: str) -> Peer:
        """Return a peer or raise NotFoundError."""
        if (peer := self._peers.get(peer_id)) is None:
            raise NotFoundError(f"Peer {peer_id} not found")
        return peer

    def find(self, peer_id: str) -> Peer | None:
        """Return a peer or None."""
        return self._peers.get(peer_id)

    def remove(self, peer_id: str) -> Peer | None:
        """
        Drop a peer entry.

        The caller is responsible for releasing the peer's transports, producers and
        consumers first; see CleanupCoordinator.release_peer.
        """
        peer = self._peers.pop(peer_id, None)
        self._locks.pop(peer_id, None)
        if peer is not None:
            logger.debug("Removed peer %s", peer_id)
        return peer

    def peers(self) -> list[Peer]:
        """Snapshot of all registered peers."""
        return list(self._peers.values())

    def peer_lock(self, peer_id: str) -> asyncio.Lock:
        """
        Lock serializing operations of a single peer.

        Raises:
            NotFoundError: If the peer is not registered.
        """
        if (lock := self._locks.get(peer_id)) is None:
            raise NotFoundError(f"Peer {peer_id} not found")
        return lock

    def __contains__(self, peer_id: object) -> bool:
        """Whether a peer with this id is registered."""
        return peer_id in self._peers

    def __len__(self) -> int:
        """Number of registered peers."""
        return len(self._peers)

    # Transports

    def add_transport(self, peer_id: str, role: TransportRole, handle: Transport) -> TransportEntry:
        """
        Store a transport for a peer.

        Raises:
            NotFoundError: If the peer is gone.
            ValueError: If the peer still holds a transport for this role.
        """
        peer = self.get(peer_id)
        if peer.transport_id(role) is not None:
            raise ValueError(f"Peer {peer_id} already has a {role.value} transport")
        entry = TransportEntry(
            transport_id=handle.id, peer_id=peer_id, role=role, handle=handle
        )
        self._transports[entry.transport_id] = entry
        if role == TransportRole.PRODUCER:
            peer.producer_transport_id = entry.transport_id
        else:
            peer.consumer_transport_id = entry.transport_id
        return entry

    def find_transport(self, transport_id: str) -> TransportEntry | None:
        """Return a transport by id or None."""
        return self._transports.get(transport_id)

    def get_transport(self, peer_id: str, role: TransportRole) -> TransportEntry:
        """
        Return the transport a peer holds for a role.

        Raises:
            NotFoundError: If the peer or the transport does not exist.
        """
        peer = self.get(peer_id)
        transport_id = peer.transport_id(role)
        if transport_id is None or (entry := self._transports.get(transport_id)) is None:
            raise NotFoundError(f"{role.value.capitalize()} transport not found")
        return entry

    def mark_transport_connected(self, transport_id: str) -> None:
        """Transition a transport from created to connected."""
        if (entry := self._transports.get(transport_id)) is None:
            raise NotFoundError(f"Transport {transport_id} not found")
        entry.state = TransportState.CONNECTED

    def remove_transport(self, transport_id: str) -> TransportEntry | None:
        """
        Drop a transport entry and detach it from its peer.

        Producers and consumers on the transport stay registered; the caller closes them.
        """
        entry = self._transports.pop(transport_id, None)
        if entry is None:
            return None
        entry.state = TransportState.CLOSED
        if (peer := self._peers.get(entry.peer_id)) is not None:
            if peer.producer_transport_id == transport_id:
                peer.producer_transport_id = None
            if peer.consumer_transport_id == transport_id:
                peer.consumer_transport_id = None
        return entry

    def transports_of(self, peer_id: str) -> list[TransportEntry]:
        """Transports owned by a peer, producer role first."""
        peer = self._peers.get(peer_id)
        if peer is None:
            return []
        ids = (peer.producer_transport_id, peer.consumer_transport_id)
        return [self._transports[tid] for tid in ids if tid is not None and tid in self._transports]

    # Producers

    def add_producer(self, peer_id: str, transport_id: str, handle: Producer) -> ProducerEntry:
        """
        Register a producer created on a peer's transport.

        Raises:
            NotFoundError: If the peer or the transport is gone.
        """
        peer = self.get(peer_id)
        transport = self._transports.get(transport_id)
        if transport is None or transport.peer_id != peer_id:
            raise NotFoundError(f"Transport {transport_id} not found")
        entry = ProducerEntry(
            producer_id=handle.id,
            peer_id=peer_id,
            kind=handle.kind,
            transport_id=transport_id,
            handle=handle,
        )
        self._producers[entry.producer_id] = entry
        self._consumers_by_producer[entry.producer_id] = set()
        peer.producer_ids.add(entry.producer_id)
        transport.producer_ids.add(entry.producer_id)
        return entry

    def find_producer(self, producer_id: str) -> ProducerEntry | None:
        """Return a producer by id or None."""
        return self._producers.get(producer_id)

    def get_producer(self, producer_id: str) -> ProducerEntry:
        """Return a producer or raise NotFoundError."""
        if (entry := self._producers.get(producer_id)) is None:
            raise NotFoundError(f"Producer {producer_id} not found")
        return entry

    def producers_of(self, peer_id: str) -> list[ProducerEntry]:
        """Producers owned by a peer."""
        peer = self._peers.get(peer_id)
        if peer is None:
            return []
        return [self._producers[pid] for pid in sorted(peer.producer_ids) if pid in self._producers]

    def producer_of_kind(self, peer_id: str, kind: MediaKind) -> ProducerEntry | None:
        """The producer a peer has for a media kind, if any."""
        for entry in self.producers_of(peer_id):
            if entry.kind == kind:
                return entry
        return None

    def consumers_of_producer(self, producer_id: str) -> list[ConsumerEntry]:
        """Consumers fed by a producer."""
        ids = self._consumers_by_producer.get(producer_id, set())
        return [self._consumers[cid] for cid in sorted(ids) if cid in self._consumers]

    def remove_producer(self, producer_id: str) -> ProducerEntry | None:
        """
        Drop a producer entry and detach it from its peer and transport.

        Dependent consumers stay registered; see consumers_of_producer.
        """
        entry = self._producers.pop(producer_id, None)
        if entry is None:
            return None
        if (peer := self._peers.get(entry.peer_id)) is not None:
            peer.producer_ids.discard(producer_id)
        if (transport := self._transports.get(entry.transport_id)) is not None:
            transport.producer_ids.discard(producer_id)
        if not self._consumers_by_producer.get(producer_id):
            self._consumers_by_producer.pop(producer_id, None)
        return entry

    def existing_producers(self, exclude_peer_id: str | None = None) -> list[ProducerInfo]:
        """Active producers of every peer except exclude_peer_id."""
        return [
            entry.to_info()
            for entry in self._producers.values()
            if entry.peer_id != exclude_peer_id
        ]

    # Consumers

    def add_consumer(
        self, peer_id: str, transport_id: str, producer_id: str, handle: Consumer
    ) -> ConsumerEntry:
        """
        Register a consumer created on a peer's transport for a producer.

        Raises:
            NotFoundError: If the peer, the transport or the source producer is gone.
        """
        peer = self.get(peer_id)
        transport = self._transports.get(transport_id)
        if transport is None or transport.peer_id != peer_id:
            raise NotFoundError(f"Transport {transport_id} not found")
        producer = self._producers.get(producer_id)
        if producer is None:
            raise NotFoundError(f"Producer {producer_id} not found")
        entry = ConsumerEntry(
            consumer_id=handle.id,
            peer_id=peer_id,
            producer_id=producer_id,
            producer_peer_id=producer.peer_id,
            kind=producer.kind,
            transport_id=transport_id,
            handle=handle,
        )
        self._consumers[entry.consumer_id] = entry
        self._consumers_by_producer.setdefault(producer_id, set()).add(entry.consumer_id)
        self._subscriptions[(peer_id, producer_id)] = entry.consumer_id
        peer.consumer_ids.add(entry.consumer_id)
        transport.consumer_ids.add(entry.consumer_id)
        return entry

    def find_consumer(self, consumer_id: str) -> ConsumerEntry | None:
        """Return a consumer by id or None."""
        return self._consumers.get(consumer_id)

    def get_consumer(self, consumer_id: str) -> ConsumerEntry:
        """Return a consumer or raise NotFoundError."""
        if (entry := self._consumers.get(consumer_id)) is None:
            raise NotFoundError(f"Consumer {consumer_id} not found")
        return entry

    def find_subscription(self, peer_id: str, producer_id: str) -> ConsumerEntry | None:
        """The consumer a peer holds for a producer, if any."""
        consumer_id = self._subscriptions.get((peer_id, producer_id))
        if consumer_id is None:
            return None
        return self._consumers.get(consumer_id)

    def set_consumer_state(self, consumer_id: str, state: ConsumerState) -> None:
        """Update the lifecycle state of a consumer."""
        self.get_consumer(consumer_id).state = state

    def consumers_of(self, peer_id: str) -> list[ConsumerEntry]:
        """Consumers owned by a peer."""
        peer = self._peers.get(peer_id)
        if peer is None:
            return []
        return [self._consumers[cid] for cid in sorted(peer.consumer_ids) if cid in self._consumers]

    def consumers_on_transport(self, transport_id: str) -> list[ConsumerEntry]:
        """Consumers bound to a transport."""
        transport = self._transports.get(transport_id)
        if transport is None:
            return [c for c in self._consumers.values() if c.transport_id == transport_id]
        return [
            self._consumers[cid] for cid in sorted(transport.consumer_ids) if cid in self._consumers
        ]

    def producers_on_transport(self, transport_id: str) -> list[ProducerEntry]:
        """Producers bound to a transport."""
        transport = self._transports.get(transport_id)
        if transport is None:
            return [p for p in self._producers.values() if p.transport_id == transport_id]
        return [
            self._producers[pid] for pid in sorted(transport.producer_ids) if pid in self._producers
        ]

    def remove_consumer(self, consumer_id: str) -> ConsumerEntry | None:
        """Drop a consumer entry and every index pointing to it."""
        entry = self._consumers.pop(consumer_id, None)
        if entry is None:
            return None
        entry.state = ConsumerState.CLOSED
        if (dependents := self._consumers_by_producer.get(entry.producer_id)) is not None:
            dependents.discard(consumer_id)
            if not dependents and entry.producer_id not in self._producers:
                del self._consumers_by_producer[entry.producer_id]
        if self._subscriptions.get((entry.peer_id, entry.producer_id)) == consumer_id:
            del self._subscriptions[(entry.peer_id, entry.producer_id)]
        if (peer := self._peers.get(entry.peer_id)) is not None:
            peer.consumer_ids.discard(consumer_id)
        if (transport := self._transports.get(entry.transport_id)) is not None:
            transport.consumer_ids.discard(consumer_id)
        return entry

    # Introspection

    def has_producer(self, producer_id: str) -> bool:
        """Whether a producer with this id is registered."""
        return producer_id in self._producers

    def has_consumer(self, consumer_id: str) -> bool:
        """Whether a consumer with this id is registered."""
        return consumer_id in self._consumers

    def has_transport(self, transport_id: str) -> bool:
        """Whether a transport with this id is registered."""
        return transport_id in self._transports

    def references_peer(self, peer_id: str) -> bool:
        """Whether any entry is owned by, or fed from, the given peer."""
        return (
            peer_id in self._peers
            or any(t.peer_id == peer_id for t in self._transports.values())
            or any(p.peer_id == peer_id for p in self._producers.values())
            or any(
                c.peer_id == peer_id or c.producer_peer_id == peer_id
                for c in self._consumers.values()
            )
        )
