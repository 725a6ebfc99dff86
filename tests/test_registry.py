from __future__ import annotations

import pytest
from harness import DTLS_PARAMETERS, RTP_PARAMETERS, RecordingConnection

from aiosfu.config import WebRtcTransportConfig
from aiosfu.engine.local import LocalRouter
from aiosfu.exceptions import NotFoundError
from aiosfu.models.core import ProducerInfo
from aiosfu.models.types import ConsumerState, MediaKind, TransportRole, TransportState
from aiosfu.server.registry import SessionRegistry


def test_register_assigns_unique_ids() -> None:
    ids = iter(["a", "a", "b"])
    registry = SessionRegistry(id_factory=lambda: next(ids))
    first = registry.register(RecordingConnection())
    second = registry.register(RecordingConnection())
    assert (first, second) == ("a", "b")
    assert len(registry) == 2
    assert "a" in registry


def test_get_unknown_peer_raises() -> None:
    registry = SessionRegistry()
    with pytest.raises(NotFoundError):
        registry.get("missing")
    with pytest.raises(NotFoundError):
        registry.peer_lock("missing")
    assert registry.find("missing") is None
    assert registry.remove("missing") is None


def test_peer_locks_are_per_peer() -> None:
    registry = SessionRegistry()
    a = registry.register(RecordingConnection())
    b = registry.register(RecordingConnection())
    assert registry.peer_lock(a) is registry.peer_lock(a)
    assert registry.peer_lock(a) is not registry.peer_lock(b)


@pytest.mark.asyncio
async def test_one_transport_per_role(router: LocalRouter) -> None:
    registry = SessionRegistry()
    peer_id = registry.register(RecordingConnection())
    first = await router.create_webrtc_transport(WebRtcTransportConfig())
    second = await router.create_webrtc_transport(WebRtcTransportConfig())

    entry = registry.add_transport(peer_id, TransportRole.PRODUCER, first)
    assert registry.get_transport(peer_id, TransportRole.PRODUCER) is entry
    assert entry.state == TransportState.CREATED
    with pytest.raises(ValueError, match="already has"):
        registry.add_transport(peer_id, TransportRole.PRODUCER, second)
    with pytest.raises(NotFoundError):
        registry.get_transport(peer_id, TransportRole.CONSUMER)

    registry.mark_transport_connected(entry.transport_id)
    assert entry.state == TransportState.CONNECTED
    assert registry.remove_transport(entry.transport_id) is entry
    assert entry.state == TransportState.CLOSED
    assert registry.get(peer_id).producer_transport_id is None
    registry.add_transport(peer_id, TransportRole.PRODUCER, second)


@pytest.mark.asyncio
async def test_indexes_follow_producers_and_consumers(router: LocalRouter) -> None:
    registry = SessionRegistry()
    a = registry.register(RecordingConnection())
    b = registry.register(RecordingConnection())
    send = await router.create_webrtc_transport(WebRtcTransportConfig())
    recv = await router.create_webrtc_transport(WebRtcTransportConfig())
    await send.connect(DTLS_PARAMETERS)
    send_entry = registry.add_transport(a, TransportRole.PRODUCER, send)
    recv_entry = registry.add_transport(b, TransportRole.CONSUMER, recv)

    producer = await send.produce(MediaKind.VIDEO, RTP_PARAMETERS[MediaKind.VIDEO])
    producer_entry = registry.add_producer(a, send_entry.transport_id, producer)
    consumer = await recv.consume(producer.id, router.rtp_capabilities)
    consumer_entry = registry.add_consumer(b, recv_entry.transport_id, producer.id, consumer)

    assert registry.producer_of_kind(a, MediaKind.VIDEO) is producer_entry
    assert registry.producer_of_kind(a, MediaKind.AUDIO) is None
    assert registry.existing_producers(exclude_peer_id=b) == [
        ProducerInfo(producer_id=producer.id, peer_id=a, kind=MediaKind.VIDEO)
    ]
    assert registry.existing_producers(exclude_peer_id=a) == []
    assert consumer_entry.producer_peer_id == a
    assert consumer_entry.state == ConsumerState.CREATED
    assert registry.consumers_of_producer(producer.id) == [consumer_entry]
    assert registry.find_subscription(b, producer.id) is consumer_entry
    assert registry.consumers_on_transport(recv_entry.transport_id) == [consumer_entry]
    assert registry.producers_on_transport(send_entry.transport_id) == [producer_entry]

    registry.remove_producer(producer.id)
    assert registry.consumers_of_producer(producer.id) == [consumer_entry]
    registry.remove_consumer(consumer.id)
    assert consumer_entry.state == ConsumerState.CLOSED
    assert registry.find_subscription(b, producer.id) is None
    assert registry.consumers_of_producer(producer.id) == []
    assert not registry.has_consumer(consumer.id)
    assert registry.get(b).consumer_ids == set()


@pytest.mark.asyncio
async def test_insert_refused_after_owner_vanished(router: LocalRouter) -> None:
    registry = SessionRegistry()
    a = registry.register(RecordingConnection())
    b = registry.register(RecordingConnection())
    send = await router.create_webrtc_transport(WebRtcTransportConfig())
    recv = await router.create_webrtc_transport(WebRtcTransportConfig())
    send_entry = registry.add_transport(a, TransportRole.PRODUCER, send)
    recv_entry = registry.add_transport(b, TransportRole.CONSUMER, recv)
    producer = await send.produce(MediaKind.VIDEO, RTP_PARAMETERS[MediaKind.VIDEO])
    consumer = await recv.consume(producer.id, router.rtp_capabilities)

    # Producer never committed: consumers of it must not be registered either
    with pytest.raises(NotFoundError, match="Producer"):
        registry.add_consumer(b, recv_entry.transport_id, producer.id, consumer)

    registry.remove_transport(send_entry.transport_id)
    with pytest.raises(NotFoundError, match="Transport"):
        registry.add_producer(a, send_entry.transport_id, producer)

    registry.remove(a)
    with pytest.raises(NotFoundError):
        registry.add_producer(a, send_entry.transport_id, producer)
    assert not registry.references_peer(a)
    assert not registry.has_producer(producer.id)
