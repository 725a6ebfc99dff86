from __future__ import annotations

from collections.abc import Callable

import pytest
from harness import PeerHarness

from aiosfu.models.core import (
    ConsumerCreatedMessage,
    CreateConsumerTransportMessage,
    PeerDepartedMessage,
    ProducerClosedMessage,
)
from aiosfu.models.types import MediaKind, TransportRole
from aiosfu.server.coordinator import SignalingCoordinator

Join = Callable[[], PeerHarness]


async def _subscribe(peer: PeerHarness, *producer_ids: str) -> list[str]:
    consumer_ids = []
    for producer_id in producer_ids:
        reply = await peer.consume(producer_id)
        assert isinstance(reply, ConsumerCreatedMessage), reply
        consumer_ids.append(reply.data.id)
    return consumer_ids


@pytest.mark.asyncio
async def test_departure_cascades_to_every_consumer(
    join: Join, coordinator: SignalingCoordinator
) -> None:
    a = join()
    b = join()
    c = join()
    await a.setup_sending()
    audio_id = await a.produce(MediaKind.AUDIO)
    video_id = await a.produce(MediaKind.VIDEO)
    for peer in (b, c):
        await peer.setup_receiving()
        await _subscribe(peer, audio_id, video_id)
        peer.connection.clear()

    registry = coordinator.registry
    a_handles = [t.handle for t in registry.transports_of(a.peer_id)]
    a_handles += [p.handle for p in registry.producers_of(a.peer_id)]
    consumer_handles = [e.handle for p in (b, c) for e in registry.consumers_of(p.peer_id)]

    assert await coordinator.leave(a.peer_id)

    for peer in (b, c):
        closed = peer.connection.of_type(ProducerClosedMessage)
        assert {m.data.producer_id for m in closed} == {audio_id, video_id}
        assert len(closed) == 2
        assert all(m.data.peer_id == a.peer_id for m in closed)
        departed = peer.connection.of_type(PeerDepartedMessage)
        assert [m.data.peer_id for m in departed] == [a.peer_id]
        # Departure comes after the producer closures
        assert isinstance(peer.connection.last(), PeerDepartedMessage)
        assert registry.consumers_of(peer.peer_id) == []

    assert a.peer_id not in registry
    assert not registry.references_peer(a.peer_id)
    assert registry.existing_producers() == []
    assert all(handle.closed for handle in a_handles + consumer_handles)


@pytest.mark.asyncio
async def test_release_happens_once(join: Join, coordinator: SignalingCoordinator) -> None:
    a = join()
    b = join()
    await a.setup_sending()
    await a.produce()
    b.connection.clear()

    assert await coordinator.leave(a.peer_id)
    assert not await coordinator.leave(a.peer_id)
    assert not coordinator.cleanup.release_peer(a.peer_id)

    assert len(b.connection.of_type(ProducerClosedMessage)) == 1
    assert len(b.connection.of_type(PeerDepartedMessage)) == 1


@pytest.mark.asyncio
async def test_consumer_departure_keeps_the_producer(
    join: Join, coordinator: SignalingCoordinator
) -> None:
    a = join()
    b = join()
    await a.setup_sending()
    producer_id = await a.produce()
    await b.setup_receiving()
    [consumer_id] = await _subscribe(b, producer_id)
    a.connection.clear()

    assert await coordinator.leave(b.peer_id)

    registry = coordinator.registry
    assert registry.has_producer(producer_id)
    assert not registry.has_consumer(consumer_id)
    assert registry.consumers_of_producer(producer_id) == []
    assert [type(m) for m in a.messages] == [PeerDepartedMessage]


@pytest.mark.asyncio
async def test_release_of_partially_negotiated_peers(
    join: Join, coordinator: SignalingCoordinator
) -> None:
    idle = join()
    half = join()
    watcher = join()
    await half.send(CreateConsumerTransportMessage())
    watcher.connection.clear()

    assert await coordinator.leave(idle.peer_id)
    assert await coordinator.leave(half.peer_id)

    registry = coordinator.registry
    assert not registry.references_peer(idle.peer_id)
    assert not registry.references_peer(half.peer_id)
    departed = watcher.connection.of_type(PeerDepartedMessage)
    assert [m.data.peer_id for m in departed] == [idle.peer_id, half.peer_id]
    assert watcher.connection.of_type(ProducerClosedMessage) == []


@pytest.mark.asyncio
async def test_requests_after_release_are_ignored(
    join: Join, coordinator: SignalingCoordinator
) -> None:
    a = join()
    assert await coordinator.leave(a.peer_id)
    assert await a.send(CreateConsumerTransportMessage()) is None
    assert not coordinator.registry.references_peer(a.peer_id)


@pytest.mark.asyncio
async def test_engine_closed_transport_is_cleaned_up(
    join: Join, coordinator: SignalingCoordinator
) -> None:
    a = join()
    b = join()
    await a.setup_sending()
    producer_id = await a.produce()
    await b.setup_receiving()
    await _subscribe(b, producer_id)
    b.connection.clear()
    registry = coordinator.registry

    registry.get_transport(a.peer_id, TransportRole.PRODUCER).handle.close()

    assert registry.get(a.peer_id).producer_transport_id is None
    assert not registry.has_producer(producer_id)
    assert registry.consumers_of(b.peer_id) == []
    assert [m.data.producer_id for m in b.connection.of_type(ProducerClosedMessage)] == [
        producer_id
    ]
    # The peer itself stays connected
    assert a.peer_id in registry


@pytest.mark.asyncio
async def test_engine_closed_consumer_notifies_its_peer(
    join: Join, coordinator: SignalingCoordinator
) -> None:
    a = join()
    b = join()
    c = join()
    await a.setup_sending()
    producer_id = await a.produce()
    await b.setup_receiving()
    [consumer_id] = await _subscribe(b, producer_id)
    b.connection.clear()
    c.connection.clear()
    registry = coordinator.registry

    registry.get_consumer(consumer_id).handle.close()

    assert not registry.has_consumer(consumer_id)
    assert registry.has_producer(producer_id)
    closed = b.connection.of_type(ProducerClosedMessage)
    assert [(m.data.producer_id, m.data.peer_id) for m in closed] == [(producer_id, a.peer_id)]
    assert c.messages == []


@pytest.mark.asyncio
async def test_close_releases_everyone(join: Join, coordinator: SignalingCoordinator) -> None:
    a = join()
    b = join()
    await a.setup_sending()
    await a.produce()
    await b.setup_receiving()

    coordinator.close()

    assert len(coordinator.registry) == 0
    assert not coordinator.registry.references_peer(a.peer_id)
    assert not coordinator.registry.references_peer(b.peer_id)
