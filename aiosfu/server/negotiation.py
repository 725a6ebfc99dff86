"""Per peer negotiation of transports, producers and consumers."""

from __future__ import annotations

import logging
from typing import Any

from aiosfu.config import SfuConfig
from aiosfu.engine.base import EngineEntity
from aiosfu.exceptions import EngineFailure, NotFoundError, ProtocolFault, SfuError
from aiosfu.models.core import (
    CloseProducerMessage,
    ConnectConsumerTransportMessage,
    ConnectProducerTransportMessage,
    ConsumeFailedMessage,
    ConsumeFailedPayload,
    ConsumeMessage,
    ConsumerCreatedMessage,
    ConsumerCreatedPayload,
    ConsumerTransportCreatedMessage,
    CreateConsumerTransportMessage,
    CreateProducerTransportMessage,
    ErrorMessage,
    ErrorPayload,
    NewProducerMessage,
    ProduceMessage,
    ProducerCreatedMessage,
    ProducerCreatedPayload,
    ProducerTransportCreatedMessage,
    ResumeConsumerMessage,
    TransportCreatedPayload,
    UnsupportedMessage,
)
from aiosfu.models.types import (
    ClientMessage,
    ConsumeFailureReason,
    ConsumerState,
    MediaKind,
    ServerMessage,
    TransportRole,
    TransportState,
)

from .capability import CapabilityClient
from .cleanup import CleanupCoordinator
from .fanout import Notifier
from .registry import SessionRegistry

logger = logging.getLogger(__name__)


class PeerNegotiator:
    """
    Handles the protocol messages of a single peer.

    Messages are handled one at a time under the peer's lock. Each handler awaits the
    media engine first and commits to the registry afterwards, in one synchronous block
    together with the reply and any broadcast. A handler that fails therefore leaves the
    registry as it found it.
    """

    def __init__(
        self,
        peer_id: str,
        registry: SessionRegistry,
        capability: CapabilityClient,
        notifier: Notifier,
        cleanup: CleanupCoordinator,
        config: SfuConfig,
    ) -> None:
        """
        Initialize the negotiator of a registered peer.

        Use SignalingCoordinator.join instead of calling this directly.
        """
        self._peer_id = peer_id
        self._registry = registry
        self._capability = capability
        self._notifier = notifier
        self._cleanup = cleanup
        self._config = config
        self._logger = logger.getChild(peer_id)

    @property
    def peer_id(self) -> str:
        """Session id of the peer this negotiator works for."""
        return self._peer_id

    def _reply(self, message: ServerMessage) -> None:
        self._notifier.send(self._peer_id, message)

    async def handle(self, message: ClientMessage | UnsupportedMessage) -> None:
        """
        Handle one inbound message.

        Never raises for a failed request; failures are reported to the peer.
        """
        action = getattr(message, "action", type(message).__name__)
        try:
            lock = self._registry.peer_lock(self._peer_id)
        except NotFoundError:
            self._logger.debug("Ignoring %s, peer was released", action)
            return
        async with lock:
            if self._peer_id not in self._registry:
                self._logger.debug("Ignoring %s, peer was released", action)
                return
            self._logger.debug("Handling %s", action)
            try:
                await self._dispatch(message)
            except (SfuError, ValueError) as err:
                self._logger.warning("Request %s failed: %s", action, err)
                self._reply(ErrorMessage(data=ErrorPayload(message=str(err), action=action)))
            except Exception as err:
                self._logger.exception("Unexpected error handling %s", action)
                self._reply(
                    ErrorMessage(data=ErrorPayload(message=f"Internal error: {err}", action=action))
                )

    async def _dispatch(self, message: ClientMessage | UnsupportedMessage) -> None:
        match message:
            case CreateProducerTransportMessage():
                await self._create_transport(TransportRole.PRODUCER)
            case CreateConsumerTransportMessage():
                await self._create_transport(TransportRole.CONSUMER)
            case ConnectProducerTransportMessage(data):
                await self._connect_transport(TransportRole.PRODUCER, data.dtls_parameters)
            case ConnectConsumerTransportMessage(data):
                await self._connect_transport(TransportRole.CONSUMER, data.dtls_parameters)
            case ProduceMessage(data):
                await self._produce(data.kind, data.rtp_parameters, data.app_data)
            case ConsumeMessage(data):
                await self._consume(data.producer_id, data.rtp_capabilities)
            case ResumeConsumerMessage(data):
                await self._resume_consumer(data.consumer_id)
            case CloseProducerMessage(data):
                self._close_producer(data.producer_id)
            case UnsupportedMessage(action):
                self._logger.warning("Ignoring unsupported action %r", action)
            case _:
                self._logger.warning("Ignoring unhandled message %s", type(message).__name__)

    def _discard(self, handle: EngineEntity) -> None:
        """Close an engine entity whose registration was refused."""
        self._logger.debug("Discarding %s created for a vanished owner", type(handle).__name__)
        CapabilityClient.close(handle)

    # Transports

    async def _create_transport(self, role: TransportRole) -> None:
        transport = await self._capability.create_transport()
        try:
            old_transport_id = self._registry.get(self._peer_id).transport_id(role)
            if old_transport_id is not None:
                self._logger.info(
                    "Replacing %s transport %s with %s", role.value, old_transport_id, transport.id
                )
                self._cleanup.close_transport(old_transport_id)
            entry = self._registry.add_transport(self._peer_id, role, transport)
        except (NotFoundError, ValueError):
            self._discard(transport)
            raise
        self._cleanup.watch_transport(entry)
        self._logger.info("Created %s transport %s", role.value, transport.id)
        payload = TransportCreatedPayload(
            id=transport.id,
            ice_parameters=transport.ice_parameters,
            ice_candidates=transport.ice_candidates,
            dtls_parameters=transport.dtls_parameters,
        )
        if role == TransportRole.PRODUCER:
            self._reply(ProducerTransportCreatedMessage(data=payload))
        else:
            self._reply(ConsumerTransportCreatedMessage(data=payload))

    async def _connect_transport(self, role: TransportRole, dtls_parameters: dict[str, Any]) -> None:
        entry = self._registry.get_transport(self._peer_id, role)
        if entry.state != TransportState.CREATED:
            raise ProtocolFault(f"{role.value.capitalize()} transport is already connected")
        await self._capability.connect_transport(entry.handle, dtls_parameters)
        if self._registry.find_transport(entry.transport_id) is not entry:
            raise NotFoundError(f"{role.value.capitalize()} transport closed while connecting")
        self._registry.mark_transport_connected(entry.transport_id)
        self._logger.info("Connected %s transport %s", role.value, entry.transport_id)

    # Producers

    async def _produce(
        self,
        kind: MediaKind,
        rtp_parameters: dict[str, Any],
        app_data: dict[str, Any] | None,
    ) -> None:
        transport = self._registry.get_transport(self._peer_id, TransportRole.PRODUCER)
        if transport.state != TransportState.CONNECTED:
            raise ProtocolFault("Producer transport is not connected")
        producer = await self._capability.produce(
            transport.handle, kind, rtp_parameters, app_data
        )
        try:
            replaced = self._registry.producer_of_kind(self._peer_id, producer.kind)
            entry = self._registry.add_producer(self._peer_id, transport.transport_id, producer)
        except NotFoundError:
            self._discard(producer)
            raise
        if replaced is not None:
            self._logger.info(
                "Replacing %s producer %s with %s",
                producer.kind.value,
                replaced.producer_id,
                producer.id,
            )
            self._cleanup.close_producer(replaced.producer_id)
        self._cleanup.watch_producer(entry)
        self._logger.info("Created %s producer %s", entry.kind.value, entry.producer_id)
        self._reply(ProducerCreatedMessage(data=ProducerCreatedPayload(id=entry.producer_id)))
        self._notifier.notify(NewProducerMessage(data=entry.to_info()), exclude=self._peer_id)

    def _close_producer(self, producer_id: str) -> None:
        entry = self._registry.get_producer(producer_id)
        if entry.peer_id != self._peer_id:
            raise NotFoundError(f"Producer {producer_id} not found")
        self._cleanup.close_producer(producer_id)

    # Consumers

    def _consume_failed(self, reason: ConsumeFailureReason, producer_id: str) -> None:
        self._logger.info("Consume of producer %s failed: %s", producer_id, reason.value)
        self._reply(
            ConsumeFailedMessage(data=ConsumeFailedPayload(reason=reason, producer_id=producer_id))
        )

    def _producer_vanished(self, producer_id: str) -> bool:
        """Reply consumeFailed if the producer closed while the engine was awaited."""
        if self._registry.find_producer(producer_id) is not None:
            return False
        self._consume_failed(ConsumeFailureReason.PRODUCER_NOT_FOUND, producer_id)
        return True

    def _consumer_transport_ready(self) -> bool:
        try:
            entry = self._registry.get_transport(self._peer_id, TransportRole.CONSUMER)
        except NotFoundError:
            return False
        if self._config.require_connected_consumer_transport:
            return entry.state == TransportState.CONNECTED
        return entry.state != TransportState.CLOSED

    async def _consume(self, producer_id: str, rtp_capabilities: dict[str, Any]) -> None:
        if self._registry.find_producer(producer_id) is None:
            self._consume_failed(ConsumeFailureReason.PRODUCER_NOT_FOUND, producer_id)
            return
        try:
            compatible = await self._capability.can_consume(producer_id, rtp_capabilities)
        except EngineFailure:
            if self._producer_vanished(producer_id):
                return
            raise
        if self._producer_vanished(producer_id):
            return
        if not compatible:
            self._consume_failed(ConsumeFailureReason.CANNOT_CONSUME, producer_id)
            return
        if not self._consumer_transport_ready():
            self._consume_failed(ConsumeFailureReason.TRANSPORT_NOT_FOUND, producer_id)
            return
        transport = self._registry.get_transport(self._peer_id, TransportRole.CONSUMER)
        try:
            consumer = await self._capability.consume(
                transport.handle, producer_id, rtp_capabilities
            )
        except EngineFailure:
            if self._producer_vanished(producer_id):
                return
            raise
        replaced = self._registry.find_subscription(self._peer_id, producer_id)
        try:
            entry = self._registry.add_consumer(
                self._peer_id, transport.transport_id, producer_id, consumer
            )
        except NotFoundError:
            self._discard(consumer)
            if self._producer_vanished(producer_id):
                return
            raise
        if replaced is not None:
            self._logger.info(
                "Replacing consumer %s of producer %s", replaced.consumer_id, producer_id
            )
            self._cleanup.close_consumer(replaced.consumer_id)
        self._cleanup.watch_consumer(entry)
        self._logger.info(
            "Created %s consumer %s of producer %s (peer %s)",
            entry.kind.value,
            entry.consumer_id,
            producer_id,
            entry.producer_peer_id,
        )
        producer = self._registry.get_producer(producer_id)
        self._reply(
            ConsumerCreatedMessage(
                data=ConsumerCreatedPayload(
                    producer_id=producer_id,
                    id=entry.consumer_id,
                    kind=entry.kind,
                    rtp_parameters=consumer.rtp_parameters,
                    producer_peer_id=entry.producer_peer_id,
                    type=consumer.type,
                    producer_paused=producer.handle.paused,
                )
            )
        )

    async def _resume_consumer(self, consumer_id: str) -> None:
        entry = self._registry.find_consumer(consumer_id)
        if entry is None or entry.peer_id != self._peer_id:
            self._logger.debug("Not resuming unknown consumer %s", consumer_id)
            return
        if entry.state != ConsumerState.CREATED:
            self._logger.debug("Consumer %s is already %s", consumer_id, entry.state.value)
            return
        try:
            await self._capability.resume(entry.handle)
        except SfuError as err:
            self._logger.warning("Could not resume consumer %s: %s", consumer_id, err)
            return
        if self._registry.find_consumer(consumer_id) is entry:
            self._registry.set_consumer_state(consumer_id, ConsumerState.RESUMED)
            self._logger.info("Resumed consumer %s", consumer_id)
