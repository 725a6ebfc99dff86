"""Fakes and request helpers shared by the tests."""

from __future__ import annotations

from typing import Any, TypeVar

from aiosfu.models.core import (
    ConnectConsumerTransportMessage,
    ConnectProducerTransportMessage,
    ConnectTransportPayload,
    ConsumeMessage,
    ConsumePayload,
    CreateConsumerTransportMessage,
    CreateProducerTransportMessage,
    ProduceMessage,
    ProducePayload,
    ProducerCreatedMessage,
)
from aiosfu.models.types import ClientMessage, MediaKind, ServerMessage
from aiosfu.server.coordinator import SignalingCoordinator

_M = TypeVar("_M", bound=ServerMessage)

DTLS_PARAMETERS: dict[str, Any] = {
    "role": "client",
    "fingerprints": [{"algorithm": "sha-256", "value": "AB:" * 31 + "CD"}],
}

RTP_PARAMETERS: dict[MediaKind, dict[str, Any]] = {
    MediaKind.AUDIO: {
        "codecs": [
            {"mimeType": "audio/opus", "payloadType": 111, "clockRate": 48000, "channels": 2}
        ],
        "encodings": [{"ssrc": 11111111}],
    },
    MediaKind.VIDEO: {
        "codecs": [{"mimeType": "video/VP8", "payloadType": 96, "clockRate": 90000}],
        "encodings": [{"ssrc": 22222222}],
    },
}

AUDIO_ONLY_CAPABILITIES: dict[str, Any] = {
    "codecs": [
        {
            "kind": "audio",
            "mimeType": "audio/opus",
            "clockRate": 48000,
            "channels": 2,
            "preferredPayloadType": 100,
        }
    ]
}


class RecordingConnection:
    """PeerConnection keeping every message it was asked to send."""

    def __init__(self) -> None:
        self.messages: list[ServerMessage] = []

    def send_message(self, message: ServerMessage) -> None:
        self.messages.append(message)

    def of_type(self, message_type: type[_M]) -> list[_M]:
        return [m for m in self.messages if isinstance(m, message_type)]

    def last(self) -> ServerMessage:
        return self.messages[-1]

    def clear(self) -> None:
        self.messages.clear()


class FailingConnection:
    """PeerConnection whose every delivery fails."""

    def __init__(self) -> None:
        self.attempts = 0

    def send_message(self, message: ServerMessage) -> None:
        self.attempts += 1
        raise ConnectionResetError("Cannot write to closing transport")


class PeerHarness:
    """A peer joined to a coordinator through a RecordingConnection."""

    def __init__(self, coordinator: SignalingCoordinator) -> None:
        self.coordinator = coordinator
        self.connection = RecordingConnection()
        self.negotiator = coordinator.join(self.connection)

    @property
    def peer_id(self) -> str:
        return self.negotiator.peer_id

    @property
    def messages(self) -> list[ServerMessage]:
        return self.connection.messages

    async def send(self, message: ClientMessage) -> ServerMessage | None:
        """Handle a message and return the first message sent to this peer meanwhile."""
        before = len(self.connection.messages)
        await self.negotiator.handle(message)
        if len(self.connection.messages) > before:
            return self.connection.messages[before]
        return None

    async def setup_sending(self) -> None:
        await self.send(CreateProducerTransportMessage())
        await self.send(
            ConnectProducerTransportMessage(
                data=ConnectTransportPayload(dtls_parameters=DTLS_PARAMETERS)
            )
        )

    async def setup_receiving(self, *, connect: bool = True) -> None:
        await self.send(CreateConsumerTransportMessage())
        if connect:
            await self.send(
                ConnectConsumerTransportMessage(
                    data=ConnectTransportPayload(dtls_parameters=DTLS_PARAMETERS)
                )
            )

    async def produce(self, kind: MediaKind = MediaKind.VIDEO) -> str:
        reply = await self.send(
            ProduceMessage(data=ProducePayload(kind=kind, rtp_parameters=RTP_PARAMETERS[kind]))
        )
        assert isinstance(reply, ProducerCreatedMessage), reply
        return reply.data.id

    async def consume(
        self, producer_id: str, rtp_capabilities: dict[str, Any] | None = None
    ) -> ServerMessage | None:
        if rtp_capabilities is None:
            rtp_capabilities = self.coordinator.capability.rtp_capabilities
        return await self.send(
            ConsumeMessage(
                data=ConsumePayload(producer_id=producer_id, rtp_capabilities=rtp_capabilities)
            )
        )


