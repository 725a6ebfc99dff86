"""
Abstract interface of the media engine.

The signaling core never touches media. Everything it needs from the engine that relays
packets (router capabilities, transports, producers, consumers and the compatibility check)
goes through the classes below. Engine entities report closures that happen on their side
(a transport failing, a producer going away) through close listeners.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from contextlib import suppress
from typing import Any

from aiosfu.config import MediaCodec, WebRtcTransportConfig
from aiosfu.models.types import MediaKind

logger = logging.getLogger(__name__)

CloseCallback = Callable[[str], None]
"""Invoked with the close reason: 'close', 'transportclose' or 'producerclose'."""

CLOSE_REASON_LOCAL = "close"
CLOSE_REASON_TRANSPORT = "transportclose"
CLOSE_REASON_PRODUCER = "producerclose"


class EngineEntity:
    """Close bookkeeping shared by every engine entity."""

    _closed: bool
    _close_cbs: list[CloseCallback]

    def __init__(self) -> None:
        """Initialize close bookkeeping."""
        self._closed = False
        self._close_cbs = []

    @property
    def closed(self) -> bool:
        """Whether this entity was closed."""
        return self._closed

    def add_close_listener(self, callback: CloseCallback) -> Callable[[], None]:
        """
        Register a callback invoked once when this entity closes.

        Returns a function to remove the listener.
        """
        self._close_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._close_cbs.remove(callback)

        return _remove

    def close(self) -> None:
        """Close the entity."""
        raise NotImplementedError

    def _mark_closed(self, reason: str) -> bool:
        """Flag the entity as closed and notify listeners; False if it already was."""
        if self._closed:
            return False
        self._closed = True
        callbacks = list(self._close_cbs)
        self._close_cbs.clear()
        for cb in callbacks:
            try:
                cb(reason)
            except Exception:
                logger.exception("Error in close listener")
        return True


class Producer(EngineEntity, ABC):
    """An inbound media stream on the router."""

    @property
    @abstractmethod
    def id(self) -> str:
        """Engine assigned producer id."""

    @property
    @abstractmethod
    def kind(self) -> MediaKind:
        """Media kind of this producer."""

    @property
    @abstractmethod
    def rtp_parameters(self) -> dict[str, Any]:
        """RTP parameters the producer was created with."""

    @property
    def paused(self) -> bool:
        """Whether the producer is paused."""
        return False

    @abstractmethod
    def close(self) -> None:
        """Close the producer. Consumers of it close with reason 'producerclose'."""


class Consumer(EngineEntity, ABC):
    """An outbound subscription of one transport to one producer."""

    @property
    @abstractmethod
    def id(self) -> str:
        """Engine assigned consumer id."""

    @property
    @abstractmethod
    def producer_id(self) -> str:
        """Id of the producer this consumer is fed from."""

    @property
    @abstractmethod
    def kind(self) -> MediaKind:
        """Media kind of this consumer."""

    @property
    @abstractmethod
    def rtp_parameters(self) -> dict[str, Any]:
        """RTP parameters the receiving device must use."""

    @property
    def type(self) -> str:
        """Consumer type ('simple', 'simulcast', 'svc')."""
        return "simple"

    @property
    @abstractmethod
    def paused(self) -> bool:
        """Whether media flow is paused."""

    @abstractmethod
    async def resume(self) -> None:
        """Start media flow. Resuming a running consumer is a no-op."""

    @abstractmethod
    def close(self) -> None:
        """Close the consumer."""


class Transport(EngineEntity, ABC):
    """A negotiated WebRTC transport between one peer and the router."""

    @property
    @abstractmethod
    def id(self) -> str:
        """Engine assigned transport id."""

    @property
    @abstractmethod
    def ice_parameters(self) -> dict[str, Any]:
        """Server side ICE parameters."""

    @property
    @abstractmethod
    def ice_candidates(self) -> list[dict[str, Any]]:
        """Server side ICE candidates."""

    @property
    @abstractmethod
    def dtls_parameters(self) -> dict[str, Any]:
        """Server side DTLS parameters."""

    @abstractmethod
    async def connect(self, dtls_parameters: dict[str, Any]) -> None:
        """Provide the remote DTLS parameters and finish connectivity."""

    @abstractmethod
    async def produce(
        self,
        kind: MediaKind,
        rtp_parameters: dict[str, Any],
        app_data: dict[str, Any] | None = None,
    ) -> Producer:
        """Create a producer receiving media over this transport."""

    @abstractmethod
    async def consume(
        self,
        producer_id: str,
        rtp_capabilities: dict[str, Any],
        *,
        paused: bool = True,
    ) -> Consumer:
        """Create a consumer sending the given producer's media over this transport."""

    @abstractmethod
    def close(self) -> None:
        """Close the transport with all producers and consumers on it."""


class Router(EngineEntity, ABC):
    """Process wide media router all peers share."""

    @property
    @abstractmethod
    def id(self) -> str:
        """Engine assigned router id."""

    @property
    @abstractmethod
    def rtp_capabilities(self) -> dict[str, Any]:
        """RTP capabilities devices load before producing or consuming."""

    @abstractmethod
    async def can_consume(self, producer_id: str, rtp_capabilities: dict[str, Any]) -> bool:
        """Whether a device with the given capabilities can receive the producer."""

    @abstractmethod
    async def create_webrtc_transport(self, config: WebRtcTransportConfig) -> Transport:
        """Allocate a new transport."""

    @abstractmethod
    def close(self) -> None:
        """Close the router and everything created through it."""


class MediaEngine(ABC):
    """Entry point of a media engine."""

    @abstractmethod
    async def create_router(self, media_codecs: list[MediaCodec]) -> Router:
        """Create a router accepting the given codecs."""

    @abstractmethod
    async def close(self) -> None:
        """Release the engine and all routers."""
