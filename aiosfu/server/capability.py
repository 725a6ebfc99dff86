"""Typed façade over the media engine router."""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from typing import Any, TypeVar

from aiosfu.config import WebRtcTransportConfig
from aiosfu.engine.base import Consumer, EngineEntity, Producer, Router, Transport
from aiosfu.exceptions import EngineFailure
from aiosfu.models.types import MediaKind

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class CapabilityClient:
    """
    Calls into the media engine on behalf of the negotiation handlers.

    Holds no state besides the router and the transport options. Every engine exception
    is re-raised as EngineFailure so handlers deal with a single failure type.
    """

    def __init__(self, router: Router, transport_config: WebRtcTransportConfig) -> None:
        """
        Initialize the client.

        Args:
            router: Process wide router created at startup.
            transport_config: Options for every transport created through this client.
        """
        self._router = router
        self._transport_config = transport_config

    @property
    def router(self) -> Router:
        """Router this client talks to."""
        return self._router

    @property
    def rtp_capabilities(self) -> dict[str, Any]:
        """Router RTP capabilities sent to every joining peer."""
        return self._router.rtp_capabilities

    async def _call(self, operation: str, awaitable: Awaitable[_T]) -> _T:
        try:
            return await awaitable
        except EngineFailure:
            raise
        except Exception as err:
            logger.debug("Media engine failed to %s: %s", operation, err)
            raise EngineFailure(f"Media engine failed to {operation}: {err}") from err

    async def create_transport(self) -> Transport:
        """Allocate a WebRTC transport."""
        return await self._call(
            "create transport", self._router.create_webrtc_transport(self._transport_config)
        )

    async def connect_transport(self, transport: Transport, dtls_parameters: dict[str, Any]) -> None:
        """Finish connectivity of a transport with the remote DTLS parameters."""
        await self._call("connect transport", transport.connect(dtls_parameters))

    async def produce(
        self,
        transport: Transport,
        kind: MediaKind,
        rtp_parameters: dict[str, Any],
        app_data: dict[str, Any] | None = None,
    ) -> Producer:
        """Create a producer on a send transport."""
        return await self._call("produce", transport.produce(kind, rtp_parameters, app_data))

    async def can_consume(self, producer_id: str, rtp_capabilities: dict[str, Any]) -> bool:
        """Compatibility check between a producer and a receiving device."""
        return await self._call(
            "check compatibility", self._router.can_consume(producer_id, rtp_capabilities)
        )

    async def consume(
        self, transport: Transport, producer_id: str, rtp_capabilities: dict[str, Any]
    ) -> Consumer:
        """Bind a paused consumer for a producer to a receive transport."""
        return await self._call(
            "consume", transport.consume(producer_id, rtp_capabilities, paused=True)
        )

    async def resume(self, consumer: Consumer) -> None:
        """Start media flow on a consumer."""
        await self._call("resume consumer", consumer.resume())

    @staticmethod
    def close(entity: EngineEntity) -> None:
        """Close an engine entity; failures are logged since the entity is discarded anyway."""
        if entity.closed:
            return
        try:
            entity.close()
        except Exception:
            logger.exception("Media engine failed to close %s", type(entity).__name__)
