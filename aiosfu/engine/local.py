"""
In-process media engine.

LocalMediaEngine implements the engine interface without forwarding any media. It keeps
the bookkeeping a real SFU would do (codec matching, transport parameters, closure
propagation between transports, producers and consumers), which makes it suitable for
development, tests and for running the signaling server without an external engine.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from itertools import count
from typing import Any

from aiosfu.config import MediaCodec, WebRtcTransportConfig
from aiosfu.models.types import MediaKind
from aiosfu.util import generate_id

from .base import (
    CLOSE_REASON_LOCAL,
    CLOSE_REASON_PRODUCER,
    CLOSE_REASON_TRANSPORT,
    Consumer,
    MediaEngine,
    Producer,
    Router,
    Transport,
)

logger = logging.getLogger(__name__)

FIRST_DYNAMIC_PAYLOAD_TYPE = 100
FIRST_RTC_PORT = 40000


class LocalEngineError(Exception):
    """Raised when the local engine rejects a request."""


def _codec_key(codec: dict[str, Any]) -> tuple[str, int, int]:
    """Key used to match codecs: (lowercase mime type, clock rate, channels)."""
    mime_type = str(codec.get("mimeType", "")).lower()
    channels = codec.get("channels") if mime_type.startswith("audio/") else None
    return (mime_type, int(codec.get("clockRate", 0)), int(channels or 1))


def _is_rtx(codec: dict[str, Any]) -> bool:
    return str(codec.get("mimeType", "")).lower().endswith("/rtx")


def _random_fingerprint() -> str:
    return ":".join(f"{byte:02X}" for byte in secrets.token_bytes(32))


class LocalProducer(Producer):
    """Producer of the local engine."""

    def __init__(
        self,
        transport: LocalTransport,
        kind: MediaKind,
        rtp_parameters: dict[str, Any],
        app_data: dict[str, Any] | None,
    ) -> None:
        """Initialize a producer. Created through LocalTransport.produce only."""
        super().__init__()
        self._id = generate_id()
        self._transport = transport
        self._kind = kind
        self._rtp_parameters = rtp_parameters
        self.app_data = app_data or {}
        self.consumers: set[LocalConsumer] = set()

    @property
    def id(self) -> str:
        """Engine assigned producer id."""
        return self._id

    @property
    def kind(self) -> MediaKind:
        """Media kind of this producer."""
        return self._kind

    @property
    def rtp_parameters(self) -> dict[str, Any]:
        """RTP parameters the producer was created with."""
        return self._rtp_parameters

    def close(self) -> None:
        """Close the producer and every consumer fed by it."""
        self._close(CLOSE_REASON_LOCAL)

    def _close(self, reason: str) -> None:
        if not self._mark_closed(reason):
            return
        logger.debug("Producer %s closed (%s)", self._id, reason)
        self._transport.producers.discard(self)
        self._transport.router.producers.pop(self._id, None)
        for consumer in list(self.consumers):
            consumer._close(CLOSE_REASON_PRODUCER)  # noqa: SLF001
        self.consumers.clear()


class LocalConsumer(Consumer):
    """Consumer of the local engine."""

    def __init__(
        self,
        transport: LocalTransport,
        producer: LocalProducer,
        rtp_parameters: dict[str, Any],
        *,
        paused: bool,
    ) -> None:
        """Initialize a consumer. Created through LocalTransport.consume only."""
        super().__init__()
        self._id = generate_id()
        self._transport = transport
        self._producer = producer
        self._rtp_parameters = rtp_parameters
        self._paused = paused

    @property
    def id(self) -> str:
        """Engine assigned consumer id."""
        return self._id

    @property
    def producer_id(self) -> str:
        """Id of the producer this consumer is fed from."""
        return self._producer.id

    @property
    def kind(self) -> MediaKind:
        """Media kind of this consumer."""
        return self._producer.kind

    @property
    def rtp_parameters(self) -> dict[str, Any]:
        """RTP parameters the receiving device must use."""
        return self._rtp_parameters

    @property
    def paused(self) -> bool:
        """Whether media flow is paused."""
        return self._paused

    async def resume(self) -> None:
        """Start media flow."""
        if self._closed:
            raise LocalEngineError(f"Consumer {self._id} is closed")
        self._paused = False

    def close(self) -> None:
        """Close the consumer."""
        self._close(CLOSE_REASON_LOCAL)

    def _close(self, reason: str) -> None:
        if not self._mark_closed(reason):
            return
        logger.debug("Consumer %s closed (%s)", self._id, reason)
        self._transport.consumers.discard(self)
        self._producer.consumers.discard(self)


class LocalTransport(Transport):
    """WebRTC transport of the local engine."""

    def __init__(self, router: LocalRouter, config: WebRtcTransportConfig) -> None:
        """Initialize a transport. Created through LocalRouter.create_webrtc_transport only."""
        super().__init__()
        self._id = generate_id()
        self.router = router
        self.connected = False
        self.producers: set[LocalProducer] = set()
        self.consumers: set[LocalConsumer] = set()
        self.remote_dtls_parameters: dict[str, Any] | None = None
        self._ice_parameters = {
            "usernameFragment": secrets.token_hex(8),
            "password": secrets.token_hex(16),
            "iceLite": True,
        }
        self._ice_candidates = self._build_candidates(config)
        self._dtls_parameters = {
            "role": "auto",
            "fingerprints": [{"algorithm": "sha-256", "value": _random_fingerprint()}],
        }

    def _build_candidates(self, config: WebRtcTransportConfig) -> list[dict[str, Any]]:
        protocols = []
        if config.enable_udp:
            protocols.append("udp")
        if config.enable_tcp:
            protocols.append("tcp")
        if config.prefer_udp and "tcp" in protocols and "udp" in protocols:
            priorities = {"udp": 1076302079, "tcp": 1076276479}
        else:
            priorities = {"udp": 1076276479, "tcp": 1076302079}
        candidates = []
        for listen_ip in config.listen_ips:
            address = listen_ip.announced_ip or listen_ip.ip
            for protocol in protocols:
                candidate: dict[str, Any] = {
                    "foundation": f"{protocol}candidate",
                    "priority": priorities[protocol],
                    "ip": address,
                    "address": address,
                    "protocol": protocol,
                    "port": self.router.allocate_port(),
                    "type": "host",
                }
                if protocol == "tcp":
                    candidate["tcpType"] = "passive"
                candidates.append(candidate)
        return candidates

    @property
    def id(self) -> str:
        """Engine assigned transport id."""
        return self._id

    @property
    def ice_parameters(self) -> dict[str, Any]:
        """Server side ICE parameters."""
        return self._ice_parameters

    @property
    def ice_candidates(self) -> list[dict[str, Any]]:
        """Server side ICE candidates."""
        return self._ice_candidates

    @property
    def dtls_parameters(self) -> dict[str, Any]:
        """Server side DTLS parameters."""
        return self._dtls_parameters

    def _ensure_open(self) -> None:
        if self._closed:
            raise LocalEngineError(f"Transport {self._id} is closed")

    async def connect(self, dtls_parameters: dict[str, Any]) -> None:
        """Record the remote DTLS parameters."""
        self._ensure_open()
        if self.connected:
            raise LocalEngineError("connect() already called")
        fingerprints = dtls_parameters.get("fingerprints")
        if not isinstance(fingerprints, list) or not fingerprints:
            raise LocalEngineError("dtlsParameters must contain at least one fingerprint")
        # Yield like a real engine round trip would
        await asyncio.sleep(0)
        self.remote_dtls_parameters = dtls_parameters
        self.connected = True

    async def produce(
        self,
        kind: MediaKind,
        rtp_parameters: dict[str, Any],
        app_data: dict[str, Any] | None = None,
    ) -> LocalProducer:
        """Create a producer after validating its codecs against the router."""
        self._ensure_open()
        codecs = rtp_parameters.get("codecs")
        if not isinstance(codecs, list) or not codecs:
            raise LocalEngineError("rtpParameters must contain at least one codec")
        for codec in codecs:
            if not isinstance(codec, dict):
                raise LocalEngineError("Invalid codec entry in rtpParameters")
            if _is_rtx(codec):
                continue
            mime_type = str(codec.get("mimeType", ""))
            if mime_type.split("/", 1)[0].lower() != kind.value:
                raise LocalEngineError(f"Codec {mime_type} does not match kind {kind.value}")
            if not self.router.supports(codec):
                raise LocalEngineError(f"Codec {mime_type} is not supported by the router")
        await asyncio.sleep(0)
        self._ensure_open()
        producer = LocalProducer(self, kind, rtp_parameters, app_data)
        self.producers.add(producer)
        self.router.producers[producer.id] = producer
        logger.debug("Producer %s created on transport %s", producer.id, self._id)
        return producer

    async def consume(
        self,
        producer_id: str,
        rtp_capabilities: dict[str, Any],
        *,
        paused: bool = True,
    ) -> LocalConsumer:
        """Create a consumer for a producer of the same router."""
        self._ensure_open()
        producer = self.router.producers.get(producer_id)
        if producer is None:
            raise LocalEngineError(f"Producer {producer_id} not found")
        matched = self.router.match_codecs(producer, rtp_capabilities)
        if not matched:
            raise LocalEngineError(f"Cannot consume producer {producer_id}")
        await asyncio.sleep(0)
        self._ensure_open()
        if producer.closed:
            raise LocalEngineError(f"Producer {producer_id} closed")
        rtp_parameters = {
            "mid": str(self.router.next_mid()),
            "codecs": matched,
            "headerExtensions": [],
            "encodings": [{"ssrc": secrets.randbelow(2**32 - 1) + 1}],
            "rtcp": {"cname": secrets.token_hex(8), "reducedSize": True},
        }
        consumer = LocalConsumer(self, producer, rtp_parameters, paused=paused)
        self.consumers.add(consumer)
        producer.consumers.add(consumer)
        logger.debug("Consumer %s created on transport %s", consumer.id, self._id)
        return consumer

    def close(self) -> None:
        """Close the transport with all producers and consumers on it."""
        self._close(CLOSE_REASON_LOCAL)

    def _close(self, reason: str) -> None:
        if not self._mark_closed(reason):
            return
        logger.debug("Transport %s closed (%s)", self._id, reason)
        self.router.transports.discard(self)
        for producer in list(self.producers):
            producer._close(CLOSE_REASON_TRANSPORT)  # noqa: SLF001
        for consumer in list(self.consumers):
            consumer._close(CLOSE_REASON_TRANSPORT)  # noqa: SLF001


class LocalRouter(Router):
    """Router of the local engine."""

    def __init__(self, media_codecs: list[MediaCodec]) -> None:
        """Initialize a router. Created through LocalMediaEngine.create_router only."""
        super().__init__()
        self._id = generate_id()
        self.transports: set[LocalTransport] = set()
        self.producers: dict[str, LocalProducer] = {}
        self._ports = count(FIRST_RTC_PORT)
        self._mids = count()
        self._rtp_capabilities = self._build_capabilities(media_codecs)

    @staticmethod
    def _build_capabilities(media_codecs: list[MediaCodec]) -> dict[str, Any]:
        codecs = []
        for payload_type, codec in enumerate(media_codecs, start=FIRST_DYNAMIC_PAYLOAD_TYPE):
            entry: dict[str, Any] = {
                "kind": codec.kind.value,
                "mimeType": codec.mime_type,
                "clockRate": codec.clock_rate,
                "preferredPayloadType": payload_type,
                "parameters": dict(codec.parameters),
                "rtcpFeedback": [],
            }
            if codec.kind == MediaKind.AUDIO:
                entry["channels"] = codec.channels or 1
            else:
                entry["rtcpFeedback"] = [
                    {"type": "nack"},
                    {"type": "nack", "parameter": "pli"},
                    {"type": "ccm", "parameter": "fir"},
                    {"type": "goog-remb"},
                ]
            codecs.append(entry)
        return {"codecs": codecs, "headerExtensions": []}

    @property
    def id(self) -> str:
        """Engine assigned router id."""
        return self._id

    @property
    def rtp_capabilities(self) -> dict[str, Any]:
        """RTP capabilities devices load before producing or consuming."""
        return self._rtp_capabilities

    def allocate_port(self) -> int:
        """Return the next port number for an ICE candidate."""
        return next(self._ports)

    def next_mid(self) -> int:
        """Return the next media section id for a consumer."""
        return next(self._mids)

    def supports(self, codec: dict[str, Any]) -> bool:
        """Whether a producer codec is one of the router's codecs."""
        key = _codec_key(codec)
        return any(_codec_key(own) == key for own in self._rtp_capabilities["codecs"])

    def match_codecs(
        self, producer: LocalProducer, rtp_capabilities: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """Producer codecs the receiving device supports, with the device's payload types."""
        if not isinstance(rtp_capabilities, dict):
            return []
        device_codecs = rtp_capabilities.get("codecs")
        if not isinstance(device_codecs, list):
            return []
        by_key = {_codec_key(c): c for c in device_codecs if isinstance(c, dict)}
        matched = []
        for codec in producer.rtp_parameters.get("codecs", []):
            if _is_rtx(codec):
                continue
            device_codec = by_key.get(_codec_key(codec))
            if device_codec is None:
                continue
            consumer_codec = dict(codec)
            if "preferredPayloadType" in device_codec:
                consumer_codec["payloadType"] = device_codec["preferredPayloadType"]
            matched.append(consumer_codec)
        return matched

    async def can_consume(self, producer_id: str, rtp_capabilities: dict[str, Any]) -> bool:
        """Whether a device with the given capabilities can receive the producer."""
        producer = self.producers.get(producer_id)
        if producer is None or producer.closed:
            return False
        return bool(self.match_codecs(producer, rtp_capabilities))

    async def create_webrtc_transport(self, config: WebRtcTransportConfig) -> LocalTransport:
        """Allocate a new transport."""
        if self._closed:
            raise LocalEngineError("Router is closed")
        await asyncio.sleep(0)
        if self._closed:
            raise LocalEngineError("Router is closed")
        transport = LocalTransport(self, config)
        self.transports.add(transport)
        logger.debug("Transport %s created", transport.id)
        return transport

    def close(self) -> None:
        """Close the router and every transport on it."""
        if not self._mark_closed(CLOSE_REASON_LOCAL):
            return
        for transport in list(self.transports):
            transport._close(CLOSE_REASON_LOCAL)  # noqa: SLF001


class LocalMediaEngine(MediaEngine):
    """Media engine living in the signaling process."""

    def __init__(self) -> None:
        """Initialize an engine without routers."""
        self._routers: list[LocalRouter] = []

    async def create_router(self, media_codecs: list[MediaCodec]) -> LocalRouter:
        """Create a router accepting the given codecs."""
        router = LocalRouter(media_codecs)
        self._routers.append(router)
        logger.info("Router %s created with %d codecs", router.id, len(media_codecs))
        return router

    async def close(self) -> None:
        """Close every router."""
        for router in self._routers:
            router.close()
        self._routers.clear()
