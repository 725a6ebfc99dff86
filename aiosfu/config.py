"""Configuration for the aiosfu signaling server."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any

from mashumaro.config import BaseConfig
from mashumaro.exceptions import MissingField
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Alias

from aiosfu.models.types import MediaKind

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3001
DEFAULT_PATH = "/sfu"
DEFAULT_HOST = "0.0.0.0"


@dataclass
class MediaCodec(DataClassORJSONMixin):
    """A codec the router accepts from producers."""

    kind: MediaKind
    mime_type: Annotated[str, Alias("mimeType")]
    """e.g. 'audio/opus' or 'video/VP8'."""
    clock_rate: Annotated[int, Alias("clockRate")]
    channels: int | None = None
    """Only meaningful for audio codecs."""
    parameters: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate field values."""
        if "/" not in self.mime_type:
            raise ValueError(f"mime_type must look like 'kind/name', got {self.mime_type!r}")
        if self.mime_type.split("/", 1)[0].lower() != self.kind.value:
            raise ValueError(f"mime_type {self.mime_type!r} does not match kind {self.kind.value}")
        if self.clock_rate <= 0:
            raise ValueError(f"clock_rate must be positive, got {self.clock_rate}")

    class Config(BaseConfig):
        """Config for parsing json config files."""

        serialize_by_alias = True
        allow_deserialization_not_by_alias = True
        omit_none = True


@dataclass
class ListenIp(DataClassORJSONMixin):
    """Local address a transport binds to, and the address announced to peers."""

    ip: str
    announced_ip: Annotated[str | None, Alias("announcedIp")] = None

    class Config(BaseConfig):
        """Config for parsing json config files."""

        serialize_by_alias = True
        allow_deserialization_not_by_alias = True
        omit_none = True


@dataclass
class WebRtcTransportConfig(DataClassORJSONMixin):
    """Options passed to the media engine for every transport it creates."""

    listen_ips: Annotated[list[ListenIp], Alias("listenIps")] = field(
        default_factory=lambda: [ListenIp(ip="0.0.0.0", announced_ip="127.0.0.1")]
    )
    enable_udp: Annotated[bool, Alias("enableUdp")] = True
    enable_tcp: Annotated[bool, Alias("enableTcp")] = True
    prefer_udp: Annotated[bool, Alias("preferUdp")] = True
    initial_available_outgoing_bitrate: Annotated[
        int | None, Alias("initialAvailableOutgoingBitrate")
    ] = None

    def __post_init__(self) -> None:
        """Validate field values."""
        if not self.listen_ips:
            raise ValueError("listen_ips must contain at least one address")
        if not self.enable_udp and not self.enable_tcp:
            raise ValueError("At least one of enable_udp and enable_tcp must be set")

    class Config(BaseConfig):
        """Config for parsing json config files."""

        serialize_by_alias = True
        allow_deserialization_not_by_alias = True
        omit_none = True


def _default_media_codecs() -> list[MediaCodec]:
    return [
        MediaCodec(
            kind=MediaKind.AUDIO,
            mime_type="audio/opus",
            clock_rate=48000,
            channels=2,
        ),
        MediaCodec(
            kind=MediaKind.VIDEO,
            mime_type="video/VP8",
            clock_rate=90000,
            parameters={"x-google-start-bitrate": 1000},
        ),
    ]


@dataclass
class SfuConfig(DataClassORJSONMixin):
    """Top level configuration of a signaling server."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    path: str = DEFAULT_PATH
    """HTTP path of the WebSocket endpoint."""
    media_codecs: Annotated[list[MediaCodec], Alias("mediaCodecs")] = field(
        default_factory=_default_media_codecs
    )
    webrtc_transport: Annotated[WebRtcTransportConfig, Alias("webRtcTransport")] = field(
        default_factory=WebRtcTransportConfig
    )
    require_connected_consumer_transport: Annotated[
        bool, Alias("requireConnectedConsumerTransport")
    ] = False
    """
    Refuse consume until the receive transport was connected.

    Off by default: mediasoup-client style devices connect the receive transport lazily,
    after their first consumer was created.
    """
    max_pending_messages: Annotated[int, Alias("maxPendingMessages")] = 4096
    """Outbound queue size per peer; a peer that falls further behind is disconnected."""
    heartbeat: float = 55.0
    """WebSocket ping interval in seconds."""
    advertise_mdns: Annotated[bool, Alias("advertiseMdns")] = False

    def __post_init__(self) -> None:
        """Validate field values."""
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port must be between 0 and 65535, got {self.port}")
        if not self.path.startswith("/"):
            raise ValueError(f"path must start with '/', got {self.path!r}")
        if not self.media_codecs:
            raise ValueError("media_codecs must contain at least one codec")
        if self.max_pending_messages <= 0:
            raise ValueError("max_pending_messages must be positive")

    class Config(BaseConfig):
        """Config for parsing json config files."""

        serialize_by_alias = True
        allow_deserialization_not_by_alias = True
        omit_none = True


def load_config(path: str | Path) -> SfuConfig:
    """
    Load a SfuConfig from a JSON file.

    Keys may use either the snake_case or the camelCase spelling.

    Raises:
        OSError: If the file cannot be read.
        ValueError: If the file content is not a valid configuration.
    """
    config_path = Path(path)
    logger.debug("Loading configuration from %s", config_path)
    try:
        return SfuConfig.from_json(config_path.read_bytes())
    except MissingField as err:
        raise ValueError(str(err)) from err
