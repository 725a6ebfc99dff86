"""Models for enum types used by aiosfu."""

from dataclasses import dataclass
from enum import Enum

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Discriminator


# Base message classes
@dataclass
class ClientMessage(DataClassORJSONMixin):
    """Base class for client messages."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="action", include_subtypes=True)


@dataclass
class ServerMessage(DataClassORJSONMixin):
    """Base class for server messages."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="action", include_subtypes=True)


# Enums


class MediaKind(Enum):
    """Kind of media carried by a producer or consumer."""

    AUDIO = "audio"
    VIDEO = "video"


class TransportRole(Enum):
    """Direction a transport is negotiated for, seen from the peer."""

    PRODUCER = "producer"
    """Peer sends media to the router."""
    CONSUMER = "consumer"
    """Peer receives media from the router."""


class TransportState(Enum):
    """Lifecycle of a negotiated transport."""

    CREATED = "created"
    CONNECTED = "connected"
    CLOSED = "closed"


class ConsumerState(Enum):
    """Lifecycle of a consumer."""

    CREATED = "created"
    """Consumer exists on the router but is paused until resumed."""
    RESUMED = "resumed"
    CLOSED = "closed"


class ConsumeFailureReason(Enum):
    """Reasons reported in consumeFailed."""

    PRODUCER_NOT_FOUND = "producer not found"
    CANNOT_CONSUME = "cannot consume"
    TRANSPORT_NOT_FOUND = "consumer transport not found"
