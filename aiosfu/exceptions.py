"""Exceptions raised by the aiosfu signaling core."""

from __future__ import annotations


class SfuError(Exception):
    """Base class for all aiosfu errors."""


class NotFoundError(SfuError):
    """A peer, transport, producer or consumer referenced by id does not exist."""


class IncompatibleError(SfuError):
    """The receiver's RTP capabilities cannot consume the requested producer."""


class EngineFailure(SfuError):
    """The media engine rejected or failed a capability call."""


class ProtocolFault(SfuError):
    """An inbound message is malformed or semantically invalid."""


class InvalidMessageData(ValueError):
    """A known action arrived with data that does not match the action's schema."""

    def __init__(self, action: str, message: str) -> None:
        """Initialize with the action whose data was rejected."""
        super().__init__(message)
        self.action = action
