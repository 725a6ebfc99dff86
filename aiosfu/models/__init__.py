"""Models for the aiosfu signaling protocol."""

from __future__ import annotations

__all__ = [
    "CLIENT_ACTIONS",
    "ClientMessage",
    "ConsumeFailureReason",
    "ConsumerState",
    "MediaKind",
    "ServerMessage",
    "TransportRole",
    "TransportState",
    "UnsupportedMessage",
    "core",
    "parse_client_message",
    "parse_envelope",
    "types",
]

from typing import Any

import orjson
from mashumaro.exceptions import InvalidFieldValue, MissingField, SuitableVariantNotFoundError

from aiosfu.exceptions import InvalidMessageData, ProtocolFault

from . import core, types
from .core import CLIENT_ACTIONS, UnsupportedMessage
from .types import (
    ClientMessage,
    ConsumeFailureReason,
    ConsumerState,
    MediaKind,
    ServerMessage,
    TransportRole,
    TransportState,
)


def parse_envelope(raw: str | bytes) -> dict[str, Any]:
    """
    Decode a text frame into an envelope dict.

    Raises:
        ProtocolFault: If the frame is not JSON, not an object, or has no string action.
    """
    try:
        envelope = orjson.loads(raw)
    except orjson.JSONDecodeError as err:
        raise ProtocolFault(f"Envelope is not valid JSON: {err}") from err
    if not isinstance(envelope, dict):
        raise ProtocolFault(f"Envelope must be an object, got {type(envelope).__name__}")
    action = envelope.get("action")
    if not isinstance(action, str):
        raise ProtocolFault("Envelope has no string 'action' field")
    if envelope.get("data") is None:
        # Clients omit data (or send null) for requests without parameters
        envelope.pop("data", None)
    return envelope


def parse_client_message(raw: str | bytes) -> ClientMessage | UnsupportedMessage:
    """
    Parse a text frame received from a peer.

    Returns an UnsupportedMessage for well-formed envelopes carrying an unknown action.

    Raises:
        ProtocolFault: If the envelope is unparsable (see parse_envelope).
        InvalidMessageData: If the action is known but its data does not match its schema.
    """
    envelope = parse_envelope(raw)
    action = envelope["action"]
    if action not in CLIENT_ACTIONS:
        return UnsupportedMessage(action=action, data=envelope.get("data"))
    try:
        return ClientMessage.from_dict(envelope)
    except (
        MissingField,
        InvalidFieldValue,
        SuitableVariantNotFoundError,
        TypeError,
        ValueError,
    ) as err:
        raise InvalidMessageData(action, f"Invalid data for '{action}': {err}") from err
