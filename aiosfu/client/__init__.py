"""Public interface for the SFU signaling client package."""

from .client import (
    DisconnectCallback,
    ErrorCallback,
    NewProducerCallback,
    PeerDepartedCallback,
    ProducerClosedCallback,
    RequestError,
    SfuClient,
)

__all__ = [
    "DisconnectCallback",
    "ErrorCallback",
    "NewProducerCallback",
    "PeerDepartedCallback",
    "ProducerClosedCallback",
    "RequestError",
    "SfuClient",
]
