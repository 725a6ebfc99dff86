"""SFU signaling server and session orchestration."""

from .capability import CapabilityClient
from .cleanup import CleanupCoordinator
from .coordinator import SignalingCoordinator
from .fanout import Notifier
from .negotiation import PeerNegotiator
from .peer import SfuPeer
from .registry import (
    ConsumerEntry,
    Peer,
    PeerConnection,
    ProducerEntry,
    SessionRegistry,
    TransportEntry,
)
from .server import PeerJoinedEvent, PeerLeftEvent, SfuEvent, SfuServer

__all__ = [
    "CapabilityClient",
    "CleanupCoordinator",
    "ConsumerEntry",
    "Notifier",
    "Peer",
    "PeerConnection",
    "PeerJoinedEvent",
    "PeerLeftEvent",
    "PeerNegotiator",
    "ProducerEntry",
    "SessionRegistry",
    "SfuEvent",
    "SfuPeer",
    "SfuServer",
    "SignalingCoordinator",
    "TransportEntry",
]
