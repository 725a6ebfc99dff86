"""
Signaling messages for the aiosfu protocol.

Every message travels as a JSON text frame shaped as ``{"action": str, "data": object}``.
Client messages drive the negotiation of transports, producers and consumers; server
messages answer those requests and announce changes made by other peers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, Literal

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Alias

from .types import ClientMessage, ConsumeFailureReason, MediaKind, ServerMessage


@dataclass
class WirePayload(DataClassORJSONMixin):
    """Base class for the ``data`` object of a message."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True
        omit_none = True


# Client -> Server: createProducerTransport / createConsumerTransport
@dataclass
class CreateTransportPayload(WirePayload):
    """Transport creation carries no parameters; extra keys sent by clients are ignored."""


@dataclass
class CreateProducerTransportMessage(ClientMessage):
    """Request a send transport for this peer."""

    data: CreateTransportPayload = field(default_factory=CreateTransportPayload)
    action: Literal["createProducerTransport"] = "createProducerTransport"


@dataclass
class CreateConsumerTransportMessage(ClientMessage):
    """Request a receive transport for this peer."""

    data: CreateTransportPayload = field(default_factory=CreateTransportPayload)
    action: Literal["createConsumerTransport"] = "createConsumerTransport"


# Client -> Server: connectProducerTransport / connectConsumerTransport
@dataclass
class ConnectTransportPayload(WirePayload):
    """DTLS parameters of the client side of a transport."""

    dtls_parameters: Annotated[dict[str, Any], Alias("dtlsParameters")]
    """Opaque to the signaling core, passed verbatim to the media engine."""


@dataclass
class ConnectProducerTransportMessage(ClientMessage):
    """Finalize connectivity of the send transport."""

    data: ConnectTransportPayload
    action: Literal["connectProducerTransport"] = "connectProducerTransport"


@dataclass
class ConnectConsumerTransportMessage(ClientMessage):
    """Finalize connectivity of the receive transport."""

    data: ConnectTransportPayload
    action: Literal["connectConsumerTransport"] = "connectConsumerTransport"


# Client -> Server: produce
@dataclass
class ProducePayload(WirePayload):
    """Outbound stream description."""

    kind: MediaKind
    rtp_parameters: Annotated[dict[str, Any], Alias("rtpParameters")]
    app_data: Annotated[dict[str, Any] | None, Alias("appData")] = None


@dataclass
class ProduceMessage(ClientMessage):
    """Start sending a media stream over the send transport."""

    data: ProducePayload
    action: Literal["produce"] = "produce"


# Client -> Server: consume
@dataclass
class ConsumePayload(WirePayload):
    """Subscription request for a remote producer."""

    producer_id: Annotated[str, Alias("producerId")]
    rtp_capabilities: Annotated[dict[str, Any], Alias("rtpCapabilities")]
    """RTP capabilities of the receiving device."""


@dataclass
class ConsumeMessage(ClientMessage):
    """Subscribe to a producer owned by another peer."""

    data: ConsumePayload
    action: Literal["consume"] = "consume"


# Client -> Server: resumeConsumer
@dataclass
class ResumeConsumerPayload(WirePayload):
    """Identifies the consumer to resume."""

    consumer_id: Annotated[str, Alias("consumerId")]


@dataclass
class ResumeConsumerMessage(ClientMessage):
    """Start media flow on a consumer that was created paused."""

    data: ResumeConsumerPayload
    action: Literal["resumeConsumer"] = "resumeConsumer"


# Client -> Server: closeProducer
@dataclass
class CloseProducerPayload(WirePayload):
    """Identifies the producer to close."""

    producer_id: Annotated[str, Alias("producerId")]


@dataclass
class CloseProducerMessage(ClientMessage):
    """Stop sending a media stream."""

    data: CloseProducerPayload
    action: Literal["closeProducer"] = "closeProducer"


CLIENT_ACTIONS = frozenset(
    {
        "createProducerTransport",
        "connectProducerTransport",
        "produce",
        "createConsumerTransport",
        "connectConsumerTransport",
        "consume",
        "resumeConsumer",
        "closeProducer",
    }
)
"""Actions the server knows how to handle."""


@dataclass
class UnsupportedMessage:
    """
    A well-formed envelope carrying an action this server does not implement.

    Not part of the ClientMessage union; handlers log and ignore it.
    """

    action: str
    data: Any = None


# Server -> Client: routerRtpCapabilities
@dataclass
class ProducerInfo(WirePayload):
    """An active producer as announced to other peers."""

    producer_id: Annotated[str, Alias("producerId")]
    peer_id: Annotated[str, Alias("peerId")]
    kind: MediaKind


@dataclass
class RouterCapabilitiesPayload(WirePayload):
    """Sent once right after the channel opens."""

    peer_id: Annotated[str, Alias("peerId")]
    """Session id assigned to the receiving peer."""
    router_rtp_capabilities: Annotated[dict[str, Any], Alias("routerRtpCapabilities")]
    existing_producers: Annotated[list[ProducerInfo], Alias("existingProducers")] = field(
        default_factory=list
    )
    """Producers of other peers active at join time."""


@dataclass
class RouterCapabilitiesMessage(ServerMessage):
    """Greets a new peer with the router capabilities and the current producers."""

    data: RouterCapabilitiesPayload
    action: Literal["routerRtpCapabilities"] = "routerRtpCapabilities"


# Server -> Client: producerTransportCreated / consumerTransportCreated
@dataclass
class TransportCreatedPayload(WirePayload):
    """Negotiation parameters of the server side of a transport."""

    id: str
    ice_parameters: Annotated[dict[str, Any], Alias("iceParameters")]
    ice_candidates: Annotated[list[dict[str, Any]], Alias("iceCandidates")]
    dtls_parameters: Annotated[dict[str, Any], Alias("dtlsParameters")]


@dataclass
class ProducerTransportCreatedMessage(ServerMessage):
    """Reply to createProducerTransport."""

    data: TransportCreatedPayload
    action: Literal["producerTransportCreated"] = "producerTransportCreated"


@dataclass
class ConsumerTransportCreatedMessage(ServerMessage):
    """Reply to createConsumerTransport."""

    data: TransportCreatedPayload
    action: Literal["consumerTransportCreated"] = "consumerTransportCreated"


# Server -> Client: producerCreated
@dataclass
class ProducerCreatedPayload(WirePayload):
    """Id assigned to a new producer."""

    id: str


@dataclass
class ProducerCreatedMessage(ServerMessage):
    """Reply to produce."""

    data: ProducerCreatedPayload
    action: Literal["producerCreated"] = "producerCreated"


# Server -> Client: newProducer
@dataclass
class NewProducerMessage(ServerMessage):
    """Broadcast to every other peer when a producer becomes active."""

    data: ProducerInfo
    action: Literal["newProducer"] = "newProducer"


# Server -> Client: consumerCreated
@dataclass
class ConsumerCreatedPayload(WirePayload):
    """Parameters the receiving device needs to build its consumer."""

    producer_id: Annotated[str, Alias("producerId")]
    id: str
    kind: MediaKind
    rtp_parameters: Annotated[dict[str, Any], Alias("rtpParameters")]
    producer_peer_id: Annotated[str, Alias("producerPeerId")]
    """Peer owning the producer, so the stream can be attributed to a participant."""
    type: str = "simple"
    producer_paused: Annotated[bool, Alias("producerPaused")] = False


@dataclass
class ConsumerCreatedMessage(ServerMessage):
    """Reply to a successful consume."""

    data: ConsumerCreatedPayload
    action: Literal["consumerCreated"] = "consumerCreated"


# Server -> Client: consumeFailed
@dataclass
class ConsumeFailedPayload(WirePayload):
    """Why a consume request was refused."""

    reason: ConsumeFailureReason
    producer_id: Annotated[str | None, Alias("producerId")] = None


@dataclass
class ConsumeFailedMessage(ServerMessage):
    """Reply to a refused consume."""

    data: ConsumeFailedPayload
    action: Literal["consumeFailed"] = "consumeFailed"


# Server -> Client: producerClosed
@dataclass
class ProducerClosedPayload(WirePayload):
    """Producer that stopped, with its owner so clients can drop the matching track."""

    producer_id: Annotated[str, Alias("producerId")]
    peer_id: Annotated[str | None, Alias("peerId")] = None
    kind: MediaKind | None = None


@dataclass
class ProducerClosedMessage(ServerMessage):
    """Announces that a producer (and every consumer of it) is gone."""

    data: ProducerClosedPayload
    action: Literal["producerClosed"] = "producerClosed"


# Server -> Client: peerDeparted
@dataclass
class PeerDepartedPayload(WirePayload):
    """Peer that left."""

    peer_id: Annotated[str, Alias("peerId")]


@dataclass
class PeerDepartedMessage(ServerMessage):
    """Broadcast to the remaining peers after a peer's resources were released."""

    data: PeerDepartedPayload
    action: Literal["peerDeparted"] = "peerDeparted"


# Server -> Client: error
@dataclass
class ErrorPayload(WirePayload):
    """Human-readable description of a failed request."""

    message: str
    action: str | None = None
    """Action of the failed request, when known."""


@dataclass
class ErrorMessage(ServerMessage):
    """Reply to a request whose handler failed. The channel stays open."""

    data: ErrorPayload
    action: Literal["error"] = "error"
