from __future__ import annotations

import orjson
import pytest

from aiosfu.exceptions import InvalidMessageData, ProtocolFault
from aiosfu.models import UnsupportedMessage, parse_client_message, parse_envelope
from aiosfu.models.core import (
    ConsumeFailedMessage,
    ConsumeFailedPayload,
    ConsumeMessage,
    ConsumerCreatedMessage,
    ConsumerCreatedPayload,
    CreateConsumerTransportMessage,
    CreateProducerTransportMessage,
    ErrorMessage,
    ErrorPayload,
    NewProducerMessage,
    ProduceMessage,
    ProducerClosedMessage,
    ProducerClosedPayload,
    ProducerInfo,
    ResumeConsumerMessage,
    RouterCapabilitiesMessage,
    RouterCapabilitiesPayload,
)
from aiosfu.models.types import ConsumeFailureReason, MediaKind, ServerMessage


def test_parse_request_without_data() -> None:
    assert isinstance(
        parse_client_message('{"action": "createProducerTransport"}'),
        CreateProducerTransportMessage,
    )
    assert isinstance(
        parse_client_message('{"action": "createConsumerTransport", "data": null}'),
        CreateConsumerTransportMessage,
    )


def test_parse_produce_uses_camel_case_keys() -> None:
    raw = orjson.dumps(
        {
            "action": "produce",
            "data": {
                "kind": "video",
                "rtpParameters": {"codecs": [{"mimeType": "video/VP8"}]},
                "appData": {"source": "webcam"},
            },
        }
    )
    message = parse_client_message(raw)
    assert isinstance(message, ProduceMessage)
    assert message.data.kind == MediaKind.VIDEO
    assert message.data.rtp_parameters == {"codecs": [{"mimeType": "video/VP8"}]}
    assert message.data.app_data == {"source": "webcam"}


def test_parse_consume_and_resume() -> None:
    consume = parse_client_message(
        '{"action": "consume", "data": {"producerId": "p1", "rtpCapabilities": {"codecs": []}}}'
    )
    assert isinstance(consume, ConsumeMessage)
    assert consume.data.producer_id == "p1"
    assert consume.data.rtp_capabilities == {"codecs": []}

    resume = parse_client_message('{"action": "resumeConsumer", "data": {"consumerId": "c1"}}')
    assert isinstance(resume, ResumeConsumerMessage)
    assert resume.data.consumer_id == "c1"


def test_unknown_action_is_unsupported_not_an_error() -> None:
    message = parse_client_message('{"action": "chat", "data": {"text": "hi"}}')
    assert isinstance(message, UnsupportedMessage)
    assert message.action == "chat"
    assert message.data == {"text": "hi"}


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2, 3]",
        '"produce"',
        '{"data": {}}',
        '{"action": 42}',
    ],
)
def test_malformed_envelope_is_protocol_fault(raw: str) -> None:
    with pytest.raises(ProtocolFault):
        parse_envelope(raw)
    with pytest.raises(ProtocolFault):
        parse_client_message(raw)


@pytest.mark.parametrize(
    "raw",
    [
        '{"action": "consume", "data": {"producerId": "p1"}}',
        '{"action": "produce", "data": {"kind": "screen", "rtpParameters": {}}}',
        '{"action": "resumeConsumer"}',
    ],
)
def test_known_action_with_invalid_data_is_value_error(raw: str) -> None:
    with pytest.raises(ValueError, match="Invalid data for") as exc_info:
        parse_client_message(raw)
    assert isinstance(exc_info.value, InvalidMessageData)
    assert exc_info.value.action == orjson.loads(raw)["action"]


def test_router_capabilities_wire_format() -> None:
    message = RouterCapabilitiesMessage(
        data=RouterCapabilitiesPayload(
            peer_id="peer-b",
            router_rtp_capabilities={"codecs": []},
            existing_producers=[
                ProducerInfo(producer_id="p1", peer_id="peer-a", kind=MediaKind.AUDIO)
            ],
        )
    )
    assert orjson.loads(message.to_json()) == {
        "action": "routerRtpCapabilities",
        "data": {
            "peerId": "peer-b",
            "routerRtpCapabilities": {"codecs": []},
            "existingProducers": [{"producerId": "p1", "peerId": "peer-a", "kind": "audio"}],
        },
    }


def test_consumer_created_wire_format() -> None:
    message = ConsumerCreatedMessage(
        data=ConsumerCreatedPayload(
            producer_id="p1",
            id="c1",
            kind=MediaKind.VIDEO,
            rtp_parameters={"mid": "0"},
            producer_peer_id="peer-a",
        )
    )
    assert orjson.loads(message.to_json()) == {
        "action": "consumerCreated",
        "data": {
            "producerId": "p1",
            "id": "c1",
            "kind": "video",
            "rtpParameters": {"mid": "0"},
            "producerPeerId": "peer-a",
            "type": "simple",
            "producerPaused": False,
        },
    }


def test_optional_fields_are_omitted() -> None:
    failed = ConsumeFailedMessage(
        data=ConsumeFailedPayload(reason=ConsumeFailureReason.CANNOT_CONSUME)
    )
    assert orjson.loads(failed.to_json()) == {
        "action": "consumeFailed",
        "data": {"reason": "cannot consume"},
    }
    closed = ProducerClosedMessage(data=ProducerClosedPayload(producer_id="p1"))
    assert orjson.loads(closed.to_json()) == {
        "action": "producerClosed",
        "data": {"producerId": "p1"},
    }


def test_server_messages_parse_by_action() -> None:
    parsed = ServerMessage.from_json(
        '{"action": "newProducer", "data": {"producerId": "p1", "peerId": "a", "kind": "video"}}'
    )
    assert isinstance(parsed, NewProducerMessage)
    assert parsed.data == ProducerInfo(producer_id="p1", peer_id="a", kind=MediaKind.VIDEO)


def test_error_names_the_failed_action() -> None:
    error = ErrorMessage(data=ErrorPayload(message="Producer p1 not found", action="closeProducer"))
    assert orjson.loads(error.to_json()) == {
        "action": "error",
        "data": {"message": "Producer p1 not found", "action": "closeProducer"},
    }
    assert orjson.loads(ErrorMessage(data=ErrorPayload(message="boom")).to_json()) == {
        "action": "error",
        "data": {"message": "boom"},
    }
