from __future__ import annotations

import pytest
from harness import AUDIO_ONLY_CAPABILITIES, DTLS_PARAMETERS, RTP_PARAMETERS

from aiosfu.config import WebRtcTransportConfig
from aiosfu.engine.base import CLOSE_REASON_PRODUCER, CLOSE_REASON_TRANSPORT
from aiosfu.engine.local import LocalEngineError, LocalRouter
from aiosfu.models.types import MediaKind


@pytest.mark.asyncio
async def test_router_capabilities_follow_configured_codecs(router: LocalRouter) -> None:
    codecs = router.rtp_capabilities["codecs"]
    assert [(c["mimeType"], c["preferredPayloadType"]) for c in codecs] == [
        ("audio/opus", 100),
        ("video/VP8", 101),
    ]
    assert codecs[0]["channels"] == 2


@pytest.mark.asyncio
async def test_transport_parameters_and_connect(router: LocalRouter) -> None:
    transport = await router.create_webrtc_transport(WebRtcTransportConfig())
    assert transport.ice_parameters["usernameFragment"]
    assert {c["protocol"] for c in transport.ice_candidates} == {"udp", "tcp"}
    assert all(c["ip"] == "127.0.0.1" for c in transport.ice_candidates)
    assert transport.dtls_parameters["fingerprints"]

    with pytest.raises(LocalEngineError):
        await transport.connect({"role": "client"})
    await transport.connect(DTLS_PARAMETERS)
    with pytest.raises(LocalEngineError, match="already"):
        await transport.connect(DTLS_PARAMETERS)


@pytest.mark.asyncio
async def test_produce_rejects_unsupported_codecs(router: LocalRouter) -> None:
    transport = await router.create_webrtc_transport(WebRtcTransportConfig())
    with pytest.raises(LocalEngineError, match="does not match kind"):
        await transport.produce(MediaKind.AUDIO, RTP_PARAMETERS[MediaKind.VIDEO])
    with pytest.raises(LocalEngineError, match="not supported"):
        await transport.produce(
            MediaKind.VIDEO,
            {"codecs": [{"mimeType": "video/H264", "clockRate": 90000}]},
        )


@pytest.mark.asyncio
async def test_can_consume_matches_codecs(router: LocalRouter) -> None:
    transport = await router.create_webrtc_transport(WebRtcTransportConfig())
    video = await transport.produce(MediaKind.VIDEO, RTP_PARAMETERS[MediaKind.VIDEO])
    audio = await transport.produce(MediaKind.AUDIO, RTP_PARAMETERS[MediaKind.AUDIO])

    assert await router.can_consume(video.id, router.rtp_capabilities)
    assert await router.can_consume(audio.id, AUDIO_ONLY_CAPABILITIES)
    assert not await router.can_consume(video.id, AUDIO_ONLY_CAPABILITIES)
    assert not await router.can_consume("missing", router.rtp_capabilities)
    assert not await router.can_consume(video.id, {"codecs": "bogus"})


@pytest.mark.asyncio
async def test_consumer_uses_device_payload_type(router: LocalRouter) -> None:
    send = await router.create_webrtc_transport(WebRtcTransportConfig())
    recv = await router.create_webrtc_transport(WebRtcTransportConfig())
    producer = await send.produce(MediaKind.VIDEO, RTP_PARAMETERS[MediaKind.VIDEO])

    consumer = await recv.consume(producer.id, router.rtp_capabilities)
    assert consumer.paused
    assert consumer.kind == MediaKind.VIDEO
    assert consumer.rtp_parameters["codecs"][0]["payloadType"] == 101
    await consumer.resume()
    assert not consumer.paused


@pytest.mark.asyncio
async def test_closure_propagates_with_reasons(router: LocalRouter) -> None:
    send = await router.create_webrtc_transport(WebRtcTransportConfig())
    recv = await router.create_webrtc_transport(WebRtcTransportConfig())
    producer = await send.produce(MediaKind.VIDEO, RTP_PARAMETERS[MediaKind.VIDEO])
    consumer = await recv.consume(producer.id, router.rtp_capabilities)

    reasons: dict[str, str] = {}
    producer.add_close_listener(lambda reason: reasons.setdefault("producer", reason))
    consumer.add_close_listener(lambda reason: reasons.setdefault("consumer", reason))

    send.close()

    assert producer.closed
    assert consumer.closed
    assert reasons == {"producer": CLOSE_REASON_TRANSPORT, "consumer": CLOSE_REASON_PRODUCER}
    assert producer.id not in router.producers
    with pytest.raises(LocalEngineError):
        await consumer.resume()


@pytest.mark.asyncio
async def test_removed_close_listener_is_not_called(router: LocalRouter) -> None:
    transport = await router.create_webrtc_transport(WebRtcTransportConfig())
    calls: list[str] = []
    remove = transport.add_close_listener(calls.append)
    remove()
    transport.close()
    transport.close()
    assert calls == []
    assert transport.closed
