"""SFU signaling client implementation to connect to a SfuServer."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

from aiohttp import ClientSession, ClientWebSocketResponse, WSMessage, WSMsgType

from aiosfu.exceptions import IncompatibleError, NotFoundError, SfuError
from aiosfu.models.core import (
    CloseProducerMessage,
    CloseProducerPayload,
    ConnectConsumerTransportMessage,
    ConnectProducerTransportMessage,
    ConnectTransportPayload,
    ConsumeFailedMessage,
    ConsumeMessage,
    ConsumePayload,
    ConsumerCreatedMessage,
    ConsumerCreatedPayload,
    ConsumerTransportCreatedMessage,
    CreateConsumerTransportMessage,
    CreateProducerTransportMessage,
    ErrorMessage,
    NewProducerMessage,
    PeerDepartedMessage,
    ProduceMessage,
    ProducePayload,
    ProducerClosedMessage,
    ProducerClosedPayload,
    ProducerCreatedMessage,
    ProducerInfo,
    ProducerTransportCreatedMessage,
    ResumeConsumerMessage,
    ResumeConsumerPayload,
    RouterCapabilitiesMessage,
    TransportCreatedPayload,
)
from aiosfu.models.types import ClientMessage, ConsumeFailureReason, MediaKind, ServerMessage

logger = logging.getLogger(__name__)

NewProducerCallback = Callable[[ProducerInfo], None]
"""Called with a producer another peer started."""
ProducerClosedCallback = Callable[[ProducerClosedPayload], None]
"""Called when a producer of another peer stopped."""
PeerDepartedCallback = Callable[[str], None]
"""Called with the id of a peer that left."""
ErrorCallback = Callable[[str], None]
"""Called with the message of every error reply."""
DisconnectCallback = Callable[[], None]
"""Called after the client disconnected."""


class RequestError(SfuError):
    """The server answered a request with an error reply."""


@dataclass
class _PendingRequest:
    """A request waiting for one of the expected reply types."""

    action: str
    expected: tuple[type[ServerMessage], ...]
    future: asyncio.Future[ServerMessage] = field(repr=False)


class SfuClient:
    """
    Async client for the SFU signaling protocol.

    Sends negotiation requests and awaits their replies. The server handles the
    requests of a peer strictly in order, so replies are matched to the oldest
    pending request expecting them. Error replies name the failed action and fail the
    oldest pending request of that action.
    Requests without a reply on success (connecting transports, resuming consumers,
    closing producers) are not awaited; their errors reach the error listeners.
    """

    _session: ClientSession | None
    """Optional aiohttp ClientSession for WebSocket connection."""
    _owns_session: bool
    """Whether this client owns and should close the session."""
    _loop: asyncio.AbstractEventLoop
    _ws: ClientWebSocketResponse | None = None
    """WebSocket connection to the server."""
    _connected: bool = False
    _reader_task: asyncio.Task[None] | None = None
    """Background task reading messages from server."""
    _send_lock: asyncio.Lock
    """Lock for serializing WebSocket message sends."""
    _welcome: asyncio.Future[RouterCapabilitiesMessage] | None = None
    _pending: deque[_PendingRequest]
    _request_timeout: float

    _peer_id: str | None = None
    _router_rtp_capabilities: dict[str, Any] | None = None
    _producers: dict[str, ProducerInfo]
    """Active producers of other peers, keyed by producer id."""

    _new_producer_callbacks: list[NewProducerCallback]
    _producer_closed_callbacks: list[ProducerClosedCallback]
    _peer_departed_callbacks: list[PeerDepartedCallback]
    _error_callbacks: list[ErrorCallback]
    _disconnect_callbacks: list[DisconnectCallback]

    def __init__(
        self,
        *,
        session: ClientSession | None = None,
        request_timeout: float = 10.0,
    ) -> None:
        """
        Create a new client instance. Must be called within a running event loop.

        Args:
            session: Optional aiohttp ClientSession. If None, a session is created
                and managed by this client.
            request_timeout: Seconds to wait for the reply of a request.
        """
        self._session = session
        self._owns_session = session is None
        self._loop = asyncio.get_running_loop()
        self._send_lock = asyncio.Lock()
        self._pending = deque()
        self._request_timeout = request_timeout
        self._producers = {}
        self._new_producer_callbacks = []
        self._producer_closed_callbacks = []
        self._peer_departed_callbacks = []
        self._error_callbacks = []
        self._disconnect_callbacks = []

    @property
    def connected(self) -> bool:
        """Return True if the client currently has an active connection."""
        return self._connected and self._ws is not None and not self._ws.closed

    @property
    def peer_id(self) -> str | None:
        """Session id the server assigned to this client."""
        return self._peer_id

    @property
    def router_rtp_capabilities(self) -> dict[str, Any] | None:
        """RTP capabilities of the server's router."""
        return self._router_rtp_capabilities

    @property
    def producers(self) -> dict[str, ProducerInfo]:
        """Active producers of other peers as currently known to this client."""
        return dict(self._producers)

    async def connect(self, url: str) -> None:
        """Connect to a SFU server and wait for its greeting."""
        if self.connected:
            logger.debug("Already connected")
            return

        if self._session is None:
            self._session = ClientSession()

        logger.info("Connecting to SFU server at %s", url)
        self._ws = await self._session.ws_connect(url, heartbeat=30)
        self._connected = True
        self._welcome = self._loop.create_future()
        self._reader_task = self._loop.create_task(self._reader_loop())

        try:
            async with asyncio.timeout(self._request_timeout):
                welcome = await self._welcome
        except TimeoutError as err:
            await self.disconnect()
            raise TimeoutError("Timed out waiting for routerRtpCapabilities") from err
        logger.info(
            "Joined as peer %s with %d existing producers",
            welcome.data.peer_id,
            len(welcome.data.existing_producers),
        )

    async def disconnect(self) -> None:
        """Disconnect from the server and release resources."""
        self._connected = False
        current_task = asyncio.current_task(loop=self._loop)

        if self._reader_task is not None:
            if self._reader_task is not current_task:
                self._reader_task.cancel()
                with suppress(asyncio.CancelledError):
                    await self._reader_task
            self._reader_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

        while self._pending:
            pending = self._pending.popleft()
            if not pending.future.done():
                pending.future.set_exception(ConnectionError("Disconnected from server"))
        if self._welcome is not None and not self._welcome.done():
            self._welcome.set_exception(ConnectionError("Disconnected from server"))
        self._welcome = None
        self._peer_id = None
        self._router_rtp_capabilities = None
        self._producers.clear()

        self._notify_disconnect_callback()

    # Requests

    async def create_producer_transport(self) -> TransportCreatedPayload:
        """Create the send transport of this peer."""
        reply = await self._request(
            CreateProducerTransportMessage(), ProducerTransportCreatedMessage
        )
        assert isinstance(reply, ProducerTransportCreatedMessage)
        return reply.data

    async def create_consumer_transport(self) -> TransportCreatedPayload:
        """Create the receive transport of this peer."""
        reply = await self._request(
            CreateConsumerTransportMessage(), ConsumerTransportCreatedMessage
        )
        assert isinstance(reply, ConsumerTransportCreatedMessage)
        return reply.data

    async def connect_producer_transport(self, dtls_parameters: dict[str, Any]) -> None:
        """Send the local DTLS parameters of the send transport."""
        await self._send_message(
            ConnectProducerTransportMessage(
                data=ConnectTransportPayload(dtls_parameters=dtls_parameters)
            )
        )

    async def connect_consumer_transport(self, dtls_parameters: dict[str, Any]) -> None:
        """Send the local DTLS parameters of the receive transport."""
        await self._send_message(
            ConnectConsumerTransportMessage(
                data=ConnectTransportPayload(dtls_parameters=dtls_parameters)
            )
        )

    async def produce(
        self,
        kind: MediaKind,
        rtp_parameters: dict[str, Any],
        app_data: dict[str, Any] | None = None,
    ) -> str:
        """Start a producer and return its id."""
        reply = await self._request(
            ProduceMessage(
                data=ProducePayload(kind=kind, rtp_parameters=rtp_parameters, app_data=app_data)
            ),
            ProducerCreatedMessage,
        )
        assert isinstance(reply, ProducerCreatedMessage)
        return reply.data.id

    async def consume(
        self, producer_id: str, rtp_capabilities: dict[str, Any]
    ) -> ConsumerCreatedPayload:
        """
        Subscribe to a producer of another peer.

        Raises:
            NotFoundError: If the producer or the receive transport does not exist.
            IncompatibleError: If the capabilities cannot receive the producer.
        """
        reply = await self._request(
            ConsumeMessage(
                data=ConsumePayload(producer_id=producer_id, rtp_capabilities=rtp_capabilities)
            ),
            ConsumerCreatedMessage,
            ConsumeFailedMessage,
        )
        if isinstance(reply, ConsumeFailedMessage):
            reason = reply.data.reason
            if reason == ConsumeFailureReason.CANNOT_CONSUME:
                raise IncompatibleError(f"Cannot consume producer {producer_id}")
            raise NotFoundError(f"Consume of {producer_id} failed: {reason.value}")
        assert isinstance(reply, ConsumerCreatedMessage)
        return reply.data

    async def resume_consumer(self, consumer_id: str) -> None:
        """Start media flow on a consumer."""
        await self._send_message(
            ResumeConsumerMessage(data=ResumeConsumerPayload(consumer_id=consumer_id))
        )

    async def close_producer(self, producer_id: str) -> None:
        """Stop one of this peer's producers."""
        await self._send_message(
            CloseProducerMessage(data=CloseProducerPayload(producer_id=producer_id))
        )

    async def _request(
        self, message: ClientMessage, *expected: type[ServerMessage]
    ) -> ServerMessage:
        pending = _PendingRequest(
            action=getattr(message, "action", type(message).__name__),
            expected=expected,
            future=self._loop.create_future(),
        )
        self._pending.append(pending)
        try:
            await self._send_message(message)
            async with asyncio.timeout(self._request_timeout):
                return await pending.future
        finally:
            with suppress(ValueError):
                self._pending.remove(pending)

    async def _send_message(self, message: ClientMessage) -> None:
        if not self._ws:
            raise RuntimeError("WebSocket is not connected")
        async with self._send_lock:
            await self._ws.send_str(message.to_json())

    # Listeners

    def add_new_producer_listener(self, callback: NewProducerCallback) -> Callable[[], None]:
        """Add a listener for producers started by other peers.

        Returns:
            A function that removes this listener when called.
        """
        self._new_producer_callbacks.append(callback)
        return lambda: (
            self._new_producer_callbacks.remove(callback)
            if callback in self._new_producer_callbacks
            else None
        )

    def add_producer_closed_listener(self, callback: ProducerClosedCallback) -> Callable[[], None]:
        """Add a listener for producers of other peers that stopped.

        Returns:
            A function that removes this listener when called.
        """
        self._producer_closed_callbacks.append(callback)
        return lambda: (
            self._producer_closed_callbacks.remove(callback)
            if callback in self._producer_closed_callbacks
            else None
        )

    def add_peer_departed_listener(self, callback: PeerDepartedCallback) -> Callable[[], None]:
        """Add a listener for peers leaving the session.

        Returns:
            A function that removes this listener when called.
        """
        self._peer_departed_callbacks.append(callback)
        return lambda: (
            self._peer_departed_callbacks.remove(callback)
            if callback in self._peer_departed_callbacks
            else None
        )

    def add_error_listener(self, callback: ErrorCallback) -> Callable[[], None]:
        """Add a listener for error replies.

        Returns:
            A function that removes this listener when called.
        """
        self._error_callbacks.append(callback)
        return lambda: (
            self._error_callbacks.remove(callback) if callback in self._error_callbacks else None
        )

    def add_disconnect_listener(self, callback: DisconnectCallback) -> Callable[[], None]:
        """Add a listener for disconnect events.

        Returns:
            A function that removes this listener when called.
        """
        self._disconnect_callbacks.append(callback)
        return lambda: (
            self._disconnect_callbacks.remove(callback)
            if callback in self._disconnect_callbacks
            else None
        )

    # Inbound messages

    async def _reader_loop(self) -> None:
        assert self._ws is not None
        try:
            async for msg in self._ws:
                await self._handle_ws_message(msg)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("WebSocket reader encountered an error")
        finally:
            if self._connected:
                await self.disconnect()

    async def _handle_ws_message(self, msg: WSMessage) -> None:
        if msg.type is WSMsgType.TEXT:
            self._handle_json_message(msg.data)
        elif msg.type is WSMsgType.BINARY:
            logger.warning("Ignoring binary message from server")
        elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
            logger.info("WebSocket closed by server")
            await self.disconnect()
        elif msg.type is WSMsgType.ERROR:
            logger.error("WebSocket error: %s", self._ws.exception() if self._ws else "unknown")
            await self.disconnect()

    def _handle_json_message(self, data: str) -> None:
        try:
            message = ServerMessage.from_json(data)
        except Exception:
            logger.exception("Failed to parse server message: %s", data)
            return

        match message:
            case RouterCapabilitiesMessage():
                self._handle_welcome(message)
            case NewProducerMessage(payload):
                self._producers[payload.producer_id] = payload
                self._notify_callbacks(self._new_producer_callbacks, payload)
            case ProducerClosedMessage(payload):
                self._producers.pop(payload.producer_id, None)
                self._notify_callbacks(self._producer_closed_callbacks, payload)
            case PeerDepartedMessage(payload):
                for producer_id, info in list(self._producers.items()):
                    if info.peer_id == payload.peer_id:
                        del self._producers[producer_id]
                self._notify_callbacks(self._peer_departed_callbacks, payload.peer_id)
            case ErrorMessage(payload):
                logger.warning("Server reported an error: %s", payload.message)
                self._fail_request(RequestError(payload.message), payload.action)
                self._notify_callbacks(self._error_callbacks, payload.message)
            case _:
                self._resolve_request(message)

    def _handle_welcome(self, message: RouterCapabilitiesMessage) -> None:
        self._peer_id = message.data.peer_id
        self._router_rtp_capabilities = message.data.router_rtp_capabilities
        self._producers = {info.producer_id: info for info in message.data.existing_producers}
        if self._welcome is not None and not self._welcome.done():
            self._welcome.set_result(message)

    def _resolve_request(self, message: ServerMessage) -> None:
        for pending in self._pending:
            if isinstance(message, pending.expected) and not pending.future.done():
                self._pending.remove(pending)
                pending.future.set_result(message)
                return
        logger.debug("Unexpected reply %s", type(message).__name__)

    def _fail_request(self, err: Exception, action: str | None) -> None:
        """
        Fail the oldest pending request of the action an error reply names.

        Errors for requests that expect no reply (connect, resume, closeProducer) match
        no pending request and only reach the error listeners. Error replies without an
        action fail the oldest pending request.
        """
        for pending in self._pending:
            if action is not None and pending.action != action:
                continue
            if not pending.future.done():
                self._pending.remove(pending)
                pending.future.set_exception(err)
                return

    def _notify_callbacks(self, callbacks: list[Callable[[Any], None]], value: Any) -> None:
        for callback in list(callbacks):
            try:
                callback(value)
            except Exception:
                logger.exception("Error in callback %s", callback)

    def _notify_disconnect_callback(self) -> None:
        for callback in list(self._disconnect_callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Error in disconnect callback %s", callback)
