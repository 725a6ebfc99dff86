"""Represents a single peer connected to the server over a WebSocket."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import TYPE_CHECKING, cast

from aiohttp import WSMsgType, web

from aiosfu.exceptions import InvalidMessageData, ProtocolFault
from aiosfu.models import parse_client_message
from aiosfu.models.core import ErrorMessage, ErrorPayload
from aiosfu.models.types import ServerMessage

from .negotiation import PeerNegotiator

logger = logging.getLogger(__name__)

# The cyclic import is not an issue during runtime, so hide it
# pyright: reportImportCycles=none
if TYPE_CHECKING:
    from .server import SfuServer


class SfuPeer:
    """
    A peer connected to a SfuServer.

    Owns the WebSocket of one participant: a message loop feeding the peer's negotiator
    and a writer task draining a bounded queue of outbound messages.
    """

    _server: SfuServer
    _request: web.Request
    _wsock: web.WebSocketResponse
    _negotiator: PeerNegotiator | None = None
    _writer_task: asyncio.Task[None] | None = None
    """Task responsible for sending messages."""
    _message_loop_task: asyncio.Task[None] | None = None
    """Task responsible for receiving and processing messages."""
    _to_write: asyncio.Queue[ServerMessage]
    """Queue for messages to be sent to the peer through the WebSocket."""
    _disconnecting: bool = False
    """Flag to prevent multiple concurrent disconnects."""
    _logger: logging.Logger

    def __init__(self, server: SfuServer, request: web.Request) -> None:
        """
        DO NOT CALL THIS CONSTRUCTOR. INTERNAL USE ONLY.

        Peers are created by SfuServer for every incoming WebSocket request.

        Args:
            server: The SfuServer instance this peer belongs to.
            request: Web request upgrading to the WebSocket.
        """
        self._server = server
        self._request = request
        self._wsock = web.WebSocketResponse(heartbeat=server.config.heartbeat)
        self._to_write = asyncio.Queue(maxsize=server.config.max_pending_messages)
        self._disconnecting = False
        self._logger = logger.getChild(f"unknown-{request.remote}")
        self._logger.debug("Peer initialized")

    @property
    def peer_id(self) -> str | None:
        """Session id, None until the peer joined."""
        if self._negotiator is None:
            return None
        return self._negotiator.peer_id

    @property
    def websocket_connection(self) -> web.WebSocketResponse:
        """WebSocket of this peer."""
        return self._wsock

    @property
    def closing(self) -> bool:
        """Whether this peer is disconnecting."""
        return self._disconnecting

    async def disconnect(self) -> None:
        """Close the channel and release everything the peer owns."""
        if self._disconnecting:
            return
        self._disconnecting = True
        self._logger.debug("Disconnecting peer")

        # Cancel running tasks
        current = asyncio.current_task()
        for task in (self._writer_task, self._message_loop_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

        if not self._wsock.closed:
            try:
                await self._wsock.close()
            except Exception:
                self._logger.exception("Failed to close websocket")

        if (peer_id := self.peer_id) is not None:
            await self._server.coordinator.leave(peer_id)
            self._server._handle_peer_disconnect(self)  # noqa: SLF001

        self._logger.info("Peer disconnected")

    async def _setup_connection(self) -> None:
        """Establish WebSocket connection and join the session."""
        try:
            async with asyncio.timeout(10):
                await self._wsock.prepare(self._request)
        except TimeoutError:
            self._logger.warning("Timeout preparing request")
            raise

        self._logger.debug("Creating writer task")
        self._writer_task = self._server.loop.create_task(self._writer())

        self._negotiator = self._server.coordinator.join(self)
        self._logger = logger.getChild(self._negotiator.peer_id)
        self._logger.info("Connection established from %s", self._request.remote)
        self._server._handle_peer_connect(self)  # noqa: SLF001

    async def _run_message_loop(self) -> None:
        """Run the main message processing loop."""
        assert self._negotiator is not None
        try:
            async for msg in self._wsock:
                if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                    break

                if msg.type == WSMsgType.BINARY:
                    self._logger.warning("Received binary message from peer, ignoring it")
                    continue

                if msg.type != WSMsgType.TEXT:
                    continue

                try:
                    message = parse_client_message(cast("str", msg.data))
                except ProtocolFault as err:
                    self._logger.warning("Dropping malformed message: %s", err)
                    continue
                except InvalidMessageData as err:
                    self._logger.warning("Rejecting message: %s", err)
                    self.send_message(
                        ErrorMessage(data=ErrorPayload(message=str(err), action=err.action))
                    )
                    continue

                try:
                    await self._negotiator.handle(message)
                except Exception:
                    self._logger.exception("Error handling message")
            self._logger.debug("wsock was closed")

        except asyncio.CancelledError:
            self._logger.debug("Message loop cancelled")
        except Exception:
            self._logger.exception("Unexpected error inside websocket API")
        finally:
            # Cancel the writer when message loop exits
            if self._writer_task and not self._writer_task.done():
                self._logger.debug("Message loop finished, cancelling writer")
                self._writer_task.cancel()

    async def _handle_peer(self) -> None:
        """
        Handle the complete websocket connection lifecycle.

        This method is private and should only be called by SfuServer.
        """
        try:
            await self._setup_connection()

            # Run the main message loop as a task so writer can cancel it
            self._message_loop_task = self._server.loop.create_task(self._run_message_loop())
            try:
                await self._message_loop_task
            except asyncio.CancelledError:
                self._logger.debug("Message loop task was cancelled")
        finally:
            await self.disconnect()

    async def _writer(self) -> None:
        """Write outgoing messages from the queue."""
        try:
            while not self._wsock.closed:
                item = await self._to_write.get()
                try:
                    await self._wsock.send_str(item.to_json())
                except ConnectionError:
                    self._logger.warning("Connection error sending data, ending writer task")
                    break
            self._logger.debug("WebSocket connection was closed for the peer, ending writer task")
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.exception("Error in writer task for peer")
        finally:
            # Cancel the message loop when writer exits
            if self._message_loop_task and not self._message_loop_task.done():
                self._logger.debug("Writer finished, cancelling message loop")
                self._message_loop_task.cancel()

    def send_message(self, message: ServerMessage) -> None:
        """
        Enqueue a message to be sent to the peer.

        Never blocks. A peer that falls more than max_pending_messages behind is
        disconnected.
        """
        try:
            self._to_write.put_nowait(message)
        except asyncio.QueueFull:
            # Only trigger disconnect once, even if queue fills repeatedly
            if not self._disconnecting:
                self._logger.error("Message queue full, peer too slow - disconnecting")
                task = self._server.loop.create_task(self.disconnect())
                task.add_done_callback(lambda t: t.exception() if not t.cancelled() else None)
            return
        self._logger.debug("Enqueueing message: %s", type(message).__name__)
