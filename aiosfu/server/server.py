"""SFU signaling server accepting WebSocket peers and sharing one media router between them."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass

from aiohttp import web
from zeroconf import InterfaceChoice, IPVersion, NonUniqueNameException
from zeroconf.asyncio import AsyncServiceInfo, AsyncZeroconf

from aiosfu.config import SfuConfig
from aiosfu.engine.base import MediaEngine, Router
from aiosfu.engine.local import LocalMediaEngine
from aiosfu.util import get_local_ip

from .coordinator import SignalingCoordinator
from .peer import SfuPeer

logger = logging.getLogger(__name__)

MDNS_SERVICE_TYPE = "_sfu-signaling._tcp.local."


class SfuEvent:
    """Base event type used by SfuServer.add_event_listener()."""


@dataclass
class PeerJoinedEvent(SfuEvent):
    """A new peer joined the session."""

    peer_id: str


@dataclass
class PeerLeftEvent(SfuEvent):
    """A peer left and its resources were released."""

    peer_id: str


class SfuServer:
    """Signaling server coordinating many peers around a single media router."""

    _peers: set[SfuPeer]
    """Peers that joined the session."""
    _pending_peers: set[SfuPeer]
    """Connections being handled, including those that did not join yet."""
    _loop: asyncio.AbstractEventLoop
    _event_cbs: list[Callable[[SfuServer, SfuEvent], None]]
    _id: str
    _name: str
    _config: SfuConfig
    _engine: MediaEngine
    _owns_engine: bool
    """Whether this server created the media engine and must close it."""
    _router: Router | None
    _coordinator: SignalingCoordinator | None
    _app: web.Application | None
    _app_runner: web.AppRunner | None
    _tcp_site: web.TCPSite | None
    _zc: AsyncZeroconf | None
    """AsyncZeroconf instance."""
    _mdns_service: AsyncServiceInfo | None
    """Registered mDNS service."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        server_id: str,
        server_name: str,
        engine: MediaEngine | None = None,
        config: SfuConfig | None = None,
    ) -> None:
        """
        Initialize a new SFU signaling server.

        Args:
            loop: The asyncio event loop to use for asynchronous operations.
            server_id: Unique identifier for this server instance.
            server_name: Human-readable name for this server.
            engine: Media engine creating the router. If None, a LocalMediaEngine
                owned by this server is used.
            config: Server configuration, defaults are used if None.
        """
        self._peers = set()
        self._pending_peers = set()
        self._loop = loop
        self._event_cbs = []
        self._id = server_id
        self._name = server_name
        self._config = config or SfuConfig()
        if engine is None:
            self._engine = LocalMediaEngine()
            self._owns_engine = True
        else:
            self._engine = engine
            self._owns_engine = False
        self._router = None
        self._coordinator = None
        self._app = None
        self._app_runner = None
        self._tcp_site = None
        self._zc = None
        self._mdns_service = None
        logger.debug("SfuServer initialized: id=%s, name=%s", server_id, server_name)

    @property
    def api_path(self) -> str:
        """HTTP path of the WebSocket endpoint."""
        return self._config.path

    def _create_web_application(self) -> web.Application:
        """Create and configure the aiohttp web application."""
        app = web.Application()
        app.router.add_get(self.api_path, self.on_peer_connect)
        return app

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        """Read-only access to the event loop used by this server."""
        return self._loop

    @property
    def config(self) -> SfuConfig:
        """Configuration of this server."""
        return self._config

    @property
    def coordinator(self) -> SignalingCoordinator:
        """Session coordinator, available once the server was started."""
        if self._coordinator is None:
            raise RuntimeError("Server is not started")
        return self._coordinator

    @property
    def id(self) -> str:
        """Get the unique identifier of this server."""
        return self._id

    @property
    def name(self) -> str:
        """Get the name of this server."""
        return self._name

    @property
    def peers(self) -> set[SfuPeer]:
        """Get the set of all peers connected to this server."""
        return self._peers

    def get_peer(self, peer_id: str) -> SfuPeer | None:
        """Get the peer with the given session id."""
        for peer in self._peers:
            if peer.peer_id == peer_id:
                return peer
        return None

    async def on_peer_connect(self, request: web.Request) -> web.StreamResponse:
        """Handle an incoming WebSocket connection from a peer."""
        logger.debug("Incoming peer connection from %s", request.remote)

        peer = SfuPeer(self, request)
        self._pending_peers.add(peer)
        try:
            await peer._handle_peer()  # noqa: SLF001
        finally:
            self._pending_peers.discard(peer)
        return peer.websocket_connection

    def add_event_listener(
        self, callback: Callable[[SfuServer, SfuEvent], None]
    ) -> Callable[[], None]:
        """
        Register a callback to listen for state changes of the server.

        State changes include:
        - A peer joined
        - A peer left

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def _signal_event(self, event: SfuEvent) -> None:
        """Signal an event to all registered listeners."""
        for cb in self._event_cbs:
            try:
                cb(self, event)
            except Exception:
                logger.exception("Error in event listener")

    def _handle_peer_connect(self, peer: SfuPeer) -> None:
        """Register a peer that joined the session."""
        if peer in self._peers or peer.peer_id is None:
            return
        logger.debug("Adding peer %s to server", peer.peer_id)
        self._peers.add(peer)
        self._signal_event(PeerJoinedEvent(peer.peer_id))

    def _handle_peer_disconnect(self, peer: SfuPeer) -> None:
        """Unregister a peer whose resources were released."""
        if peer not in self._peers or peer.peer_id is None:
            return
        logger.debug("Removing peer %s from server", peer.peer_id)
        self._peers.remove(peer)
        self._signal_event(PeerLeftEvent(peer.peer_id))

    async def start_server(
        self,
        port: int | None = None,
        host: str | None = None,
        advertise_addresses: list[str] | None = None,
        *,
        advertise: bool | None = None,
    ) -> None:
        """
        Start the SFU signaling server.

        Creates the media router, then listens for WebSocket peers on api_path.

        :param port: The TCP port to bind the server to, config.port if None.
        :param host: The IP address for the server to listen on, config.host if None.
        :param advertise_addresses: List of IP addresses to advertise via mDNS.
            If None, auto-detects the local IP address.
        :param advertise: Whether to advertise the server via mDNS as _sfu-signaling,
            config.advertise_mdns if None.
        """
        if self._app is not None:
            logger.warning("Server is already running")
            return

        port = self._config.port if port is None else port
        host = self._config.host if host is None else host
        advertise = self._config.advertise_mdns if advertise is None else advertise

        if self._router is None:
            self._router = await self._engine.create_router(self._config.media_codecs)
            self._coordinator = SignalingCoordinator(self._router, self._config)

        logger.info("Starting SFU signaling server on port %d", port)
        self._app = self._create_web_application()
        self._app_runner = web.AppRunner(self._app)
        await self._app_runner.setup()

        try:
            self._tcp_site = web.TCPSite(
                self._app_runner,
                host=host if host != "0.0.0.0" else None,
                port=port,
            )
            await self._tcp_site.start()
            logger.info(
                "SFU signaling server started successfully on %s:%d%s", host, port, self.api_path
            )
            if advertise:
                self._zc = AsyncZeroconf(
                    ip_version=IPVersion.V4Only,
                    interfaces=[host] if host != "0.0.0.0" else InterfaceChoice.Default,
                )
                if advertise_addresses is not None:
                    addresses = advertise_addresses
                elif local_ip := get_local_ip():
                    addresses = [local_ip]
                else:
                    addresses = []

                if addresses:
                    await self._start_mdns_advertising(
                        addresses=addresses, port=port, path=self.api_path
                    )
                else:
                    logger.warning(
                        "No IP addresses available for mDNS advertising. "
                        "Consider specifying addresses manually via advertise_addresses parameter."
                    )
        except OSError as e:
            logger.error("Failed to start server on %s:%d: %s", host, port, e)
            await self._stop_mdns()
            if self._app_runner:
                await self._app_runner.cleanup()
                self._app_runner = None
            if self._app:
                await self._app.shutdown()
                self._app = None
            raise

    async def stop_server(self) -> None:
        """Stop the HTTP server."""
        await self._stop_mdns()

        if self._tcp_site:
            await self._tcp_site.stop()
            self._tcp_site = None
            logger.debug("TCP site stopped")

        if self._app_runner:
            await self._app_runner.cleanup()
            self._app_runner = None
            logger.debug("App runner cleaned up")

        if self._app:
            await self._app.shutdown()
            self._app = None

    async def close(self) -> None:
        """Close the server, disconnect all peers and release the media router."""
        peers = list(self._pending_peers | self._peers)
        if peers:
            results = await asyncio.gather(
                *(peer.disconnect() for peer in peers), return_exceptions=True
            )
            for peer, result in zip(peers, results, strict=True):
                if isinstance(result, Exception):
                    logger.warning("Error disconnecting peer %s: %s", peer.peer_id, result)

        await self.stop_server()

        if self._coordinator is not None:
            self._coordinator.close()
            self._coordinator = None
        if self._router is not None:
            self._router.close()
            self._router = None
        if self._owns_engine:
            await self._engine.close()
        logger.debug("Closed server %s", self._name)

    async def _start_mdns_advertising(self, addresses: list[str], port: int, path: str) -> None:
        """Start advertising this server via mDNS."""
        assert self._zc is not None
        if self._mdns_service is not None:
            await self._zc.async_unregister_service(self._mdns_service)

        properties = {"path": path, "name": self._name}

        info = AsyncServiceInfo(
            type_=MDNS_SERVICE_TYPE,
            name=f"{self._id}.{MDNS_SERVICE_TYPE}",
            server=f"{self._id}.local.",
            parsed_addresses=addresses,
            port=port,
            properties=properties,
        )
        try:
            await self._zc.async_register_service(info)
            self._mdns_service = info
            logger.debug("mDNS advertising server on port %d with path %s", port, path)
        except NonUniqueNameException:
            logger.error("SFU server with identical name present in the local network!")

    async def _stop_mdns(self) -> None:
        """Stop mDNS advertising if active."""
        if self._zc is None:
            return
        try:
            if self._mdns_service is not None:
                await self._zc.async_unregister_service(self._mdns_service)
        finally:
            await self._zc.async_close()
            self._zc = None
            self._mdns_service = None
