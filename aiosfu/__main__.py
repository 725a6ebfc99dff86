"""Run a SFU signaling server: python -m aiosfu."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import socket
import sys
from dataclasses import replace

from aiosfu.config import ListenIp, SfuConfig, load_config
from aiosfu.server import SfuServer
from aiosfu.util import generate_id, get_local_ip

logger = logging.getLogger("aiosfu")


def build_parser() -> argparse.ArgumentParser:
    """Command line options of the server."""
    parser = argparse.ArgumentParser(
        prog="aiosfu", description="SFU signaling and session orchestration server"
    )
    parser.add_argument("--host", help="Address to listen on (default: config or 0.0.0.0)")
    parser.add_argument("--port", type=int, help="TCP port to listen on (default: config or 3001)")
    parser.add_argument("--config", help="Path to a JSON configuration file")
    parser.add_argument(
        "--announced-ip",
        help="IP announced to peers in ICE candidates; 'auto' detects the local address",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--advertise",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Advertise the server via mDNS (default: config or off)",
    )
    parser.add_argument("--name", default=socket.gethostname(), help="Server name")
    return parser


def resolve_config(args: argparse.Namespace) -> SfuConfig:
    """Load the configuration file and apply command line overrides."""
    config = load_config(args.config) if args.config else SfuConfig()
    overrides: dict[str, object] = {}
    if args.host is not None:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.advertise is not None:
        overrides["advertise_mdns"] = args.advertise
    if args.announced_ip is not None:
        announced_ip = get_local_ip() if args.announced_ip == "auto" else args.announced_ip
        listen_ips = [
            ListenIp(ip=listen_ip.ip, announced_ip=announced_ip)
            for listen_ip in config.webrtc_transport.listen_ips
        ]
        overrides["webrtc_transport"] = replace(config.webrtc_transport, listen_ips=listen_ips)
    return replace(config, **overrides) if overrides else config


async def serve(config: SfuConfig, name: str) -> None:
    """Run the server until cancelled."""
    server = SfuServer(asyncio.get_running_loop(), generate_id(), name, config=config)
    await server.start_server()
    try:
        await asyncio.Event().wait()
    finally:
        logger.info("Shutting down")
        await server.close()


def main(argv: list[str] | None = None) -> int:
    """Entry point of the command line interface."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = resolve_config(args)
    except (OSError, ValueError) as err:
        logger.error("Invalid configuration: %s", err)
        return 2
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(serve(config, args.name))
    return 0


if __name__ == "__main__":
    sys.exit(main())
