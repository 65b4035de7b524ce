"""Command line entry point: ``latency-measure -m client|server``."""
from __future__ import annotations

import argparse
import logging
import signal
from datetime import datetime, timezone
from typing import List, Optional, Union
from urllib.parse import urlsplit

from . import __version__
from .client import ClientConfig, LatencyClient
from .pdu import LayoutError, check_packet_layout
from .server import LatencyServer, ServerConfig
from .transport import TransportError, format_address

AppConfig = Union[ClientConfig, ServerConfig]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="latency-measure",
        description="Measure round-trip and one-way latency over TCP, WebSocket or HTTP/2",
    )
    parser.add_argument("-m", "--mode", choices=("client", "server"), help="role to run")
    parser.add_argument("-H", "--host", help="server host (client) or bind address (server)")
    parser.add_argument("-p", "--port", type=int, help="TCP port to connect to or listen on")
    parser.add_argument(
        "-i",
        "--interval",
        type=int,
        default=1000,
        help="milliseconds between probes (client only)",
    )
    parser.add_argument(
        "-D",
        "--dual-trip",
        action="store_true",
        help="stamp the server receive time so the client can split the round trip",
    )
    parser.add_argument("-w", "--websocket", action="store_true", help="use WebSocket")
    parser.add_argument("--websocket-uri", help="WebSocket URI, e.g. ws://host:port/path")
    parser.add_argument("--http2", action="store_true", help="use HTTP/2")
    parser.add_argument("--http2-uri", help="HTTP/2 URI, e.g. http://host:port/path")
    parser.add_argument("-d", "--debug", action="store_true", help="verbose logging")
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def config_from_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> AppConfig:
    """Validate ``args`` and build the role's config; usage errors exit with status 2."""

    if args.mode is None:
        parser.error("--mode is required")
    if args.port is not None and not 0 <= args.port <= 65535:
        parser.error(f"--port must be within 0-65535, got {args.port}")
    if args.interval <= 0:
        parser.error(f"--interval must be positive, got {args.interval}")
    websocket = args.websocket or args.websocket_uri is not None
    http2 = args.http2 or args.http2_uri is not None
    if websocket and http2:
        parser.error("choose either WebSocket or HTTP/2, not both")

    if args.mode == "client":
        if websocket:
            if not args.websocket_uri:
                parser.error("--websocket-uri is required for a WebSocket client")
            endpoint = args.websocket_uri
            parts = urlsplit(endpoint)
            if parts.scheme not in ("ws", "wss") or not parts.hostname:
                parser.error(f"--websocket-uri must look like ws://host[:port]/path, got {endpoint}")
        elif http2:
            if not args.http2_uri:
                parser.error("--http2-uri is required for an HTTP/2 client")
            endpoint = args.http2_uri
            parts = urlsplit(endpoint)
            if parts.scheme not in ("http", "https") or not parts.hostname:
                parser.error(f"--http2-uri must look like http://host[:port]/path, got {endpoint}")
        else:
            if not args.host or not args.port:
                parser.error("--host and --port are required for a TCP client")
            endpoint = f"tcp://{format_address((args.host, args.port))}"
        return ClientConfig(endpoint=endpoint, interval_ms=args.interval)

    uri = args.websocket_uri or args.http2_uri
    path = "/"
    port = args.port
    if uri:
        parts = urlsplit(uri)
        path = parts.path or "/"
        if port is None:
            port = parts.port
    if port is None:
        parser.error("--port is required in server mode")
    return ServerConfig(
        host=args.host or "0.0.0.0",
        port=port,
        transport="ws" if websocket else "h2" if http2 else "tcp",
        dual_trip=args.dual_trip,
        path=path,
    )


def run_client(config: ClientConfig) -> int:
    client = LatencyClient(config)
    try:
        client.start()
        while not client.wait(1.0):
            pass
    except (TransportError, ValueError) as exc:
        logging.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        logging.info("Received SIGINT, gracefully exiting...")
    finally:
        client.stop()
    return 1 if client.error is not None else 0


def run_server(config: ServerConfig) -> int:
    server = LatencyServer(config)
    try:
        server.start()
        while not server.wait(1.0):
            pass
    except OSError as exc:
        logging.error("Server failed: %s", exc)
        return 1
    except KeyboardInterrupt:
        logging.info("Received SIGINT, gracefully exiting...")
    finally:
        server.stop()
    return 1 if server.error is not None else 0


def _raise_interrupt(signum, frame) -> None:
    raise KeyboardInterrupt


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )
    try:
        check_packet_layout()
    except LayoutError as exc:
        logging.critical("Refusing to start, packet layout is invalid: %s", exc)
        return 1
    config = config_from_args(parser, args)
    logging.debug("Parsed parameters: %s", config)
    logging.info("Launched at %s", datetime.now(timezone.utc).isoformat())
    signal.signal(signal.SIGTERM, _raise_interrupt)
    if isinstance(config, ClientConfig):
        return run_client(config)
    return run_server(config)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
