"""Echo server for latency probes."""
from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass
from http import HTTPStatus
from typing import Dict, List, Optional

from websockets.sync.server import serve as ws_serve

from .http2 import H2EchoConnection
from .session import EchoSession, make_echo_filter
from .transport import Address, TcpDuplex, format_address
from .websocket import WebSocketDuplex

TRANSPORTS = ("tcp", "ws", "h2")


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 0
    transport: str = "tcp"
    dual_trip: bool = False
    path: str = "/"


class LatencyServer:
    """Accepts probe connections and echoes them back, one thread each."""

    def __init__(self, config: ServerConfig) -> None:
        if config.transport not in TRANSPORTS:
            raise ValueError(f"Unknown transport {config.transport!r}, expected one of {TRANSPORTS}")
        self.config = config
        self.address: Optional[Address] = None
        self.error: Optional[BaseException] = None
        self._running = threading.Event()
        self._stopped = threading.Event()
        self._listener: Optional[socket.socket] = None
        self._ws_server = None
        self._serve_thread: Optional[threading.Thread] = None
        self._connections: Dict[int, object] = {}
        self._lock = threading.Lock()

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._running.is_set():
            return
        if self.config.dual_trip:
            logging.info("Dual-trip mode is enabled, srvTx is stamped on every probe")
        if self.config.transport == "ws":
            self._ws_server = ws_serve(
                self._handle_websocket,
                self.config.host,
                self.config.port,
                compression=None,
                process_request=self._check_path,
            )
            self.address = self._ws_server.socket.getsockname()[:2]
            target = self._ws_server.serve_forever
        else:
            family = socket.AF_INET6 if ":" in self.config.host else socket.AF_INET
            self._listener = socket.create_server((self.config.host, self.config.port), family=family)
            # accept() is not woken by close() on every platform; poll instead
            self._listener.settimeout(0.5)
            self.address = self._listener.getsockname()[:2]
            target = self._accept_loop
        self._running.set()
        self._serve_thread = threading.Thread(target=target, name="latmeasure-accept", daemon=True)
        self._serve_thread.start()
        logging.info(
            "Latency server (%s) listening on %s",
            self.config.transport,
            format_address(self.address),
        )

    def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        logging.info("Stopping latency server")
        self._running.clear()
        if self._ws_server is not None:
            self._ws_server.shutdown()
        if self._listener is not None:
            self._listener.close()
        for connection in self._snapshot():
            connection.close()
        if self._serve_thread and self._serve_thread is not threading.current_thread():
            self._serve_thread.join(timeout=1.0)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._stopped.wait(timeout)

    # ------------------------------------------------------------------
    def _accept_loop(self) -> None:
        while self._running.is_set():
            try:
                conn, addr = self._listener.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if self._running.is_set():
                    logging.error("Accept failed, shutting down: %s", exc)
                    self.error = exc
                    self.stop()
                return
            conn.settimeout(None)
            conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            handler = self._serve_h2 if self.config.transport == "h2" else self._serve_tcp
            threading.Thread(
                target=handler,
                args=(conn, format_address(addr)),
                name=f"latmeasure-conn-{format_address(addr)}",
                daemon=True,
            ).start()

    def _serve_tcp(self, conn: socket.socket, peer: str) -> None:
        session = EchoSession(
            TcpDuplex(conn, peer=peer),
            make_echo_filter(self.config.dual_trip),
            on_closed=self._unregister,
        )
        if self._register(session):
            session.serve()

    def _serve_h2(self, conn: socket.socket, peer: str) -> None:
        connection = H2EchoConnection(
            conn,
            lambda: make_echo_filter(self.config.dual_trip),
            peer=peer,
            path=self.config.path,
            on_closed=self._unregister,
        )
        if self._register(connection):
            connection.serve()

    def _check_path(self, ws_connection, request):
        if request.path != self.config.path:
            logging.warning("Rejecting WebSocket request for unknown path %s", request.path)
            return ws_connection.respond(HTTPStatus.NOT_FOUND, "Unknown path\n")
        return None

    def _handle_websocket(self, ws_connection) -> None:
        duplex = WebSocketDuplex(ws_connection)
        logging.info("On request: path=%s, addr=%s", ws_connection.request.path, duplex.peer)
        session = EchoSession(
            duplex,
            make_echo_filter(self.config.dual_trip),
            on_closed=self._unregister,
        )
        if self._register(session):
            session.serve()

    # ------------------------------------------------------------------
    def _register(self, connection) -> bool:
        with self._lock:
            accepted = self._running.is_set()
            if accepted:
                self._connections[id(connection)] = connection
                count = len(self._connections)
        if not accepted:
            connection.close()
            return False
        logging.info("New connection: %s, currently %s connections", connection.peer, count)
        return True

    def _unregister(self, connection) -> None:
        with self._lock:
            removed = self._connections.pop(id(connection), None)
            count = len(self._connections)
        if removed is not None:
            logging.info("Connection %s removed, currently %s connections", connection.peer, count)

    def _snapshot(self) -> List[object]:
        with self._lock:
            return list(self._connections.values())
