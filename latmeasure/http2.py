"""HTTP/2 binding built on the sans-IO ``h2`` state machine.

The client opens a single ``POST`` request stream and keeps both directions
open for the lifetime of the session, so the stream behaves like a socket.
The server answers each request stream with a ``200`` header block and echoes
the stream's body back on the same stream through its own echo filter; every
stream is an independent byte pipe.
"""
from __future__ import annotations

import logging
import socket
import ssl
import threading
from typing import Callable, Dict, Optional, Set
from urllib.parse import urlsplit

import h2.events
from h2.config import H2Configuration
from h2.connection import H2Connection
from h2.exceptions import ProtocolError as H2ProtocolError
from h2.exceptions import StreamClosedError

from .transport import RECV_SIZE, Duplex, TransportError, format_address

OCTET_STREAM = "application/octet-stream"


class _H2Channel:
    """Outbound plumbing shared by both roles.

    Bytes queued for a stream are written as DATA frames while the peer's
    flow-control window allows; the rest waits for a window update.
    Callers hold ``_lock`` around every use of ``conn``.
    """

    def __init__(self, sock: socket.socket, conn: H2Connection) -> None:
        self.socket = sock
        self.conn = conn
        self._lock = threading.RLock()
        self._pending: Dict[int, bytearray] = {}
        self._ending: Set[int] = set()

    def _queue_data(self, stream_id: int, data: bytes) -> None:
        self._pending.setdefault(stream_id, bytearray()).extend(data)
        self._drain(stream_id)

    def _queue_end(self, stream_id: int) -> None:
        self._ending.add(stream_id)
        self._drain(stream_id)

    def _drain(self, stream_id: int) -> None:
        pending = self._pending.get(stream_id)
        try:
            while pending:
                window = self.conn.local_flow_control_window(stream_id)
                size = min(len(pending), window, self.conn.max_outbound_frame_size)
                if size <= 0:
                    return
                self.conn.send_data(stream_id, bytes(pending[:size]))
                del pending[:size]
                self._on_sent(stream_id, size)
            if stream_id in self._ending:
                self._ending.discard(stream_id)
                self._pending.pop(stream_id, None)
                self.conn.end_stream(stream_id)
                self._on_finished(stream_id)
        except StreamClosedError:
            logging.debug("Dropping output for closed HTTP/2 stream %s", stream_id)
            self._pending.pop(stream_id, None)
            self._ending.discard(stream_id)
            self._on_finished(stream_id)

    def _on_sent(self, stream_id: int, size: int) -> None:
        """Called after ``size`` bytes of queued output went out on ``stream_id``."""

    def _on_finished(self, stream_id: int) -> None:
        """Called once a stream will produce no more output."""

    @property
    def pending_bytes(self) -> int:
        return sum(len(pending) for pending in self._pending.values())

    def _drain_all(self) -> None:
        for stream_id in list(self._pending):
            self._drain(stream_id)

    def _flush(self) -> None:
        data = self.conn.data_to_send()
        if data:
            self.socket.sendall(data)

    def _close_socket(self) -> None:
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.socket.close()


class H2Duplex(_H2Channel, Duplex):
    """Client side: one long-lived bidirectional request stream."""

    def __init__(
        self,
        sock: socket.socket,
        *,
        authority: str,
        path: str = "/",
        scheme: str = "http",
        peer: Optional[str] = None,
    ) -> None:
        config = H2Configuration(client_side=True, header_encoding="utf-8")
        super().__init__(sock, H2Connection(config=config))
        self.peer = peer or authority
        self._closed = threading.Event()
        self._ended = False
        with self._lock:
            self.conn.initiate_connection()
            self.stream_id = self.conn.get_next_available_stream_id()
            self.conn.send_headers(
                self.stream_id,
                [
                    (":method", "POST"),
                    (":scheme", scheme),
                    (":authority", authority),
                    (":path", path),
                    ("content-type", OCTET_STREAM),
                ],
                end_stream=False,
            )
            self._flush()

    @classmethod
    def connect(cls, uri: str, *, timeout: float = 10.0) -> "H2Duplex":
        parts = urlsplit(uri)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise TransportError(f"Not an HTTP/2 endpoint: {uri}")
        secure = parts.scheme == "https"
        port = parts.port or (443 if secure else 80)
        try:
            sock = socket.create_connection((parts.hostname, port), timeout=timeout)
            if secure:
                context = ssl.create_default_context()
                context.set_alpn_protocols(["h2"])
                sock = context.wrap_socket(sock, server_hostname=parts.hostname)
                if sock.selected_alpn_protocol() != "h2":
                    sock.close()
                    raise TransportError(f"{uri} did not negotiate HTTP/2")
        except OSError as exc:
            raise TransportError(f"Failed to connect to {uri}: {exc}") from exc
        sock.settimeout(None)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"
        return cls(sock, authority=parts.netloc, path=path, scheme=parts.scheme, peer=uri)

    def recv(self) -> bytes:
        while not self._ended:
            try:
                data = self.socket.recv(RECV_SIZE)
            except OSError:
                if self._closed.is_set():
                    return b""
                raise
            if not data:
                return b""
            chunks = []
            with self._lock:
                try:
                    events = self.conn.receive_data(data)
                except H2ProtocolError as exc:
                    raise TransportError(f"HTTP/2 protocol error from {self.peer}: {exc}") from exc
                for event in events:
                    self._handle_event(event, chunks)
                self._flush()
            if chunks:
                return b"".join(chunks)
        return b""

    def _handle_event(self, event, chunks) -> None:
        if isinstance(event, h2.events.DataReceived):
            self.conn.acknowledge_received_data(event.flow_controlled_length, event.stream_id)
            if event.stream_id == self.stream_id:
                chunks.append(event.data)
        elif isinstance(event, h2.events.ResponseReceived):
            status = dict(event.headers).get(":status")
            if status != "200":
                raise TransportError(f"{self.peer} answered with status {status}")
            logging.debug("HTTP/2 stream %s accepted by %s", self.stream_id, self.peer)
        elif isinstance(event, h2.events.WindowUpdated):
            self._drain(self.stream_id)
        elif isinstance(event, (h2.events.StreamEnded, h2.events.StreamReset)):
            if event.stream_id == self.stream_id:
                logging.info("Stream %s of session %s is closed", self.stream_id, self.peer)
                self._ended = True
        elif isinstance(event, h2.events.ConnectionTerminated):
            logging.info("Session %s terminated (error code %s)", self.peer, event.error_code)
            self._ended = True

    def send(self, data: bytes) -> None:
        with self._lock:
            if self._ended or self._closed.is_set():
                raise TransportError(f"HTTP/2 stream to {self.peer} is closed")
            try:
                self._queue_data(self.stream_id, data)
            except H2ProtocolError as exc:
                raise TransportError(f"HTTP/2 send to {self.peer} failed: {exc}") from exc
            self._flush()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        logging.debug("Closing HTTP/2 session %s", self.peer)
        with self._lock:
            try:
                if not self._ended:
                    self.conn.end_stream(self.stream_id)
                self.conn.close_connection()
                self._flush()
            except (H2ProtocolError, OSError) as exc:
                logging.debug("HTTP/2 session %s did not close cleanly: %s", self.peer, exc)
        self._close_socket()


class H2EchoConnection(_H2Channel):
    """Server side of one HTTP/2 connection, echoing every request stream.

    Inbound DATA is acknowledged only as its echo leaves, so a peer that
    stops reading its replies runs out of send window instead of growing
    the server's output buffers.
    """

    def __init__(
        self,
        sock: socket.socket,
        make_filter: Callable[[], object],
        *,
        peer: Optional[str] = None,
        path: Optional[str] = None,
        on_closed: Optional[Callable[["H2EchoConnection"], None]] = None,
    ) -> None:
        config = H2Configuration(client_side=False, header_encoding="utf-8")
        super().__init__(sock, H2Connection(config=config))
        self.peer = peer or format_address(sock.getpeername())
        self.path = path
        self._make_filter = make_filter
        self._filters: Dict[int, object] = {}
        self._unacked: Dict[int, int] = {}
        self._on_closed = on_closed
        self._closed = threading.Event()
        self._terminated = False

    def serve(self) -> None:
        try:
            with self._lock:
                self.conn.initiate_connection()
                self._flush()
            while not self._terminated and not self._closed.is_set():
                data = self.socket.recv(RECV_SIZE)
                if not data:
                    break
                with self._lock:
                    for event in self.conn.receive_data(data):
                        self._handle_event(event)
                    self._flush()
        except (OSError, H2ProtocolError) as exc:
            if not self._closed.is_set():
                logging.warning("HTTP/2 connection %s failed: %s", self.peer, exc)
        finally:
            self.close()

    def _handle_event(self, event) -> None:
        if isinstance(event, h2.events.RequestReceived):
            headers = dict(event.headers)
            path = headers.get(":path")
            if self.path is not None and path != self.path:
                logging.warning("Rejecting stream %s for unknown path %s", event.stream_id, path)
                self.conn.send_headers(event.stream_id, [(":status", "404")], end_stream=True)
                return
            logging.info(
                "On request: path=%s, streamId=%s, addr=%s",
                path,
                event.stream_id,
                self.peer,
            )
            self._filters[event.stream_id] = self._make_filter()
            self.conn.send_headers(
                event.stream_id,
                [(":status", "200"), ("content-type", OCTET_STREAM)],
            )
        elif isinstance(event, h2.events.DataReceived):
            stream_filter = self._filters.get(event.stream_id)
            if stream_filter is None:
                self.conn.acknowledge_received_data(event.flow_controlled_length, event.stream_id)
                return
            # padding carries no echo
            padding = event.flow_controlled_length - len(event.data)
            if padding:
                self.conn.acknowledge_received_data(padding, event.stream_id)
            self._unacked[event.stream_id] = self._unacked.get(event.stream_id, 0) + len(event.data)
            out = stream_filter.feed(event.data)
            if out:
                self._queue_data(event.stream_id, out)
        elif isinstance(event, h2.events.WindowUpdated):
            if event.stream_id:
                self._drain(event.stream_id)
            else:
                self._drain_all()
        elif isinstance(event, h2.events.StreamEnded):
            stream_filter = self._filters.pop(event.stream_id, None)
            if stream_filter is not None:
                tail = stream_filter.flush()
                if tail:
                    self._queue_data(event.stream_id, tail)
            logging.info("Stream closed: streamId=%s, addr=%s", event.stream_id, self.peer)
            self._queue_end(event.stream_id)
        elif isinstance(event, h2.events.StreamReset):
            self._filters.pop(event.stream_id, None)
            self._pending.pop(event.stream_id, None)
            self._ending.discard(event.stream_id)
            self._on_finished(event.stream_id)
            logging.info("Stream reset: streamId=%s, addr=%s", event.stream_id, self.peer)
        elif isinstance(event, h2.events.ConnectionTerminated):
            self._terminated = True

    def _on_sent(self, stream_id: int, size: int) -> None:
        owed = self._unacked.get(stream_id, 0)
        if owed:
            released = min(owed, size)
            self._unacked[stream_id] = owed - released
            self.conn.acknowledge_received_data(released, stream_id)

    def _on_finished(self, stream_id: int) -> None:
        # bytes held back by the filter still count against the connection window
        owed = self._unacked.pop(stream_id, 0)
        if owed:
            self.conn.acknowledge_received_data(owed, stream_id)

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        with self._lock:
            try:
                if not self._terminated:
                    self.conn.close_connection()
                    self._flush()
            except (H2ProtocolError, OSError) as exc:
                logging.debug("HTTP/2 connection %s did not close cleanly: %s", self.peer, exc)
        self._close_socket()
        if self._on_closed:
            self._on_closed(self)
