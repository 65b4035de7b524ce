"""WebSocket binding: binary frames carried as one logical byte stream."""
from __future__ import annotations

import logging
import threading

from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, InvalidHandshake, InvalidURI
from websockets.sync.client import connect as ws_connect

from .transport import Duplex, TransportError, format_address


class WebSocketDuplex(Duplex):
    """Duplex over a synchronous ``websockets`` connection (client or server side)."""

    def __init__(self, connection, peer: str | None = None) -> None:
        self.connection = connection
        self.peer = peer or format_address(getattr(connection, "remote_address", None))
        self._closed = threading.Event()

    @classmethod
    def connect(cls, uri: str, *, timeout: float = 10.0) -> "WebSocketDuplex":
        try:
            connection = ws_connect(uri, open_timeout=timeout, compression=None)
        except (OSError, InvalidHandshake, InvalidURI, TimeoutError) as exc:
            raise TransportError(f"Failed to connect to {uri}: {exc}") from exc
        return cls(connection, peer=uri)

    def recv(self) -> bytes:
        try:
            message = self.connection.recv()
        except ConnectionClosedOK:
            return b""
        except ConnectionClosed as exc:
            if self._closed.is_set():
                return b""
            raise TransportError(f"WebSocket {self.peer} closed abnormally: {exc}") from exc
        if isinstance(message, str):
            return message.encode("utf-8")
        return bytes(message)

    def send(self, data: bytes) -> None:
        try:
            self.connection.send(bytes(data))
        except ConnectionClosed as exc:
            raise TransportError(f"WebSocket {self.peer} is closed: {exc}") from exc

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        logging.debug("Closing WebSocket %s", self.peer)
        self.connection.close()
