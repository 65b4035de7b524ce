"""Byte stream contract shared by all transports, and the raw TCP binding."""
from __future__ import annotations

import logging
import socket
import threading
from typing import Optional, Tuple

Address = Tuple[str, int]

RECV_SIZE = 4096


class TransportError(Exception):
    """Raised when a transport cannot be established or fails mid-stream."""


class Duplex:
    """Ordered, reliable, bidirectional byte stream.

    ``recv`` blocks until bytes arrive and returns ``b""`` once the peer has
    finished. ``close`` must be safe to call repeatedly and from any thread.
    """

    peer: str = "<unknown>"

    def recv(self) -> bytes:
        raise NotImplementedError

    def send(self, data: bytes) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class TcpDuplex(Duplex):
    """Duplex over a connected stream socket."""

    def __init__(self, sock: socket.socket, peer: Optional[str] = None) -> None:
        self.socket = sock
        self.socket.settimeout(None)
        self.peer = peer or format_address(_peername(sock))
        self._closed = threading.Event()

    @classmethod
    def connect(cls, host: str, port: int, *, timeout: float = 10.0) -> "TcpDuplex":
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as exc:
            raise TransportError(f"Failed to connect to tcp://{host}:{port}: {exc}") from exc
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        return cls(sock)

    def recv(self) -> bytes:
        if self._closed.is_set():
            return b""
        try:
            return self.socket.recv(RECV_SIZE)
        except OSError:
            if self._closed.is_set():
                return b""
            raise

    def send(self, data: bytes) -> None:
        self.socket.sendall(data)

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        logging.debug("Closing TCP stream %s", self.peer)
        try:
            # shutdown wakes a reader blocked in recv() on another thread
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.socket.close()


def _peername(sock: socket.socket) -> Optional[Address]:
    try:
        return sock.getpeername()[:2]
    except OSError:
        return None


def format_address(address) -> str:
    if address is None:
        return "<unknown>"
    if isinstance(address, str):
        return address
    host, port = address[0], address[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"

