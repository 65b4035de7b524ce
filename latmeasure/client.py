"""Latency probe client."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlsplit

from .http2 import H2Duplex
from .latency import DEFAULT_TRACKER_CAPACITY
from .metrics import LatencyStats, summary_lines
from .session import DEFAULT_QUEUE_SIZE, ProbeSession, ResultHandler
from .transport import Duplex, TcpDuplex
from .websocket import WebSocketDuplex

SCHEMES = ("tcp", "ws", "wss", "http", "https")


@dataclass
class ClientConfig:
    endpoint: str
    interval_ms: int = 1000
    tracker_capacity: int = DEFAULT_TRACKER_CAPACITY
    queue_size: int = DEFAULT_QUEUE_SIZE
    connect_timeout: float = 10.0


def open_duplex(endpoint: str, *, timeout: float = 10.0) -> Duplex:
    """Connect to ``endpoint`` with the transport named by its URI scheme."""

    parts = urlsplit(endpoint)
    if parts.scheme not in SCHEMES or not parts.hostname:
        raise ValueError(f"Expected a valid URI like <proto>://<hostname>:<port>, got {endpoint!r}")
    if parts.scheme == "tcp":
        if parts.port is None:
            raise ValueError(f"TCP endpoint needs a port: {endpoint!r}")
        return TcpDuplex.connect(parts.hostname, parts.port, timeout=timeout)
    if parts.scheme in ("ws", "wss"):
        return WebSocketDuplex.connect(endpoint, timeout=timeout)
    return H2Duplex.connect(endpoint, timeout=timeout)


class LatencyClient:
    """Connects to an echo server and reports latency for every probe."""

    def __init__(self, config: ClientConfig, result_handler: Optional[ResultHandler] = None) -> None:
        self.config = config
        self.session: Optional[ProbeSession] = None
        self._result_handler = result_handler
        self._stopped = threading.Event()

    @property
    def stats(self) -> Optional[LatencyStats]:
        return self.session.stats if self.session else None

    @property
    def error(self) -> Optional[BaseException]:
        return self.session.error if self.session else None

    def register_result_handler(self, handler: ResultHandler) -> None:
        self._result_handler = handler
        if self.session is not None:
            self.session.register_result_handler(handler)

    # ------------------------------------------------------------------
    def start(self) -> None:
        logging.info(
            "Starting latency client towards %s every %sms",
            self.config.endpoint,
            self.config.interval_ms,
        )
        duplex = open_duplex(self.config.endpoint, timeout=self.config.connect_timeout)
        logging.info("Connected to %s", duplex.peer)
        self.session = ProbeSession(
            duplex,
            self.config.interval_ms,
            tracker_capacity=self.config.tracker_capacity,
            queue_size=self.config.queue_size,
            result_handler=self._result_handler,
        )
        self.session.start()

    def wait(self, timeout: Optional[float] = None) -> bool:
        if self.session is None:
            return True
        return self.session.wait(timeout)

    def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        session = self.session
        if session is None:
            return
        session.stop()
        for key, value in summary_lines(session.stats.snapshot()):
            logging.info("%s: %s", key, value)

    def summary(self) -> List[str]:
        if self.session is None:
            return []
        return [f"{key}: {value}" for key, value in summary_lines(self.session.stats.snapshot())]

