"""Per-connection pipelines for both roles.

``ProbeSession`` drives a client connection: it emits one probe per interval,
reassembles echoed probes and turns them into latency results.
``EchoSession`` serves one connection on the server by writing every byte it
reads back through an echo filter.
"""
from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, List, Optional, Tuple

from .clock import MonotonicMs, WallClockMs, monotonic_ms, wall_clock_ms
from .latency import (
    DEFAULT_TRACKER_CAPACITY,
    LatencyAnalyzer,
    LatencyCalculator,
    SendTxTracker,
    SequenceCounter,
    format_result,
)
from .metrics import LatencyStats
from .packet import PacketParser, TimedPacket
from .pdu import MeasurePDU, ProtocolError
from .stream_edit import IdentityFilter, StreamEditor, timestamp_plan
from .transport import Duplex, TransportError

ResultHandler = Callable[[LatencyAnalyzer], None]

DEFAULT_QUEUE_SIZE = 64


def log_result(result: LatencyAnalyzer) -> None:
    logging.info(format_result(result))


def make_echo_filter(dual_trip: bool):
    """Return a fresh filter for one server stream."""

    if dual_trip:
        return StreamEditor(timestamp_plan())
    return IdentityFilter()


# ----------------------------------------------------------------------
# Client side


class ProbeSession:
    """Client pipeline for one connection.

    Three threads cooperate. The probe thread emits a PDU every interval,
    the reader thread moves transport chunks into a bounded queue, and the
    parser thread drains that queue into the calculator. When the parser
    falls behind the queue fills up, the reader blocks, and nothing more is
    pulled from the transport.
    """

    def __init__(
        self,
        duplex: Duplex,
        interval_ms: int = 1000,
        *,
        tracker_capacity: int = DEFAULT_TRACKER_CAPACITY,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        result_handler: Optional[ResultHandler] = None,
        on_closed: Optional[Callable[["ProbeSession"], None]] = None,
    ) -> None:
        if interval_ms <= 0:
            raise ValueError("Probe interval must be positive")
        self.duplex = duplex
        self.interval = interval_ms / 1000.0
        self.tracker = SendTxTracker(tracker_capacity)
        self.counter = SequenceCounter()
        self.parser = PacketParser()
        self.calculator = LatencyCalculator(self.tracker)
        self.stats = LatencyStats()
        self.error: Optional[BaseException] = None
        self._chunks: "queue.Queue[Tuple[MonotonicMs, WallClockMs, bytes]]" = queue.Queue(maxsize=queue_size)
        self._result_handler = result_handler or log_result
        self._on_closed = on_closed
        self._running = threading.Event()
        self._stopped = threading.Event()
        self._finished = threading.Event()
        self._stop_lock = threading.Lock()
        self._threads: List[threading.Thread] = []

    def register_result_handler(self, handler: ResultHandler) -> None:
        self._result_handler = handler

    @property
    def running(self) -> bool:
        return self._running.is_set()

    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._running.is_set() or self._stopped.is_set():
            return
        self._running.set()
        for name, target in (
            ("probe", self._probe_loop),
            ("reader", self._reader_loop),
            ("parser", self._parser_loop),
        ):
            thread = threading.Thread(target=target, name=f"latmeasure-{name}", daemon=True)
            self._threads.append(thread)
            thread.start()

    def stop(self) -> None:
        with self._stop_lock:
            if self._stopped.is_set():
                return
            self._stopped.set()
        self._running.clear()
        self.duplex.close()
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join(timeout=1.0)
        logging.info("Session with %s stopped", self.duplex.peer)
        if self._on_closed:
            self._on_closed(self)
        self._finished.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the session is torn down; returns ``False`` on timeout."""

        return self._finished.wait(timeout)

    def send_probe(self) -> MeasurePDU:
        pdu = MeasurePDU.from_timestamp(wall_clock_ms())
        pdu.seq_num = self.counter.next()
        wire = pdu.encode()
        self.tracker.set_val(pdu.seq_num, monotonic_ms())
        self.duplex.send(wire)
        self.stats.record_sent()
        logging.debug("Sent %s", pdu)
        return pdu

    # ------------------------------------------------------------------
    def _probe_loop(self) -> None:
        while not self._stopped.wait(self.interval):
            try:
                self.send_probe()
            except (OSError, TransportError) as exc:
                if self._running.is_set():
                    logging.error("Failed to send probe to %s: %s", self.duplex.peer, exc)
                    self.error = exc
                break
        self.stop()

    def _reader_loop(self) -> None:
        try:
            while self._running.is_set():
                chunk = self.duplex.recv()
                if not chunk:
                    if self._running.is_set():
                        logging.info("Peer %s closed the stream", self.duplex.peer)
                    break
                item = (monotonic_ms(), wall_clock_ms(), chunk)
                while self._running.is_set():
                    try:
                        self._chunks.put(item, timeout=0.1)
                        break
                    except queue.Full:
                        continue
        except (OSError, TransportError) as exc:
            if self._running.is_set():
                logging.error("Failed to read from %s: %s", self.duplex.peer, exc)
                self.error = exc
        finally:
            self.stop()

    def _parser_loop(self) -> None:
        while True:
            try:
                received_at, received_wall, chunk = self._chunks.get(timeout=0.1)
            except queue.Empty:
                if not self._running.is_set():
                    return
                continue
            try:
                for packet in self.parser.feed(chunk, received_at, received_wall):
                    self._handle_packet(packet)
            except ProtocolError as exc:
                logging.error("Internal error while parsing data from %s: %s", self.duplex.peer, exc)
                self.error = exc
                self.stop()
                return

    def _handle_packet(self, packet: TimedPacket) -> None:
        pdu = MeasurePDU.from_sdu(packet.payload)
        logging.debug("Received %s", pdu)
        result = self.calculator.calculate(pdu, packet.received_at, packet.received_wall)
        if result is None:
            self.stats.record_unidentified()
            return
        self.stats.record(result)
        try:
            self._result_handler(result)
        except Exception:
            logging.exception("Result handler failed for SeqNum=%s", result.seq_num)


# ----------------------------------------------------------------------
# Server side


class EchoSession:
    """Server pipeline for one connection: read, filter, write back."""

    def __init__(
        self,
        duplex: Duplex,
        stream_filter=None,
        *,
        on_closed: Optional[Callable[["EchoSession"], None]] = None,
    ) -> None:
        self.duplex = duplex
        self.filter = stream_filter if stream_filter is not None else IdentityFilter()
        self.peer = duplex.peer
        self.bytes_echoed = 0
        self._on_closed = on_closed
        self._closed = threading.Event()

    def serve(self) -> None:
        """Echo until the peer finishes or the session is closed."""

        try:
            while not self._closed.is_set():
                chunk = self.duplex.recv()
                if not chunk:
                    break
                self._send(self.filter.feed(chunk))
            if not self._closed.is_set():
                self._send(self.filter.flush())
        except (OSError, TransportError) as exc:
            if not self._closed.is_set():
                logging.warning("Connection %s failed: %s", self.peer, exc)
        finally:
            self.close()

    def _send(self, data: bytes) -> None:
        if data:
            self.duplex.send(data)
            self.bytes_echoed += len(data)

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self.duplex.close()
        if self._on_closed:
            self._on_closed(self)
