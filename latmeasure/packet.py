"""Streaming packet parser.

The parser locates the preamble in an arbitrarily chunked byte stream and
emits the bytes that follow it (the SDU) once a full packet has arrived.
Bytes that precede a preamble are discarded as noise; the preamble is the
only resynchronisation anchor.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional

from .clock import MonotonicMs, WallClockMs, monotonic_ms
from .pdu import MAGIC, PACKET_SIZE
from .ringbuf import RingBuffer
from .sequence import PatternMatcher


@dataclass(frozen=True)
class TimedPacket:
    received_at: MonotonicMs
    payload: bytes
    received_wall: Optional[WallClockMs] = None


class PacketParser:
    """Two-state parser: seeking the preamble, then collecting the SDU."""

    def __init__(
        self,
        packet_size: int = PACKET_SIZE,
        magic: bytes = MAGIC,
        buffer_size: Optional[int] = None,
    ) -> None:
        self.sdu_len = packet_size - len(magic)
        if self.sdu_len < 0:
            raise ValueError("Packet size is shorter than the magic pattern")
        if buffer_size is None:
            buffer_size = max(1, packet_size) << 4
        if buffer_size < max(self.sdu_len, len(magic), 1):
            raise ValueError(
                f"Buffer of {buffer_size} bytes cannot hold a {self.sdu_len}-byte packet body"
            )
        self._ring = RingBuffer(buffer_size)
        self._matcher = PatternMatcher(magic)
        self._has_preamble = False
        self.packets = 0

    @property
    def has_preamble(self) -> bool:
        return self._has_preamble

    @property
    def buffered(self) -> int:
        return len(self._ring)

    def feed(
        self,
        chunk,
        received_at: Optional[MonotonicMs] = None,
        received_wall: Optional[WallClockMs] = None,
    ) -> List[TimedPacket]:
        """Absorb ``chunk`` and return every packet it completes.

        Every packet completed by this chunk carries the chunk's arrival times.
        """

        if received_at is None:
            received_at = monotonic_ms()
        view = memoryview(chunk)
        taken = 0
        packets: List[TimedPacket] = []
        while True:
            taken += self._ring.write(view[taken:])
            if self._has_preamble:
                # The ring always fits a packet body, so a short buffer here
                # means the chunk is exhausted.
                if len(self._ring) < self.sdu_len:
                    break
                packets.append(TimedPacket(received_at, self._ring.read(self.sdu_len), received_wall))
                self.packets += 1
                self._has_preamble = False
                continue
            if not len(self._ring):
                break
            consumed = self._ring.scan(self._matcher)
            self._ring.consume(consumed)
            # Partially matched bytes are retired as well; the automaton
            # state remembers them across chunks.
            if self._matcher.is_accepted():
                self._has_preamble = True
                self._matcher.reset()
        return packets

    def reset(self) -> None:
        self._ring.clear()
        self._matcher.reset()
        self._has_preamble = False


def iter_packets(chunks: Iterable[bytes], parser: Optional[PacketParser] = None) -> Iterator[TimedPacket]:
    """Pull-based view of a chunk source: yields packets as chunks are drawn."""

    parser = parser or PacketParser()
    for chunk in chunks:
        yield from parser.feed(chunk)
