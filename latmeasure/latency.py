"""Send-time tracking and latency calculation."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from .clock import MonotonicMs, WallClockMs, wall_clock_ms
from .pdu import UINT64_MASK, MeasurePDU

DEFAULT_TRACKER_CAPACITY = 2**8 - 1


class SendTxTracker:
    """Fixed table of send instants indexed by ``seq_num % capacity``.

    Two probes in flight whose sequence numbers differ by a multiple of the
    capacity share a slot and the later one overwrites the earlier. The
    capacity must stay well above the number of probes in flight.
    """

    def __init__(self, capacity: int = DEFAULT_TRACKER_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("Tracker capacity must be positive")
        self.capacity = capacity
        self._slots: List[Optional[MonotonicMs]] = [None] * capacity

    def get_val(self, seq_num: int) -> Optional[MonotonicMs]:
        return self._slots[int(seq_num) % self.capacity]

    def set_val(self, seq_num: int, value: MonotonicMs) -> None:
        self._slots[int(seq_num) % self.capacity] = value


class SequenceCounter:
    """Hands out monotonically increasing 64-bit sequence numbers."""

    def __init__(self, start: int = 0) -> None:
        self.count = start

    def next(self) -> int:
        seq_num = self.count & UINT64_MASK
        self.count += 1
        return seq_num


@dataclass
class LatencyAnalyzer:
    seq_num: int
    round_trip: float
    send_trip: Optional[int] = None
    back_trip: Optional[int] = None

    @property
    def has_legs(self) -> bool:
        return self.send_trip is not None and self.back_trip is not None


class LatencyCalculator:
    """Correlates received PDUs with their recorded send instants.

    Round-trip uses the monotonic clock only. The one-way legs need a clock
    shared between client and server and use the wall clock only; they are
    computed when the server stamped ``srvTx``.
    """

    def __init__(self, tracker: SendTxTracker) -> None:
        self.tracker = tracker

    def calculate(
        self,
        pdu: MeasurePDU,
        received_at: MonotonicMs,
        now_wall: Optional[WallClockMs] = None,
    ) -> Optional[LatencyAnalyzer]:
        sent_at = self.tracker.get_val(pdu.seq_num)
        if sent_at is None:
            logging.warning(
                "SeqNum=%s: unidentified packet, no send time recorded", pdu.seq_num
            )
            return None
        result = LatencyAnalyzer(seq_num=pdu.seq_num, round_trip=received_at - sent_at)
        if pdu.cli_tx != 0 and pdu.srv_tx != 0:
            if now_wall is None:
                now_wall = wall_clock_ms()
            result.send_trip = pdu.srv_tx - pdu.cli_tx
            result.back_trip = now_wall - pdu.srv_tx
        return result


def format_result(result: LatencyAnalyzer) -> str:
    parts = [f"SeqNum: {result.seq_num}", f"RoundTrip: {result.round_trip:.3f}ms"]
    if result.has_legs:
        parts.append(f"SendTrip: {result.send_trip}")
        parts.append(f"BackTrip: {result.back_trip}")
    return ", ".join(parts)
