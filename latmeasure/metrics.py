"""Rolling latency statistics for the client summary."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Iterable, List, Optional, Tuple

from .latency import LatencyAnalyzer

Number = Optional[float]


def percentile(values: Iterable[float], pct: float) -> Number:
    """Linearly interpolated percentile of ``values``, ``None`` without samples.

    ``pct=50`` is the median, averaging the two middle samples of an even count.
    """

    ordered = sorted(values)
    if not ordered:
        return None
    rank = (len(ordered) - 1) * min(max(pct, 0.0), 100.0) / 100.0
    low = int(rank)
    high = min(low + 1, len(ordered) - 1)
    return ordered[low] + (ordered[high] - ordered[low]) * (rank - low)


@dataclass
class LatencyStats:
    """Keeps the most recent samples and counters for one session."""

    rtt_samples: Deque[float] = field(default_factory=lambda: deque(maxlen=256))
    send_trip_samples: Deque[float] = field(default_factory=lambda: deque(maxlen=256))
    back_trip_samples: Deque[float] = field(default_factory=lambda: deque(maxlen=256))
    probes_sent: int = 0
    received: int = 0
    unidentified: int = 0
    dual_trip: int = 0

    def record_sent(self) -> None:
        self.probes_sent += 1

    def record(self, result: LatencyAnalyzer) -> None:
        self.received += 1
        self.rtt_samples.append(result.round_trip)
        if result.has_legs:
            self.dual_trip += 1
            self.send_trip_samples.append(float(result.send_trip))
            self.back_trip_samples.append(float(result.back_trip))

    def record_unidentified(self) -> None:
        self.unidentified += 1

    def snapshot(self) -> dict:
        return {
            "probes_sent": self.probes_sent,
            "received": self.received,
            "unidentified": self.unidentified,
            "dual_trip": self.dual_trip,
            "rtt_ms_p50": percentile(self.rtt_samples, 50),
            "rtt_ms_p95": percentile(self.rtt_samples, 95),
            "rtt_ms_p99": percentile(self.rtt_samples, 99),
            "send_trip_ms_p50": percentile(self.send_trip_samples, 50),
            "back_trip_ms_p50": percentile(self.back_trip_samples, 50),
        }


def summary_lines(snapshot: dict) -> List[Tuple[str, str]]:
    return [
        ("probes_sent", str(snapshot.get("probes_sent", 0))),
        ("received", str(snapshot.get("received", 0))),
        ("unidentified", str(snapshot.get("unidentified", 0))),
        ("rtt_p50_ms", _fmt_ms(snapshot.get("rtt_ms_p50"))),
        ("rtt_p95_ms", _fmt_ms(snapshot.get("rtt_ms_p95"))),
        ("rtt_p99_ms", _fmt_ms(snapshot.get("rtt_ms_p99"))),
        ("send_trip_p50_ms", _fmt_ms(snapshot.get("send_trip_ms_p50"))),
        ("back_trip_p50_ms", _fmt_ms(snapshot.get("back_trip_ms_p50"))),
    ]


def _fmt_ms(value: Number) -> str:
    return "n/a" if value is None else f"{value:.3f}"
