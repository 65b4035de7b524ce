"""Time sources used by the latency calculator.

Round-trip latency is measured entirely on the client and uses the monotonic
clock. One-way legs compare timestamps taken on two machines and therefore
use the wall clock. The two are kept as distinct types so they are not mixed.
"""
from __future__ import annotations

import time
from typing import NewType

MonotonicMs = NewType("MonotonicMs", float)
WallClockMs = NewType("WallClockMs", int)


def monotonic_ms() -> MonotonicMs:
    return MonotonicMs(time.monotonic_ns() / 1_000_000)


def wall_clock_ms() -> WallClockMs:
    return WallClockMs(time.time_ns() // 1_000_000)
