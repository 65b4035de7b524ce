"""Pass-through stream editor that patches bytes following a pattern.

The server uses it in dual-trip mode to stamp its receive time into a probe
without decoding and re-encoding the whole packet. Everything is forwarded
unchanged except the window of ``offset + 1`` bytes that follows each match,
which is handed to the plan's action for in-place modification first.

For example, with access code ``01 02 03 04`` and ``offset`` 2, the stream
``4b 5a 01 02 03 04 a3 a4 16 18`` hands ``a3 a4 16`` to the action.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Callable

from .clock import wall_clock_ms
from .pdu import FIELD_SRV_TX, MAGIC, PACKET_SIZE, UINT64_MASK
from .ringbuf import RingBuffer
from .sequence import PatternMatcher

PatchAction = Callable[[bytearray], None]


@dataclass(frozen=True)
class StreamEditPlan:
    offset: int
    action: PatchAction

    @property
    def window(self) -> int:
        return self.offset + 1


@dataclass(frozen=True)
class StreamEditConfig:
    access_code: bytes
    plan: StreamEditPlan


class StreamEditor:
    """Forward a byte stream, patching a fixed window after every match."""

    def __init__(self, config: StreamEditConfig) -> None:
        if config.plan.offset < 0:
            raise ValueError("Patch offset must not be negative")
        self.config = config
        self._matcher = PatternMatcher(config.access_code)
        self._ring = RingBuffer(config.plan.window)
        self._had_preamble = False
        self.patched = 0

    def feed(self, chunk) -> bytes:
        """Absorb ``chunk`` and return the bytes ready to be forwarded."""

        view = memoryview(chunk)
        taken = 0
        out = bytearray()
        window = self.config.plan.window
        while True:
            taken += self._ring.write(view[taken:])
            if self._had_preamble:
                if len(self._ring) < window:
                    break
                sdu = bytearray(self._ring.read(window))
                self.config.plan.action(sdu)
                if len(sdu) != window:
                    raise RuntimeError(
                        f"Patch action resized the window from {window} to {len(sdu)} bytes"
                    )
                out += sdu
                self.patched += 1
                self._had_preamble = False
                continue
            if not len(self._ring):
                break
            consumed = self._ring.scan(self._matcher)
            out += self._ring.read(consumed)
            if self._matcher.is_accepted():
                self._had_preamble = True
                self._matcher.reset()
        return bytes(out)

    def flush(self) -> bytes:
        """Return whatever is held back, unpatched; used when the stream ends."""

        pending = self._ring.read(len(self._ring))
        self._had_preamble = False
        self._matcher.reset()
        return pending


def stamp_server_receive_time(window: bytearray) -> None:
    struct.pack_into("!Q", window, FIELD_SRV_TX.offset - len(MAGIC), wall_clock_ms() & UINT64_MASK)


def timestamp_plan() -> StreamEditConfig:
    """Plan that stamps ``srvTx`` into every probe passing through."""

    return StreamEditConfig(
        access_code=MAGIC,
        plan=StreamEditPlan(
            offset=PACKET_SIZE - len(MAGIC) - 1,
            action=stamp_server_receive_time,
        ),
    )


class IdentityFilter:
    """Echo filter that forwards bytes untouched."""

    def feed(self, chunk) -> bytes:
        return bytes(chunk)

    def flush(self) -> bytes:
        return b""
