"""Fixed-capacity circular byte storage.

``ring_read`` and ``ring_write`` are stateless copy primitives: callers keep
their own head/size bookkeeping. :class:`RingBuffer` wraps them so that the
parser and stream editor never handle raw offsets themselves.
"""
from __future__ import annotations

from .sequence import PatternMatcher


def ring_read(buf, head: int, count: int) -> bytes:
    """Copy ``count`` bytes starting at ``head``, wrapping past the end of ``buf``."""

    size = len(buf)
    actual = min(max(0, count), size)
    if actual == 0:
        return b""
    out = bytearray(actual)
    done = 0
    while done < actual:
        start = (head + done) % size
        step = min(size - start, actual - done)
        out[done : done + step] = buf[start : start + step]
        done += step
    return bytes(out)


def ring_write(dst: bytearray, src, dst_offset: int, src_offset: int, count: int) -> int:
    """Copy ``count`` bytes of plain ``src`` into circular ``dst`` at ``dst_offset``.

    Returns the number of bytes copied, bounded by what ``src`` still holds
    past ``src_offset`` and by the capacity of ``dst``.
    """

    size = len(dst)
    if count <= 0 or size == 0:
        return 0
    remaining = min(count, len(src) - src_offset, size)
    copied = 0
    dst_offset %= size
    while remaining > 0:
        step = min(size - dst_offset, remaining)
        dst[dst_offset : dst_offset + step] = src[src_offset : src_offset + step]
        dst_offset = (dst_offset + step) % size
        src_offset += step
        remaining -= step
        copied += step
    return copied


class RingBuffer:
    """Owned circular buffer exposing ``write``/``peek``/``consume``."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("Ring buffer capacity must be positive")
        self._buf = bytearray(capacity)
        self._head = 0
        self._size = 0

    def __len__(self) -> int:
        return self._size

    @property
    def capacity(self) -> int:
        return len(self._buf)

    @property
    def free(self) -> int:
        return len(self._buf) - self._size

    def write(self, data) -> int:
        """Append as much of ``data`` as fits and return the count taken."""

        take = min(self.free, len(data))
        if take <= 0:
            return 0
        tail = (self._head + self._size) % len(self._buf)
        copied = ring_write(self._buf, data, tail, 0, take)
        self._size += copied
        return copied

    def peek(self, count: int) -> bytes:
        return ring_read(self._buf, self._head, min(count, self._size))

    def consume(self, count: int) -> None:
        if count < 0 or count > self._size:
            raise ValueError(f"Cannot consume {count} bytes, {self._size} buffered")
        self._size -= count
        self._head = (self._head + count) % len(self._buf)
        if self._size == 0:
            self._head = 0

    def read(self, count: int) -> bytes:
        data = self.peek(count)
        self.consume(len(data))
        return data

    def scan(self, matcher: PatternMatcher) -> int:
        """Drive ``matcher`` over the buffered bytes without copying them."""

        return matcher.write(self._buf, self._head, self._size)

    def clear(self) -> None:
        self._head = 0
        self._size = 0
