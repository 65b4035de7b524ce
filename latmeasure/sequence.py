"""Resumable byte pattern matching for stream resynchronisation.

The matcher is a Knuth-Morris-Pratt automaton: it is fed one byte at a time,
never backtracks over its input, and keeps its state between calls so that a
pattern split across two network reads is still recognised.
"""
from __future__ import annotations

from typing import Dict, FrozenSet, List, Optional


class PatternMatcher:
    """DFA recognising a fixed byte pattern inside an arbitrary byte stream."""

    def __init__(self, pattern: bytes) -> None:
        if not isinstance(pattern, (bytes, bytearray, memoryview)):
            raise TypeError("Pattern must be a bytes-like object")
        pattern = bytes(pattern)
        if not pattern:
            raise ValueError("Pattern must not be empty")
        self.pattern = pattern
        self.alphabet: FrozenSet[int] = frozenset(pattern)
        self.dfa: List[Dict[int, int]] = [{} for _ in pattern]
        self.dfa[0][pattern[0]] = 1
        x = 0
        for i in range(1, len(pattern)):
            for byte in self.alphabet:
                self.dfa[i][byte] = self.dfa[x].get(byte, 0)
            self.dfa[i][pattern[i]] = i + 1
            x = self.dfa[x].get(pattern[i], 0)
        self._state = 0

    @property
    def state(self) -> int:
        return self._state

    def is_accepted(self) -> bool:
        return self._state == len(self.pattern)

    def reset(self) -> None:
        self._state = 0

    def write(self, source, offset: int = 0, length: Optional[int] = None) -> int:
        """Advance the automaton over ``length`` bytes of ``source``.

        ``source`` is addressed circularly starting at ``offset`` so the
        backing storage of a ring buffer can be scanned without copying.
        Returns the number of bytes consumed, up to and including the byte
        that completed a match.
        """

        size = len(source)
        if length is None:
            length = size - offset
        if size == 0 or length <= 0:
            return 0
        accept = len(self.pattern)
        dfa = self.dfa
        state = self._state
        consumed = 0
        while consumed < length:
            byte = source[(offset + consumed) % size]
            consumed += 1
            # Rows only exist for states below acceptance.
            state = dfa[state].get(byte, 0) if state < accept else dfa[0].get(byte, 0)
            if state == accept:
                break
        self._state = state
        return consumed
