"""
Scripted Replay
================
Deterministic clock and transport for exercising the framing engine.

``SimulatedClock`` only moves when something sleeps, so a round trip that
would take three seconds on hardware runs instantly and timing
assertions are exact. ``ScriptedTransport`` releases reply bytes at
scripted offsets (in ms) after each write.
"""

from __future__ import annotations

from collections import deque
from typing import Deque, List, Tuple, Union

from loguru import logger


Chunk = Union[bytes, Tuple[float, bytes]]


class SimulatedClock:
    """Monotonic clock advanced only by ``sleep``."""

    def __init__(self, start_s: float = 0.0):
        # Integer microseconds keep repeated 1 ms sleeps exact
        self._now_us = int(round(start_s * 1_000_000))
        self.sleep_calls = 0

    @property
    def now_us(self) -> int:
        return self._now_us

    def monotonic(self) -> float:
        return self._now_us / 1_000_000

    def sleep(self, seconds: float) -> None:
        self.sleep_calls += 1
        self._now_us += max(0, int(round(seconds * 1_000_000)))

    def advance_ms(self, ms: float) -> None:
        self._now_us += int(round(ms * 1000))


class ScriptedTransport:
    """
    Transport that answers each write with a scripted reply.

    Usage:
        clock = SimulatedClock()
        transport = ScriptedTransport(clock)
        transport.script(b"QM,1,1,0,0\\r\\n")
        transport.script((0, b"EBBv13"), (20, b" 2.8.1\\r\\n"))
    """

    def __init__(self, clock: SimulatedClock):
        self.clock = clock
        self.writes: List[bytes] = []
        self._replies: Deque[List[Tuple[float, bytes]]] = deque()
        self._pending: List[Tuple[int, bytes]] = []
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False

    def script(self, *chunks: Chunk) -> None:
        """Queue the reply to the next unanswered write."""
        reply = []
        for chunk in chunks:
            if isinstance(chunk, bytes):
                reply.append((0.0, chunk))
            else:
                reply.append((float(chunk[0]), chunk[1]))
        self._replies.append(reply)

    def inject(self, data: bytes) -> None:
        """Make bytes available right now, unrelated to any command."""
        self._pending.append((self.clock.now_us, data))

    def write(self, data: bytes) -> int:
        self.writes.append(bytes(data))
        logger.trace(f"scripted tx {data!r}")
        if self._replies:
            now = self.clock.now_us
            for offset_ms, chunk in self._replies.popleft():
                self._pending.append((now + int(round(offset_ms * 1000)), chunk))
            self._pending.sort(key=lambda item: item[0])
        return len(data)

    def _due(self) -> List[Tuple[int, bytes]]:
        return [item for item in self._pending if item[0] <= self.clock.now_us]

    def bytes_available(self) -> int:
        return sum(len(chunk) for _, chunk in self._due())

    def read_available(self, size: int) -> bytes:
        out = bytearray()
        while self._pending and len(out) < size:
            due_us, chunk = self._pending[0]
            if due_us > self.clock.now_us:
                break
            take = size - len(out)
            out.extend(chunk[:take])
            if take < len(chunk):
                self._pending[0] = (due_us, chunk[take:])
            else:
                self._pending.pop(0)
        return bytes(out)
