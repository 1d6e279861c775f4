"""
EBB Interface - Framing Engine
===============================
Accumulates reply bytes from a transport and decides when a reply is
complete.

The EBB firmware does not frame its replies uniformly, so completion is
decided per reply class:

    ACKNOWLEDGED      "OK" anywhere in the buffer (so "0OK" completes)
    BARE_VALUE        >= 1 byte, then inactivity_window_ms of silence
    HEX_STATUS_BYTE   two hex digits at the front (CR/LF dropped on
                      arrival), or >= 1 byte then silence
    MULTI_FIELD_LINE  "\\n", or prefix + minimum field count then silence
    STATUS_THEN_OK    two CR-terminated lines

A firmware error report ("!8 Err: ...") completes any class as soon as
its line ends, so it is not mistaken for a timeout.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from loguru import logger

from .errors import ReplyTimeoutError
from .models import FramingTimings, ReplyClass
from .transport import Transport


HEX_DIGITS = b"0123456789abcdefABCDEF"
LINE_ENDINGS = b"\r\n"
OK_MARKER = b"OK"
# "!8 Err: Unknown command ..." and friends; data lines may also start with "!"
FIRMWARE_ERROR_PATTERN = re.compile(rb"!\d+ Err")


@dataclass(frozen=True)
class FieldLayout:
    """
    Shape of a comma-separated reply line.

    Attributes:
        prefix: Leading field echoed by the firmware ("QM", "MR", ...),
            or None when the line starts with data
        min_fields: Data fields required after the prefix
    """
    prefix: Optional[str]
    min_fields: int

    def split(self, line: str) -> Optional[list]:
        """Data fields of ``line``, or None when the prefix does not match."""
        fields = line.split(",") if line else []
        if self.prefix is None:
            return fields
        if not fields or fields[0] != self.prefix:
            return None
        return fields[1:]

    def is_satisfied_by(self, line: str) -> bool:
        fields = self.split(line)
        return fields is not None and len(fields) >= self.min_fields


@dataclass
class RawAccumulation:
    """Bytes received during one round trip."""
    reply_class: ReplyClass
    started_at: float
    data: bytearray = field(default_factory=bytearray)
    last_byte_at: Optional[float] = None

    def append(self, chunk: bytes, now: float) -> None:
        if self.reply_class is ReplyClass.HEX_STATUS_BYTE:
            chunk = bytes(b for b in chunk if b not in LINE_ENDINGS)
        if chunk:
            self.data.extend(chunk)
            self.last_byte_at = now

    @property
    def text(self) -> str:
        return self.data.decode("ascii", errors="replace")

    def quiet_for(self, now: float) -> float:
        """Seconds since the last byte; 0 if nothing arrived yet."""
        if self.last_byte_at is None:
            return 0.0
        return now - self.last_byte_at

    @property
    def firmware_error(self) -> Optional[str]:
        """Error text when the reply is a firmware error report."""
        stripped = bytes(self.data).strip(LINE_ENDINGS)
        if FIRMWARE_ERROR_PATTERN.match(stripped):
            return stripped.decode("ascii", errors="replace")
        return None


class FramingEngine:
    """
    Reads replies from a transport under a hard deadline.

    The engine is not reentrant; the dispatcher guarantees that only one
    ``read_reply`` runs per transport at a time.
    """

    def __init__(
        self,
        transport: Transport,
        timings: Optional[FramingTimings] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.transport = transport
        self.timings = timings or FramingTimings()
        self._clock = clock
        self._sleep = sleep

    def drain(self) -> bytes:
        """Discard bytes left over from an earlier exchange."""
        discarded = bytearray()
        while True:
            available = self.transport.bytes_available()
            if available <= 0:
                break
            chunk = self.transport.read_available(available)
            if not chunk:
                break
            discarded.extend(chunk)

        # Line endings trailing the previous reply are expected here
        if discarded.strip(LINE_ENDINGS):
            logger.warning(f"Discarded {len(discarded)} stale bytes: {bytes(discarded)!r}")
        elif discarded:
            logger.trace(f"Drained {bytes(discarded)!r}")
        return bytes(discarded)

    def read_reply(
        self,
        reply_class: ReplyClass,
        timeout_ms: Optional[float] = None,
        *,
        layout: Optional[FieldLayout] = None,
    ) -> RawAccumulation:
        """
        Accumulate one reply.

        Args:
            reply_class: Framing strategy of the command
            timeout_ms: Deadline, defaults to ``timings.timeout_ms``
            layout: Expected field layout (MULTI_FIELD_LINE fallback)

        Returns:
            The complete raw accumulation

        Raises:
            ReplyTimeoutError: Deadline exceeded, with the partial buffer
        """
        if timeout_ms is None:
            timeout_ms = self.timings.timeout_ms
        poll_s = self.timings.poll_interval_ms / 1000.0

        start = self._clock()
        deadline = start + timeout_ms / 1000.0
        raw = RawAccumulation(reply_class=reply_class, started_at=start)

        while True:
            now = self._clock()

            available = self.transport.bytes_available()
            if available > 0:
                chunk = self.transport.read_available(available)
                if chunk:
                    logger.trace(f"rx {chunk!r}")
                    raw.append(chunk, now)

            if self._is_complete(raw, now, layout):
                return raw

            if now >= deadline:
                raise ReplyTimeoutError(
                    f"No complete {reply_class.value} reply within {timeout_ms:g} ms",
                    raw=bytes(raw.data),
                )

            self._sleep(poll_s)

    def _is_quiet(self, raw: RawAccumulation, now: float) -> bool:
        return bool(raw.data) and raw.quiet_for(now) * 1000.0 >= self.timings.inactivity_window_ms

    def _is_complete(
        self,
        raw: RawAccumulation,
        now: float,
        layout: Optional[FieldLayout],
    ) -> bool:
        data = raw.data
        if not data:
            return False

        if raw.firmware_error is not None:
            return b"\n" in data or self._is_quiet(raw, now)

        reply_class = raw.reply_class

        if reply_class is ReplyClass.ACKNOWLEDGED:
            return OK_MARKER in data

        if reply_class is ReplyClass.BARE_VALUE:
            return self._is_quiet(raw, now)

        if reply_class is ReplyClass.HEX_STATUS_BYTE:
            if len(data) >= 2 and data[0] in HEX_DIGITS and data[1] in HEX_DIGITS:
                return True
            return self._is_quiet(raw, now)

        if reply_class is ReplyClass.MULTI_FIELD_LINE:
            if b"\n" in data:
                return True
            if layout is None or not layout.is_satisfied_by(raw.text.strip("\r\n")):
                return False
            return self._is_quiet(raw, now)

        if reply_class is ReplyClass.STATUS_THEN_OK:
            return data.count(b"\r") >= 2

        raise ValueError(f"Unknown reply class: {reply_class}")
