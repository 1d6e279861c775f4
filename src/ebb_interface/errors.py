"""
EBB Interface - Error Kinds
============================
Exception hierarchy for EiBotBoard communication.

Every error carries a tagged ``kind`` so callers can tell caller faults
(validation) from environment faults (timeout, connection) from data
integrity faults (protocol, decode) without matching on class names.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Category of an EBB failure."""
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    PROTOCOL = "protocol"
    DECODE = "decode"
    CONNECTION = "connection"
    BUSY = "busy"


class EbbError(Exception):
    """
    Base class for all EBB client errors.

    Attributes:
        kind: Error category
        retryable: Whether repeating the same call may succeed
        mnemonic: Command mnemonic involved, if any
        raw: Bytes received before the failure, for diagnostics
    """
    kind: ErrorKind = ErrorKind.PROTOCOL
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        mnemonic: Optional[str] = None,
        raw: bytes = b"",
    ):
        super().__init__(message)
        self.message = message
        self.mnemonic = mnemonic
        self.raw = bytes(raw)

    def __str__(self) -> str:
        text = self.message
        if self.mnemonic:
            text = f"[{self.mnemonic}] {text}"
        if self.raw:
            text = f"{text} (received {self.raw!r})"
        return text


class CommandValidationError(EbbError, ValueError):
    """Argument outside the documented protocol range. Raised before any I/O."""
    kind = ErrorKind.VALIDATION


class ReplyTimeoutError(EbbError, TimeoutError):
    """Deadline exceeded while awaiting a reply."""
    kind = ErrorKind.TIMEOUT
    retryable = True


class ProtocolError(EbbError):
    """Bytes arrived but do not have the expected marker or shape."""
    kind = ErrorKind.PROTOCOL


class DecodeError(EbbError):
    """Reply is framed correctly but its fields cannot be parsed."""
    kind = ErrorKind.DECODE


class EbbConnectionError(EbbError, ConnectionError):
    """Serial port could not be opened, or the device is not open."""
    kind = ErrorKind.CONNECTION


class DeviceBusyError(EbbError):
    """A round trip was started while another is still in flight."""
    kind = ErrorKind.BUSY
    retryable = True
