"""
EBB Interface - Transport Adapter
==================================
Byte-level access to the serial line.

The framing engine only ever calls three primitives: ``write``,
``bytes_available`` and ``read_available``. Anything that provides them
(the pyserial adapter below, the firmware simulator, a scripted replay)
can drive a device.
"""

from __future__ import annotations

from typing import Optional, Protocol

import serial
from loguru import logger

from .errors import EbbConnectionError
from .models import DEFAULT_BAUD


class Transport(Protocol):
    """Primitives the framing engine consumes."""

    @property
    def is_open(self) -> bool: ...

    def open(self) -> None: ...

    def close(self) -> None: ...

    def write(self, data: bytes) -> int: ...

    def bytes_available(self) -> int: ...

    def read_available(self, size: int) -> bytes: ...


class SerialTransport:
    """
    Non-blocking pyserial adapter.

    The port is opened with ``timeout=0`` so ``read_available`` returns
    immediately with whatever is buffered.

    Usage:
        transport = SerialTransport("/dev/ttyACM0")
        transport.open()
        transport.write(b"V\\r")
        n = transport.bytes_available()
        data = transport.read_available(n)
        transport.close()
    """

    def __init__(self, port: str, baudrate: int = DEFAULT_BAUD, write_timeout_s: float = 1.0):
        self.port = port
        self.baudrate = baudrate
        self.write_timeout_s = write_timeout_s
        self._serial: Optional[serial.Serial] = None

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    def open(self) -> None:
        """
        Open the serial port.

        Raises:
            EbbConnectionError: If the port cannot be opened
        """
        if self.is_open:
            return

        try:
            self._serial = serial.Serial(
                port=self.port,
                baudrate=self.baudrate,
                timeout=0,
                write_timeout=self.write_timeout_s,
            )
        except serial.SerialException as e:
            raise EbbConnectionError(f"Cannot open {self.port}: {e}") from e

        self._serial.reset_input_buffer()
        logger.info(f"Opened {self.port} at {self.baudrate} baud")

    def close(self) -> None:
        """Close the port. Safe to call more than once."""
        if self._serial is None:
            return

        try:
            if self._serial.is_open:
                self._serial.close()
        finally:
            self._serial = None
            logger.info(f"Closed {self.port}")

    def _require_open(self) -> serial.Serial:
        if not self.is_open:
            raise EbbConnectionError(f"Serial port {self.port} is not open")
        return self._serial

    def write(self, data: bytes) -> int:
        port = self._require_open()
        try:
            written = port.write(data)
            port.flush()
        except serial.SerialException as e:
            raise EbbConnectionError(f"Write to {self.port} failed: {e}") from e
        return written or 0

    def bytes_available(self) -> int:
        port = self._require_open()
        try:
            return port.in_waiting
        except serial.SerialException as e:
            raise EbbConnectionError(f"Polling {self.port} failed: {e}") from e

    def read_available(self, size: int) -> bytes:
        port = self._require_open()
        try:
            return port.read(size)
        except serial.SerialException as e:
            raise EbbConnectionError(f"Read from {self.port} failed: {e}") from e
