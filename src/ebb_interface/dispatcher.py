"""
EBB Interface - Command Dispatcher
===================================
Single entry point for one command round trip.

Round trip states:

    IDLE -> SENT -> AWAITING_REPLY -> COMPLETED
                                   -> TIMED_OUT
                                   -> DECODE_FAILED

The protocol is half-duplex, so at most one round trip may be in flight
per connection. The dispatcher does not queue: a second concurrent call
raises DeviceBusyError and callers must serialize access themselves.
No round trip is ever retried here.
"""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Any, Callable, Optional

from loguru import logger

from .commands import COMMAND_TABLE, Command, CommandSpec
from .errors import (
    CommandValidationError,
    DecodeError,
    DeviceBusyError,
    ProtocolError,
    ReplyTimeoutError,
)
from .framing import FramingEngine
from .models import FramingTimings
from .transport import Transport


class RoundTripState(Enum):
    """State of the current or last round trip."""
    IDLE = "idle"
    SENT = "sent"
    AWAITING_REPLY = "awaiting_reply"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    DECODE_FAILED = "decode_failed"


class CommandDispatcher:
    """
    Sends commands and returns their decoded replies.

    Usage:
        dispatcher = CommandDispatcher(transport)
        status = dispatcher.execute(Command.build("QG"))
    """

    def __init__(
        self,
        transport: Transport,
        timings: Optional[FramingTimings] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.timings = timings or FramingTimings()
        self.transport = transport
        self.framer = FramingEngine(transport, self.timings, clock=clock, sleep=sleep)
        self._sleep = sleep
        self._lock = threading.Lock()
        self._state = RoundTripState.IDLE

        self.commands_sent = 0
        self.replies_failed = 0

    @property
    def last_state(self) -> RoundTripState:
        return self._state

    @staticmethod
    def lookup(command: Command) -> CommandSpec:
        spec = COMMAND_TABLE.get(command.mnemonic)
        if spec is None:
            raise CommandValidationError(
                f"Unknown command {command.mnemonic!r}", mnemonic=command.mnemonic
            )
        return spec

    def _acquire(self, command: Command) -> None:
        if not self._lock.acquire(blocking=False):
            raise DeviceBusyError(
                "Another command is still in flight", mnemonic=command.mnemonic
            )

    def _transmit(self, command: Command) -> None:
        self.framer.drain()
        data = command.wire()
        self.transport.write(data)
        self.commands_sent += 1
        self._state = RoundTripState.SENT
        logger.debug(f"tx {data!r}")

    def send(self, command: Command) -> None:
        """
        Send a command without awaiting a reply.

        Used for RB and BL, after which the board drops off the bus.
        """
        self.lookup(command)
        self._acquire(command)
        try:
            self._transmit(command)
            self._state = RoundTripState.COMPLETED
        finally:
            self._lock.release()

    def execute(self, command: Command, timeout_ms: Optional[float] = None) -> Any:
        """
        Run one round trip.

        Args:
            command: Command to send
            timeout_ms: Reply deadline, defaults to the configured timeout

        Returns:
            The value produced by the command's decoder

        Raises:
            CommandValidationError: Mnemonic not in the command table
            DeviceBusyError: Another round trip is in flight
            ReplyTimeoutError: No complete reply before the deadline
            ProtocolError: Firmware error report or unexpected reply shape
            DecodeError: Reply fields could not be parsed
        """
        spec = self.lookup(command)
        self._acquire(command)
        try:
            self._state = RoundTripState.IDLE
            self._transmit(command)

            self._sleep(self.timings.turnaround_ms / 1000.0)
            self._state = RoundTripState.AWAITING_REPLY

            try:
                raw = self.framer.read_reply(spec.reply_class, timeout_ms, layout=spec.layout)
            except ReplyTimeoutError as e:
                self._state = RoundTripState.TIMED_OUT
                self.replies_failed += 1
                e.mnemonic = command.mnemonic
                logger.warning(f"{command.mnemonic} timed out, partial reply {e.raw!r}")
                raise

            logger.debug(f"rx {command.mnemonic} {bytes(raw.data)!r}")

            try:
                if raw.firmware_error is not None:
                    raise ProtocolError(f"Firmware rejected command: {raw.firmware_error}")
                value = spec.decoder(raw)
            except (DecodeError, ProtocolError) as e:
                self._state = RoundTripState.DECODE_FAILED
                self.replies_failed += 1
                e.mnemonic = command.mnemonic
                e.raw = bytes(raw.data)
                logger.warning(f"Bad reply to {command.line!r}: {e.message}")
                raise

            self._state = RoundTripState.COMPLETED
            return value
        finally:
            self._lock.release()
