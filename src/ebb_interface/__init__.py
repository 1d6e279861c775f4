"""
EBB Interface Package
======================
Host-side client for the EiBotBoard (EggBot / AxiDraw) serial protocol.

Layers, lowest first:
- transport: byte access to the serial line
- framing: per-reply-class completion with a hard deadline
- decoders: raw reply -> typed value
- dispatcher: one command round trip
- device: validated public operations
"""

from .errors import (
    ErrorKind,
    EbbError,
    CommandValidationError,
    ReplyTimeoutError,
    ProtocolError,
    DecodeError,
    EbbConnectionError,
    DeviceBusyError,
)
from .models import (
    ReplyClass,
    ConnectionStatus,
    MotorMode,
    PenState,
    FramingTimings,
    EbbConfig,
    Acknowledged,
    ACKNOWLEDGED,
    GeneralStatus,
    MotorStatus,
    StopInfo,
    AnalogCounts,
    CurrentInfo,
    MotorConfiguration,
    StepPositions,
)
from .framing import FieldLayout, RawAccumulation, FramingEngine
from .commands import Command, CommandSpec, COMMAND_TABLE
from .dispatcher import CommandDispatcher, RoundTripState
from .transport import Transport, SerialTransport

# higher-level facade
from .device import EbbDevice

__all__ = [
    "ErrorKind",
    "EbbError",
    "CommandValidationError",
    "ReplyTimeoutError",
    "ProtocolError",
    "DecodeError",
    "EbbConnectionError",
    "DeviceBusyError",
    "ReplyClass",
    "ConnectionStatus",
    "MotorMode",
    "PenState",
    "FramingTimings",
    "EbbConfig",
    "Acknowledged",
    "ACKNOWLEDGED",
    "GeneralStatus",
    "MotorStatus",
    "StopInfo",
    "AnalogCounts",
    "CurrentInfo",
    "MotorConfiguration",
    "StepPositions",
    "FieldLayout",
    "RawAccumulation",
    "FramingEngine",
    "Command",
    "CommandSpec",
    "COMMAND_TABLE",
    "CommandDispatcher",
    "RoundTripState",
    "Transport",
    "SerialTransport",
    "EbbDevice",
]
