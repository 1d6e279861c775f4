"""
EBB Interface - Data Models
============================
Pydantic models for EBB configuration and decoded replies.

Decoded replies are frozen: a reply is either decoded completely or an
error is raised, so no model is ever handed out half-populated.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field


DEFAULT_BAUD = 115200
DEFAULT_TIMEOUT_MS = 3000
DEFAULT_INACTIVITY_WINDOW_MS = 100


class ReplyClass(Enum):
    """
    Framing strategy for a command's reply.

    Each mnemonic is assigned exactly one class in the command table.
    """
    ACKNOWLEDGED = "acknowledged"         # "OK", optionally preceded by data
    BARE_VALUE = "bare_value"             # no marker, ends on inactivity
    HEX_STATUS_BYTE = "hex_status_byte"   # two hex digits, no marker
    MULTI_FIELD_LINE = "multi_field_line" # "XX,a,b,c\r\n"
    STATUS_THEN_OK = "status_then_ok"     # "data\r\nOK\r\n"


class ConnectionStatus(str, Enum):
    """Device connection status."""
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class MotorMode(IntEnum):
    """Motor enable argument for the EM command."""
    DISABLED = 0
    SIXTEENTH_STEP = 1
    EIGHTH_STEP = 2
    QUARTER_STEP = 3
    HALF_STEP = 4
    FULL_STEP = 5


class PenState(IntEnum):
    """Pen position as sent with SP and reported by QP."""
    DOWN = 0
    UP = 1


# S2 channel wired to the pen-lift servo header (RB1)
SERVO_CHANNEL_PEN = 4


# =============================================================================
# CONFIGURATION MODELS
# =============================================================================

@dataclass(frozen=True)
class FramingTimings:
    """
    Timing parameters of one round trip.

    Attributes:
        timeout_ms: Hard deadline for a reply
        inactivity_window_ms: Quiet period that ends replies without a
            terminator (BARE_VALUE always; HEX_STATUS_BYTE and
            MULTI_FIELD_LINE as a fallback)
        poll_interval_ms: Sleep between transport polls
        turnaround_ms: Delay between sending and the first poll
    """
    timeout_ms: float = DEFAULT_TIMEOUT_MS
    inactivity_window_ms: float = DEFAULT_INACTIVITY_WINDOW_MS
    poll_interval_ms: float = 1.0
    turnaround_ms: float = 2.0


class EbbConfig(BaseModel):
    """Connection configuration for one EiBotBoard."""
    port: str = Field("", description="Serial port identifier, e.g. /dev/ttyACM0")
    baudrate: int = Field(DEFAULT_BAUD, gt=0)

    timeout_ms: float = Field(DEFAULT_TIMEOUT_MS, gt=0)
    inactivity_window_ms: float = Field(DEFAULT_INACTIVITY_WINDOW_MS, gt=0)
    poll_interval_ms: float = Field(1.0, gt=0)
    turnaround_ms: float = Field(2.0, ge=0)

    # Boards before v2.2 use a different V+ divider
    old_board: bool = False

    def timings(self) -> FramingTimings:
        """Build the framing timings from this configuration."""
        return FramingTimings(
            timeout_ms=self.timeout_ms,
            inactivity_window_ms=self.inactivity_window_ms,
            poll_interval_ms=self.poll_interval_ms,
            turnaround_ms=self.turnaround_ms,
        )


# =============================================================================
# DECODED REPLY MODELS
# =============================================================================

class Acknowledged(BaseModel):
    """Marker returned by commands that only answer OK."""
    model_config = ConfigDict(frozen=True)


ACKNOWLEDGED = Acknowledged()


class GeneralStatus(BaseModel):
    """
    QG status byte, one flag per bit (bit 7 first).

    ``fifo_empty`` is the negation of bit 0, which the firmware sets
    while the motion FIFO holds a command.
    """
    model_config = ConfigDict(frozen=True)

    pin_rb5: bool
    pin_rb2: bool
    button_prg: bool
    pen_down: bool
    executing: bool
    motor1_moving: bool
    motor2_moving: bool
    fifo_empty: bool


class MotorStatus(BaseModel):
    """QM motion status."""
    model_config = ConfigDict(frozen=True)

    executing: bool
    motor1_moving: bool
    motor2_moving: bool
    fifo_empty: bool


class StopInfo(BaseModel):
    """Result of an emergency stop (ES)."""
    model_config = ConfigDict(frozen=True)

    interrupted: bool = Field(..., description="A move was aborted")
    fifo_steps: Tuple[int, int] = Field(..., description="Steps of the discarded FIFO move")
    remaining_steps: Tuple[int, int] = Field(..., description="Steps left in the aborted move")


class AnalogCounts(BaseModel):
    """Raw 10-bit readings from QC."""
    model_config = ConfigDict(frozen=True)

    current_sense: int = Field(..., ge=0, le=1023, description="RA0, motor current setpoint")
    supply_voltage: int = Field(..., ge=0, le=1023, description="V+ divider")


class CurrentInfo(BaseModel):
    """Physical values computed from QC counts."""
    model_config = ConfigDict(frozen=True)

    max_current: float = Field(..., description="Motor current limit (A)")
    power_voltage: float = Field(..., description="Supply voltage (V)")
    counts: Optional[AnalogCounts] = None


class MotorConfiguration(BaseModel):
    """
    Microstep mode of both motors.

    ``source`` is "device" for a live QE reply and "cached" for the last
    mode this client commanded with EM.
    """
    model_config = ConfigDict(frozen=True)

    motor1: MotorMode
    motor2: MotorMode
    source: str = "device"


class StepPositions(BaseModel):
    """QS global step counters."""
    model_config = ConfigDict(frozen=True)

    motor1: int
    motor2: int

    def as_tuple(self) -> Tuple[int, int]:
        return (self.motor1, self.motor2)
