"""
EBB Interface - Reply Decoders
===============================
Pure functions turning a raw accumulation into a typed value.

Decoders never return partial results: they either build the complete
value or raise DecodeError (fields missing or not numeric) or
ProtocolError (marker or prefix not what the reply class requires).
"""

from __future__ import annotations

from typing import Dict, List, Tuple

from .errors import DecodeError, ProtocolError
from .framing import FieldLayout, RawAccumulation
from .models import (
    ACKNOWLEDGED,
    Acknowledged,
    AnalogCounts,
    CurrentInfo,
    GeneralStatus,
    MotorConfiguration,
    MotorMode,
    MotorStatus,
    PenState,
    StepPositions,
    StopInfo,
)


DEFAULT_NICKNAME = "EBB"
ANALOG_FULL_SCALE = 1023
ANALOG_REFERENCE_V = 3.3

# Current sense: RA0 voltage / 1.76 gives the motor current limit in amps
CURRENT_SENSE_DIVISOR = 1.76
# V+ divider ratio on current and pre-v2.2 boards, plus the input diode drop
SUPPLY_DIVIDER = 1.0 / 9.2
SUPPLY_DIVIDER_OLD_BOARD = 1.0 / 11.0
SUPPLY_DIODE_DROP_V = 0.3

# Microstep divisor reported by QE -> EM mode
MICROSTEP_DIVISORS = {
    0: MotorMode.DISABLED,
    1: MotorMode.FULL_STEP,
    2: MotorMode.HALF_STEP,
    4: MotorMode.QUARTER_STEP,
    8: MotorMode.EIGHTH_STEP,
    16: MotorMode.SIXTEENTH_STEP,
}

MOTOR_STATUS_LAYOUT = FieldLayout("QM", 4)
DIGITAL_INPUT_LAYOUT = FieldLayout("I", 5)
MEMORY_LAYOUT = FieldLayout("MR", 1)
PIN_INPUT_LAYOUT = FieldLayout("PI", 1)
ANALOG_VALUES_LAYOUT = FieldLayout("A", 0)
STOP_INFO_LAYOUT = FieldLayout(None, 5)
PAIR_LAYOUT = FieldLayout(None, 2)
SINGLE_LAYOUT = FieldLayout(None, 1)


# =============================================================================
# HELPERS
# =============================================================================

def _to_int(text: str, what: str = "field") -> int:
    try:
        return int(text)
    except ValueError:
        raise DecodeError(f"Non-numeric {what}: {text!r}") from None


def _fields(line: str, layout: FieldLayout) -> List[str]:
    fields = layout.split(line)
    if fields is None:
        raise ProtocolError(f"Expected a {layout.prefix!r} reply, got {line!r}")
    if len(fields) < layout.min_fields:
        raise DecodeError(
            f"Incomplete response: expected at least {layout.min_fields} fields, "
            f"got {len(fields)} in {line!r}"
        )
    return fields


def _int_fields(line: str, layout: FieldLayout) -> List[int]:
    return [_to_int(f) for f in _fields(line, layout)]


def payload_before_ok(raw: RawAccumulation) -> str:
    """Text in front of the OK marker, without CR/LF."""
    text = raw.text
    index = text.find("OK")
    if index < 0:
        raise ProtocolError("Missing OK marker")
    return text[:index].strip("\r\n")


def first_line(raw: RawAccumulation) -> str:
    """First newline-terminated line, without CR/LF."""
    return raw.text.lstrip("\r\n").split("\n", 1)[0].strip("\r")


def status_lines(raw: RawAccumulation) -> Tuple[str, str]:
    """
    Split a STATUS_THEN_OK reply into its data and status lines.

    Lines are CR-delimited; stray LFs (the firmware emits both "\\r\\n"
    and "\\n\\r") are dropped.
    """
    lines = [line.strip("\n") for line in raw.text.split("\r")]
    if len(lines) < 2:
        raise ProtocolError("Expected a data line followed by OK")
    data, status = lines[0], lines[1]
    if status != "OK":
        raise ProtocolError(f"Expected OK after data line, got {status!r}")
    return data, status


def _leading_digit(raw: RawAccumulation) -> str:
    payload = payload_before_ok(raw)
    if not payload or payload[0] not in "01":
        raise DecodeError(f"Expected a 0/1 status digit, got {payload!r}")
    return payload[0]


# =============================================================================
# ACKNOWLEDGED
# =============================================================================

def decode_ack(raw: RawAccumulation) -> Acknowledged:
    payload = payload_before_ok(raw)
    if payload:
        raise ProtocolError(f"Unexpected data before OK: {payload!r}")
    return ACKNOWLEDGED


def decode_pen_down(raw: RawAccumulation) -> bool:
    """QP: "0" means the pen is down."""
    return int(_leading_digit(raw)) == PenState.DOWN


def decode_button_pressed(raw: RawAccumulation) -> bool:
    """QB: "1" means the PRG button was pressed since the last query."""
    return _leading_digit(raw) == "1"


def decode_servo_powered(raw: RawAccumulation) -> bool:
    """QR: "1" means the servo output is powered."""
    return _leading_digit(raw) == "1"


# =============================================================================
# HEX STATUS BYTE
# =============================================================================

def general_status_from_byte(value: int) -> GeneralStatus:
    """
    Map a QG status byte to its flags.

    Defined for every value 0x00-0xFF.
    """
    if not 0 <= value <= 0xFF:
        raise DecodeError(f"Status byte out of range: {value}")

    def bit(n: int) -> bool:
        return bool(value & (1 << n))

    return GeneralStatus(
        pin_rb5=bit(7),
        pin_rb2=bit(6),
        button_prg=bit(5),
        pen_down=bit(4),
        executing=bit(3),
        motor1_moving=bit(2),
        motor2_moving=bit(1),
        fifo_empty=not bit(0),
    )


def decode_general_status(raw: RawAccumulation) -> GeneralStatus:
    text = raw.text.strip("\r\n")
    digits = ""
    for ch in text[:2]:
        if ch not in "0123456789abcdefABCDEF":
            break
        digits += ch
    if not digits:
        raise DecodeError(f"Expected a hex status byte, got {text!r}")
    return general_status_from_byte(int(digits, 16))


# =============================================================================
# MULTI-FIELD LINE
# =============================================================================

def decode_motor_status(raw: RawAccumulation) -> MotorStatus:
    executing, motor1, motor2, fifo = _int_fields(first_line(raw), MOTOR_STATUS_LAYOUT)[:4]
    return MotorStatus(
        executing=executing > 0,
        motor1_moving=motor1 > 0,
        motor2_moving=motor2 > 0,
        fifo_empty=fifo == 0,
    )


def decode_digital_inputs(raw: RawAccumulation) -> Tuple[int, int, int, int, int]:
    """I: port A-E input registers."""
    values = _int_fields(first_line(raw), DIGITAL_INPUT_LAYOUT)
    return tuple(values[:5])


def decode_memory_byte(raw: RawAccumulation) -> int:
    value = _int_fields(first_line(raw), MEMORY_LAYOUT)[0]
    if not 0 <= value <= 255:
        raise DecodeError(f"Memory value out of range: {value}")
    return value


def decode_pin_state(raw: RawAccumulation) -> bool:
    return _int_fields(first_line(raw), PIN_INPUT_LAYOUT)[0] != 0


def decode_analog_values(raw: RawAccumulation) -> Dict[int, int]:
    """A: "A,00:0713,02:0241" -> {0: 713, 2: 241}."""
    values = {}
    for item in _fields(first_line(raw), ANALOG_VALUES_LAYOUT):
        parts = item.split(":")
        if len(parts) != 2:
            raise DecodeError(f"Malformed analog entry: {item!r}")
        values[_to_int(parts[0], "channel")] = _to_int(parts[1], "analog value")
    return values


# =============================================================================
# STATUS THEN OK
# =============================================================================

def decode_stop_info(raw: RawAccumulation) -> StopInfo:
    data, _ = status_lines(raw)
    interrupted, fifo1, fifo2, rem1, rem2 = _int_fields(data, STOP_INFO_LAYOUT)[:5]
    return StopInfo(
        interrupted=interrupted != 0,
        fifo_steps=(fifo1, fifo2),
        remaining_steps=(rem1, rem2),
    )


def decode_analog_counts(raw: RawAccumulation) -> AnalogCounts:
    data, _ = status_lines(raw)
    current_sense, supply = _int_fields(data, PAIR_LAYOUT)[:2]
    for count in (current_sense, supply):
        if not 0 <= count <= ANALOG_FULL_SCALE:
            raise DecodeError(f"Analog count out of range: {count}")
    return AnalogCounts(current_sense=current_sense, supply_voltage=supply)


def current_info_from_counts(counts: AnalogCounts, old_board: bool = False) -> CurrentInfo:
    """Convert QC counts to amps and volts."""
    ra0_v = ANALOG_REFERENCE_V * counts.current_sense / ANALOG_FULL_SCALE
    vplus_v = ANALOG_REFERENCE_V * counts.supply_voltage / ANALOG_FULL_SCALE
    divider = SUPPLY_DIVIDER_OLD_BOARD if old_board else SUPPLY_DIVIDER

    return CurrentInfo(
        max_current=ra0_v / CURRENT_SENSE_DIVISOR,
        power_voltage=vplus_v / divider + SUPPLY_DIODE_DROP_V,
        counts=counts,
    )


def decode_motor_modes(raw: RawAccumulation) -> MotorConfiguration:
    data, _ = status_lines(raw)
    divisors = _int_fields(data, PAIR_LAYOUT)[:2]
    modes = []
    for divisor in divisors:
        if divisor not in MICROSTEP_DIVISORS:
            raise DecodeError(f"Unknown microstep divisor: {divisor}")
        modes.append(MICROSTEP_DIVISORS[divisor])
    return MotorConfiguration(motor1=modes[0], motor2=modes[1], source="device")


def decode_step_positions(raw: RawAccumulation) -> StepPositions:
    data, _ = status_lines(raw)
    motor1, motor2 = _int_fields(data, PAIR_LAYOUT)[:2]
    return StepPositions(motor1=motor1, motor2=motor2)


def decode_nickname(raw: RawAccumulation) -> str:
    # Only line endings are stripped; spaces are part of the name
    data, _ = status_lines(raw)
    return data or DEFAULT_NICKNAME


def decode_integer(raw: RawAccumulation) -> int:
    data, _ = status_lines(raw)
    return _int_fields(data, SINGLE_LAYOUT)[0]


# =============================================================================
# BARE VALUE
# =============================================================================

def decode_version(raw: RawAccumulation) -> str:
    version = raw.text.rstrip("\r\n")
    if not version:
        raise DecodeError("Empty version reply")
    return version
