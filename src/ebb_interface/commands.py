"""
EBB Interface - Commands
========================
Command model and the static mnemonic -> (reply class, decoder) table.

Adding a firmware command is a single entry in COMMAND_TABLE.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from . import decoders
from .framing import FieldLayout, RawAccumulation
from .models import ReplyClass


Decoder = Callable[[RawAccumulation], Any]


@dataclass(frozen=True)
class CommandSpec:
    """How one mnemonic's reply is framed and decoded."""
    mnemonic: str
    reply_class: ReplyClass
    decoder: Decoder
    layout: Optional[FieldLayout] = None


def _format_arg(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(int(value))
    if isinstance(value, str):
        return value
    raise TypeError(f"Unsupported argument type: {type(value).__name__}")


@dataclass(frozen=True)
class Command:
    """
    One command line: mnemonic plus formatted arguments.

    Example:
        >>> Command.build("SM", 1000, 200, -200).wire()
        b'SM,1000,200,-200\\r'
    """
    mnemonic: str
    args: Tuple[str, ...] = ()

    @classmethod
    def build(cls, mnemonic: str, *values: Any) -> Command:
        return cls(mnemonic, tuple(_format_arg(v) for v in values))

    @property
    def spec(self) -> CommandSpec:
        try:
            return COMMAND_TABLE[self.mnemonic]
        except KeyError:
            raise KeyError(f"Unknown EBB command: {self.mnemonic!r}") from None

    @property
    def reply_class(self) -> ReplyClass:
        return self.spec.reply_class

    @property
    def line(self) -> str:
        return ",".join((self.mnemonic,) + self.args)

    def wire(self) -> bytes:
        return (self.line + "\r").encode("ascii")


def _ack(mnemonic: str) -> CommandSpec:
    return CommandSpec(mnemonic, ReplyClass.ACKNOWLEDGED, decoders.decode_ack)


_ACK_ONLY = (
    "AC",  # analog channel enable
    "BL",  # enter bootloader
    "C",   # configure pin directions
    "CS",  # clear step position
    "CU",  # configure user options
    "EM",  # enable motors
    "HM",  # home / absolute move
    "LM",  # low-level step-limited move
    "LT",  # low-level time-limited move
    "MW",  # memory write
    "ND",  # node count decrement
    "NI",  # node count increment
    "O",   # digital outputs
    "PC",  # pulse configure
    "PD",  # pin direction
    "PG",  # pulse go
    "PO",  # pin output
    "R",   # reset
    "RB",  # reboot
    "S2",  # general RC servo output
    "SE",  # set engraver
    "SL",  # set layer
    "SM",  # stepper move
    "SN",  # set node count
    "SP",  # set pen state
    "SR",  # set servo power timeout
    "ST",  # set nickname
    "T",   # timed analog/digital read
    "TP",  # toggle pen
    "XM",  # mixed-axis stepper move
)


COMMAND_TABLE: Dict[str, CommandSpec] = {m: _ack(m) for m in _ACK_ONLY}

COMMAND_TABLE.update({
    spec.mnemonic: spec
    for spec in (
        # Status digit before OK, possibly glued to it ("0OK")
        CommandSpec("QB", ReplyClass.ACKNOWLEDGED, decoders.decode_button_pressed),
        CommandSpec("QP", ReplyClass.ACKNOWLEDGED, decoders.decode_pen_down),
        CommandSpec("QR", ReplyClass.ACKNOWLEDGED, decoders.decode_servo_powered),

        CommandSpec("QG", ReplyClass.HEX_STATUS_BYTE, decoders.decode_general_status),

        CommandSpec("QM", ReplyClass.MULTI_FIELD_LINE, decoders.decode_motor_status,
                    decoders.MOTOR_STATUS_LAYOUT),
        CommandSpec("I", ReplyClass.MULTI_FIELD_LINE, decoders.decode_digital_inputs,
                    decoders.DIGITAL_INPUT_LAYOUT),
        CommandSpec("MR", ReplyClass.MULTI_FIELD_LINE, decoders.decode_memory_byte,
                    decoders.MEMORY_LAYOUT),
        CommandSpec("PI", ReplyClass.MULTI_FIELD_LINE, decoders.decode_pin_state,
                    decoders.PIN_INPUT_LAYOUT),
        CommandSpec("A", ReplyClass.MULTI_FIELD_LINE, decoders.decode_analog_values,
                    decoders.ANALOG_VALUES_LAYOUT),

        CommandSpec("ES", ReplyClass.STATUS_THEN_OK, decoders.decode_stop_info),
        CommandSpec("QC", ReplyClass.STATUS_THEN_OK, decoders.decode_analog_counts),
        CommandSpec("QE", ReplyClass.STATUS_THEN_OK, decoders.decode_motor_modes),
        CommandSpec("QL", ReplyClass.STATUS_THEN_OK, decoders.decode_integer),
        CommandSpec("QN", ReplyClass.STATUS_THEN_OK, decoders.decode_integer),
        CommandSpec("QS", ReplyClass.STATUS_THEN_OK, decoders.decode_step_positions),
        CommandSpec("QT", ReplyClass.STATUS_THEN_OK, decoders.decode_nickname),

        CommandSpec("V", ReplyClass.BARE_VALUE, decoders.decode_version),
    )
})
