"""
EBB Firmware Simulator
=======================
In-process stand-in for an EiBotBoard running firmware 2.8.x.

The simulator implements the transport primitives and answers each
command line with the reply shape the real firmware uses, including its
quirks:

- status digits optionally glued to the marker ("0OK")
- bare, unmarked V reply
- QG as two hex digits with no marker
- QM optionally without a trailing newline
- QS data line ended with "\\n\\r" instead of "\\r\\n"
- "!8 Err: ..." for unknown commands

Motion is instantaneous: moves update the step counters immediately and
QM always reports idle.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger


FIRMWARE_VERSION = "EBBv13_and_above EB Firmware Version 2.8.1"

# EM mode -> microstep divisor reported by QE
MODE_DIVISORS = {0: 0, 1: 16, 2: 8, 3: 4, 4: 2, 5: 1}

OK = "OK\r\n"


class FirmwareParameterError(ValueError):
    """Command parameters the simulated firmware rejects."""


class SimulatedEbb:
    """
    Simulated EBB implementing the transport primitives.

    Attributes:
        received: Command lines received, in order
    """

    def __init__(
        self,
        version: str = FIRMWARE_VERSION,
        glue_status_digits: bool = False,
        terminate_motor_status: bool = True,
        supports_qe: bool = True,
        nickname: str = "",
    ):
        self.version = version
        self.glue_status_digits = glue_status_digits
        self.terminate_motor_status = terminate_motor_status
        self.supports_qe = supports_qe

        self.received: List[str] = []
        self._inbox = bytearray()
        self._outbox = bytearray()
        self._open = False
        self.rebooted = False
        self.in_bootloader = False

        self.nickname = nickname
        self._reset_state()

        self._handlers: Dict[str, Callable[[List[str]], Optional[str]]] = {
            "A": self._analog_values,
            "AC": self._analog_configure,
            "BL": self._bootloader,
            "C": self._accept,
            "CS": self._clear_steps,
            "CU": self._accept,
            "EM": self._enable_motors,
            "ES": self._emergency_stop,
            "HM": self._home_move,
            "I": self._inputs,
            "LM": self._low_level_move,
            "LT": self._accept,
            "MR": self._memory_read,
            "MW": self._memory_write,
            "ND": self._node_decrement,
            "NI": self._node_increment,
            "O": self._outputs,
            "PC": self._accept,
            "PD": self._accept,
            "PG": self._accept,
            "PI": self._pin_input,
            "PO": self._pin_output,
            "QB": self._query_button,
            "QC": self._query_current,
            "QE": self._query_motor_modes,
            "QG": self._query_general,
            "QL": lambda args: self._data_then_ok(str(self.layer)),
            "QM": self._query_motors,
            "QN": lambda args: self._data_then_ok(str(self.node_count)),
            "QP": lambda args: self._status_digit(int(not self.pen_down)),
            "QR": lambda args: self._status_digit(int(self.servo_powered)),
            "QS": self._query_steps,
            "QT": lambda args: self._data_then_ok(self.nickname),
            "R": self._reset,
            "RB": self._reboot,
            "S2": self._accept,
            "SE": self._engraver,
            "SL": self._set_layer,
            "SM": self._stepper_move,
            "SN": self._set_node_count,
            "SP": self._set_pen,
            "SR": self._servo_timeout,
            "ST": self._set_nickname,
            "T": self._accept,
            "TP": self._toggle_pen,
            "V": lambda args: self.version + "\r\n",
            "XM": self._mixed_move,
        }

    def _reset_state(self) -> None:
        self.pen_down = False
        self.servo_powered = True
        self.button_pressed = False
        self.layer = 0
        self.node_count = 0
        self.motor_modes: Tuple[int, int] = (0, 0)
        self.steps = [0, 0]
        self.memory = [0] * 4096
        self.pins: Dict[Tuple[str, int], int] = {}
        self.ports = [0, 0, 0, 0, 0]
        self.analog_channels: Dict[int, int] = {}
        self.engraver_on = False
        self.analog_counts = (394, 300)

    # -------------------------------------------------------------------------
    # Transport primitives
    # -------------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False

    def write(self, data: bytes) -> int:
        self._inbox.extend(data)
        while b"\r" in self._inbox:
            line, _, rest = bytes(self._inbox).partition(b"\r")
            self._inbox = bytearray(rest)
            self._handle(line.decode("ascii", errors="replace"))
        return len(data)

    def bytes_available(self) -> int:
        return len(self._outbox)

    def read_available(self, size: int) -> bytes:
        chunk = bytes(self._outbox[:size])
        del self._outbox[:size]
        return chunk

    # -------------------------------------------------------------------------
    # Test hooks
    # -------------------------------------------------------------------------

    def press_button(self) -> None:
        self.button_pressed = True

    def emit(self, data: bytes) -> None:
        """Queue unsolicited bytes, as after a reply the host never read."""
        self._outbox.extend(data)

    # -------------------------------------------------------------------------
    # Command handling
    # -------------------------------------------------------------------------

    def _handle(self, line: str) -> None:
        line = line.strip("\n")
        if not line:
            return
        self.received.append(line)

        parts = line.split(",")
        mnemonic, args = parts[0].upper(), parts[1:]
        handler = self._handlers.get(mnemonic)
        if mnemonic == "QE" and not self.supports_qe:
            handler = None

        if handler is None:
            reply = f"!8 Err: Unknown command '{mnemonic}:{mnemonic.encode().hex().upper()}'\r\n"
        else:
            try:
                reply = handler(args)
            except (FirmwareParameterError, ValueError, IndexError) as e:
                reply = f"!0 Err: {mnemonic} bad parameter ({e})\r\n"

        logger.trace(f"simulated EBB {line!r} -> {reply!r}")
        if reply:
            self._outbox.extend(reply.encode("ascii"))

    def _status_digit(self, value: int) -> str:
        if self.glue_status_digits:
            return f"{value}OK\r\n"
        return f"{value}\r\nOK\r\n"

    @staticmethod
    def _data_then_ok(data: str) -> str:
        return f"{data}\r\nOK\r\n"

    @staticmethod
    def _int(args: List[str], index: int, low: int, high: int) -> int:
        value = int(args[index])
        if not low <= value <= high:
            raise FirmwareParameterError(f"{value} outside {low}-{high}")
        return value

    def _accept(self, args: List[str]) -> str:
        return OK

    # Queries

    def _query_general(self, args: List[str]) -> str:
        status = 0
        if self.button_pressed:
            status |= 1 << 5
        if self.pen_down:
            status |= 1 << 4
        return f"{status:02X}\r\n"

    def _query_motors(self, args: List[str]) -> str:
        line = "QM,0,0,0,0"
        return line + "\r\n" if self.terminate_motor_status else line

    def _query_button(self, args: List[str]) -> str:
        pressed, self.button_pressed = self.button_pressed, False
        return self._status_digit(int(pressed))

    def _query_current(self, args: List[str]) -> str:
        current, voltage = self.analog_counts
        return self._data_then_ok(f"{current:04d},{voltage:04d}")

    def _query_motor_modes(self, args: List[str]) -> str:
        m1, m2 = (MODE_DIVISORS[m] for m in self.motor_modes)
        return self._data_then_ok(f"{m1},{m2}")

    def _query_steps(self, args: List[str]) -> str:
        return f"{self.steps[0]},{self.steps[1]}\n\rOK\r\n"

    def _analog_values(self, args: List[str]) -> str:
        items = [f"{ch:02d}:{value:04d}" for ch, value in sorted(self.analog_channels.items())]
        return ",".join(["A"] + items) + "\r\n"

    def _inputs(self, args: List[str]) -> str:
        return "I," + ",".join(f"{p:03d}" for p in self.ports) + "\r\n"

    def _memory_read(self, args: List[str]) -> str:
        address = self._int(args, 0, 0, 4095)
        return f"MR,{self.memory[address]}\r\n"

    def _pin_input(self, args: List[str]) -> str:
        pin = self._int(args, 1, 0, 7)
        return f"PI,{self.pins.get((args[0].upper(), pin), 0)}\r\n"

    # Settings

    def _analog_configure(self, args: List[str]) -> str:
        channel = self._int(args, 0, 0, 15)
        if self._int(args, 1, 0, 1):
            self.analog_channels[channel] = 512
        else:
            self.analog_channels.pop(channel, None)
        return OK

    def _outputs(self, args: List[str]) -> str:
        self.ports = [self._int(args, i, 0, 255) for i in range(5)]
        return OK

    def _pin_output(self, args: List[str]) -> str:
        pin = self._int(args, 1, 0, 7)
        self.pins[(args[0].upper(), pin)] = self._int(args, 2, 0, 1)
        return OK

    def _memory_write(self, args: List[str]) -> str:
        self.memory[self._int(args, 0, 0, 4095)] = self._int(args, 1, 0, 255)
        return OK

    def _node_increment(self, args: List[str]) -> str:
        self.node_count += 1
        return OK

    def _node_decrement(self, args: List[str]) -> str:
        self.node_count = max(0, self.node_count - 1)
        return OK

    def _set_node_count(self, args: List[str]) -> str:
        self.node_count = self._int(args, 0, 0, (1 << 32) - 1)
        return OK

    def _set_layer(self, args: List[str]) -> str:
        self.layer = self._int(args, 0, 0, 127)
        return OK

    def _set_nickname(self, args: List[str]) -> str:
        self.nickname = args[0] if args else ""
        return OK

    def _set_pen(self, args: List[str]) -> str:
        self.pen_down = self._int(args, 0, 0, 1) == 0
        return OK

    def _toggle_pen(self, args: List[str]) -> str:
        self.pen_down = not self.pen_down
        return OK

    def _servo_timeout(self, args: List[str]) -> str:
        if len(args) > 1:
            self.servo_powered = self._int(args, 1, 0, 1) == 1
        return OK

    def _engraver(self, args: List[str]) -> str:
        self.engraver_on = self._int(args, 0, 0, 1) == 1
        return OK

    # Motion

    def _enable_motors(self, args: List[str]) -> str:
        self.motor_modes = (self._int(args, 0, 0, 5), self._int(args, 1, 0, 5))
        return OK

    def _clear_steps(self, args: List[str]) -> str:
        self.steps = [0, 0]
        return OK

    def _stepper_move(self, args: List[str]) -> str:
        self._int(args, 0, 1, (1 << 24) - 1)
        self.steps[0] += int(args[1])
        if len(args) > 2:
            self.steps[1] += int(args[2])
        return OK

    def _mixed_move(self, args: List[str]) -> str:
        self._int(args, 0, 1, (1 << 24) - 1)
        a, b = int(args[1]), int(args[2])
        self.steps[0] += a + b
        self.steps[1] += a - b
        return OK

    def _home_move(self, args: List[str]) -> str:
        self._int(args, 0, 2, 25000)
        targets = [int(a) for a in args[1:3]] + [0, 0]
        self.steps = targets[:2]
        return OK

    def _low_level_move(self, args: List[str]) -> str:
        self.steps[0] += int(args[1])
        self.steps[1] += int(args[4])
        return OK

    def _emergency_stop(self, args: List[str]) -> str:
        if args and self._int(args, 0, 0, 1):
            self.motor_modes = (0, 0)
        return self._data_then_ok("0,0,0,0,0")

    # Lifecycle

    def _reset(self, args: List[str]) -> str:
        self._reset_state()
        return OK

    def _reboot(self, args: List[str]) -> Optional[str]:
        self.rebooted = True
        self._open = False
        return None

    def _bootloader(self, args: List[str]) -> Optional[str]:
        self.in_bootloader = True
        self._open = False
        return None
