"""
EBB Interface - Device Facade
==============================
Public operations of an EiBotBoard.

Every operation validates its arguments, builds one command and runs it
through the dispatcher; a validation failure never reaches the wire.
A few configuration operations issue several round trips in sequence.
They are not atomic: if one fails, the earlier ones stay applied.

A device must not be used from more than one thread at a time; an
overlapping call raises DeviceBusyError.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from loguru import logger

from .commands import Command
from .decoders import current_info_from_counts
from .dispatcher import CommandDispatcher
from .errors import CommandValidationError, DecodeError, EbbConnectionError, ProtocolError
from .models import (
    ConnectionStatus,
    CurrentInfo,
    EbbConfig,
    GeneralStatus,
    MotorConfiguration,
    MotorMode,
    MotorStatus,
    PenState,
    SERVO_CHANNEL_PEN,
    StepPositions,
    StopInfo,
)
from .transport import SerialTransport, Transport
from .validation import (
    MAX_24_BIT,
    MAX_32_BIT,
    check_byte,
    check_bytes,
    check_nickname,
    check_pin,
    check_port,
    check_range,
)


INT32_MIN = -(1 << 31)
INT32_MAX = (1 << 31) - 1
MAX_16_BIT = 0xFFFF

# Timed read (T) mode argument
MODE_DIGITAL = 0
MODE_ANALOG = 1


class EbbDevice:
    """
    One EiBotBoard connection.

    The device keeps the last commanded motor modes because older firmware
    cannot report them; ``get_motor_config`` can fall back to that cache.

    Usage:
        with EbbDevice(EbbConfig(port="/dev/ttyACM0")) as ebb:
            print(ebb.get_firmware_version())
            ebb.enable_motors(MotorMode.SIXTEENTH_STEP, MotorMode.SIXTEENTH_STEP)
            ebb.move_stepper_steps(1000, 800, 800)
    """

    def __init__(
        self,
        config: Optional[EbbConfig] = None,
        transport: Optional[Transport] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or EbbConfig()
        self._transport = transport
        self._clock = clock
        self._sleep = sleep
        self._dispatcher: Optional[CommandDispatcher] = None
        self._status = ConnectionStatus.DISCONNECTED

        self._motor_config = MotorConfiguration(
            motor1=MotorMode.DISABLED, motor2=MotorMode.DISABLED, source="cached"
        )

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_open(self) -> bool:
        return self._status == ConnectionStatus.CONNECTED

    @property
    def dispatcher(self) -> CommandDispatcher:
        if self._dispatcher is None:
            raise EbbConnectionError("Device is not open")
        return self._dispatcher

    def open(self) -> None:
        """
        Open the connection.

        Raises:
            EbbConnectionError: No port configured or the port cannot be opened
        """
        if self.is_open:
            return

        transport = self._transport
        if transport is None:
            if not self.config.port:
                raise EbbConnectionError("No serial port configured")
            transport = SerialTransport(self.config.port, self.config.baudrate)

        # Keep a serial transport only once it has opened
        transport.open()
        self._transport = transport
        self._dispatcher = CommandDispatcher(
            self._transport, self.config.timings(), clock=self._clock, sleep=self._sleep
        )
        self._status = ConnectionStatus.CONNECTED
        logger.info(f"EBB connected ({self.config.port or 'custom transport'})")

    def close(self) -> None:
        """Close the connection. Safe to call when already closed."""
        try:
            if self._transport is not None:
                self._transport.close()
        finally:
            if self._status == ConnectionStatus.CONNECTED:
                logger.info("EBB disconnected")
            self._dispatcher = None
            self._status = ConnectionStatus.DISCONNECTED

    def __enter__(self) -> EbbDevice:
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def execute(self, mnemonic: str, *args: Any, timeout_ms: Optional[float] = None) -> Any:
        """Run any command from the command table and return its decoded reply."""
        return self.dispatcher.execute(Command.build(mnemonic, *args), timeout_ms)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_firmware_version(self) -> str:
        return self.execute("V")

    def get_analog_values(self) -> Dict[int, int]:
        """Latest readings of every enabled analog channel, keyed by channel."""
        return self.execute("A")

    def get_digital_inputs(self) -> Tuple[int, int, int, int, int]:
        """Input registers of ports A-E."""
        return self.execute("I")

    def read_memory(self, address: int) -> int:
        check_range("address", address, 0, 4095)
        return self.execute("MR", address)

    def get_pin(self, port: str, pin: int) -> bool:
        port = check_port(port)
        check_pin(pin)
        return self.execute("PI", port, pin)

    def is_button_pressed(self, default: Optional[bool] = None) -> bool:
        """
        Whether the PRG button was pressed since the last query.

        Args:
            default: If given, returned instead of raising when the reply
                cannot be decoded. Timeouts always propagate.
        """
        return self._query_flag("QB", default)

    def is_pen_down(self, default: Optional[bool] = None) -> bool:
        """
        Whether the pen is down.

        Args:
            default: If given, returned instead of raising when the reply
                cannot be decoded. Timeouts always propagate.
        """
        return self._query_flag("QP", default)

    def is_servo_powered(self) -> bool:
        return self.execute("QR")

    def _query_flag(self, mnemonic: str, default: Optional[bool]) -> bool:
        try:
            return self.execute(mnemonic)
        except (DecodeError, ProtocolError) as e:
            if default is None:
                raise
            logger.warning(f"{mnemonic} reply unusable, assuming {default}: {e}")
            return default

    def get_current_info(self, old_board: Optional[bool] = None) -> CurrentInfo:
        """
        Motor current limit and supply voltage.

        Args:
            old_board: Use the pre-v2.2 supply divider. Defaults to
                ``config.old_board``.
        """
        if old_board is None:
            old_board = self.config.old_board
        return current_info_from_counts(self.execute("QC"), old_board)

    def get_motor_config(
        self,
        query_device: bool = True,
        fallback_to_cache: bool = False,
    ) -> MotorConfiguration:
        """
        Microstep mode of both motors.

        Args:
            query_device: Ask the firmware (QE). When False the last modes
                commanded through ``enable_motors`` are returned.
            fallback_to_cache: Return the cached modes if the firmware
                rejects QE (firmware older than 2.8.0).
        """
        if not query_device:
            return self._motor_config
        try:
            return self.execute("QE")
        except ProtocolError as e:
            if not fallback_to_cache:
                raise
            logger.warning(f"QE unsupported, using cached motor config: {e}")
            return self._motor_config

    @property
    def cached_motor_config(self) -> MotorConfiguration:
        return self._motor_config

    def get_general_status(self) -> GeneralStatus:
        return self.execute("QG")

    def get_layer(self) -> int:
        return self.execute("QL")

    def get_motor_status(self) -> MotorStatus:
        return self.execute("QM")

    def get_node_count(self) -> int:
        return self.execute("QN")

    def get_step_positions(self) -> StepPositions:
        return self.execute("QS")

    def get_nickname(self) -> str:
        return self.execute("QT")

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def configure_analog_input(self, channel: int, enable: bool) -> None:
        check_range("channel", channel, 0, 15)
        self.execute("AC", channel, bool(enable))

    def configure_pin_directions(self, tris: Sequence[int]) -> None:
        """Write TRIS registers of ports A-E (bit set = input)."""
        self.execute("C", *check_bytes("tris", tris, 5))

    def set_user_options(self, ok_responses: bool, param_check: bool, fifo_led_indicator: bool) -> None:
        """Set the three CU options, one round trip each."""
        self.execute("CU", 1, bool(ok_responses))
        self.execute("CU", 2, bool(param_check))
        self.execute("CU", 3, bool(fifo_led_indicator))

    def set_pin_mode(self, port: str, pin: int, output: bool) -> None:
        port = check_port(port)
        check_pin(pin)
        self.execute("PD", port, pin, 0 if output else 1)

    def configure_pulse(self, params: Sequence[int]) -> None:
        """PC: (length, period) pairs for RB0-RB3."""
        if len(params) != 8:
            raise CommandValidationError(f"Pulse configuration needs 8 values, got {len(params)}")
        for i, v in enumerate(params):
            check_range(f"params[{i}]", v, 0, MAX_16_BIT)
        self.execute("PC", *params)

    def pulse_start(self, enable: bool) -> None:
        self.execute("PG", bool(enable))

    def set_layer(self, layer: int) -> None:
        check_range("layer", layer, 0, 127)
        self.execute("SL", layer)

    def set_nickname(self, name: str) -> None:
        self.execute("ST", check_nickname(name))

    def set_servo_power_timeout(self, timeout_ms: int, power_on: Optional[bool] = None) -> None:
        """SR: servo power-off delay; 0 keeps the servo powered."""
        check_range("timeout_ms", timeout_ms, 0, MAX_32_BIT)
        if power_on is None:
            self.execute("SR", timeout_ms)
        else:
            self.execute("SR", timeout_ms, bool(power_on))

    def set_node_count(self, count: int) -> None:
        check_range("count", count, 0, MAX_32_BIT)
        self.execute("SN", count)

    def increment_node_count(self) -> None:
        self.execute("NI")

    def decrement_node_count(self) -> None:
        self.execute("ND")

    def write_memory(self, address: int, value: int) -> None:
        check_range("address", address, 0, 4095)
        check_byte("value", value)
        self.execute("MW", address, value)

    def set_digital_outputs(self, outputs: Sequence[int]) -> None:
        self.execute("O", *check_bytes("outputs", outputs, 5))

    def set_pin(self, port: str, pin: int, high: bool) -> None:
        port = check_port(port)
        check_pin(pin)
        self.execute("PO", port, pin, bool(high))

    def timed_read(self, duration_ms: int, digital: bool) -> None:
        """Start streaming I or A packets every ``duration_ms``."""
        check_range("duration_ms", duration_ms, 1, MAX_16_BIT)
        self.execute("T", duration_ms, MODE_DIGITAL if digital else MODE_ANALOG)

    # -------------------------------------------------------------------------
    # Motion
    # -------------------------------------------------------------------------

    def enable_motors(self, motor1: int, motor2: int) -> None:
        """
        Energize motors with a microstep mode, or disable them (0).

        The modes are cached once the firmware acknowledges them.
        """
        mode1 = MotorMode(check_range("motor1", motor1, 0, 5))
        mode2 = MotorMode(check_range("motor2", motor2, 0, 5))
        self.execute("EM", mode1, mode2)
        self._motor_config = MotorConfiguration(motor1=mode1, motor2=mode2, source="cached")

    def disable_motors(self) -> None:
        self.enable_motors(MotorMode.DISABLED, MotorMode.DISABLED)

    def clear_step_position(self) -> None:
        self.execute("CS")

    def move_absolute(self, step_frequency: int, position1: int = 0, position2: int = 0) -> None:
        """HM: move both motors to absolute positions at ``step_frequency`` Hz."""
        check_range("step_frequency", step_frequency, 2, 25000)
        check_range("position1", position1, INT32_MIN, INT32_MAX)
        check_range("position2", position2, INT32_MIN, INT32_MAX)
        self.execute("HM", step_frequency, position1, position2)

    def move_stepper_steps(self, duration_ms: int, steps1: int, steps2: int = 0) -> None:
        check_range("duration_ms", duration_ms, 1, MAX_24_BIT)
        check_range("steps1", steps1, -MAX_24_BIT, MAX_24_BIT)
        check_range("steps2", steps2, -MAX_24_BIT, MAX_24_BIT)
        self.execute("SM", duration_ms, steps1, steps2)

    def move_mixed_axis(self, duration_ms: int, steps_a: int, steps_b: int) -> None:
        """XM: move in A = m1 + m2, B = m1 - m2 coordinates (CoreXY)."""
        check_range("duration_ms", duration_ms, 1, MAX_24_BIT)
        check_range("steps_a", steps_a, -MAX_24_BIT, MAX_24_BIT)
        check_range("steps_b", steps_b, -MAX_24_BIT, MAX_24_BIT)
        self.execute("XM", duration_ms, steps_a, steps_b)

    def move_low_level(
        self,
        rate1: int, steps1: int, accel1: int,
        rate2: int, steps2: int, accel2: int,
        clear1: bool = False, clear2: bool = False,
    ) -> None:
        """LM: step-limited move with per-axis rate and acceleration."""
        for name, value in (("rate1", rate1), ("rate2", rate2)):
            check_range(name, value, 0, INT32_MAX)
        for name, value in (("steps1", steps1), ("accel1", accel1), ("steps2", steps2), ("accel2", accel2)):
            check_range(name, value, INT32_MIN, INT32_MAX)
        clear = (2 if clear2 else 0) | (1 if clear1 else 0)
        self.execute("LM", rate1, steps1, accel1, rate2, steps2, accel2, clear)

    def move_timed(
        self,
        intervals: int,
        rate1: int, accel1: int,
        rate2: int, accel2: int,
        clear1: bool = False, clear2: bool = False,
    ) -> None:
        """LT: time-limited move lasting ``intervals`` ISR ticks."""
        check_range("intervals", intervals, 0, INT32_MAX)
        for name, value in (("rate1", rate1), ("accel1", accel1), ("rate2", rate2), ("accel2", accel2)):
            check_range(name, value, INT32_MIN, INT32_MAX)
        clear = (2 if clear2 else 0) | (1 if clear1 else 0)
        self.execute("LT", intervals, rate1, accel1, rate2, accel2, clear)

    def emergency_stop(self, disable_motors: bool = False) -> StopInfo:
        if disable_motors:
            return self.execute("ES", 1)
        return self.execute("ES")

    # -------------------------------------------------------------------------
    # Pen, servo, engraver
    # -------------------------------------------------------------------------

    def set_pen_state(self, down: bool, duration_ms: Optional[int] = None, portb_pin: Optional[int] = None) -> None:
        """
        SP: raise or lower the pen.

        Args:
            down: Lower the pen when True
            duration_ms: Delay before the next motion command starts
            portb_pin: RB pin driven alongside the servo; requires duration_ms
        """
        args = [PenState.DOWN if down else PenState.UP]
        if duration_ms is not None:
            args.append(check_range("duration_ms", duration_ms, 0, MAX_16_BIT))
        if portb_pin is not None:
            if duration_ms is None:
                raise CommandValidationError("portb_pin requires duration_ms")
            args.append(check_pin(portb_pin))
        self.execute("SP", *[int(a) for a in args])

    def toggle_pen(self, duration_ms: Optional[int] = None) -> None:
        if duration_ms is None:
            self.execute("TP")
        else:
            self.execute("TP", check_range("duration_ms", duration_ms, 0, MAX_16_BIT))

    def servo_output(
        self,
        position: int,
        channel: int = SERVO_CHANNEL_PEN,
        rate: Optional[int] = None,
        delay_ms: Optional[int] = None,
    ) -> None:
        """S2: drive an RC servo output; position 0 turns the output off."""
        args = [
            check_range("position", position, 0, MAX_16_BIT),
            check_range("channel", channel, 0, 24),
        ]
        if rate is not None:
            args.append(check_range("rate", rate, 0, MAX_16_BIT))
        if delay_ms is not None:
            if rate is None:
                args.append(0)
            args.append(check_range("delay_ms", delay_ms, 0, MAX_16_BIT))
        self.execute("S2", *args)

    def set_engraver(self, enable: bool, power: int = 1023, use_motion_queue: bool = True) -> None:
        check_range("power", power, 0, 1023)
        self.execute("SE", bool(enable), power, bool(use_motion_queue))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def reset(self) -> None:
        self.execute("R")

    def reboot(self) -> None:
        """RB: restart the firmware; the connection is closed afterwards."""
        try:
            self.dispatcher.send(Command.build("RB"))
        finally:
            self.close()

    def enter_bootloader(self) -> None:
        """BL: jump to the bootloader; the connection is closed afterwards."""
        try:
            self.dispatcher.send(Command.build("BL"))
        finally:
            self.close()
