"""
Test Suite for EBB Control Core
================================
Framing engine, reply decoders and command dispatcher.
"""

import pytest

# Import modules to test
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from ebb_interface import (
    ACKNOWLEDGED,
    COMMAND_TABLE,
    Command,
    CommandDispatcher,
    CommandValidationError,
    DecodeError,
    DeviceBusyError,
    ErrorKind,
    FramingEngine,
    FramingTimings,
    MotorMode,
    ProtocolError,
    RawAccumulation,
    ReplyClass,
    ReplyTimeoutError,
    RoundTripState,
)
from ebb_interface import decoders
from ebb_simulation import ScriptedTransport, SimulatedClock


VERSION_REPLY = b"EBBv13_and_above EB Firmware Version 2.8.1\r\n"


def accumulation(data: bytes, reply_class: ReplyClass = ReplyClass.ACKNOWLEDGED) -> RawAccumulation:
    raw = RawAccumulation(reply_class=reply_class, started_at=0.0)
    raw.append(data, 0.0)
    return raw


class TestFramingEngine:
    """Tests for per-class reply completion."""

    def setup_method(self):
        """Setup test fixtures."""
        self.clock = SimulatedClock()
        self.transport = ScriptedTransport(self.clock)
        self.engine = FramingEngine(
            self.transport,
            FramingTimings(),
            clock=self.clock.monotonic,
            sleep=self.clock.sleep,
        )

    def read(self, reply_class, *chunks, layout=None, timeout_ms=None):
        self.transport.script(*chunks)
        self.transport.write(b"X\r")
        return self.engine.read_reply(reply_class, timeout_ms, layout=layout)

    def test_acknowledged_plain_ok(self):
        """A bare OK completes an acknowledged reply."""
        raw = self.read(ReplyClass.ACKNOWLEDGED, b"OK\r\n")
        assert decoders.decode_ack(raw) is ACKNOWLEDGED

    def test_acknowledged_accepts_glued_status_digit(self):
        """'0OK' is a complete reply whose payload is '0'."""
        raw = self.read(ReplyClass.ACKNOWLEDGED, b"0OK")
        assert decoders.payload_before_ok(raw) == "0"

    def test_acknowledged_marker_split_across_reads(self):
        """The OK marker may arrive in two pieces."""
        raw = self.read(ReplyClass.ACKNOWLEDGED, (0, b"1\r\nO"), (5, b"K\r\n"))
        assert decoders.payload_before_ok(raw) == "1"
        assert self.clock.monotonic() == pytest.approx(0.005, abs=0.002)

    def test_bare_value_waits_for_quiet_period(self):
        """Bare values complete only after the inactivity window."""
        raw = self.read(ReplyClass.BARE_VALUE, (0, b"EBBv13"), (20, b" 2.8.1\r\n"))

        assert raw.text == "EBBv13 2.8.1\r\n"
        elapsed = self.clock.monotonic()
        assert 0.120 <= elapsed < 0.125

    def test_hex_status_strips_line_endings(self):
        """CR/LF are dropped as they arrive; two hex digits complete."""
        raw = self.read(ReplyClass.HEX_STATUS_BYTE, (0, b"\r\n"), (3, b"3"), (6, b"A\r\n"))
        assert bytes(raw.data) == b"3A"
        assert self.clock.monotonic() < 0.010

    def test_hex_status_single_digit_completes_on_quiet(self):
        """Fewer hex digits than expected end on the inactivity window."""
        raw = self.read(ReplyClass.HEX_STATUS_BYTE, b"7")
        assert bytes(raw.data) == b"7"
        assert self.clock.monotonic() >= 0.100

    def test_multi_field_line_terminated(self):
        """A newline completes a multi-field line immediately."""
        raw = self.read(ReplyClass.MULTI_FIELD_LINE, b"QM,1,1,0,0\r\n",
                        layout=decoders.MOTOR_STATUS_LAYOUT)
        assert raw.text == "QM,1,1,0,0\r\n"
        assert self.clock.monotonic() < 0.010

    def test_multi_field_line_without_newline(self):
        """Prefix plus enough fields then silence also completes."""
        raw = self.read(ReplyClass.MULTI_FIELD_LINE, b"QM,0,0,0,0",
                        layout=decoders.MOTOR_STATUS_LAYOUT)
        assert raw.text == "QM,0,0,0,0"
        assert self.clock.monotonic() >= 0.100

    def test_multi_field_line_too_few_fields_times_out(self):
        """An unterminated line short of the minimum never completes."""
        with pytest.raises(ReplyTimeoutError) as exc_info:
            self.read(ReplyClass.MULTI_FIELD_LINE, b"QM,0,0",
                      layout=decoders.MOTOR_STATUS_LAYOUT, timeout_ms=500)
        assert exc_info.value.raw == b"QM,0,0"

    def test_status_then_ok_two_lines(self):
        """Data line then OK line."""
        raw = self.read(ReplyClass.STATUS_THEN_OK, (0, b"123\r\n"), (4, b"OK\r\n"))
        assert decoders.decode_integer(raw) == 123

    def test_status_then_ok_waits_for_second_line(self):
        """One line alone is not a complete status reply."""
        with pytest.raises(ReplyTimeoutError):
            self.read(ReplyClass.STATUS_THEN_OK, b"123\r\n", timeout_ms=300)

    @pytest.mark.parametrize("reply_class", list(ReplyClass))
    def test_zero_bytes_times_out_at_deadline(self, reply_class):
        """Silence fails at the deadline, within one poll interval."""
        with pytest.raises(ReplyTimeoutError) as exc_info:
            self.read(reply_class)

        elapsed = self.clock.monotonic()
        assert 3.0 <= elapsed < 3.0 + 0.001
        assert exc_info.value.raw == b""
        assert exc_info.value.kind is ErrorKind.TIMEOUT

    def test_timeout_keeps_partial_bytes(self):
        """Partial data is carried on the timeout for diagnostics."""
        with pytest.raises(ReplyTimeoutError) as exc_info:
            self.read(ReplyClass.ACKNOWLEDGED, b"12", timeout_ms=200)
        assert exc_info.value.raw == b"12"

    def test_firmware_error_completes_early(self):
        """An '!' error line ends the reply instead of running to the deadline."""
        raw = self.read(ReplyClass.STATUS_THEN_OK, b"!8 Err: Unknown command 'ZZ:5A5A'\r\n")
        assert raw.firmware_error.startswith("!8 Err")
        assert self.clock.monotonic() < 0.010

    def test_data_line_starting_with_bang(self):
        """Only '!<code> Err' is an error report; other '!' data is a normal reply."""
        raw = self.read(ReplyClass.STATUS_THEN_OK, b"!Plotter\r\nOK\r\n")
        assert raw.firmware_error is None
        assert decoders.decode_nickname(raw) == "!Plotter"

    def test_drain_discards_stale_bytes(self):
        """Bytes from an earlier exchange are removed before sending."""
        self.transport.inject(b"OK\r\n")
        assert self.engine.drain() == b"OK\r\n"
        assert self.transport.bytes_available() == 0


class TestStatusByteDecoder:
    """Tests for the QG hex status byte."""

    def test_every_byte_decodes(self):
        """All values 0x00-0xFF map to a flag record without errors."""
        for value in range(256):
            first = decoders.decode_general_status(
                accumulation(f"{value:02X}".encode(), ReplyClass.HEX_STATUS_BYTE)
            )
            second = decoders.general_status_from_byte(value)

            assert first == second
            assert first.fifo_empty == (not value & 0x01)
            assert first.pin_rb5 == bool(value & 0x80)

    def test_lowercase_hex(self):
        """Lowercase digits decode the same as uppercase."""
        upper = decoders.decode_general_status(accumulation(b"AB", ReplyClass.HEX_STATUS_BYTE))
        lower = decoders.decode_general_status(accumulation(b"ab", ReplyClass.HEX_STATUS_BYTE))
        assert upper == lower

    def test_bit_layout_0x9f(self):
        """0x9F = 1001_1111: FIFO busy, both motors moving, executing."""
        status = decoders.decode_general_status(
            accumulation(b"9F\r\n", ReplyClass.HEX_STATUS_BYTE)
        )

        assert status.fifo_empty is False
        assert status.motor2_moving is True
        assert status.motor1_moving is True
        assert status.executing is True
        assert status.pen_down is True
        assert status.button_prg is False
        assert status.pin_rb2 is False
        assert status.pin_rb5 is True

    def test_non_hex_reply_rejected(self):
        with pytest.raises(DecodeError):
            decoders.decode_general_status(accumulation(b"ZZ", ReplyClass.HEX_STATUS_BYTE))


class TestReplyDecoders:
    """Tests for the remaining decoders."""

    def test_motor_status_minimum_fields(self):
        """QM needs four data fields."""
        with pytest.raises(DecodeError, match="Incomplete response"):
            decoders.decode_motor_status(accumulation(b"QM,1,1,0\r\n"))

        status = decoders.decode_motor_status(accumulation(b"QM,1,1,0,0\r\n"))
        assert status.executing is True
        assert status.motor1_moving is True
        assert status.motor2_moving is False
        assert status.fifo_empty is True

    def test_motor_status_wrong_prefix(self):
        with pytest.raises(ProtocolError):
            decoders.decode_motor_status(accumulation(b"QX,1,1,0,0\r\n"))

    def test_motor_status_non_numeric(self):
        with pytest.raises(DecodeError, match="Non-numeric"):
            decoders.decode_motor_status(accumulation(b"QM,a,1,0,0\r\n"))

    def test_pen_state_anchored_on_leading_digit(self):
        """'0' is pen down; other digits in the buffer are ignored."""
        assert decoders.decode_pen_down(accumulation(b"0OK")) is True
        assert decoders.decode_pen_down(accumulation(b"1OK")) is False
        assert decoders.decode_pen_down(accumulation(b"0\r\nOK\r\n")) is True

        with pytest.raises(DecodeError):
            decoders.decode_pen_down(accumulation(b"21OK"))
        with pytest.raises(DecodeError):
            decoders.decode_pen_down(accumulation(b"OK"))

    def test_button_and_servo_flags(self):
        assert decoders.decode_button_pressed(accumulation(b"1\r\nOK\r\n")) is True
        assert decoders.decode_button_pressed(accumulation(b"0OK")) is False
        assert decoders.decode_servo_powered(accumulation(b"1OK")) is True

    def test_ack_rejects_unexpected_data(self):
        with pytest.raises(ProtocolError):
            decoders.decode_ack(accumulation(b"5OK"))

    def test_status_line_must_be_ok(self):
        with pytest.raises(ProtocolError, match="Expected OK"):
            decoders.decode_integer(accumulation(b"123\r\nNO\r\n", ReplyClass.STATUS_THEN_OK))

    def test_nickname_keeps_spaces(self):
        """Only line endings are stripped from the nickname."""
        raw = accumulation(b"  My Bot \r\nOK\r\n", ReplyClass.STATUS_THEN_OK)
        assert decoders.decode_nickname(raw) == "  My Bot "

    def test_empty_nickname_gets_default(self):
        raw = accumulation(b"\r\nOK\r\n", ReplyClass.STATUS_THEN_OK)
        assert decoders.decode_nickname(raw) == decoders.DEFAULT_NICKNAME

    def test_step_positions_with_swapped_line_ending(self):
        """QS ends its data line with LF CR on some firmware."""
        raw = accumulation(b"-12,40\n\rOK\r\n", ReplyClass.STATUS_THEN_OK)
        assert decoders.decode_step_positions(raw).as_tuple() == (-12, 40)

    def test_current_conversion(self):
        """Full-scale counts convert with the board's divider."""
        raw = accumulation(b"1023,1023\r\nOK\r\n", ReplyClass.STATUS_THEN_OK)
        counts = decoders.decode_analog_counts(raw)

        info = decoders.current_info_from_counts(counts)
        assert info.max_current == pytest.approx(3.3 / 1.76)
        assert info.power_voltage == pytest.approx(3.3 * 9.2 + 0.3)

        old = decoders.current_info_from_counts(counts, old_board=True)
        assert old.power_voltage == pytest.approx(3.3 * 11.0 + 0.3)

    def test_analog_count_out_of_range(self):
        with pytest.raises(DecodeError):
            decoders.decode_analog_counts(accumulation(b"2000,10\r\nOK\r\n", ReplyClass.STATUS_THEN_OK))

    def test_motor_modes(self):
        raw = accumulation(b"16,8\r\nOK\r\n", ReplyClass.STATUS_THEN_OK)
        config = decoders.decode_motor_modes(raw)

        assert config.motor1 is MotorMode.SIXTEENTH_STEP
        assert config.motor2 is MotorMode.EIGHTH_STEP
        assert config.source == "device"

        with pytest.raises(DecodeError):
            decoders.decode_motor_modes(accumulation(b"3,1\r\nOK\r\n", ReplyClass.STATUS_THEN_OK))

    def test_stop_info(self):
        raw = accumulation(b"1,10,20,30,40\r\nOK\r\n", ReplyClass.STATUS_THEN_OK)
        info = decoders.decode_stop_info(raw)

        assert info.interrupted is True
        assert info.fifo_steps == (10, 20)
        assert info.remaining_steps == (30, 40)

        with pytest.raises(DecodeError):
            decoders.decode_stop_info(accumulation(b"1,2,3\r\nOK\r\n", ReplyClass.STATUS_THEN_OK))

    def test_version_strips_only_line_ending(self):
        raw = accumulation(VERSION_REPLY, ReplyClass.BARE_VALUE)
        assert decoders.decode_version(raw) == "EBBv13_and_above EB Firmware Version 2.8.1"

    def test_analog_values(self):
        raw = accumulation(b"A,00:0713,02:0241\r\n", ReplyClass.MULTI_FIELD_LINE)
        assert decoders.decode_analog_values(raw) == {0: 713, 2: 241}
        assert decoders.decode_analog_values(accumulation(b"A\r\n")) == {}

        with pytest.raises(DecodeError):
            decoders.decode_analog_values(accumulation(b"A,00-0713\r\n"))

    def test_digital_inputs_and_memory(self):
        raw = accumulation(b"I,001,002,003,004,005\r\n", ReplyClass.MULTI_FIELD_LINE)
        assert decoders.decode_digital_inputs(raw) == (1, 2, 3, 4, 5)

        assert decoders.decode_memory_byte(accumulation(b"MR,200\r\n")) == 200
        with pytest.raises(DecodeError):
            decoders.decode_memory_byte(accumulation(b"MR,300\r\n"))


class TestCommand:
    """Tests for command formatting and the command table."""

    def test_wire_format(self):
        """Arguments are comma-joined and the line ends with CR."""
        assert Command.build("SM", 1000, -5, True).wire() == b"SM,1000,-5,1\r"
        assert Command.build("QG").wire() == b"QG\r"
        assert Command.build("EM", MotorMode.SIXTEENTH_STEP, 0).line == "EM,1,0"

    def test_table_is_consistent(self):
        for mnemonic, spec in COMMAND_TABLE.items():
            assert spec.mnemonic == mnemonic
            assert isinstance(spec.reply_class, ReplyClass)

    def test_reply_classes(self):
        assert Command.build("QP").reply_class is ReplyClass.ACKNOWLEDGED
        assert Command.build("QG").reply_class is ReplyClass.HEX_STATUS_BYTE
        assert Command.build("QM").reply_class is ReplyClass.MULTI_FIELD_LINE
        assert Command.build("QS").reply_class is ReplyClass.STATUS_THEN_OK
        assert Command.build("V").reply_class is ReplyClass.BARE_VALUE


class TestCommandDispatcher:
    """Tests for complete round trips."""

    def setup_method(self):
        """Setup test fixtures."""
        self.clock = SimulatedClock()
        self.transport = ScriptedTransport(self.clock)
        self.dispatcher = CommandDispatcher(
            self.transport,
            FramingTimings(),
            clock=self.clock.monotonic,
            sleep=self.clock.sleep,
        )

    def test_motor_status_round_trip(self):
        """QM with 'QM,1,1,0,0' decodes executing, motor 1 moving, FIFO empty."""
        self.transport.script(b"QM,1,1,0,0\r\n")
        status = self.dispatcher.execute(Command.build("QM"))

        assert status.executing is True
        assert status.motor1_moving is True
        assert status.motor2_moving is False
        assert status.fifo_empty is True
        assert self.transport.writes == [b"QM\r"]
        assert self.dispatcher.last_state is RoundTripState.COMPLETED

    def test_pen_query_glued_marker(self):
        """QP answers '0OK' for pen down and '1OK' for pen up."""
        self.transport.script(b"0OK")
        assert self.dispatcher.execute(Command.build("QP")) is True

        self.transport.script(b"1OK")
        assert self.dispatcher.execute(Command.build("QP")) is False

    def test_general_status_round_trip(self):
        self.transport.script(b"9F\r\n")
        status = self.dispatcher.execute(Command.build("QG"))
        assert status.fifo_empty is False
        assert status.executing is True

    def test_version_round_trip(self):
        """V returns the exact text received, minus the trailing line ending."""
        self.transport.script(VERSION_REPLY)
        version = self.dispatcher.execute(Command.build("V"))

        assert version == VERSION_REPLY.decode().rstrip("\r\n")
        assert self.clock.monotonic() >= 0.100

    def test_timeout_carries_mnemonic(self):
        with pytest.raises(ReplyTimeoutError) as exc_info:
            self.dispatcher.execute(Command.build("QG"), timeout_ms=50)

        assert exc_info.value.mnemonic == "QG"
        assert exc_info.value.retryable is True
        assert self.dispatcher.last_state is RoundTripState.TIMED_OUT

    def test_decode_failure_carries_raw_reply(self):
        self.transport.script(b"QM,1,1\r\n")
        with pytest.raises(DecodeError) as exc_info:
            self.dispatcher.execute(Command.build("QM"))

        assert exc_info.value.mnemonic == "QM"
        assert exc_info.value.raw == b"QM,1,1\r\n"
        assert self.dispatcher.last_state is RoundTripState.DECODE_FAILED

    def test_firmware_error_is_protocol_error(self):
        self.transport.script(b"!8 Err: Unknown command 'QE:5145'\r\n")
        with pytest.raises(ProtocolError, match="Firmware rejected"):
            self.dispatcher.execute(Command.build("QE"))

    def test_stale_bytes_drained_before_send(self):
        """A leftover OK must not complete the next reply."""
        self.transport.inject(b"OK\r\n")
        self.transport.script((30, b"1OK\r\n"))

        assert self.dispatcher.execute(Command.build("QP")) is False

    def test_unknown_mnemonic_never_sent(self):
        with pytest.raises(CommandValidationError):
            self.dispatcher.execute(Command.build("ZZ"))
        assert self.transport.writes == []

    def test_overlapping_round_trip_rejected(self):
        """A second command while one is in flight fails without writing."""
        with self.dispatcher._lock:
            with pytest.raises(DeviceBusyError):
                self.dispatcher.execute(Command.build("QG"))
        assert self.transport.writes == []

    def test_send_without_reply(self):
        self.dispatcher.send(Command.build("RB"))
        assert self.transport.writes == [b"RB\r"]
        assert self.dispatcher.last_state is RoundTripState.COMPLETED


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
