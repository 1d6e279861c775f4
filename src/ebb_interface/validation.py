"""Argument checks applied before a command is built."""

from __future__ import annotations

from typing import Sequence

from .errors import CommandValidationError


PORT_LETTERS = "ABCDE"
MAX_24_BIT = (1 << 24) - 1
MAX_32_BIT = (1 << 32) - 1
MAX_NICKNAME_LENGTH = 16


def check_range(name: str, value: int, low: int, high: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise CommandValidationError(f"{name} must be an integer, got {value!r}")
    if not low <= value <= high:
        raise CommandValidationError(f"{name} must be {low}-{high}, got {value}")
    return value


def check_byte(name: str, value: int) -> int:
    return check_range(name, value, 0, 255)


def check_bytes(name: str, values: Sequence[int], count: int) -> list:
    if len(values) != count:
        raise CommandValidationError(f"{name} needs {count} values, got {len(values)}")
    return [check_byte(f"{name}[{i}]", v) for i, v in enumerate(values)]


def check_port(port: str) -> str:
    if not isinstance(port, str) or len(port) != 1 or port.upper() not in PORT_LETTERS:
        raise CommandValidationError(f"Port letter must be A-E, got {port!r}")
    return port.upper()


def check_pin(pin: int) -> int:
    return check_range("pin", pin, 0, 7)


def check_nickname(name: str) -> str:
    if len(name) > MAX_NICKNAME_LENGTH:
        raise CommandValidationError(
            f"Nickname is limited to {MAX_NICKNAME_LENGTH} characters, got {len(name)}"
        )
    if not all(" " <= ch <= "~" for ch in name) or "," in name:
        raise CommandValidationError(f"Nickname must be printable ASCII without commas: {name!r}")
    return name
