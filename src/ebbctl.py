"""
EBB Control - Command Line Entry Point
=======================================
Query an EiBotBoard from the shell.

    ebbctl --port /dev/ttyACM0 version
    ebbctl --config config/ebb_config.yaml all
    ebbctl --simulate status
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Callable, Dict, Optional

import yaml
from loguru import logger

# Add src to path for imports
SRC_DIR = Path(__file__).parent
PROJECT_ROOT = SRC_DIR.parent
sys.path.insert(0, str(SRC_DIR))

from ebb_interface import EbbConfig, EbbDevice, EbbError
from ebb_simulation import SimulatedEbb


DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config" / "ebb_config.yaml"


def load_config(config_path: Optional[Path] = None) -> dict:
    """Load configuration from a YAML file; missing file means defaults."""
    path = config_path or DEFAULT_CONFIG_PATH
    if path.exists():
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
            logger.debug(f"Configuration loaded from {path}")
            return config
    if config_path is not None:
        logger.warning(f"Config file not found: {path}")
    return {}


def build_ebb_config(raw: dict, args: argparse.Namespace) -> EbbConfig:
    """Merge the YAML ``ebb`` section with command-line overrides."""
    values = dict(raw.get("ebb", {}) or {})
    if args.port:
        values["port"] = args.port
    if args.baud:
        values["baudrate"] = args.baud
    if args.timeout_ms:
        values["timeout_ms"] = args.timeout_ms
    return EbbConfig(**values)


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Configure logging."""
    logger.remove()  # Remove default handler

    level = "DEBUG" if verbose else "INFO"

    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True
    )

    if log_file:
        logger.add(
            log_file,
            rotation="10 MB",
            retention="7 days",
            level="DEBUG"
        )


def _print_status(ebb: EbbDevice) -> None:
    status = ebb.get_general_status()
    for name, value in status.model_dump().items():
        print(f"  {name}: {'yes' if value else 'no'}")


def _print_motors(ebb: EbbDevice) -> None:
    motors = ebb.get_motor_status()
    config = ebb.get_motor_config(fallback_to_cache=True)
    print(f"  executing: {motors.executing}")
    print(f"  motor1: moving={motors.motor1_moving} mode={config.motor1.name} ({config.source})")
    print(f"  motor2: moving={motors.motor2_moving} mode={config.motor2.name} ({config.source})")
    print(f"  fifo empty: {motors.fifo_empty}")


def _print_current(ebb: EbbDevice) -> None:
    info = ebb.get_current_info()
    print(f"  max current: {info.max_current:.3f} A")
    print(f"  power voltage: {info.power_voltage:.2f} V")


QUERIES: Dict[str, Callable[[EbbDevice], None]] = {
    "version": lambda ebb: print(f"  {ebb.get_firmware_version()}"),
    "status": _print_status,
    "motors": _print_motors,
    "pen": lambda ebb: print(f"  pen: {'down' if ebb.is_pen_down() else 'up'}"),
    "positions": lambda ebb: print("  steps: %d, %d" % ebb.get_step_positions().as_tuple()),
    "nickname": lambda ebb: print(f"  {ebb.get_nickname()}"),
    "current": _print_current,
}


def run_queries(ebb: EbbDevice, names) -> None:
    for name in names:
        print(f"=== {name} ===")
        QUERIES[name](ebb)


def main(argv=None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="EBB Control - query an EiBotBoard over its serial protocol"
    )
    parser.add_argument(
        "query",
        choices=sorted(QUERIES) + ["all"],
        help="What to read from the board"
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        help="Path to configuration file"
    )
    parser.add_argument("--port", "-p", help="Serial port, overrides the config file")
    parser.add_argument("--baud", type=int, help="Baud rate")
    parser.add_argument("--timeout-ms", type=float, help="Reply deadline in milliseconds")
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Talk to the built-in firmware simulator instead of a serial port"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )
    parser.add_argument("--log-file", help="Also write debug logs to this file")

    args = parser.parse_args(argv)

    raw_config = load_config(args.config)
    log_config = raw_config.get("logging", {}) or {}
    setup_logging(args.verbose, args.log_file or log_config.get("file"))

    try:
        config = build_ebb_config(raw_config, args)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    transport = SimulatedEbb() if args.simulate else None
    names = sorted(QUERIES) if args.query == "all" else [args.query]

    try:
        with EbbDevice(config, transport=transport) as ebb:
            run_queries(ebb, names)
    except EbbError as e:
        logger.error(f"{e.kind.value} error: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
