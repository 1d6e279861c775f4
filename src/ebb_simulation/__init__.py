"""
Simulation Package
===================
Stand-ins for EBB hardware: a firmware simulator and a scripted,
time-exact replay transport.
"""

from .firmware import (
    FIRMWARE_VERSION,
    FirmwareParameterError,
    SimulatedEbb,
)
from .replay import (
    ScriptedTransport,
    SimulatedClock,
)

__all__ = [
    "FIRMWARE_VERSION",
    "FirmwareParameterError",
    "SimulatedEbb",
    "ScriptedTransport",
    "SimulatedClock",
]
