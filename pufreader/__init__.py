"""Capture PUF responses from a device under test over serial and derive keys.

The serial session engine (power reset, marker scanner, scripted parameter
injection) lives in :mod:`pufreader.session`; bit selection in
:mod:`pufreader.keygen`.
"""

from .keygen import KeyDerivationError, extract_key, gen_key, load_positions
from .markers import Marker, MarkerConflict, MarkerTable
from .scanner import MarkerScanner, SerialStalled
from .session import Runner, SerialUnavailable

__all__ = [
    "KeyDerivationError",
    "Marker",
    "MarkerConflict",
    "MarkerScanner",
    "MarkerTable",
    "Runner",
    "SerialStalled",
    "SerialUnavailable",
    "extract_key",
    "gen_key",
    "load_positions",
]
