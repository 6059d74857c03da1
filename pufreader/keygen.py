"""Derive a key from selected bit positions of one PUF capture.

Bits are counted over the bytes following the first comma of the capture,
most significant bit first. Each position selects one bit, in order, giving a
string of ASCII ``'0'``/``'1'`` characters.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional, Sequence, TextIO, Union

from .logging_utils import get_logger

logger = get_logger("pufreader.keygen")

SEPARATOR = ord(",")


class KeyDerivationError(ValueError):
    """Position list or capture does not satisfy the key derivation contract."""


def validate_positions(positions: Sequence[int], key_size: int) -> List[int]:
    """Return ``positions`` as a list after checking length and ordering.

    Raises
    ------
    KeyDerivationError
        If ``key_size`` is not positive, the list length differs from
        ``key_size``, or the positions are not strictly increasing
        non-negative integers.
    """

    if isinstance(key_size, bool) or not isinstance(key_size, int) or key_size <= 0:
        raise KeyDerivationError(f"key_size must be a positive integer, got {key_size!r}")
    checked = list(positions)
    if len(checked) != key_size:
        raise KeyDerivationError(f"expected {key_size} bit positions, got {len(checked)}")
    previous = -1
    for index, position in enumerate(checked):
        if isinstance(position, bool) or not isinstance(position, int):
            raise KeyDerivationError(f"position #{index} is not an integer: {position!r}")
        if position < 0:
            raise KeyDerivationError(f"position #{index} is negative: {position}")
        if position <= previous:
            raise KeyDerivationError(
                f"positions must be strictly increasing: #{index}={position} follows {previous}"
            )
        previous = position
    return checked


def payload_after_separator(capture: bytes) -> Optional[bytes]:
    """Bytes after the first comma, or None when there is no comma."""
    cut = capture.find(SEPARATOR)
    if cut < 0:
        return None
    return capture[cut + 1:]


def extract_key(
    capture: bytes,
    positions: Sequence[int],
    key_size: int,
    *,
    allow_partial: bool = True,
) -> str:
    """Select the bits named by ``positions`` from ``capture``.

    A capture that ends before the last position yields a shorter key (logged
    as a warning), unless ``allow_partial`` is False, in which case
    :class:`KeyDerivationError` is raised.
    """

    wanted = validate_positions(positions, key_size)
    payload = payload_after_separator(bytes(capture)) or b""

    result: List[str] = []
    pending = iter(wanted)
    next_bit = next(pending)
    count = 0
    for value in payload:
        for shift in range(7, -1, -1):
            if count == next_bit:
                result.append("1" if (value >> shift) & 1 else "0")
                next_bit = next(pending, None)
            count += 1
            if next_bit is None:
                break
        if next_bit is None:
            break

    key = "".join(result)
    if len(key) < key_size:
        detail = {"key_size": key_size, "derived": len(key), "payload_bits": len(payload) * 8}
        if not allow_partial:
            raise KeyDerivationError(
                f"capture too short: derived {len(key)} of {key_size} bits from {len(payload) * 8} payload bits"
            )
        logger.warning("Capture too short for all positions; key truncated", extra=detail)
    return key


def parse_positions(tokens: Iterable[str]) -> List[int]:
    positions = []
    for token in tokens:
        try:
            value = int(token, 10)
        except ValueError:
            raise KeyDerivationError(f"invalid bit position {token!r}") from None
        if value < 0:
            raise KeyDerivationError(f"bit position must be non-negative, got {value}")
        positions.append(value)
    return positions


def load_positions(source: Union[str, Path, TextIO]) -> List[int]:
    """Read whitespace/newline separated bit positions from a path or stream."""

    if isinstance(source, (str, Path)):
        with open(source, "r", encoding="ascii") as handle:
            text = handle.read()
    else:
        text = source.read()
    return parse_positions(text.split())


def gen_key(
    serial_port: str,
    baud: int,
    power_pin: int,
    sleep_s: float,
    params: Sequence[str],
    pos_file: Union[str, Path, TextIO],
    key_size: int,
    **overrides,
) -> str:
    """Capture one PUF response from the DUT and derive a key from it.

    The position file is read and validated before any hardware is touched.
    Extra keyword arguments are applied as CONFIG overrides.
    """
    from .config import load_config
    from .session import Runner

    positions = load_positions(pos_file)
    validate_positions(positions, key_size)

    cfg = load_config(dict(
        overrides,
        SERIAL_PORT=serial_port,
        BAUD_RATE=baud,
        POWER_PIN=power_pin,
        POWER_SLEEP_S=float(sleep_s),
        PARAMS=list(params),
        MAX_MEASURES=1,
    ))
    with Runner.from_config(cfg) as runner:
        capture = runner.run_single()
    logger.info("Capture received for key generation", extra={"bytes": len(capture)})
    return extract_key(capture, positions, key_size)


__all__ = [
    "KeyDerivationError",
    "extract_key",
    "gen_key",
    "load_positions",
    "parse_positions",
    "payload_after_separator",
    "validate_positions",
]
