"""In-band two-byte sentinels recognised on the DUT serial stream.

Markers are matched against the pair ``(previous byte, current byte)``. The
lookup is a table keyed by that signature and populated in the fixed priority
order START, END, LOADED, ASK_INPUT, FINISHED, PANIC, so if two markers were
ever configured with the same signature the earlier one in that order fires.
Strict tables (the default) refuse such configurations outright.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Mapping, Optional, Tuple, Union


Signature = Tuple[int, int]


class Marker(Enum):
    """Protocol markers, declared in match priority order."""

    START = "START"
    END = "END"
    LOADED = "LOADED"
    ASK_INPUT = "ASK_INPUT"
    FINISHED = "FINISHED"
    PANIC = "PANIC"


PRIORITY: Tuple[Marker, ...] = tuple(Marker)


class MarkerConflict(ValueError):
    """Raised when two markers share a signature in a strict table."""


def parse_signature(value: Union[str, bytes, Tuple[int, int]]) -> Signature:
    """Parse ``"fe01"``, ``"0xfe01"``, ``b"\\xfe\\x01"`` or ``(0xfe, 0x01)``."""

    if isinstance(value, str):
        text = value.strip().lower()
        if text.startswith("0x"):
            text = text[2:]
        try:
            raw = bytes.fromhex(text)
        except ValueError as exc:
            raise ValueError(f"invalid marker signature {value!r}: {exc}") from exc
    elif isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        raw = bytes(value)
    if len(raw) != 2:
        raise ValueError(f"marker signature must be exactly two bytes, got {len(raw)} from {value!r}")
    return raw[0], raw[1]


class MarkerTable:
    """Transition lookup from a two-byte signature to the marker it fires."""

    def __init__(self, signatures: Mapping[Marker, Signature], *, strict: bool = True) -> None:
        missing = [marker.name for marker in PRIORITY if marker not in signatures]
        if missing:
            raise ValueError(f"missing marker signatures: {', '.join(missing)}")

        self.signatures: Dict[Marker, Signature] = {}
        self._lookup: Dict[Signature, Marker] = {}
        for marker in PRIORITY:
            signature = parse_signature(signatures[marker])
            self.signatures[marker] = signature
            owner = self._lookup.setdefault(signature, marker)
            if owner is not marker and strict:
                raise MarkerConflict(
                    f"{marker.name} shares signature {bytes(signature).hex()} with {owner.name}"
                )

    @classmethod
    def from_config(cls, cfg: Mapping, *, strict: bool = True) -> "MarkerTable":
        markers = cfg["MARKERS"]
        return cls({marker: parse_signature(markers[marker.name]) for marker in PRIORITY}, strict=strict)

    def match(self, previous: int, current: int) -> Optional[Marker]:
        return self._lookup.get((previous, current))

    def is_distinct(self) -> bool:
        return len(self._lookup) == len(PRIORITY)

    def shadowed(self) -> Dict[Marker, Marker]:
        """Markers that can never fire, mapped to the marker that wins their signature."""

        return {
            marker: self._lookup[signature]
            for marker, signature in self.signatures.items()
            if self._lookup[signature] is not marker
        }

    def __repr__(self) -> str:
        body = ", ".join(f"{m.name}={bytes(s).hex()}" for m, s in self.signatures.items())
        return f"MarkerTable({body})"


__all__ = [
    "Marker",
    "MarkerConflict",
    "MarkerTable",
    "PRIORITY",
    "parse_signature",
]
