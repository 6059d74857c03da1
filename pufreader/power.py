"""Power-cut control for the device under test.

The DUT's USB supply runs through a switch driven by one GPIO output. Cutting
and restoring it forces a clean reboot so every round starts from the same
boot state.
"""

from __future__ import annotations

import time
from typing import Callable, Optional, Protocol

try:  # Best-effort hardware import; unavailable on dev hosts.
    import RPi.GPIO as GPIO  # type: ignore
except (ImportError, RuntimeError):  # pragma: no cover - exercised on non-Pi hosts
    GPIO = None  # type: ignore[assignment]

from .logging_utils import METRICS, get_logger

logger = get_logger("pufreader.power")


class PowerControlUnavailable(RuntimeError):
    """Raised when the digital-output line cannot be initialised."""


class PowerLine(Protocol):
    """One digital output line."""

    def write(self, level: bool) -> None:
        """Drive the line high (True) or low (False)."""

    def close(self) -> None:
        """Release the line."""


class GpioPowerLine:
    """Drive a Raspberry Pi GPIO pin through ``RPi.GPIO``."""

    def __init__(self, pin: int, *, mode: str = "BCM", initial: bool = False) -> None:
        if GPIO is None:
            raise PowerControlUnavailable("RPi.GPIO module not available on host")
        if mode not in {"BCM", "BOARD"}:
            raise PowerControlUnavailable(f"unsupported pin numbering mode {mode!r}")

        self.pin = pin
        try:
            GPIO.setwarnings(False)
            GPIO.setmode(GPIO.BCM if mode == "BCM" else GPIO.BOARD)
            GPIO.setup(pin, GPIO.OUT, initial=GPIO.HIGH if initial else GPIO.LOW)
        except Exception as exc:  # pragma: no cover - requires hardware
            raise PowerControlUnavailable(f"failed to set up GPIO pin {pin}: {exc}") from exc

    def write(self, level: bool) -> None:
        GPIO.output(self.pin, GPIO.HIGH if level else GPIO.LOW)

    def close(self) -> None:
        GPIO.cleanup(self.pin)


class PowerController:
    """Cut and restore DUT power with a settle delay in between."""

    def __init__(
        self,
        line: PowerLine,
        *,
        sleep_s: float,
        cut_high: bool = True,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        if sleep_s < 0:
            raise ValueError("sleep_s must be >= 0")
        self.line = line
        self.sleep_s = sleep_s
        self.cut_high = cut_high
        self._sleep = sleeper

    def cut(self) -> None:
        logger.info("Cutting off USB power", extra={"level": self.cut_high})
        self.line.write(self.cut_high)

    def restore(self) -> None:
        logger.info("Turning on USB power", extra={"level": not self.cut_high})
        self.line.write(not self.cut_high)

    def reset(self) -> None:
        """Power-cycle the DUT; blocks for ``sleep_s`` seconds."""
        self.cut()
        self._sleep(self.sleep_s)
        self.restore()
        METRICS.counter("power_cycles").inc()

    def close(self) -> None:
        self.line.close()


def power_from_config(cfg: dict, line: Optional[PowerLine] = None) -> PowerController:
    if line is None:
        # Power starts restored so the DUT may already be running.
        line = GpioPowerLine(cfg["POWER_PIN"], mode=cfg["POWER_PIN_MODE"], initial=not cfg["POWER_CUT_HIGH"])
    return PowerController(line, sleep_s=float(cfg["POWER_SLEEP_S"]), cut_high=cfg["POWER_CUT_HIGH"])


__all__ = [
    "GpioPowerLine",
    "PowerController",
    "PowerControlUnavailable",
    "PowerLine",
    "power_from_config",
]
