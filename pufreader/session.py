"""Measurement driver: power-cycle the DUT, scan one round, repeat.

Two modes share the round mechanics:

- ``run_rounds`` writes each capture to ``<prefix><n>.bin`` and keeps going
  until the scanner reports the round limit.
- ``run_single`` captures into memory and stops as soon as one capture has
  completed, for immediate key derivation.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional, TextIO

import serial

from .console import launch_operator_console
from .logging_utils import get_logger
from .power import PowerController, PowerControlUnavailable, power_from_config
from .scanner import MarkerScanner, SerialLink
from .sinks import CaptureSession, FileSink, MemorySink, finalize

logger = get_logger("pufreader.session")


class SerialUnavailable(RuntimeError):
    """Raised when the serial device cannot be opened."""


def open_serial(port: str, baud: int, timeout: Optional[float] = 1.0) -> serial.Serial:
    try:
        link = serial.Serial(port=port, baudrate=baud, timeout=timeout)
    except (serial.SerialException, ValueError) as exc:
        raise SerialUnavailable(f"failed to open serial port {port} at {baud} baud: {exc}") from exc
    logger.info("Serial port opened", extra={"port": port, "baud": baud})
    return link


def capture_path(prefix: str, index: int) -> Path:
    return Path(f"{prefix}{index}.bin")


class Runner:
    """Own the serial link and power line for a series of rounds."""

    def __init__(
        self,
        link: SerialLink,
        power: PowerController,
        cfg: dict,
        *,
        echo: Optional[TextIO] = None,
        quiet: bool = False,
    ) -> None:
        self.link = link
        self.power = power
        self.cfg = cfg
        self.echo = echo
        self.quiet = quiet
        self._console_stop: Optional[threading.Event] = None

    @classmethod
    def from_config(cls, cfg: dict, **kwargs) -> "Runner":
        """Open the serial device, then the power line; fail on either."""
        link = open_serial(cfg["SERIAL_PORT"], cfg["BAUD_RATE"], cfg["READ_TIMEOUT_S"])
        try:
            power = power_from_config(cfg)
        except PowerControlUnavailable:
            link.close()
            raise
        return cls(link, power, cfg, **kwargs)

    def __enter__(self) -> "Runner":
        return self

    def __exit__(self, *exc) -> bool:
        self.close()
        return False

    def close(self) -> None:
        if self._console_stop is not None:
            self._console_stop.set()
        close_link = getattr(self.link, "close", None)
        if close_link is not None:
            close_link()
        self.power.close()

    def reset(self) -> None:
        self.power.reset()

    def _scanner(self, max_rounds: int) -> MarkerScanner:
        self._maybe_start_console()
        return MarkerScanner.from_config(self.cfg, max_rounds=max_rounds, echo=self.echo, quiet=self.quiet)

    def _maybe_start_console(self) -> None:
        if not self.cfg.get("INTERACTIVE") or self._console_stop is not None:
            return
        self._console_stop = threading.Event()
        launch_operator_console(self.link, self._console_stop)

    def run_rounds(self, prefix: Optional[str] = None) -> int:
        """Capture rounds to files until the round limit; return captures completed.

        The file index is the number of captures completed so far, so a round
        that ends without END (PANIC, or FINISHED alone) is overwritten by the
        next attempt. A further capture within the same round goes to the next
        index, so the return value always matches the files written.
        """
        prefix = self.cfg["OUT_PREFIX"] if prefix is None else prefix
        scanner = self._scanner(self.cfg["MAX_MEASURES"])
        running = True
        while running:
            index = scanner.completed
            sink = FileSink(capture_path(prefix, index))
            session = CaptureSession(index, sink, rollover=lambda n: FileSink(capture_path(prefix, n)))
            logger.info("Round starting", extra={"round": index, "path": str(sink.path)})
            try:
                self.reset()
                running = scanner.run(self.link, session)
            finally:
                finalize(session.sink)
        logger.info("Measurement finished", extra={"captures": scanner.completed})
        return scanner.completed

    def run_single(self) -> bytes:
        """Repeat rounds until capture 0 completes; return its payload."""
        scanner = self._scanner(1)
        running = True
        sink = MemorySink()
        attempt = 0
        while running and scanner.completed == 0:
            sink = MemorySink()
            logger.info("Single-shot attempt", extra={"attempt": attempt})
            self.reset()
            running = scanner.run(self.link, CaptureSession(0, sink))
            attempt += 1
        return sink.getvalue()


__all__ = [
    "Runner",
    "SerialUnavailable",
    "capture_path",
    "open_serial",
]
