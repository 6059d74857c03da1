"""Operator console forwarding typed lines to the DUT.

Debug aid only: the thread is a daemon, is never joined and may outlive the
session that started it.
"""

from __future__ import annotations

import threading
from typing import Callable, Tuple

from .injector import CR, Transmitter
from .logging_utils import get_logger

logger = get_logger("pufreader.console")


def encode_operator_line(line: str) -> bytes:
    """``"."`` sends a bare carriage return, anything else gets one appended."""
    if line == ".":
        return CR
    return line.encode("ascii", errors="replace") + CR


def launch_operator_console(
    link: Transmitter,
    stop_event: threading.Event,
    *,
    input_fn: Callable[[str], str] = input,
    quiet: bool = False,
) -> Tuple[threading.Event, threading.Thread]:
    def operator_loop() -> None:
        if not quiet:
            print("Operator console ready. Lines are sent to the DUT; '.' sends a bare CR.")
        while not stop_event.is_set():
            try:
                line = input_fn("")
            except EOFError:
                break
            if line is None:
                continue
            line = line.strip()
            if not line or stop_event.is_set():
                continue
            link.write(encode_operator_line(line))
            link.flush()
            logger.debug("Operator line forwarded", extra={"line": line})

    operator_thread = threading.Thread(target=operator_loop, name="puf-operator", daemon=True)
    operator_thread.start()
    return stop_event, operator_thread


__all__ = ["encode_operator_line", "launch_operator_console"]
