"""Scripted parameter injection for DUT input prompts.

After the DUT reports LOADED it asks for its parameters one prompt at a
time. The injector runs on its own thread, waits until the scanner relays an
ASK_INPUT prompt, then types the next parameter. The scanner owns the
lifecycle: it spawns the injector, releases it per prompt, and stops and
joins it before a capture starts or a round ends.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, List, Optional, Protocol, Sequence

from .logging_utils import METRICS, get_logger

logger = get_logger("pufreader.injector")

CR = b"\r"


class Transmitter(Protocol):
    """Serial transmit side (``serial.Serial`` satisfies this)."""

    def write(self, data: bytes) -> Optional[int]:
        ...

    def flush(self) -> None:
        ...


class ScriptedInjector:
    """Send one queued parameter per may-send release until done or cancelled.

    ``cancel_event`` is shared with the scanner for the whole round; setting
    it (through :meth:`cancel`) stops this injector and any later one.
    :meth:`retire` stops only this injector, and :meth:`finish` lets an
    already released parameter go out first. A parameter already being
    transmitted is always completed before either takes effect.
    """

    def __init__(
        self,
        params: Sequence[str],
        transmitter: Transmitter,
        *,
        cancel_event: threading.Event,
        settle_s: float = 0.05,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self.params = list(params)
        self.sent: List[str] = []
        self._tx = transmitter
        self._cancel = cancel_event
        self._settle_s = settle_s
        self._sleep = sleeper
        self._cond = threading.Condition()
        self._may_send = False
        self._retired = False
        self._finishing = False
        self._thread = threading.Thread(target=self._run, name="puf-injector", daemon=True)

    def start(self) -> "ScriptedInjector":
        self._thread.start()
        return self

    def allow_send(self) -> None:
        """Release the next parameter (DUT prompted for input)."""
        with self._cond:
            self._may_send = True
            self._cond.notify_all()

    def cancel(self) -> None:
        """Set the shared cancellation token and wake the waiting thread."""
        self._cancel.set()
        with self._cond:
            self._cond.notify_all()

    def retire(self) -> None:
        with self._cond:
            self._retired = True
            self._cond.notify_all()

    def finish(self) -> None:
        """Send a parameter already released, then stop instead of waiting for more prompts."""
        with self._cond:
            self._finishing = True
            self._cond.notify_all()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set() or self._retired

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread.ident is None:
            return
        self._thread.join(timeout)

    def _wait_for_release(self) -> bool:
        with self._cond:
            self._cond.wait_for(
                lambda: self._may_send or self._cancel.is_set() or self._retired or self._finishing
            )
            if self._cancel.is_set() or self._retired or not self._may_send:
                return False
            self._may_send = False
            return True

    def _send(self, data: bytes) -> None:
        self._tx.write(data)
        self._tx.flush()

    def _run(self) -> None:
        for index, param in enumerate(self.params):
            if not self._wait_for_release():
                logger.info(
                    "Injector cancelled",
                    extra={"sent": len(self.sent), "remaining": len(self.params) - index},
                )
                return
            self._sleep(self._settle_s)
            self._send(param.encode("ascii") + CR)
            self._sleep(self._settle_s)
            self._send(CR)
            self.sent.append(param)
            METRICS.counter("params_sent").inc()
            logger.info("Parameter sent", extra={"index": index, "param": param})


__all__ = ["ScriptedInjector", "Transmitter"]
