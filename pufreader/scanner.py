"""Marker-driven capture state machine for the DUT serial stream.

The scanner reads the stream chunk by chunk and evaluates every byte against
the marker table together with the byte before it:

START      enter capture; finish and join an injector left over from LOADED
END        leave capture; finalize the sink; count the capture
LOADED     spawn the scripted injector for the parameter prompts
ASK_INPUT  release the injector's next parameter
FINISHED   cancel and join the injector; end the round
PANIC      as FINISHED, and discard the capture (sink flushed and closed,
           not counted)

Payload framing: bytes following START enter a two-byte hold-back window
and are written once the window overflows. The START sentinel, the END
sentinel and the byte just before END therefore never reach the sink, so
``S1 S2 A B C E1 E2`` captures ``AB``.
"""

from __future__ import annotations

import collections
import sys
import threading
import time
from typing import Callable, Deque, Optional, Protocol, Sequence, TextIO

from .injector import ScriptedInjector
from .logging_utils import METRICS, get_logger
from .markers import Marker, MarkerTable
from .sinks import CaptureSession, finalize

logger = get_logger("pufreader.scanner")

HOLD_BACK = 2


class SerialStalled(RuntimeError):
    """Raised after too many consecutive empty reads from the serial link."""


class SerialLink(Protocol):
    """Byte stream to and from the DUT (``serial.Serial`` satisfies this)."""

    def read(self, size: int = 1) -> bytes:
        ...

    def write(self, data: bytes) -> Optional[int]:
        ...

    def flush(self) -> None:
        ...


def echo_char(value: int) -> str:
    """Printable ASCII, CR and LF pass through; anything else becomes a space."""
    if 32 <= value <= 126 or value in (10, 13):
        return chr(value)
    return " "


class _Round:
    """Mutable state of one scanner pass."""

    def __init__(self, link: SerialLink, session: CaptureSession) -> None:
        self.link = link
        self.session = session
        self.last_byte = 0x20
        self.in_capture = False
        self.window: Deque[int] = collections.deque()
        self.cancel = threading.Event()
        self.injector: Optional[ScriptedInjector] = None
        self.sink_done = False
        self.done = False
        self.keep_going = True


class MarkerScanner:
    """Drive one measurement round per :meth:`run` call.

    ``completed`` counts END markers across every round of this scanner and
    is what ``max_rounds`` is compared against. Non-capture bytes and progress
    go to ``echo``, or to the current ``sys.stdout`` when it is None;
    ``quiet`` silences them.
    """

    def __init__(
        self,
        table: MarkerTable,
        *,
        params: Sequence[str] = (),
        max_rounds: int = 0,
        flush_interval: int = 1024,
        read_chunk: int = 256,
        max_empty_reads: int = 0,
        empty_backoff_s: float = 0.01,
        settle_s: float = 0.05,
        echo: Optional[TextIO] = None,
        quiet: bool = False,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        if flush_interval < 1:
            raise ValueError("flush_interval must be >= 1")
        if read_chunk < 1:
            raise ValueError("read_chunk must be >= 1")
        self.table = table
        self.params = list(params)
        self.max_rounds = max_rounds
        self.flush_interval = flush_interval
        self.read_chunk = read_chunk
        self.max_empty_reads = max_empty_reads
        self.empty_backoff_s = empty_backoff_s
        self.settle_s = settle_s
        self.echo = echo
        self.quiet = quiet
        self._sleep = sleeper
        self.completed = 0
        self._handlers = {
            Marker.START: self._on_start,
            Marker.END: self._on_end,
            Marker.LOADED: self._on_loaded,
            Marker.ASK_INPUT: self._on_ask_input,
            Marker.FINISHED: self._on_finished,
            Marker.PANIC: self._on_panic,
        }

    @classmethod
    def from_config(cls, cfg: dict, **kwargs) -> "MarkerScanner":
        options = dict(
            params=cfg["PARAMS"],
            max_rounds=cfg["MAX_MEASURES"],
            flush_interval=cfg["FLUSH_INTERVAL"],
            read_chunk=cfg["READ_CHUNK"],
            max_empty_reads=cfg["MAX_EMPTY_READS"],
            empty_backoff_s=cfg["EMPTY_READ_BACKOFF_S"],
            settle_s=cfg["INJECT_SETTLE_S"],
        )
        options.update(kwargs)
        return cls(MarkerTable.from_config(cfg), **options)

    def run(self, link: SerialLink, session: CaptureSession) -> bool:
        """Scan until FINISHED, PANIC or the round limit.

        Returns False when ``max_rounds`` has been reached, True otherwise.
        """
        state = _Round(link, session)
        empty_reads = 0
        try:
            while not state.done:
                chunk = self._read(link)
                if not chunk:
                    empty_reads += 1
                    METRICS.counter("empty_reads").inc()
                    if self.max_empty_reads and empty_reads >= self.max_empty_reads:
                        raise SerialStalled(f"no data from DUT after {empty_reads} consecutive reads")
                    self._sleep(self.empty_backoff_s)
                    continue
                empty_reads = 0
                self._consume(state, chunk)
        finally:
            self._stop_injector(state)
            self._echo("\n")
        return state.keep_going

    def _read(self, link: SerialLink) -> bytes:
        """Read what is already buffered, or block for a single byte.

        ``serial.Serial.read(n)`` waits for all ``n`` bytes (or the timeout),
        so asking for a full chunk would hold back a trailing prompt.
        """
        waiting = getattr(link, "in_waiting", 0) or 0
        return link.read(min(self.read_chunk, max(1, waiting)))

    def _echo(self, text: str) -> None:
        if self.quiet:
            return
        stream = self.echo if self.echo is not None else sys.stdout
        stream.write(text)
        stream.flush()

    def _consume(self, state: _Round, chunk: bytes) -> None:
        echoed = []
        for value in chunk:
            if not state.in_capture:
                echoed.append(echo_char(value))

            marker = self.table.match(state.last_byte, value)
            was_capturing = state.in_capture
            if marker is not None:
                self._handlers[marker](state)

            if state.in_capture and was_capturing and marker is not Marker.START:
                self._hold(state, value)
            state.last_byte = value
            if state.done:
                break
        if echoed:
            self._echo("".join(echoed))

    def _hold(self, state: _Round, value: int) -> None:
        state.window.append(value)
        if len(state.window) <= HOLD_BACK:
            return
        payload = state.window.popleft()
        if state.sink_done:
            return
        session = state.session
        session.sink.write(bytes((payload,)))
        session.bytes_written += 1
        METRICS.counter("bytes_captured").inc()
        if session.bytes_written % self.flush_interval == 0:
            session.sink.flush()
            self._echo(f"\r{session.bytes_written} bytes written.")

    def _stop_injector(self, state: _Round) -> None:
        if state.injector is None:
            return
        state.injector.cancel()
        state.injector.join()
        state.injector = None

    def _roll_over(self, state: _Round) -> None:
        session = state.session
        if not state.sink_done or session.rollover is None:
            return
        session.index = self.completed
        session.sink = session.rollover(session.index)
        session.bytes_written = 0
        state.sink_done = False
        logger.info("Further capture in the same round; new sink opened", extra={"round": session.index})

    def _on_start(self, state: _Round) -> None:
        state.in_capture = True
        state.window.clear()
        self._roll_over(state)
        if state.sink_done:
            logger.warning(
                "START after the round's capture was finalized; payload ignored",
                extra={"round": state.session.index},
            )
        if state.injector is not None:
            state.injector.finish()
            state.injector.join()
            state.injector = None
        logger.info("Capture started", extra={"round": state.session.index})

    def _on_end(self, state: _Round) -> None:
        state.in_capture = False
        state.window.clear()
        self._roll_over(state)
        self.completed += 1
        logger.info(
            "Capture complete",
            extra={"round": state.session.index, "bytes": state.session.bytes_written, "completed": self.completed},
        )
        if not state.sink_done:
            finalize(state.session.sink)
            state.sink_done = True
        METRICS.counter("captures_completed").inc()
        if self.max_rounds > 0 and self.completed >= self.max_rounds:
            state.keep_going = False
            state.done = True

    def _on_loaded(self, state: _Round) -> None:
        if state.injector is not None:
            logger.warning("LOADED while previous injector alive; retiring it")
            state.injector.retire()
            state.injector.join()
        state.injector = ScriptedInjector(
            self.params,
            state.link,
            cancel_event=state.cancel,
            settle_s=self.settle_s,
            sleeper=self._sleep,
        ).start()

    def _on_ask_input(self, state: _Round) -> None:
        if state.injector is None:
            logger.debug("ASK_INPUT without a live injector ignored")
            return
        state.injector.allow_send()

    def _on_finished(self, state: _Round) -> None:
        self._stop_injector(state)
        state.done = True
        logger.info("DUT finished", extra={"round": state.session.index})

    def _on_panic(self, state: _Round) -> None:
        self._stop_injector(state)
        state.done = True
        state.in_capture = False
        state.window.clear()
        if not state.sink_done:
            finalize(state.session.sink)
            state.sink_done = True
        METRICS.counter("captures_discarded").inc()
        logger.warning(
            "DUT panic; capture discarded",
            extra={"round": state.session.index, "bytes": state.session.bytes_written},
        )


__all__ = ["MarkerScanner", "SerialLink", "SerialStalled", "echo_char"]
