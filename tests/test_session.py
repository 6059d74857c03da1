"""Tests for the round driver (multi-round and single-shot modes)."""

from pathlib import Path

import pytest
import serial

from helpers import END, FINISHED, PANIC, START, FakeLink, FakePowerLine
from pufreader import session as session_mod
from pufreader.config import load_config
from pufreader.power import PowerController, PowerControlUnavailable
from pufreader.session import Runner, SerialUnavailable, capture_path, open_serial


def _runner(link, *, line=None, **overrides):
    cfg = load_config(dict({"POWER_SLEEP_S": 0.0, "MAX_EMPTY_READS": 5, "EMPTY_READ_BACKOFF_S": 0.0}, **overrides))
    line = line or FakePowerLine()
    controller = PowerController(line, sleep_s=cfg["POWER_SLEEP_S"], sleeper=lambda _: None)
    return Runner(link, controller, cfg, quiet=True), line


def _round(payload: bytes, *, end: bytes = END) -> bytes:
    return b"boot>" + START + payload + end + FINISHED


def test_multi_round_stops_after_max_measures(tmp_path: Path):
    link = FakeLink([_round(b"AAAA"), _round(b"BBBB"), _round(b"CCCC"), _round(b"DDDD")])
    runner, line = _runner(link, MAX_MEASURES=3)

    completed = runner.run_rounds(str(tmp_path / "puf_"))

    assert completed == 3
    assert [p.name for p in sorted(tmp_path.iterdir())] == ["puf_0.bin", "puf_1.bin", "puf_2.bin"]
    assert (tmp_path / "puf_0.bin").read_bytes() == b"AAA"
    assert (tmp_path / "puf_2.bin").read_bytes() == b"CCC"
    assert line.levels == [True, False] * 3
    assert link.unread == _round(b"DDDD")


def test_panic_round_is_retried_under_same_index(tmp_path: Path):
    link = FakeLink([_round(b"bad-data", end=PANIC), _round(b"good")])
    runner, line = _runner(link, MAX_MEASURES=1)

    completed = runner.run_rounds(str(tmp_path / "cap"))

    assert completed == 1
    assert (tmp_path / "cap0.bin").read_bytes() == b"goo"
    assert not (tmp_path / "cap1.bin").exists()
    assert line.levels == [True, False, True, False]


def test_round_without_end_is_overwritten(tmp_path: Path):
    link = FakeLink([b"boot" + START + b"cut short" + FINISHED, _round(b"full")])
    runner, _ = _runner(link, MAX_MEASURES=1)
    assert runner.run_rounds(str(tmp_path / "r")) == 1
    assert (tmp_path / "r0.bin").read_bytes() == b"ful"


def test_default_prefix_from_config(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    runner, _ = _runner(FakeLink([_round(b"xyz")]), MAX_MEASURES=1, OUT_PREFIX="run_")
    runner.run_rounds()
    assert (tmp_path / "run_0.bin").read_bytes() == b"xy"


def test_single_shot_returns_first_completed_capture():
    link = FakeLink([_round(b"discard", end=PANIC), _round(b"keep-me"), _round(b"unused")])
    runner, line = _runner(link)

    capture = runner.run_single()

    assert capture == b"keep-m"
    assert line.levels == [True, False, True, False]
    assert link.unread == _round(b"unused")


def test_single_shot_ignores_max_measures_setting():
    link = FakeLink([_round(b"first"), _round(b"second")])
    runner, _ = _runner(link, MAX_MEASURES=5)
    assert runner.run_single() == b"firs"


def test_runner_context_closes_link_and_line():
    link = FakeLink()
    runner, line = _runner(link)
    with runner:
        pass
    assert link.closed
    assert line.closed


def test_capture_path_naming():
    assert capture_path("out/puf_", 7) == Path("out/puf_7.bin")


def test_open_serial_failure_is_fatal(monkeypatch):
    def broken(**kwargs):
        raise serial.SerialException("no such device")

    monkeypatch.setattr(session_mod.serial, "Serial", broken)
    with pytest.raises(SerialUnavailable):
        open_serial("/dev/ttyNOPE", 115200)


def test_from_config_closes_serial_when_power_unavailable(monkeypatch):
    link = FakeLink()
    monkeypatch.setattr(session_mod, "open_serial", lambda *a, **kw: link)

    def no_gpio(cfg, line=None):
        raise PowerControlUnavailable("no gpio")

    monkeypatch.setattr(session_mod, "power_from_config", no_gpio)
    with pytest.raises(PowerControlUnavailable):
        Runner.from_config(load_config())
    assert link.closed


def test_interactive_console_started_once(monkeypatch):
    started = []
    monkeypatch.setattr(session_mod, "launch_operator_console", lambda link, stop: started.append(stop))
    link = FakeLink([_round(b"one"), _round(b"two")])
    runner, _ = _runner(link, INTERACTIVE=True)
    runner.run_single()
    runner.run_single()
    assert len(started) == 1
    runner.close()
    assert started[0].is_set()


def test_two_captures_in_one_round_are_both_written(tmp_path: Path):
    link = FakeLink([b"boot" + START + b"first!" + END + START + b"second" + END + FINISHED, _round(b"third!")])
    runner, line = _runner(link, MAX_MEASURES=3)

    completed = runner.run_rounds(str(tmp_path / "c"))

    assert completed == 3
    assert sorted(p.name for p in tmp_path.iterdir()) == ["c0.bin", "c1.bin", "c2.bin"]
    assert (tmp_path / "c0.bin").read_bytes() == b"firs"
    assert (tmp_path / "c1.bin").read_bytes() == b"seco"
    assert (tmp_path / "c2.bin").read_bytes() == b"thir"
    assert line.levels == [True, False] * 2


def test_round_limit_reached_inside_one_round(tmp_path: Path):
    link = FakeLink([b"boot" + START + b"first!" + END + START + b"second" + END + FINISHED])
    runner, _ = _runner(link, MAX_MEASURES=2)
    assert runner.run_rounds(str(tmp_path / "c")) == 2
    assert sorted(p.name for p in tmp_path.iterdir()) == ["c0.bin", "c1.bin"]
