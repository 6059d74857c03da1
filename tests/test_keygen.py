"""Tests for bit-position key derivation."""

import io
from pathlib import Path

import pytest

from helpers import END, FINISHED, START, FakeLink, FakePowerLine
from pufreader import keygen
from pufreader.keygen import (
    KeyDerivationError,
    extract_key,
    gen_key,
    load_positions,
    payload_after_separator,
    validate_positions,
)
from pufreader.power import PowerController
from pufreader.session import Runner


def test_bits_counted_msb_first_after_comma():
    # 0x41 = 0100_0001, 0x00 = 0000_0000
    assert extract_key(b"xx,\x41\x00", [0, 7, 8], 3) == "010"


def test_every_bit_of_a_byte_in_order():
    assert extract_key(b",\xa5", list(range(8)), 8) == "10100101"


def test_positions_span_bytes():
    assert extract_key(b"hdr,\x0f\xf0\x80", [4, 8, 16], 3) == "111"


def test_only_first_comma_is_a_separator():
    # payload is b"\x2c\xff" (a second comma is data)
    assert extract_key(b"a,,\xff", [0, 1, 2, 8], 4) == "0011"


def test_stops_once_key_is_complete():
    assert extract_key(b",\x80" + b"\x00" * 1000, [0], 1) == "1"


def test_short_capture_yields_partial_key():
    assert extract_key(b",\xff", [3, 7, 8, 20], 4) == "11"


def test_short_capture_rejected_when_partial_not_allowed():
    with pytest.raises(KeyDerivationError):
        extract_key(b",\xff", [3, 7, 8, 20], 4, allow_partial=False)


def test_capture_without_comma_gives_empty_key():
    assert extract_key(b"\xff\xff\xff", [0, 1], 2) == ""
    assert payload_after_separator(b"\xff") is None


@pytest.mark.parametrize("positions", [[5, 2], [3, 3], [0, 9, 4]])
def test_non_increasing_positions_rejected(positions):
    with pytest.raises(KeyDerivationError):
        extract_key(b",\xff\xff", positions, len(positions))


def test_position_count_must_match_key_size():
    with pytest.raises(KeyDerivationError):
        extract_key(b",\xff", [0, 1, 2], 2)
    with pytest.raises(KeyDerivationError):
        extract_key(b",\xff", [0], 2)


@pytest.mark.parametrize("key_size", [0, -1, True])
def test_key_size_must_be_positive(key_size):
    with pytest.raises(KeyDerivationError):
        validate_positions([], key_size)


def test_negative_position_rejected():
    with pytest.raises(KeyDerivationError):
        validate_positions([-1, 3], 2)


def test_error_is_a_value_error():
    assert issubclass(KeyDerivationError, ValueError)


def test_load_positions_from_file(tmp_path: Path):
    path = tmp_path / "positions.txt"
    path.write_text("0 7\n8\n\n  15\t31\n", encoding="ascii")
    assert load_positions(path) == [0, 7, 8, 15, 31]
    assert load_positions(str(path)) == [0, 7, 8, 15, 31]


def test_load_positions_from_stream():
    assert load_positions(io.StringIO("3\n9\n")) == [3, 9]


@pytest.mark.parametrize("text", ["1 two 3", "4 -5", "1.5"])
def test_load_positions_rejects_malformed_tokens(text):
    with pytest.raises(KeyDerivationError):
        load_positions(io.StringIO(text))


def _patch_runner(monkeypatch, link, line, seen):
    def fake_from_config(cls, cfg, **kwargs):
        seen.append(cfg)
        controller = PowerController(line, sleep_s=cfg["POWER_SLEEP_S"], sleeper=lambda _: None)
        return cls(link, controller, cfg, quiet=True)

    monkeypatch.setattr(Runner, "from_config", classmethod(fake_from_config))


def test_gen_key_captures_once_and_extracts(monkeypatch, tmp_path: Path):
    positions = tmp_path / "pos.txt"
    positions.write_text("0\n7\n8\n", encoding="ascii")
    link = FakeLink([b"boot" + START + b"id,\x81\x80" + b"pad" + END + FINISHED])
    line = FakePowerLine()
    seen = []
    _patch_runner(monkeypatch, link, line, seen)

    key = gen_key("/dev/ttyFAKE", 9600, 4, 1, ["p"], positions, 3)

    assert key == "111"
    assert seen[0]["SERIAL_PORT"] == "/dev/ttyFAKE"
    assert seen[0]["BAUD_RATE"] == 9600
    assert seen[0]["POWER_PIN"] == 4
    assert seen[0]["PARAMS"] == ["p"]
    assert line.levels == [True, False]
    assert link.closed


def test_gen_key_validates_positions_before_touching_hardware(monkeypatch):
    calls = []
    monkeypatch.setattr(Runner, "from_config", classmethod(lambda cls, cfg, **kw: calls.append(cfg)))
    with pytest.raises(KeyDerivationError):
        gen_key("/dev/ttyFAKE", 9600, 4, 1, [], io.StringIO("5 2"), 2)
    assert calls == []


def test_module_exports():
    assert set(keygen.__all__) >= {"extract_key", "gen_key", "load_positions"}
