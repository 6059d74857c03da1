"""
Command line entrypoint for the PUF serial reader.

Supports subcommands:
- capture: power-cycle the DUT and store one capture file per round
- genkey: capture a single response and derive a key from bit positions

Flags override CONFIG (which itself honours PUF_<KEY> environment variables).
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import serial

from pufreader.config import load_config
from pufreader.keygen import KeyDerivationError, extract_key, load_positions, validate_positions
from pufreader.logging_utils import LOGGER_NAMES, METRICS, configure_file_logger, get_logger
from pufreader.power import PowerControlUnavailable
from pufreader.scanner import SerialStalled
from pufreader.session import Runner, SerialUnavailable

logger = get_logger("pufreader")

EXIT_OK = 0
EXIT_HARDWARE = 1
EXIT_INVALID = 2


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "SERIAL_PORT": args.port,
        "BAUD_RATE": args.baud,
        "POWER_PIN": args.power_pin,
        "POWER_SLEEP_S": args.sleep,
        "MAX_MEASURES": getattr(args, "max_measures", None),
        "OUT_PREFIX": getattr(args, "prefix", None),
        "PARAMS": args.param,
        "MAX_EMPTY_READS": args.max_empty_reads,
        "INTERACTIVE": True if args.interactive else None,
        "LOG_FILE": True if args.log_file else None,
    }


def _add_common(sub: argparse.ArgumentParser) -> None:
    sub.add_argument("--port", help="Serial device of the DUT (default: CONFIG SERIAL_PORT)")
    sub.add_argument("--baud", type=int, help="Serial baud rate")
    sub.add_argument("--power-pin", type=int, help="GPIO pin driving the USB power switch")
    sub.add_argument("--sleep", type=float, help="Seconds to hold power off during reset")
    sub.add_argument("--param", action="append",
                     help="Parameter answered to a DUT input prompt (repeat in order)")
    sub.add_argument("--max-empty-reads", type=int,
                     help="Give up after N consecutive empty reads (0 = retry forever)")
    sub.add_argument("--interactive", action="store_true",
                     help="Forward typed lines to the DUT ('.' sends a bare CR)")
    sub.add_argument("--log-file", action="store_true",
                     help="Also write JSON logs to <timestamp>.log")
    sub.add_argument("--quiet", action="store_true",
                     help="Suppress informational log records")


def capture_command(cfg: Dict[str, Any]) -> int:
    with Runner.from_config(cfg) as runner:
        completed = runner.run_rounds()
    print(f"{completed} capture(s) written with prefix {cfg['OUT_PREFIX']!r}")
    return EXIT_OK


def genkey_command(cfg: Dict[str, Any], args: argparse.Namespace) -> int:
    positions = load_positions(args.positions)
    validate_positions(positions, args.key_size)
    with Runner.from_config(cfg) as runner:
        capture = runner.run_single()
    key = extract_key(capture, positions, args.key_size, allow_partial=not args.strict)
    if args.out:
        Path(args.out).write_text(key, encoding="ascii")
        logger.info("Key written", extra={"path": args.out, "bits": len(key)})
    print(key)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pufreader", description="PUF response capture over serial")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    capture_parser = subparsers.add_parser("capture", help="Capture rounds to <prefix><n>.bin files")
    _add_common(capture_parser)
    capture_parser.add_argument("--max-measures", type=int,
                                help="Stop after N completed captures (0 = unbounded)")
    capture_parser.add_argument("--prefix", help="Capture file prefix (may include a directory)")

    genkey_parser = subparsers.add_parser("genkey", help="Capture one response and derive a key")
    _add_common(genkey_parser)
    genkey_parser.add_argument("--positions", required=True,
                               help="File of whitespace separated, strictly increasing bit positions")
    genkey_parser.add_argument("--key-size", type=int, required=True,
                               help="Number of key bits; must equal the number of positions")
    genkey_parser.add_argument("--out", help="Optional path to write the key")
    genkey_parser.add_argument("--strict", action="store_true",
                               help="Fail instead of returning a short key when the capture is too short")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entrypoint with subcommands."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_INVALID

    if args.quiet:
        for name in LOGGER_NAMES:
            get_logger(name).setLevel(logging.WARNING)

    try:
        cfg = load_config(_overrides(args))
    except NotImplementedError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_INVALID

    if cfg["LOG_FILE"]:
        path = configure_file_logger(LOGGER_NAMES)
        print(f"Logging to {path}", file=sys.stderr)

    try:
        if args.command == "capture":
            return capture_command(cfg)
        return genkey_command(cfg, args)
    except (SerialUnavailable, PowerControlUnavailable, SerialStalled, serial.SerialException) as exc:
        logger.error("Hardware unavailable", extra={"error": str(exc)})
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_HARDWARE
    except (KeyDerivationError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_INVALID
    except KeyboardInterrupt:
        print("\nStopped by user.", file=sys.stderr)
        return EXIT_OK
    finally:
        logger.info("Session counters", extra={"metrics": METRICS.snapshot()})


if __name__ == "__main__":
    sys.exit(main())
