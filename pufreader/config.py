"""
Core configuration for the PUF serial reader.

Single source of truth for the serial link, power-cut line, marker
signatures and capture parameters.
"""

import os
from typing import Any, Dict, Optional


# Default configuration - all required keys with correct types
CONFIG = {
    # Serial link to the device under test
    "SERIAL_PORT": "/dev/ttyUSB0",
    "BAUD_RATE": 115200,
    # Bytes requested per read; reads block up to READ_TIMEOUT_S (None = forever)
    "READ_CHUNK": 256,
    "READ_TIMEOUT_S": 1.0,
    # Consecutive empty reads tolerated before giving up (0 = retry forever)
    "MAX_EMPTY_READS": 0,
    "EMPTY_READ_BACKOFF_S": 0.01,

    # Power-cut line (USB power switch driven from a GPIO pin)
    "POWER_PIN": 17,
    "POWER_PIN_MODE": "BCM",
    # Level that cuts power; the opposite level restores it
    "POWER_CUT_HIGH": True,
    "POWER_SLEEP_S": 2.0,

    # Capture bookkeeping
    "MAX_MEASURES": 0,          # 0 = run until FINISHED/PANIC/interrupt
    "OUT_PREFIX": "puf_",
    "FLUSH_INTERVAL": 1024,

    # Parameters answered to the DUT, one per ASK_INPUT prompt
    "PARAMS": [],
    "INJECT_SETTLE_S": 0.05,

    # In-band two-byte sentinels (hex). Must be pairwise distinct.
    "MARKERS": {
        "START": "fe01",
        "END": "fe02",
        "LOADED": "fe03",
        "ASK_INPUT": "fe04",
        "FINISHED": "fe05",
        "PANIC": "fe06",
    },

    # Operator console forwarding typed lines to the DUT
    "INTERACTIVE": False,
    # Also write JSON logs to <timestamp>.log
    "LOG_FILE": False,
}


# Required keys with their expected types
_REQUIRED_KEYS = {
    "SERIAL_PORT": str,
    "BAUD_RATE": int,
    "READ_CHUNK": int,
    "READ_TIMEOUT_S": float,
    "MAX_EMPTY_READS": int,
    "EMPTY_READ_BACKOFF_S": float,
    "POWER_PIN": int,
    "POWER_PIN_MODE": str,
    "POWER_CUT_HIGH": bool,
    "POWER_SLEEP_S": float,
    "MAX_MEASURES": int,
    "OUT_PREFIX": str,
    "FLUSH_INTERVAL": int,
    "PARAMS": list,
    "INJECT_SETTLE_S": float,
    "MARKERS": dict,
    "INTERACTIVE": bool,
    "LOG_FILE": bool,
}

_MARKER_NAMES = ("START", "END", "LOADED", "ASK_INPUT", "FINISHED", "PANIC")

_FLOAT_KEYS = {"READ_TIMEOUT_S", "EMPTY_READ_BACKOFF_S", "POWER_SLEEP_S", "INJECT_SETTLE_S"}

# Keys that can be overridden by PUF_<KEY> environment variables
_ENV_OVERRIDABLE = {
    "SERIAL_PORT",
    "BAUD_RATE",
    "READ_TIMEOUT_S",
    "MAX_EMPTY_READS",
    "POWER_PIN",
    "POWER_PIN_MODE",
    "POWER_CUT_HIGH",
    "POWER_SLEEP_S",
    "MAX_MEASURES",
    "OUT_PREFIX",
    "FLUSH_INTERVAL",
    "PARAMS",
    "INTERACTIVE",
    "LOG_FILE",
}

ENV_PREFIX = "PUF_"


def _parse_marker_hex(value: Any) -> Optional[bytes]:
    if not isinstance(value, str):
        return None
    text = value.strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    try:
        raw = bytes.fromhex(text)
    except ValueError:
        return None
    return raw if len(raw) == 2 else None


def validate_config(cfg: Dict[str, Any]) -> None:
    """
    Ensure all required keys exist with correct types/ranges.
    Raise NotImplementedError("<reason>") on any violation.
    No return value on success.
    """
    missing_keys = set(_REQUIRED_KEYS.keys()) - set(cfg.keys())
    if missing_keys:
        raise NotImplementedError(f"CONFIG missing required keys: {', '.join(sorted(missing_keys))}")

    for key, expected_type in _REQUIRED_KEYS.items():
        value = cfg[key]
        if key in _FLOAT_KEYS:
            if key == "READ_TIMEOUT_S" and value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise NotImplementedError(
                    f"CONFIG[{key}] must be float seconds, got {type(value).__name__}"
                )
            continue
        if expected_type is int and isinstance(value, bool):
            raise NotImplementedError(f"CONFIG[{key}] must be int, got bool")
        if not isinstance(value, expected_type):
            raise NotImplementedError(f"CONFIG[{key}] must be {expected_type.__name__}, got {type(value).__name__}")

    if not cfg["SERIAL_PORT"]:
        raise NotImplementedError("CONFIG[SERIAL_PORT] must be a non-empty device path")
    if cfg["BAUD_RATE"] <= 0:
        raise NotImplementedError(f"CONFIG[BAUD_RATE] must be positive, got {cfg['BAUD_RATE']}")
    if cfg["READ_CHUNK"] < 1:
        raise NotImplementedError(f"CONFIG[READ_CHUNK] must be >= 1, got {cfg['READ_CHUNK']}")
    if cfg["FLUSH_INTERVAL"] < 1:
        raise NotImplementedError(f"CONFIG[FLUSH_INTERVAL] must be >= 1, got {cfg['FLUSH_INTERVAL']}")
    if cfg["MAX_EMPTY_READS"] < 0:
        raise NotImplementedError("CONFIG[MAX_EMPTY_READS] must be >= 0 (0 retries forever)")
    if cfg["MAX_MEASURES"] < 0:
        raise NotImplementedError("CONFIG[MAX_MEASURES] must be >= 0 (0 is unbounded)")
    if cfg["POWER_PIN"] < 0:
        raise NotImplementedError(f"CONFIG[POWER_PIN] must be >= 0, got {cfg['POWER_PIN']}")
    if cfg["POWER_PIN_MODE"] not in {"BCM", "BOARD"}:
        raise NotImplementedError(f"CONFIG[POWER_PIN_MODE] must be BCM or BOARD, got {cfg['POWER_PIN_MODE']!r}")
    for key in ("POWER_SLEEP_S", "INJECT_SETTLE_S", "EMPTY_READ_BACKOFF_S"):
        if cfg[key] < 0:
            raise NotImplementedError(f"CONFIG[{key}] must be >= 0, got {cfg[key]}")
    if cfg["READ_TIMEOUT_S"] is not None and cfg["READ_TIMEOUT_S"] <= 0:
        raise NotImplementedError("CONFIG[READ_TIMEOUT_S] must be positive or None")

    for param in cfg["PARAMS"]:
        if not isinstance(param, str):
            raise NotImplementedError(f"CONFIG[PARAMS] entries must be str, got {type(param).__name__}")
        try:
            param.encode("ascii")
        except UnicodeEncodeError:
            raise NotImplementedError(f"CONFIG[PARAMS] entry {param!r} is not ASCII")

    markers = cfg["MARKERS"]
    missing_markers = set(_MARKER_NAMES) - set(markers.keys())
    if missing_markers:
        raise NotImplementedError(f"CONFIG[MARKERS] missing: {', '.join(sorted(missing_markers))}")
    unknown_markers = set(markers.keys()) - set(_MARKER_NAMES)
    if unknown_markers:
        raise NotImplementedError(f"CONFIG[MARKERS] unknown: {', '.join(sorted(unknown_markers))}")
    seen: Dict[bytes, str] = {}
    for name in _MARKER_NAMES:
        signature = _parse_marker_hex(markers[name])
        if signature is None:
            raise NotImplementedError(
                f"CONFIG[MARKERS][{name}] must be two bytes as 4 hex digits, got {markers[name]!r}"
            )
        if signature in seen:
            raise NotImplementedError(
                f"CONFIG[MARKERS][{name}] duplicates signature of {seen[signature]} ({signature.hex()})"
            )
        seen[signature] = name


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply PUF_<KEY> environment variable overrides to config."""
    result = cfg.copy()

    for key in _ENV_OVERRIDABLE:
        env_var = ENV_PREFIX + key
        if env_var in os.environ:
            env_value = os.environ[env_var]
            expected_type = _REQUIRED_KEYS[key]

            try:
                if key in _FLOAT_KEYS:
                    if key == "READ_TIMEOUT_S" and env_value.strip().lower() in {"", "none"}:
                        result[key] = None
                    else:
                        result[key] = float(env_value)
                elif expected_type == int:
                    result[key] = int(env_value, 0)
                elif expected_type == str:
                    result[key] = str(env_value)
                elif expected_type == bool:
                    lowered = str(env_value).strip().lower()
                    if lowered in {"1", "true", "yes", "on"}:
                        result[key] = True
                    elif lowered in {"0", "false", "no", "off"}:
                        result[key] = False
                    else:
                        raise ValueError(f"invalid boolean literal: {env_value}")
                elif expected_type == list:
                    result[key] = [item.strip() for item in env_value.split(",") if item.strip()]
                else:
                    raise NotImplementedError(f"Unsupported type for env override: {expected_type}")
            except ValueError:
                raise NotImplementedError(f"Invalid {expected_type.__name__} value for {env_var}: {env_value}")

    return result


def load_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return a validated copy of CONFIG with caller overrides applied.

    ``None`` values in ``overrides`` are skipped so argparse namespaces can be
    passed through without filtering unset flags.
    """
    result = dict(CONFIG)
    result["MARKERS"] = dict(CONFIG["MARKERS"])
    result["PARAMS"] = list(CONFIG["PARAMS"])
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key == "MARKERS":
            merged = dict(result["MARKERS"])
            merged.update(value)
            value = merged
        result[key] = value
    validate_config(result)
    return result


# Apply environment overrides and validate
CONFIG = _apply_env_overrides(CONFIG)
validate_config(CONFIG)
