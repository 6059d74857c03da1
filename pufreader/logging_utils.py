import json, logging, sys, time
from pathlib import Path
from typing import Iterable, Optional

LOGGER_NAMES = ("pufreader", "pufreader.session", "pufreader.scanner", "pufreader.injector",
                "pufreader.power", "pufreader.keygen", "pufreader.console")

_RESERVED = ("msg", "args", "exc_info", "exc_text", "stack_info", "stack_level", "created",
             "msecs", "relativeCreated", "levelno", "levelname", "pathname", "filename",
             "module", "lineno", "funcName", "thread", "threadName", "processName", "process",
             "name", "taskName")

class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        # Allow extra fields via record.__dict__ (filtered)
        for k, v in record.__dict__.items():
            if k not in _RESERVED:
                try:
                    json.dumps({k: v})
                    payload[k] = v
                except (TypeError, ValueError):
                    payload[k] = str(v)
        return json.dumps(payload)

def get_logger(name: str = "pufreader") -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    # stdout carries the live DUT echo; keep records on stderr
    h = logging.StreamHandler(sys.stderr)
    h.setFormatter(JsonFormatter())
    logger.addHandler(h)
    logger.propagate = False
    return logger

def configure_file_logger(names: Iterable[str] = ("pufreader",), directory: Optional[Path] = None) -> Path:
    """Attach one JSON file handler, named after the current local time, to each logger."""
    path = Path(directory or ".") / (time.strftime("%Y%m%d_%H%M%S", time.localtime()) + ".log")
    path.parent.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(path, encoding="utf-8")
    fh.setFormatter(JsonFormatter())
    for name in names:
        get_logger(name).addHandler(fh)
    return path

# Very small metrics hook (no deps)
class Counter:
    def __init__(self): self.value = 0
    def inc(self, n: int = 1): self.value += n

class Gauge:
    def __init__(self): self.value = 0
    def set(self, v: float): self.value = v

class Metrics:
    def __init__(self):
        self.counters = {}
        self.gauges = {}
    def counter(self, name: str) -> Counter:
        self.counters.setdefault(name, Counter()); return self.counters[name]
    def gauge(self, name: str) -> Gauge:
        self.gauges.setdefault(name, Gauge()); return self.gauges[name]
    def snapshot(self) -> dict:
        data = {k: c.value for k, c in self.counters.items()}
        data.update({k: g.value for k, g in self.gauges.items()})
        return data

METRICS = Metrics()
