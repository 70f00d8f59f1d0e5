import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional


_STRUCTURED_FIELDS = ("action", "phase", "profile", "iface", "key", "path", "result_code")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "pid": record.process,
        }
        for k in _STRUCTURED_FIELDS:
            if hasattr(record, k):
                payload[k] = getattr(record, k)

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        return json.dumps(payload, separators=(",", ":"))


class _LazyFileHandler(logging.FileHandler):
    """
    FileHandler that creates its directory on first write and turns itself
    off, with one console warning, when the file cannot be opened.
    """

    def __init__(self, filename: Path, encoding: Optional[str] = None) -> None:
        super().__init__(filename, encoding=encoding, delay=True)
        self.unavailable = False

    def _open(self):
        Path(self.baseFilename).parent.mkdir(parents=True, exist_ok=True)
        return super()._open()

    def emit(self, record: logging.LogRecord) -> None:
        if self.unavailable:
            return
        if self.stream is None:
            try:
                self.stream = self._open()
            except OSError as exc:
                self.unavailable = True
                logging.getLogger("net_optimize.logging").warning(
                    "log_file_unavailable:%s:%s", self.baseFilename, exc.strerror or exc,
                )
                return
        super().emit(record)


class ConsoleFormatter(logging.Formatter):
    _LABELS = {"WARNING": "WARN", "CRITICAL": "ERROR"}

    def format(self, record: logging.LogRecord) -> str:
        label = self._LABELS.get(record.levelname, record.levelname)
        return f"[{label}] {record.getMessage()}"


def setup_logging(
    log_file: Optional[Path] = None,
    *,
    verbose: bool = False,
    level: Optional[str] = None,
) -> None:
    """
    Terminal output goes to stderr; every warning and error is also appended
    to the durable JSON log. The log file is opened lazily, at WARNING level
    even with --verbose, so runs that emit nothing above INFO never create it.
    """
    lvl = (level or os.environ.get("NET_OPTIMIZE_LOG_LEVEL") or ("DEBUG" if verbose else "WARNING")).upper()
    console_level = getattr(logging, lvl, logging.WARNING)
    if verbose and console_level > logging.INFO:
        console_level = logging.INFO

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.DEBUG)

    console = logging.StreamHandler(stream=sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(ConsoleFormatter())
    root.addHandler(console)

    if log_file is None:
        return
    durable = _LazyFileHandler(log_file, encoding="utf-8")
    durable.setLevel(logging.WARNING)
    durable.setFormatter(JsonFormatter())
    root.addHandler(durable)
