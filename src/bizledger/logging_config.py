from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable

# Attributes passed with ``extra=`` that end up as top-level JSON keys.
CONTEXT_FIELDS = ("trigger", "outcome", "bill_id", "client_id", "entry_id")


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Context attributes listed in ``fields`` are copied when a record carries
    them. Names in ``required`` are always written, as ``null`` when absent, so
    every line of a channel file has the same keys.
    """

    def __init__(
        self,
        datefmt: str | None = None,
        fields: Iterable[str] = CONTEXT_FIELDS,
        required: Iterable[str] = (),
    ):
        super().__init__(datefmt=datefmt)
        self.required = tuple(required)
        self.fields = tuple(dict.fromkeys((*self.required, *fields)))

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in self.fields:
            if hasattr(record, name):
                payload[name] = getattr(record, name)
            elif name in self.required:
                payload[name] = None
        if record.threadName and record.threadName != "MainThread":
            payload["thread"] = record.threadName
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _handler(path: Path, level: int, required: Iterable[str] = ()) -> RotatingFileHandler:
    fh = RotatingFileHandler(path, maxBytes=2_000_000, backupCount=5, encoding="utf-8")
    fh.setFormatter(JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S", required=required))
    fh.setLevel(level)
    return fh


# Channel logger -> (file next to app.log, keys every line of that file carries).
CHANNELS = {
    "bizledger.sync": ("sync.log", ("trigger", "outcome")),
    "bizledger.billing": ("billing.log", ()),
}


def setup_logging(logs_dir: Path, level: int = logging.INFO) -> None:
    logs_dir = Path(logs_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    if root.handlers:
        return

    root.addHandler(_handler(logs_dir / "app.log", logging.INFO))
    root.addHandler(_handler(logs_dir / "errors.log", logging.ERROR))

    for name, (filename, required) in CHANNELS.items():
        channel = logging.getLogger(name)
        channel.addHandler(_handler(logs_dir / filename, logging.INFO, required))
        channel.setLevel(logging.INFO)
