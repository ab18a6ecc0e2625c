"""Logging setup for the ralph CLI: formatters, handlers and secret redaction."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Optional, Sequence

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def redact_string(text: str, patterns: Sequence[str]) -> str:
    """Replace all matches of the given regex patterns with [REDACTED]."""
    for pattern in patterns:
        try:
            text = re.sub(pattern, "[REDACTED]", text)
        except re.error:
            continue
    return text


class RedactingFilter(logging.Filter):
    """Logging filter that scrubs API keys and tokens from log records."""

    def __init__(self, patterns: Sequence[str], name: str = "") -> None:
        super().__init__(name)
        self._patterns = list(patterns)

    def filter(self, record: logging.LogRecord) -> bool:
        if self._patterns:
            record.msg = redact_string(str(record.msg), self._patterns)
            if record.args:
                record.args = tuple(
                    redact_string(a, self._patterns) if isinstance(a, str) else a
                    for a in record.args
                )
        return True


class JsonFormatter(logging.Formatter):
    """Structured JSON log formatter for machine-readable output."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def setup_logging(
    verbose: bool = False,
    json_log: bool = False,
    log_file: Optional[str | Path] = None,
    extra_handlers: Sequence[logging.Handler] = (),
    redact_patterns: Sequence[str] = (),
) -> list[logging.Handler]:
    """Configure the root logger and return the handlers it now owns.

    ``log_file`` replaces the console stream, which the interactive view
    owns while a run is live.
    """
    level = logging.DEBUG if verbose else logging.INFO
    root = logging.getLogger()

    if json_log:
        primary: logging.Handler = logging.StreamHandler()
        primary.setFormatter(JsonFormatter(datefmt=LOG_DATEFMT))
    elif log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        primary = logging.FileHandler(path, encoding="utf-8")
        primary.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    else:
        primary = logging.StreamHandler()
        primary.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))

    handlers = [primary, *extra_handlers]
    for existing in list(root.handlers):
        root.removeHandler(existing)
    for handler in handlers:
        if redact_patterns:
            handler.addFilter(RedactingFilter(redact_patterns))
        root.addHandler(handler)
    root.setLevel(level)
    return handlers
