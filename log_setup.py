"""Diagnostic logging setup: text or JSON records, with secrets scrubbed."""

from __future__ import annotations

import json
import logging
import re
import sys
from typing import Sequence

REDACTED = "[REDACTED]"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def compile_patterns(patterns: Sequence[str]) -> list[re.Pattern[str]]:
    """Compile redaction regexes, dropping (and warning about) invalid ones."""
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            logging.getLogger(__name__).warning(
                "Ignoring invalid redaction pattern %r: %s", pattern, e
            )
    return compiled


def redact_string(text: str, patterns: Sequence[re.Pattern[str]]) -> str:
    for pattern in patterns:
        text = pattern.sub(REDACTED, text)
    return text


class RedactingFilter(logging.Filter):
    """Logging filter that scrubs secrets from the message and its arguments."""

    def __init__(self, patterns: Sequence[str], name: str = "") -> None:
        super().__init__(name)
        self._patterns = compile_patterns(patterns)

    def filter(self, record: logging.LogRecord) -> bool:
        if self._patterns:
            record.msg = redact_string(str(record.msg), self._patterns)
            if isinstance(record.args, tuple):
                record.args = tuple(
                    redact_string(a, self._patterns) if isinstance(a, str) else a
                    for a in record.args
                )
        return True


class JsonFormatter(logging.Formatter):
    """Structured JSON log formatter for machine-readable output."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging(
    verbose: bool = False,
    json_log: bool = False,
    redact_patterns: Sequence[str] = (),
) -> logging.Handler:
    """Install a stderr handler on the root logger and return it.

    Logs go to stderr so they never interleave with the transcript on stdout.
    """
    handler = logging.StreamHandler(sys.stderr)
    if json_log:
        handler.setFormatter(JsonFormatter(datefmt=DATE_FORMAT))
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt=DATE_FORMAT)
        )
    if redact_patterns:
        handler.addFilter(RedactingFilter(redact_patterns))

    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    return handler


def set_redaction(handler: logging.Handler, patterns: Sequence[str]) -> None:
    """Replace the handler's redaction filter with one built from ``patterns``."""
    for existing in list(handler.filters):
        if isinstance(existing, RedactingFilter):
            handler.removeFilter(existing)
    if patterns:
        handler.addFilter(RedactingFilter(patterns))
