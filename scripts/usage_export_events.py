#!/usr/bin/env python3
"""Event logging helpers shared by the usage export scripts.

Every status line is ``EVENT key=value ...`` on stdout. Values that are not
plain tokens are JSON-quoted, and registered secrets (the API token) are
masked before anything is printed, raw API bodies included.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Set

PLAIN_VALUE = re.compile(r"[A-Za-z0-9._:/+\-]+")
REDACTED = "***"

_secrets: Set[str] = set()


class TeeStream:
    """Write-through stream used to copy stdout/stderr into run.log."""

    def __init__(self, *streams: object) -> None:
        self.streams = streams

    def write(self, text: str) -> int:
        for stream in self.streams:
            stream.write(text)
        return len(text)

    def flush(self) -> None:
        for stream in self.streams:
            stream.flush()

    def isatty(self) -> bool:
        return any(getattr(stream, "isatty", lambda: False)() for stream in self.streams)


def register_secret(value: str) -> None:
    if value:
        _secrets.add(value)


def clear_secrets() -> None:
    _secrets.clear()


def redact(text: str) -> str:
    # Longest first so a secret containing another is masked whole.
    for secret in sorted(_secrets, key=len, reverse=True):
        text = text.replace(secret, REDACTED)
    return text


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _format_value(value: object) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, Path):
        value = value.as_posix()
    elif isinstance(value, (list, tuple)):
        value = ",".join(str(item) for item in value)
    text = redact(str(value))
    if PLAIN_VALUE.fullmatch(text):
        return text
    return json.dumps(text, ensure_ascii=True)


def log_event(event: str, **fields: object) -> None:
    parts: List[str] = [event]
    parts.extend(f"{key}={_format_value(value)}" for key, value in fields.items())
    print(" ".join(parts), flush=True)


def format_exception_message(exc: BaseException) -> str:
    text = str(exc).strip() or repr(exc).strip()
    if not text or text == f"{type(exc).__name__}()":
        text = type(exc).__name__
    return redact(text)
