"""Structured logging helpers for nixos-inplace components."""

from __future__ import annotations

import dataclasses
import datetime as _dt
import json
import os
import sys
from pathlib import Path
from typing import Any, Mapping, Sequence

_DEFAULT_LOG_FILE = Path("/var/log/nixos-inplace/actions.log")


def _serialise(value: Any) -> Any:
    """Return a JSON-friendly representation of *value*."""

    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return str(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        # Fact records (boot targets, swap states, settings) log by field.
        record = {"kind": type(value).__name__}
        for item in dataclasses.fields(value):
            record[item.name] = _serialise(getattr(value, item.name))
        return record
    if isinstance(value, Mapping):
        return {str(key): _serialise(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_serialise(item) for item in value]
    return repr(value)


def _logs_enabled() -> bool:
    """Return ``True`` when structured logging is enabled via the environment."""

    value = os.environ.get("NIXOS_INPLACE_LOG_EVENTS")
    if value is None:
        return False
    return value.strip().lower() not in {"", "0", "false", "no"}


def log_event(event: str, **fields: Any) -> None:
    """Emit a structured log entry to ``stderr`` when logging is enabled.

    Each entry carries an ISO-8601 UTC timestamp.  The conversion replaces the
    running system, so the same line is appended to the log file to survive
    the handoff to the installer.  Non-JSON-serialisable values are converted
    via ``repr``.
    """

    if not _logs_enabled():
        return

    record = {
        "timestamp": _dt.datetime.now(_dt.timezone.utc).isoformat(),
        "event": event,
    }
    for key, value in fields.items():
        record[str(key)] = _serialise(value)

    message = json.dumps(record, sort_keys=True)

    sys.stderr.write(message + "\n")
    sys.stderr.flush()
    _append_to_log_file(message)


def _log_file_path() -> Path:
    """Return the configured log file path.

    When ``NIXOS_INPLACE_LOG_FILE`` is not set or is empty, fall back to
    ``/var/log/nixos-inplace/actions.log``.
    """

    value = os.environ.get("NIXOS_INPLACE_LOG_FILE")
    if value is None or value.strip() == "":
        return _DEFAULT_LOG_FILE
    return Path(value)


def _append_to_log_file(message: str) -> None:
    """Append the given JSON *message* to the configured log file."""

    log_file = _log_file_path()
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(message + "\n")
    except OSError as exc:  # pragma: no cover - logging must never abort a run
        sys.stderr.write(f"nixos-inplace: failed to write log to {log_file}: {exc}\n")
        sys.stderr.flush()
