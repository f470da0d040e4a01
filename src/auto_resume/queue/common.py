"""Common helpers for queue persistence: clocks, timestamps and atomic JSON files."""

from __future__ import annotations

import json
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def local_now() -> datetime:
    """Current timestamp in the host's local timezone (timezone-aware)."""

    return datetime.now().astimezone()


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def from_iso(value: str | None) -> datetime | None:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def dump_json(payload: dict[str, Any]) -> str:
    """Serialize JSON payload using deterministic formatting."""

    return json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Publish a JSON document in one rename so readers never observe a partial file.

    The payload is written to a temporary file in the target directory, flushed
    and fsynced, parsed back to make sure it is valid, then moved into place
    with ``os.replace``.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    text = dump_json(payload)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        load_json(tmp_path)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
