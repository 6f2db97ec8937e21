"""Normalization of raw client input into canonical Note records.

Clients of different vintages send tags as lists or comma-separated strings,
booleans as strings, and timestamps as numbers or ISO strings. Everything
here is a total mapping: malformed values degrade to a safe default instead
of being rejected, so one odd field never fails a whole sync batch.
"""

import math
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping

from .model import Note, now_ms

TRUE_STRINGS = frozenset({"true", "1", "yes", "on"})

_DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DAY_MS = 24 * 60 * 60 * 1000


def new_note_id() -> str:
    """Generate a fresh opaque note id."""
    return uuid.uuid4().hex


def coerce_timestamp(value: Any, default: int | None) -> int | None:
    """Map a number, numeric string or ISO-8601 string to epoch ms.

    Naive ISO values are read as UTC. Anything else yields ``default``.
    """
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else default
    if not isinstance(value, str):
        return default

    text = value.strip()
    if not text:
        return default
    try:
        number = float(text)
    except ValueError:
        pass
    else:
        return int(number) if math.isfinite(number) else default

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return default
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def coerce_date_bound(value: Any, end_of_day: bool = False) -> int | None:
    """Parse a query-string date bound.

    ``YYYY-MM-DD`` covers the whole UTC day: the start for lower bounds and
    the last millisecond for upper bounds. Other forms go through
    ``coerce_timestamp``.
    """
    if isinstance(value, str) and _DAY_RE.match(value.strip()):
        start = coerce_timestamp(value, None)
        if start is not None and end_of_day:
            return start + _DAY_MS - 1
        return start
    return coerce_timestamp(value, None)


def coerce_tags(value: Any) -> tuple[str, ...]:
    """Canonical tag tuple: stripped, non-empty, first occurrence kept."""
    if isinstance(value, str):
        items: list[Any] = value.split(",")
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
    else:
        return ()

    tags: list[str] = []
    for item in items:
        if item is None or isinstance(item, (dict, list, tuple, set)):
            continue
        tag = str(item).strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tuple(tags)


def coerce_bool(value: Any) -> bool:
    """Truthy coercion tolerant of string flags like "true" or "0"."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value.strip().lower() in TRUE_STRINGS
    return False


def _coerce_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float, bool)):
        return str(value)
    return ""


def _coerce_id(value: Any) -> str:
    if isinstance(value, bool):
        return new_note_id()
    if isinstance(value, (int, float)) and math.isfinite(value):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return new_note_id()


def normalize_note_input(
    raw: Any,
    owner_id: str | None,
    now: int | None = None,
) -> Note:
    """Build a Note from untrusted client input.

    Args:
        raw: Decoded JSON object from the client (any shape is accepted).
        owner_id: Verified identity of the caller. Any ``ownerId`` or ``uid``
            inside ``raw`` is ignored.
        now: Timestamp used for missing createdAt/updatedAt (default: now).

    Returns:
        A fully populated Note.
    """
    data: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
    stamp = now_ms() if now is None else now

    if "deleted" in data:
        deleted = coerce_bool(data["deleted"])
    else:
        deleted = coerce_bool(data.get("isDeleted"))

    time_value = data.get("time")

    return Note(
        id=_coerce_id(data.get("id")),
        owner_id=owner_id,
        title=_coerce_text(data.get("title")),
        body=_coerce_text(data.get("body")),
        created_at=coerce_timestamp(data.get("createdAt"), stamp),
        updated_at=coerce_timestamp(data.get("updatedAt"), stamp),
        date=coerce_timestamp(data.get("date"), None),
        time=time_value if isinstance(time_value, str) and time_value else None,
        tags=coerce_tags(data.get("tags")),
        deleted=deleted,
    )
