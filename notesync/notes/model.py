"""The Note record: the unit of replication across every storage tier."""

import time
from dataclasses import dataclass, field, replace
from typing import Any


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class Note:
    """A user-owned text record.

    Timestamps are epoch milliseconds. ``updated_at`` is the only value
    consulted for last-write-wins; ``date``/``time`` are scheduling metadata
    and take no part in conflict resolution.
    """

    id: str
    owner_id: str | None
    title: str = ""
    body: str = ""
    created_at: int = 0
    updated_at: int = 0
    date: int | None = None
    time: str | None = None
    tags: tuple[str, ...] = field(default_factory=tuple)
    deleted: bool = False

    @property
    def is_tombstone(self) -> bool:
        """True if the note was soft-deleted."""
        return self.deleted

    def tombstone(self, at_ms: int | None = None) -> "Note":
        """Return the soft-deleted copy of this note.

        ``updated_at`` moves to ``at_ms`` (default: now) but never backwards,
        so the deletion always wins against the version it replaces.
        """
        stamp = now_ms() if at_ms is None else at_ms
        return replace(self, deleted=True, updated_at=max(stamp, self.updated_at))

    def with_changes(self, **changes: Any) -> "Note":
        """Return a copy with the given fields replaced."""
        if "tags" in changes:
            changes["tags"] = tuple(changes["tags"] or ())
        return replace(self, **changes)

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase wire form."""
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "title": self.title,
            "body": self.body,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "date": self.date,
            "time": self.time,
            "tags": list(self.tags),
            "deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Note":
        """Create from the wire form of a stored record.

        Accepts the legacy ``uid``/``isDeleted`` keys still written by older
        replicas. Client input goes through ``normalize_note_input`` instead.
        """
        owner_id = data.get("ownerId", data.get("uid"))
        deleted = data.get("deleted", data.get("isDeleted", False))
        return cls(
            id=str(data["id"]),
            owner_id=owner_id,
            title=data.get("title") or "",
            body=data.get("body") or "",
            created_at=int(data.get("createdAt") or 0),
            updated_at=int(data.get("updatedAt") or 0),
            date=int(data["date"]) if data.get("date") is not None else None,
            time=data.get("time"),
            tags=tuple(data.get("tags") or ()),
            deleted=bool(deleted),
        )


def is_newer_than(candidate: Note, stored: Note) -> bool:
    """Last-write-wins: strictly greater updated_at wins, ties keep stored."""
    return candidate.updated_at > stored.updated_at
