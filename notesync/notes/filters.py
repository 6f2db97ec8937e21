"""Filtering, merging and ordering of note result sets.

These are pure functions shared by every backend and by the reconciler, so
that a record matches the same filter no matter which tier returned it.
"""

from dataclasses import dataclass, field
from typing import Iterable

from .model import Note


@dataclass
class NoteFilter:
    """Conjunctive search predicates. Unset fields do not constrain."""

    owner_id: str | None = None
    include_deleted: bool = False
    text: str | None = None
    updated_after: int | None = None
    date_from: int | None = None
    date_to: int | None = None
    time: str | None = None
    tags: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def changes_since(cls, owner_id: str, last_sync: int = 0) -> "NoteFilter":
        """Filter for the pull feed.

        Tombstones are always part of the feed so deletions reach other
        devices. ``last_sync <= 0`` means everything.
        """
        return cls(
            owner_id=owner_id,
            include_deleted=True,
            updated_after=last_sync if last_sync > 0 else None,
        )


def matches(note: Note, note_filter: NoteFilter) -> bool:
    """Check whether a note satisfies every predicate of the filter."""
    f = note_filter

    if not f.include_deleted and note.is_tombstone:
        return False
    if f.owner_id is not None and note.owner_id != f.owner_id:
        return False

    if f.text:
        needle = f.text.lower()
        if needle not in (note.title or "").lower() and needle not in (note.body or "").lower():
            return False

    if f.updated_after is not None and note.updated_at <= f.updated_after:
        return False

    if f.date_from is not None and (note.date is None or note.date < f.date_from):
        return False
    if f.date_to is not None and (note.date is None or note.date > f.date_to):
        return False

    if f.time is not None and note.time != f.time:
        return False

    # AND semantics: every requested tag must be present
    return all(note.has_tag(tag) for tag in f.tags)


def sort_notes(notes: Iterable[Note]) -> list[Note]:
    """Newest first; equal timestamps ordered by id for determinism."""
    return sorted(notes, key=lambda n: (-n.updated_at, n.id))


def merge_results(
    local: Iterable[Note],
    remote: Iterable[Note],
) -> tuple[list[Note], list[Note]]:
    """Merge a remote result set into a local one.

    The local copy of an id always wins, even when the remote copy is newer:
    newer remote versions only arrive through push/pull. Duplicate ids within
    either input keep their first occurrence.

    Returns:
        Tuple of (merged notes sorted for display, remote notes whose ids
        were not in the local set).
    """
    merged: dict[str, Note] = {}
    for note in local:
        merged.setdefault(note.id, note)

    discovered: list[Note] = []
    for note in remote:
        if note.id in merged:
            continue
        merged[note.id] = note
        discovered.append(note)

    return sort_notes(merged.values()), discovered
