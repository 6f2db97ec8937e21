"""Record store contract shared by every storage tier."""

from abc import ABC, abstractmethod

from ..notes import Note, NoteFilter


class NoteStore(ABC):
    """Abstract base for note backends.

    Implementations must make ``upsert`` idempotent and keep at most one
    version of a given id. ``find`` may return results in any order; the
    reconciler imposes the user-visible order.
    """

    name: str = "store"

    def connect(self) -> None:
        """Open connections or create directories. Safe to call twice."""

    def close(self) -> None:
        """Release resources."""

    @abstractmethod
    async def get(self, note_id: str) -> Note | None:
        """Exact lookup by id.

        Returns:
            The stored note, or None if the id is unknown.
        """
        pass

    @abstractmethod
    async def upsert(self, note: Note) -> None:
        """Insert the note, or replace the stored version entirely."""
        pass

    @abstractmethod
    async def find(self, note_filter: NoteFilter) -> list[Note]:
        """Return every note matching the filter."""
        pass
