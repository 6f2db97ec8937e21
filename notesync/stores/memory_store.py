"""In-process note store, used for tests and for embedding notesync."""

from dataclasses import replace

from ..exceptions import StoreError
from ..notes import Note, NoteFilter, matches
from .base import NoteStore


class MemoryNoteStore(NoteStore):
    """Dict-backed store holding private copies of every note.

    Set ``fail_with`` to an exception instance to make every subsequent
    operation raise it.
    """

    def __init__(self, name: str = "memory"):
        self.name = name
        self._notes: dict[str, Note] = {}
        self.fail_with: Exception | None = None
        self.upsert_calls = 0

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def get(self, note_id: str) -> Note | None:
        self._check()
        note = self._notes.get(note_id)
        return replace(note) if note else None

    async def upsert(self, note: Note) -> None:
        self._check()
        if not note.id:
            raise StoreError(self.name, "note id is required")
        self.upsert_calls += 1
        self._notes[note.id] = replace(note)

    async def find(self, note_filter: NoteFilter) -> list[Note]:
        self._check()
        return [replace(n) for n in self._notes.values() if matches(n, note_filter)]

    def __len__(self) -> int:
        return len(self._notes)

    def __contains__(self, note_id: object) -> bool:
        return note_id in self._notes
