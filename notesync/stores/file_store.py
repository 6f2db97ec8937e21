"""JSON-file mirror store: one file per note, used as a durable backup."""

import json
import logging
import os
import re
import tempfile
from pathlib import Path

from ..exceptions import StoreError
from ..notes import Note, NoteFilter, matches
from .base import NoteStore

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def _file_name(note_id: str) -> str:
    """Map a note id to a file name that cannot escape the directory."""
    safe = _UNSAFE_CHARS.sub("_", note_id)
    if safe != note_id or safe.startswith("."):
        # Keep sanitized names unique per original id
        safe = f"{safe}-{note_id.encode('utf-8').hex()[:32]}"
    return f"{safe}.json"


class JsonFileNoteStore(NoteStore):
    """Notes stored as pretty-printed JSON files in a directory.

    Writes go through a temporary file and an atomic rename so a crash never
    leaves a half-written record behind.
    """

    name = "mirror"

    def __init__(self, directory: str | Path):
        self.directory = Path(directory).expanduser()

    def connect(self) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(self.name, f"cannot create {self.directory}: {e}") from e
        logger.info(f"JsonFileNoteStore using {self.directory}")

    def path_for(self, note_id: str) -> Path:
        return self.directory / _file_name(note_id)

    async def get(self, note_id: str) -> Note | None:
        path = self.path_for(note_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreError(self.name, f"cannot read {path.name}: {e}") from e

        try:
            return Note.from_dict(json.loads(text))
        except (ValueError, KeyError, TypeError) as e:
            raise StoreError(self.name, f"corrupt record {path.name}: {e}") from e

    async def upsert(self, note: Note) -> None:
        path = self.path_for(note.id)
        payload = json.dumps(note.to_dict(), indent=2, ensure_ascii=False)

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.directory, prefix=".tmp-", suffix=".json"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StoreError(self.name, f"cannot write {path.name}: {e}") from e

        logger.debug(f"Wrote note {note.id} to {path.name}")

    async def find(self, note_filter: NoteFilter) -> list[Note]:
        try:
            paths = sorted(self.directory.glob("*.json"))
        except OSError as e:
            raise StoreError(self.name, f"cannot list {self.directory}: {e}") from e

        notes = []
        for path in paths:
            if path.name.startswith(".tmp-"):
                continue
            try:
                note = Note.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable mirror file {path.name}: {e}")
                continue
            if matches(note, note_filter):
                notes.append(note)

        logger.debug(f"Mirror find matched {len(notes)} of {len(paths)} files")
        return notes
