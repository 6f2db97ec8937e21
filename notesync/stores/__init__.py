"""Storage tiers implementing the NoteStore contract."""

from .base import NoteStore
from .file_store import JsonFileNoteStore
from .memory_store import MemoryNoteStore
from .remote_store import RemoteNoteStore
from .sqlite_store import SqliteNoteStore

__all__ = [
    "JsonFileNoteStore",
    "MemoryNoteStore",
    "NoteStore",
    "RemoteNoteStore",
    "SqliteNoteStore",
]
