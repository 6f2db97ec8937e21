"""Note records, input normalization and result-set reconciliation."""

from .filters import NoteFilter, matches, merge_results, sort_notes
from .model import Note, is_newer_than, now_ms
from .normalize import coerce_tags, normalize_note_input

__all__ = [
    "Note",
    "NoteFilter",
    "coerce_tags",
    "is_newer_than",
    "matches",
    "merge_results",
    "normalize_note_input",
    "now_ms",
    "sort_notes",
]
