"""notesync - replicated notes store with offline push/pull synchronization."""

__version__ = "0.1.0"
