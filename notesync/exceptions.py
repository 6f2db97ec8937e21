"""Exceptions raised by the notesync storage and sync layers."""


class NoteSyncError(Exception):
    """Base exception for all notesync errors."""


class StoreError(NoteSyncError):
    """A backend failed to read or write (durable tiers propagate this)."""

    def __init__(self, store: str, message: str):
        super().__init__(f"[{store}] {message}")
        self.store = store


class RemoteStoreError(StoreError):
    """The remote replica failed; callers treat it as unavailable."""


class OwnershipError(NoteSyncError):
    """A write tried to change the owner of an existing note."""

    def __init__(self, note_id: str, owner_id: str | None, attempted_owner: str | None):
        super().__init__(
            f"Note {note_id} is owned by {owner_id!r}, "
            f"refusing write as {attempted_owner!r}"
        )
        self.note_id = note_id
        self.owner_id = owner_id
        self.attempted_owner = attempted_owner


class StaleWriteError(NoteSyncError):
    """A write did not supersede the stored copy (older, or a differing tie)."""

    def __init__(self, note_id: str, stored_at: int, incoming_at: int):
        super().__init__(
            f"Note {note_id}: incoming updatedAt {incoming_at} "
            f"does not supersede stored {stored_at}"
        )
        self.note_id = note_id
        self.stored_at = stored_at
        self.incoming_at = incoming_at
