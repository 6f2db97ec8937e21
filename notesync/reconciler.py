"""Reconciler: one consistent view over the primary, mirror and remote tiers.

The primary store is authoritative for local reads. The mirror is a
write-through durable copy read only when rebuilding a tier. The remote
replica is advisory: it contributes ids this device has not seen and never
overrides a local version.
"""

import asyncio
import logging
from typing import Any, Awaitable

from .config import Config
from .exceptions import OwnershipError, StaleWriteError, StoreError
from .notes import Note, NoteFilter, is_newer_than, merge_results, sort_notes
from .stores import JsonFileNoteStore, NoteStore, RemoteNoteStore, SqliteNoteStore

logger = logging.getLogger(__name__)


class Reconciler:
    """Coordinates reads and writes across the storage tiers.

    Durable-tier (primary/mirror) failures propagate as StoreError. Remote
    failures and timeouts are logged and treated as "remote unavailable".
    """

    def __init__(
        self,
        primary: NoteStore,
        mirror: NoteStore,
        remote: NoteStore | None = None,
        remote_timeout: float = 5.0,
    ):
        """Initialize the reconciler.

        Args:
            primary: Authoritative local store.
            mirror: Durable write-through copy.
            remote: Optional replica; None runs local-only.
            remote_timeout: Seconds allowed for each remote call.
        """
        self.primary = primary
        self.mirror = mirror
        self.remote = remote
        self.remote_timeout = remote_timeout

    @property
    def has_remote(self) -> bool:
        return self.remote is not None

    async def _call_remote(
        self, operation: str, call: Awaitable[Any]
    ) -> tuple[bool, Any]:
        """Run a remote call under the timeout, absorbing every failure.

        Returns:
            Tuple of (succeeded, result).
        """
        try:
            result = await asyncio.wait_for(call, timeout=self.remote_timeout)
            return True, result
        except asyncio.TimeoutError:
            logger.warning(
                f"Remote {operation} timed out after {self.remote_timeout}s, "
                "continuing local-only"
            )
        except Exception as e:
            logger.warning(f"Remote {operation} failed, continuing local-only: {e}")
        return False, None

    async def _cache_one(self, note: Note) -> None:
        await self.primary.upsert(note)
        await self.mirror.upsert(note)

    async def _cache_locally(self, notes: list[Note]) -> int:
        """Write remote-only notes into primary and mirror concurrently.

        Failures are logged, never raised.

        Returns:
            Number of notes cached.
        """
        if not notes:
            return 0

        results = await asyncio.gather(
            *(self._cache_one(note) for note in notes), return_exceptions=True
        )

        cached = 0
        for note, result in zip(notes, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to cache remote note {note.id} locally: {result}")
            else:
                cached += 1
                logger.info(f"Note {note.id} loaded from remote and cached locally")
        return cached

    async def get(self, note_id: str) -> Note | None:
        """Look up a note, falling back to the remote replica on a local miss.

        Returns:
            The note, or None if no reachable tier has it.
        """
        local = await self.primary.get(note_id)
        if local is not None:
            return local

        if self.remote is None:
            return None

        ok, remote_note = await self._call_remote("get", self.remote.get(note_id))
        if not ok or remote_note is None:
            return None

        await self._cache_locally([remote_note])
        return remote_note

    async def upsert(self, note: Note) -> None:
        """Write a note to primary and mirror, then replicate best-effort.

        Raises:
            OwnershipError: The stored note belongs to another owner.
            StaleWriteError: The note does not supersede the stored version
                (older, or a different note with the same updatedAt).
            StoreError: The primary or mirror write failed.
        """
        existing = await self.primary.get(note.id)
        if existing is not None:
            if existing.owner_id != note.owner_id:
                raise OwnershipError(note.id, existing.owner_id, note.owner_id)
            # Ties keep the stored version; re-writing it unchanged is allowed
            if note.updated_at < existing.updated_at or (
                note.updated_at == existing.updated_at and note != existing
            ):
                raise StaleWriteError(note.id, existing.updated_at, note.updated_at)

        await self.primary.upsert(note)
        try:
            await self.mirror.upsert(note)
        except StoreError:
            logger.error(
                f"Mirror write failed for note {note.id} after primary accepted it; "
                "the mirror can be rebuilt from primary"
            )
            raise

        if self.remote is None:
            logger.debug(f"Note {note.id} stored locally only (no remote tier)")
            return

        ok, _ = await self._call_remote("upsert", self.remote.upsert(note))
        if ok:
            logger.debug(f"Note {note.id} replicated to remote")

    async def find(self, note_filter: NoteFilter) -> list[Note]:
        """Search primary and, if configured, the remote replica.

        Remote notes are added only when their id is unknown to primary;
        those are cached locally. The result is sorted newest first.
        """
        local = await self.primary.find(note_filter)
        if self.remote is None:
            return sort_notes(local)

        ok, remote_notes = await self._call_remote(
            "find", self.remote.find(note_filter)
        )
        if not ok:
            return sort_notes(local)

        merged, discovered = merge_results(local, remote_notes)

        # A remote id can be absent from the local result only because the
        # local version failed the filter (e.g. a tombstone); it stays hidden.
        fresh: list[Note] = []
        known: set[str] = set()
        for note in discovered:
            if await self.primary.get(note.id) is None:
                fresh.append(note)
            else:
                known.add(note.id)

        if known:
            merged = [n for n in merged if n.id not in known]

        await self._cache_locally(fresh)
        return merged

    async def changes_since(self, owner_id: str, last_sync: int = 0) -> list[Note]:
        """All of an owner's notes updated after last_sync, tombstones included."""
        return await self.find(NoteFilter.changes_since(owner_id, last_sync))

    async def repair_mirror(self) -> int:
        """Re-write every primary note into the mirror.

        Returns:
            Number of notes written.
        """
        notes = await self.primary.find(NoteFilter(include_deleted=True))
        for note in notes:
            await self.mirror.upsert(note)
        logger.info(f"Mirror repaired from primary: {len(notes)} notes written")
        return len(notes)

    async def restore_primary(self) -> int:
        """Copy mirror notes that primary lacks or holds an older version of.

        Returns:
            Number of notes restored.
        """
        restored = 0
        for note in await self.mirror.find(NoteFilter(include_deleted=True)):
            existing = await self.primary.get(note.id)
            if existing is None or is_newer_than(note, existing):
                await self.primary.upsert(note)
                restored += 1
        logger.info(f"Primary restored from mirror: {restored} notes written")
        return restored

    async def aclose(self) -> None:
        """Close every tier."""
        self.primary.close()
        self.mirror.close()
        if isinstance(self.remote, RemoteNoteStore):
            await self.remote.aclose()
        elif self.remote is not None:
            self.remote.close()


def build_reconciler(config: Config) -> Reconciler:
    """Create and connect the storage tiers described by the configuration.

    The remote tier is decided here, once; it is never probed per call.
    """
    primary = SqliteNoteStore(config.storage.db_path)
    mirror = JsonFileNoteStore(config.storage.mirror_path)
    primary.connect()
    mirror.connect()

    remote = None
    if config.remote.active:
        remote = RemoteNoteStore(
            config.remote.url,
            token=config.remote.token,
            timeout=config.remote.timeout_seconds,
        )
        logger.info(f"Remote replica enabled at {config.remote.url}")
    else:
        logger.info("Remote replica not configured, running local-only")

    return Reconciler(
        primary,
        mirror,
        remote=remote,
        remote_timeout=config.remote.timeout_seconds,
    )
