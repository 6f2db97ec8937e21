"""Server side of the push/pull sync protocol.

Push applies client-authored notes with last-write-wins; pull returns the
caller's changes since a timestamp, tombstones included.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from ..exceptions import OwnershipError, StaleWriteError
from ..notes import Note, is_newer_than, normalize_note_input, now_ms
from ..reconciler import Reconciler

logger = logging.getLogger(__name__)


class PushOutcome(Enum):
    """Classification of one pushed note."""

    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped_server_newer"
    FORBIDDEN = "forbidden_owner_mismatch"


@dataclass
class PushResult:
    """Outcome of one pushed note."""

    id: str
    outcome: PushOutcome

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "status": self.outcome.value}


def classify_push(incoming: Note, stored: Note | None, owner_id: str) -> PushOutcome:
    """Decide what a push does, given the current server copy.

    Equal or regressing timestamps keep the server copy.
    """
    if stored is None:
        return PushOutcome.CREATED
    if stored.owner_id != owner_id:
        return PushOutcome.FORBIDDEN
    if is_newer_than(incoming, stored):
        return PushOutcome.UPDATED
    return PushOutcome.SKIPPED


class SyncService:
    """Stateless push/pull endpoints over a Reconciler."""

    def __init__(self, reconciler: Reconciler, clock: Callable[[], int] = now_ms):
        """Initialize the sync service.

        Args:
            reconciler: Storage view the protocol reads and writes.
            clock: Source of epoch-ms timestamps for normalization defaults.
        """
        self.reconciler = reconciler
        self.clock = clock

    async def push(self, raw_notes: Any, owner_id: str) -> list[PushResult]:
        """Apply a batch of client notes as the given owner.

        Each note is handled independently and in order; a forbidden or stale
        note does not stop the batch. A durable store failure propagates, and
        notes applied before it stay applied.

        Args:
            raw_notes: Decoded ``notes`` array from the client; non-lists
                count as empty.
            owner_id: Verified identity of the caller.

        Returns:
            One PushResult per submitted note, in input order.
        """
        items = raw_notes if isinstance(raw_notes, list) else []
        logger.info(f"Push from {owner_id}: {len(items)} notes")

        results = []
        for raw in items:
            note = normalize_note_input(raw, owner_id, now=self.clock())
            stored = await self.reconciler.get(note.id)
            outcome = classify_push(note, stored, owner_id)

            if outcome is PushOutcome.UPDATED:
                note = note.with_changes(created_at=stored.created_at)

            if outcome in (PushOutcome.CREATED, PushOutcome.UPDATED):
                outcome = await self._apply(note, owner_id, outcome)
            elif outcome is PushOutcome.FORBIDDEN:
                logger.warning(
                    f"Push {note.id} rejected: owned by another principal, "
                    f"caller {owner_id}"
                )
            else:
                logger.debug(
                    f"Push {note.id} skipped: server updatedAt {stored.updated_at} "
                    f">= incoming {note.updated_at}"
                )

            results.append(PushResult(id=note.id, outcome=outcome))

        return results

    async def _apply(
        self, note: Note, owner_id: str, outcome: PushOutcome
    ) -> PushOutcome:
        """Write a classified note, reclassifying if a concurrent push won.

        Another push for the same id can land between the lookup and the
        write; the reconciler's checks then decide the outcome.
        """
        try:
            await self.reconciler.upsert(note)
        except OwnershipError:
            logger.warning(
                f"Push {note.id} rejected: claimed concurrently by another "
                f"principal, caller {owner_id}"
            )
            return PushOutcome.FORBIDDEN
        except StaleWriteError:
            logger.debug(f"Push {note.id} skipped: a concurrent push stored a newer version")
            return PushOutcome.SKIPPED

        logger.debug(f"Push {note.id}: {outcome.value}")
        return outcome

    async def pull(self, owner_id: str, last_sync: int = 0) -> list[Note]:
        """Return the owner's notes changed after last_sync.

        Tombstones are always included. ``last_sync <= 0`` returns everything.
        """
        notes = await self.reconciler.changes_since(owner_id, last_sync)
        logger.info(
            f"Pull for {owner_id} since {last_sync}: {len(notes)} notes"
        )
        return notes
