"""Push/pull synchronization between disconnected devices and the server."""

from .client import SyncClient, SyncResult, SyncState, SyncStatus
from .protocol import PushOutcome, PushResult, SyncService, classify_push

__all__ = [
    "PushOutcome",
    "PushResult",
    "SyncClient",
    "SyncResult",
    "SyncService",
    "SyncState",
    "SyncStatus",
    "classify_push",
]
