"""Device-side sync client.

Keeps a local NoteStore in step with a notesync server: local changes are
pushed, server changes are pulled and applied with last-write-wins. Progress
is tracked with two watermarks persisted to a small JSON state file.
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import httpx

from ..notes import Note, NoteFilter, is_newer_than
from ..stores import NoteStore

logger = logging.getLogger(__name__)


class SyncStatus(Enum):
    """Status of a sync operation."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some batches pushed before a failure
    FAILED = "failed"
    OFFLINE = "offline"  # Server unreachable


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncStatus
    notes_pushed: int = 0
    notes_pulled: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)
    error: str | None = None
    timestamp: datetime | None = None


@dataclass
class SyncState:
    """Watermarks (epoch ms) of the last pushed and pulled updatedAt."""

    last_push: int = 0
    last_pull: int = 0

    @classmethod
    def load(cls, path: Path | None) -> "SyncState":
        if path is None or not path.exists():
            return cls()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return cls(
                last_push=int(data.get("last_push", 0)),
                last_pull=int(data.get("last_pull", 0)),
            )
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring unreadable sync state {path}: {e}")
            return cls()

    def save(self, path: Path | None) -> None:
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(asdict(self)), encoding="utf-8")


class SyncClient:
    """Client that synchronizes a local store with a notesync server.

    Supports:
    - Push: send local notes changed since the last push
    - Pull: fetch server changes since the last pull
    - Full sync: push then pull

    Uses exponential backoff for retries and batching for large pushes.
    """

    def __init__(
        self,
        store: NoteStore,
        server_url: str | None,
        token: str | None = None,
        state_path: str | Path | None = None,
        batch_size: int = 100,
        max_retries: int = 3,
        timeout: float = 30.0,
    ):
        """Initialize the sync client.

        Args:
            store: Device-local note store.
            server_url: Base URL of the server (e.g., "http://notes:3001").
            token: Bearer token identifying the device's owner.
            state_path: JSON file for watermarks; None keeps them in memory.
            batch_size: Maximum notes per push request.
            max_retries: Maximum attempts per request.
            timeout: Request timeout in seconds.
        """
        self.store = store
        self.server_url = server_url
        self.token = token
        self.state_path = Path(state_path).expanduser() if state_path else None
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.timeout = timeout
        self.state = SyncState.load(self.state_path)
        self._last_sync: datetime | None = None
        self._consecutive_failures = 0
        self._last_error_offline = False

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json_data: Any = None,
        params: dict[str, Any] | None = None,
    ) -> tuple[Any, str | None]:
        """Make HTTP request with exponential backoff retry.

        Args:
            method: HTTP method (GET, POST).
            path: URL path appended to server_url.
            json_data: Optional JSON body.
            params: Optional query parameters.

        Returns:
            Tuple of (response_data, error_message).
        """
        self._last_error_offline = False
        if not self.server_url:
            return None, "No server URL configured"
        if method not in ("GET", "POST"):
            return None, f"Unsupported method: {method}"

        url = f"{self.server_url.rstrip('/')}{path}"
        backoff = 1.0
        offline = False

        async with httpx.AsyncClient(timeout=self.timeout, headers=self._headers()) as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.request(
                        method, url, json=json_data, params=params
                    )
                    offline = False

                    if response.status_code == 200:
                        self._consecutive_failures = 0
                        return response.json(), None

                    if response.status_code < 500:
                        # Client error (bad token, bad request): retrying won't help
                        return None, f"HTTP {response.status_code}: {response.text}"

                    logger.warning(
                        f"Server error {response.status_code}, "
                        f"attempt {attempt + 1}/{self.max_retries}"
                    )

                except httpx.ConnectError:
                    offline = True
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    offline = True
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except (httpx.HTTPError, ValueError) as e:
                    logger.error(f"Request error: {e}")
                    return None, str(e)

                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        self._consecutive_failures += 1
        self._last_error_offline = offline
        return None, f"Max retries ({self.max_retries}) exceeded"

    def _failure(self, error: str, pushed: int = 0) -> SyncResult:
        if self._last_error_offline:
            status = SyncStatus.OFFLINE
        elif pushed:
            status = SyncStatus.PARTIAL
        else:
            status = SyncStatus.FAILED
        return SyncResult(status=status, notes_pushed=pushed, error=error)

    async def push_changes(self) -> SyncResult:
        """Push local notes changed since the last successful push.

        Returns:
            SyncResult with per-outcome counts.
        """
        if not self.server_url:
            return SyncResult(status=SyncStatus.FAILED, error="No server URL configured")

        since = self.state.last_push
        pending = await self.store.find(
            NoteFilter(include_deleted=True, updated_after=since if since > 0 else None)
        )
        pending.sort(key=lambda n: (n.updated_at, n.id))

        if not pending:
            return SyncResult(status=SyncStatus.SUCCESS, timestamp=datetime.now())

        pushed = 0
        outcomes: dict[str, int] = {}
        for start in range(0, len(pending), self.batch_size):
            batch = pending[start:start + self.batch_size]
            data, error = await self._request_with_retry(
                "POST", "/sync/push", {"notes": [n.to_dict() for n in batch]}
            )
            if error:
                result = self._failure(error, pushed)
                result.outcomes = outcomes
                return result

            for item in data.get("results", []):
                status = item.get("status", "unknown")
                outcomes[status] = outcomes.get(status, 0) + 1
                if status == "forbidden_owner_mismatch":
                    logger.warning(f"Server refused note {item.get('id')}: owner mismatch")

            pushed += len(batch)
            # The watermark may only cover timestamps whose notes were all sent
            sent_through = batch[-1].updated_at
            following = pending[start + self.batch_size:start + self.batch_size + 1]
            if following and following[0].updated_at == sent_through:
                sent_through -= 1
            self.state.last_push = max(self.state.last_push, sent_through)
            self.state.save(self.state_path)

        self._last_sync = datetime.now()
        return SyncResult(
            status=SyncStatus.SUCCESS,
            notes_pushed=pushed,
            outcomes=outcomes,
            timestamp=self._last_sync,
        )

    async def pull_changes(self, since: int | None = None) -> SyncResult:
        """Pull server changes and apply them with last-write-wins.

        Args:
            since: Only fetch notes updated after this epoch-ms value.
                   If None, uses the stored pull watermark.

        Returns:
            SyncResult with the number of notes applied locally.
        """
        if not self.server_url:
            return SyncResult(status=SyncStatus.FAILED, error="No server URL configured")

        if since is None:
            since = self.state.last_pull

        data, error = await self._request_with_retry(
            "GET", "/sync/pull", params={"lastSync": since}
        )
        if error:
            return self._failure(error)

        try:
            incoming = [Note.from_dict(doc) for doc in data.get("notes", [])]
        except (KeyError, TypeError, ValueError) as e:
            return SyncResult(status=SyncStatus.FAILED, error=f"Malformed pull response: {e}")

        applied = 0
        for note in incoming:
            local = await self.store.get(note.id)
            if local is None or is_newer_than(note, local):
                await self.store.upsert(note)
                applied += 1

        if incoming:
            self.state.last_pull = max(since, max(n.updated_at for n in incoming))
            self.state.save(self.state_path)

        self._last_sync = datetime.now()
        return SyncResult(
            status=SyncStatus.SUCCESS,
            notes_pulled=applied,
            timestamp=self._last_sync,
        )

    async def full_sync(self) -> SyncResult:
        """Push local changes, then pull server changes.

        Returns:
            Combined SyncResult.
        """
        push_result = await self.push_changes()
        if push_result.status == SyncStatus.OFFLINE:
            return push_result

        pull_result = await self.pull_changes()

        status = pull_result.status
        if status == SyncStatus.SUCCESS and push_result.status != SyncStatus.SUCCESS:
            status = SyncStatus.PARTIAL

        return SyncResult(
            status=status,
            notes_pushed=push_result.notes_pushed,
            notes_pulled=pull_result.notes_pulled,
            outcomes=push_result.outcomes,
            error=push_result.error or pull_result.error,
            timestamp=datetime.now(),
        )

    async def sync_loop(
        self,
        interval_seconds: int = 300,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run continuous sync loop.

        Args:
            interval_seconds: Seconds between sync attempts.
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                result = await self.full_sync()
                logger.info(
                    f"Sync: {result.status.value}, "
                    f"pushed={result.notes_pushed}, "
                    f"pulled={result.notes_pulled}"
                )
            except Exception as e:
                logger.error(f"Sync loop error: {e}")

            # Back off while the server keeps failing
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(
                    interval_seconds * (2 ** self._consecutive_failures),
                    3600,
                )
                logger.debug(f"Backing off sync for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(wait_time)

        logger.info("Sync loop stopped")

    @property
    def last_sync(self) -> datetime | None:
        """Get timestamp of last successful sync."""
        return self._last_sync

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with sync statistics.
        """
        return {
            "server_url": self.server_url,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "consecutive_failures": self._consecutive_failures,
            "last_push": self.state.last_push,
            "last_pull": self.state.last_pull,
        }
