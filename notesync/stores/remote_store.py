"""HTTP client for the optional cloud replica of the note collection."""

import logging
from typing import Any
from urllib.parse import quote

import httpx

from ..exceptions import RemoteStoreError
from ..notes import Note, NoteFilter, matches
from .base import NoteStore

logger = logging.getLogger(__name__)


class RemoteNoteStore(NoteStore):
    """Client for a REST document API holding replicated notes.

    Endpoints used:
    - ``GET /notes/{id}``: one note, 404 if absent
    - ``PUT /notes/{id}``: store a note (full document)
    - ``GET /notes?ownerId=...``: ``{"notes": [...]}`` for one owner

    Only the owner predicate is sent to the server; the rest of a filter is
    applied locally so the replica needs no query support.
    """

    name = "remote"

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 5.0,
    ):
        """Initialize the remote store client.

        Args:
            base_url: Base URL of the replica API.
            token: Optional bearer token sent with every request.
            timeout: Request timeout in seconds.
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> bool:
        """Check if the replica answers at all.

        Returns:
            True if the health endpoint responded with 200.
        """
        try:
            client = await self._get_client()
            response = await client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Remote health check failed: {e}")
            return False

    @staticmethod
    def _path(note_id: str) -> str:
        return f"/notes/{quote(note_id, safe='')}"

    async def get(self, note_id: str) -> Note | None:
        try:
            client = await self._get_client()
            response = await client.get(self._path(note_id))
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return Note.from_dict(response.json())
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            raise RemoteStoreError(self.name, f"get {note_id} failed: {e}") from e

    async def upsert(self, note: Note) -> None:
        try:
            client = await self._get_client()
            response = await client.put(self._path(note.id), json=note.to_dict())
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise RemoteStoreError(self.name, f"upsert {note.id} failed: {e}") from e

        logger.debug(f"Replicated note {note.id} to {self.base_url}")

    async def find(self, note_filter: NoteFilter) -> list[Note]:
        params: dict[str, Any] = {}
        if note_filter.owner_id is not None:
            params["ownerId"] = note_filter.owner_id

        try:
            client = await self._get_client()
            response = await client.get("/notes", params=params)
            response.raise_for_status()
            payload = response.json()
            docs = payload.get("notes", []) if isinstance(payload, dict) else payload
            notes = [Note.from_dict(doc) for doc in docs]
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise RemoteStoreError(self.name, f"find failed: {e}") from e

        return [n for n in notes if matches(n, note_filter)]
