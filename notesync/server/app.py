"""FastAPI application exposing the sync protocol and notes CRUD."""

import logging
from datetime import datetime
from typing import Any, Callable

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from ..config import Config
from ..exceptions import OwnershipError, StaleWriteError
from ..notes import NoteFilter, coerce_tags, normalize_note_input, now_ms
from ..notes.normalize import coerce_bool, coerce_date_bound, coerce_timestamp
from ..reconciler import Reconciler
from ..sync import SyncService
from .auth import IdentityProvider, StaticTokenIdentity, Unauthorized, authenticate

logger = logging.getLogger(__name__)

SERVER_ERROR = {"error": "server_error"}


def _server_error() -> JSONResponse:
    return JSONResponse(status_code=500, content=SERVER_ERROR)


async def _json_body(request: Request) -> Any:
    """Decode the request body, treating an empty or invalid body as {}."""
    try:
        return await request.json()
    except ValueError:
        return {}


def create_app(
    config: Config,
    reconciler: Reconciler,
    identity: IdentityProvider | None = None,
    clock: Callable[[], int] = now_ms,
) -> FastAPI:
    """Create the notesync API application.

    Args:
        config: Application configuration.
        reconciler: Storage view shared by every route.
        identity: Resolves bearer tokens to owner ids. Defaults to the static
            token table from ``config.auth``.
        clock: Source of epoch-ms timestamps.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="notesync",
        description="Replicated notes store with push/pull sync",
        version="0.1.0",
    )

    if identity is None:
        identity = StaticTokenIdentity(config.auth.tokens)

    sync = SyncService(reconciler, clock=clock)

    app.state.config = config
    app.state.reconciler = reconciler
    app.state.sync = sync

    @app.exception_handler(Unauthorized)
    async def unauthorized_handler(request: Request, exc: Unauthorized):
        return JSONResponse(status_code=401, content=exc.to_dict())

    async def current_owner(authorization: str | None = Header(default=None)) -> str:
        return await authenticate(identity, authorization)

    # ==================== Sync Routes ====================

    @app.post("/sync/push")
    async def sync_push(request: Request, owner_id: str = Depends(current_owner)):
        """Apply a batch of client notes with last-write-wins."""
        try:
            payload = await _json_body(request)
            raw_notes = payload.get("notes") if isinstance(payload, dict) else None
            results = await sync.push(raw_notes, owner_id)
            return {"ok": True, "results": [r.to_dict() for r in results]}
        except Exception:
            logger.exception("[POST /sync/push] failed")
            return _server_error()

    @app.get("/sync/pull")
    async def sync_pull(
        lastSync: str | None = None,
        owner_id: str = Depends(current_owner),
    ):
        """Return the caller's notes changed after lastSync, tombstones included."""
        try:
            last_sync = max(coerce_timestamp(lastSync, 0) or 0, 0)
            notes = await sync.pull(owner_id, last_sync)
            return {"notes": [n.to_dict() for n in notes]}
        except Exception:
            logger.exception("[GET /sync/pull] failed")
            return _server_error()

    # ==================== Notes Routes ====================

    @app.get("/notes")
    async def list_notes(
        q: str | None = None,
        dateFrom: str | None = None,
        dateTo: str | None = None,
        time: str | None = None,
        tags: str | None = None,
        updatedAfter: str | None = None,
        includeDeleted: str | None = None,
        owner_id: str = Depends(current_owner),
    ):
        """Search the caller's notes."""
        note_filter = NoteFilter(
            owner_id=owner_id,
            include_deleted=coerce_bool(includeDeleted),
            text=q or None,
            updated_after=coerce_timestamp(updatedAfter, None),
            date_from=coerce_date_bound(dateFrom) if dateFrom else None,
            date_to=coerce_date_bound(dateTo, end_of_day=True) if dateTo else None,
            time=time or None,
            tags=coerce_tags(tags),
        )
        try:
            notes = await reconciler.find(note_filter)
        except Exception:
            logger.exception("[GET /notes] failed")
            return _server_error()

        logger.debug(f"[GET /notes] {owner_id}: {len(notes)} notes")
        return [n.to_dict() for n in notes]

    @app.get("/notes/{note_id}")
    async def get_note(note_id: str, owner_id: str = Depends(current_owner)):
        """Fetch one of the caller's notes."""
        try:
            note = await reconciler.get(note_id)
        except Exception:
            logger.exception(f"[GET /notes/{note_id}] failed")
            return _server_error()

        if note is None:
            return JSONResponse(status_code=404, content={"error": "not_found"})
        if note.owner_id != owner_id:
            logger.warning(f"[GET /notes/{note_id}] denied for {owner_id}")
            return JSONResponse(status_code=403, content={"error": "forbidden"})
        return note.to_dict()

    @app.post("/notes", status_code=201)
    async def create_note(request: Request, owner_id: str = Depends(current_owner)):
        """Create a note, or upsert one the caller already owns."""
        note = normalize_note_input(await _json_body(request), owner_id, now=clock())
        try:
            await reconciler.upsert(note)
        except OwnershipError:
            return JSONResponse(status_code=403, content={"error": "forbidden"})
        except StaleWriteError:
            return JSONResponse(status_code=409, content={"error": "stale_write"})
        except Exception:
            logger.exception("[POST /notes] failed")
            return _server_error()

        logger.info(f"[POST /notes] {owner_id} saved note {note.id}")
        return note.to_dict()

    @app.put("/notes/{note_id}")
    async def update_note(
        note_id: str,
        request: Request,
        owner_id: str = Depends(current_owner),
    ):
        """Merge submitted fields into an existing note."""
        body = await _json_body(request)
        try:
            existing = await reconciler.get(note_id)
            if existing is None:
                return JSONResponse(status_code=404, content={"error": "not_found"})
            if existing.owner_id != owner_id:
                logger.warning(f"[PUT /notes/{note_id}] denied for {owner_id}")
                return JSONResponse(status_code=403, content={"error": "forbidden"})

            fields = existing.to_dict()
            if isinstance(body, dict):
                fields.update(
                    {k: v for k, v in body.items() if k not in ("id", "ownerId", "uid")}
                )
            fields["id"] = note_id
            stamp = clock()
            merged = normalize_note_input(fields, owner_id, now=stamp).with_changes(
                created_at=existing.created_at,
                updated_at=max(stamp, existing.updated_at + 1),
            )
            await reconciler.upsert(merged)
        except Exception:
            logger.exception(f"[PUT /notes/{note_id}] failed")
            return _server_error()

        logger.info(f"[PUT /notes/{note_id}] updated by {owner_id}")
        return merged.to_dict()

    @app.delete("/notes/{note_id}")
    async def delete_note(note_id: str, owner_id: str = Depends(current_owner)):
        """Soft-delete a note by turning it into a tombstone."""
        try:
            existing = await reconciler.get(note_id)
            if existing is None:
                return JSONResponse(status_code=404, content={"error": "not_found"})
            if existing.owner_id != owner_id:
                logger.warning(f"[DELETE /notes/{note_id}] denied for {owner_id}")
                return JSONResponse(status_code=403, content={"error": "forbidden"})

            stamp = max(clock(), existing.updated_at + 1)
            await reconciler.upsert(existing.tombstone(stamp))
        except Exception:
            logger.exception(f"[DELETE /notes/{note_id}] failed")
            return _server_error()

        logger.info(f"[DELETE /notes/{note_id}] tombstoned by {owner_id}")
        return {"ok": True}

    # ==================== Health ====================

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check endpoint.

        Always returns 200 OK; component problems are reported in the body.
        """
        health: dict[str, Any] = {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
            "components": {
                "primary": reconciler.primary.name,
                "mirror": reconciler.mirror.name,
                "remote": reconciler.has_remote,
            },
        }

        get_stats = getattr(reconciler.primary, "get_stats", None)
        if get_stats:
            try:
                health["components"]["primary_stats"] = get_stats()
            except Exception as e:
                health["components"]["primary_error"] = str(e)

        return health

    return app
