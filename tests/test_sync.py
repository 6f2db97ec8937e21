"""Tests for the push/pull protocol and the device sync client."""

import asyncio
import json

import httpx
import pytest
from unittest.mock import AsyncMock, patch

from notesync.config import Config
from notesync.exceptions import StoreError
from notesync.notes import Note
from notesync.reconciler import Reconciler
from notesync.server import create_app
from notesync.stores import MemoryNoteStore
from notesync.sync import (
    PushOutcome,
    SyncClient,
    SyncService,
    SyncState,
    SyncStatus,
    classify_push,
)

CLOCK_MS = 1_000_000


def make_note(note_id="n1", owner_id="u1", updated_at=100, **kwargs) -> Note:
    return Note(id=note_id, owner_id=owner_id, created_at=1, updated_at=updated_at, **kwargs)


class SlowGetStore(MemoryNoteStore):
    """Remote stand-in whose lookups miss after a delay."""

    async def get(self, note_id):
        await asyncio.sleep(0.05)
        return None


@pytest.fixture
def primary():
    return MemoryNoteStore("primary")


@pytest.fixture
def reconciler(primary):
    return Reconciler(primary, MemoryNoteStore("mirror"))


@pytest.fixture
def service(reconciler):
    """Create a sync service with a fixed clock."""
    return SyncService(reconciler, clock=lambda: CLOCK_MS)


def statuses(results):
    return [r.outcome.value for r in results]


class TestClassifyPush:
    """Tests for push outcome classification."""

    def test_created(self):
        assert classify_push(make_note(), None, "u1") is PushOutcome.CREATED

    def test_forbidden_beats_newer(self):
        stored = make_note(owner_id="u1", updated_at=1)
        assert classify_push(make_note(owner_id="u2", updated_at=9), stored, "u2") is PushOutcome.FORBIDDEN

    def test_tie_is_skipped(self):
        stored = make_note(updated_at=100)
        assert classify_push(make_note(updated_at=100), stored, "u1") is PushOutcome.SKIPPED

    def test_newer_is_updated(self):
        stored = make_note(updated_at=100)
        assert classify_push(make_note(updated_at=101), stored, "u1") is PushOutcome.UPDATED


class TestSyncService:
    """Tests for SyncService push and pull."""

    @pytest.mark.asyncio
    async def test_push_scenario(self, service, primary):
        """Test created, skipped, forbidden and updated in sequence."""
        r = await service.push([{"id": "n1", "title": "A", "updatedAt": 100}], "u1")
        assert statuses(r) == ["created"]

        r = await service.push([{"id": "n1", "title": "B", "updatedAt": 50}], "u1")
        assert statuses(r) == ["skipped_server_newer"]
        assert (await primary.get("n1")).title == "A"

        r = await service.push([{"id": "n1", "title": "C", "updatedAt": 200}], "u2")
        assert statuses(r) == ["forbidden_owner_mismatch"]
        assert (await primary.get("n1")).title == "A"

        r = await service.push([{"id": "n1", "title": "D", "updatedAt": 200}], "u1")
        assert statuses(r) == ["updated"]
        assert (await primary.get("n1")).title == "D"

        pulled = await service.pull("u1", 0)
        assert [(n.id, n.title) for n in pulled] == [("n1", "D")]

    @pytest.mark.asyncio
    async def test_push_results_in_input_order(self, service):
        """Test one result per submitted note, order preserved."""
        await service.push([{"id": "b", "updatedAt": 10}], "u2")

        results = await service.push(
            [
                {"id": "a", "updatedAt": 10},
                {"id": "b", "updatedAt": 20},
                {"id": "a", "updatedAt": 5},
            ],
            "u1",
        )

        assert [(r.id, r.outcome.value) for r in results] == [
            ("a", "created"),
            ("b", "forbidden_owner_mismatch"),
            ("a", "skipped_server_newer"),
        ]

    @pytest.mark.asyncio
    async def test_push_ignores_client_owner(self, service, primary):
        """Test the stored owner is always the authenticated caller."""
        await service.push([{"id": "n1", "ownerId": "mallory"}], "u1")

        assert (await primary.get("n1")).owner_id == "u1"

    @pytest.mark.asyncio
    async def test_push_defaults_from_clock(self, service, primary):
        """Test missing fields are filled in, including a generated id."""
        results = await service.push([{}], "u1")

        stored = await primary.get(results[0].id)
        assert stored.updated_at == CLOCK_MS
        assert stored.created_at == CLOCK_MS
        assert stored.tags == ()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [None, {}, "notes", 7])
    async def test_push_non_list_is_empty(self, service, payload):
        """Test a malformed notes field yields no results."""
        assert await service.push(payload, "u1") == []

    @pytest.mark.asyncio
    async def test_push_tombstone(self, service):
        """Test a pushed deletion wins and is pulled by other devices."""
        await service.push([{"id": "n1", "title": "A", "updatedAt": 100}], "u1")
        r = await service.push([{"id": "n1", "deleted": True, "updatedAt": 150}], "u1")

        assert statuses(r) == ["updated"]
        pulled = await service.pull("u1", 100)
        assert [n.deleted for n in pulled] == [True]

    @pytest.mark.asyncio
    async def test_push_store_failure_propagates(self, service, primary):
        """Test durable failures abort the batch, earlier notes stay applied."""
        await service.push([{"id": "a", "updatedAt": 1}], "u1")
        primary.fail_with = StoreError("primary", "disk full")

        with pytest.raises(StoreError):
            await service.push([{"id": "b", "updatedAt": 1}], "u1")

        primary.fail_with = None
        assert "a" in primary
        assert "b" not in primary

    @pytest.mark.asyncio
    async def test_last_write_wins_is_order_independent(self, reconciler):
        """Test either push order ends with the larger updatedAt."""
        older = {"id": "n1", "title": "old", "updatedAt": 100}
        newer = {"id": "n1", "title": "new", "updatedAt": 200}

        for order in ([older, newer], [newer, older]):
            store = MemoryNoteStore("primary")
            service = SyncService(Reconciler(store, MemoryNoteStore("mirror")))
            for raw in order:
                await service.push([raw], "u1")
            assert (await store.get("n1")).title == "new"

    @pytest.mark.asyncio
    async def test_equal_timestamps_keep_first(self, service, primary):
        """Test a tie keeps the copy already stored."""
        await service.push([{"id": "n1", "title": "first", "updatedAt": 100}], "u1")
        await service.push([{"id": "n1", "title": "second", "updatedAt": 100}], "u1")

        assert (await primary.get("n1")).title == "first"

    @pytest.mark.asyncio
    async def test_update_keeps_created_at(self, service, primary):
        """Test an update without createdAt keeps the original creation time."""
        await service.push([{"id": "n1", "createdAt": 10, "updatedAt": 100}], "u1")

        r = await service.push([{"id": "n1", "title": "edited", "updatedAt": 200}], "u1")

        assert statuses(r) == ["updated"]
        stored = await primary.get("n1")
        assert stored.title == "edited"
        assert stored.created_at == 10

    @pytest.mark.asyncio
    async def test_concurrent_push_by_other_owner_is_forbidden(self, primary):
        """Test a push racing another owner's create is reported, not raised."""
        service = SyncService(
            Reconciler(primary, MemoryNoteStore("mirror"), remote=SlowGetStore("remote"), remote_timeout=1.0)
        )

        results = await asyncio.gather(
            service.push([{"id": "n1", "title": "mine", "updatedAt": 100}], "u1"),
            service.push([{"id": "n1", "title": "theirs", "updatedAt": 100}], "u2"),
        )

        outcomes = sorted(r[0].outcome.value for r in results)
        assert outcomes == ["created", "forbidden_owner_mismatch"]
        winner = "u1" if results[0][0].outcome is PushOutcome.CREATED else "u2"
        assert (await primary.get("n1")).owner_id == winner

    @pytest.mark.asyncio
    async def test_concurrent_push_same_owner_is_skipped(self, primary):
        """Test a racing create with the same updatedAt keeps the first write."""
        service = SyncService(
            Reconciler(primary, MemoryNoteStore("mirror"), remote=SlowGetStore("remote"), remote_timeout=1.0)
        )

        results = await asyncio.gather(
            service.push(
                [{"id": "n1", "title": "phone", "updatedAt": 100}, {"id": "n2", "updatedAt": 1}],
                "u1",
            ),
            service.push([{"id": "n1", "title": "laptop", "updatedAt": 100}], "u1"),
        )

        outcomes = sorted(r[0].outcome.value for r in results)
        assert outcomes == ["created", "skipped_server_newer"]
        assert results[0][1].outcome is PushOutcome.CREATED
        assert "n2" in primary

    @pytest.mark.asyncio
    async def test_idempotent_push(self, service, primary):
        """Test pushing the same note twice stores it once."""
        raw = {"id": "n1", "title": "A", "updatedAt": 100}

        await service.push([raw], "u1")
        before = await primary.get("n1")
        await service.push([raw], "u1")

        assert await primary.get("n1") == before
        assert len(primary) == 1

    @pytest.mark.asyncio
    async def test_pull_tombstone_boundary(self, service):
        """Test a tombstone at T is pulled for lastSync < T only."""
        await service.push([{"id": "n1", "deleted": True, "updatedAt": 500}], "u1")

        assert [n.id for n in await service.pull("u1", 499)] == ["n1"]
        assert await service.pull("u1", 500) == []

    @pytest.mark.asyncio
    async def test_pull_only_own_notes(self, service):
        """Test pull never returns other owners' notes."""
        await service.push([{"id": "mine", "updatedAt": 1}], "u1")
        await service.push([{"id": "theirs", "updatedAt": 1}], "u2")

        assert [n.id for n in await service.pull("u1")] == ["mine"]


@pytest.fixture
def device_store():
    return MemoryNoteStore("device")


@pytest.fixture
def sync_client(device_store, tmp_path):
    """Create a sync client with a state file in a temp directory."""
    return SyncClient(
        device_store,
        "http://notes:3001",
        token="tok",
        state_path=tmp_path / "state.json",
        batch_size=2,
        max_retries=2,
        timeout=1.0,
    )


class TestSyncState:
    """Tests for watermark persistence."""

    def test_load_missing(self, tmp_path):
        assert SyncState.load(tmp_path / "none.json") == SyncState()

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "deep" / "state.json"
        SyncState(last_push=5, last_pull=7).save(path)

        assert SyncState.load(path) == SyncState(last_push=5, last_pull=7)

    def test_load_corrupt(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{oops", encoding="utf-8")

        assert SyncState.load(path) == SyncState()


class TestSyncClient:
    """Tests for the device-side SyncClient."""

    def test_init(self, sync_client):
        """Test client initializes with empty watermarks."""
        assert sync_client.server_url == "http://notes:3001"
        assert sync_client.state == SyncState()
        assert sync_client.last_sync is None

    @pytest.mark.asyncio
    async def test_no_server_url(self, device_store):
        """Test sync fails cleanly without a server."""
        client = SyncClient(device_store, None)

        result = await client.push_changes()

        assert result.status == SyncStatus.FAILED
        assert result.error == "No server URL configured"

    @pytest.mark.asyncio
    async def test_push_nothing_pending(self, sync_client):
        """Test an empty store pushes nothing."""
        with patch.object(sync_client, "_request_with_retry", new=AsyncMock()) as mock_req:
            result = await sync_client.push_changes()

        assert result.status == SyncStatus.SUCCESS
        assert result.notes_pushed == 0
        mock_req.assert_not_called()

    @pytest.mark.asyncio
    async def test_push_in_batches(self, sync_client, device_store, tmp_path):
        """Test pending notes are pushed oldest first in batches."""
        for i, ts in enumerate([30, 10, 20]):
            await device_store.upsert(make_note(f"n{i}", updated_at=ts))
        await device_store.upsert(make_note("gone", updated_at=40, deleted=True))

        responses = [
            ({"ok": True, "results": [{"id": "n1", "status": "created"}, {"id": "n2", "status": "created"}]}, None),
            ({"ok": True, "results": [{"id": "n0", "status": "skipped_server_newer"}, {"id": "gone", "status": "updated"}]}, None),
        ]
        with patch.object(
            sync_client, "_request_with_retry", new=AsyncMock(side_effect=responses)
        ) as mock_req:
            result = await sync_client.push_changes()

        assert result.status == SyncStatus.SUCCESS
        assert result.notes_pushed == 4
        assert result.outcomes == {"created": 2, "skipped_server_newer": 1, "updated": 1}

        first_batch = mock_req.call_args_list[0][0][2]["notes"]
        second_batch = mock_req.call_args_list[1][0][2]["notes"]
        assert [n["id"] for n in first_batch] == ["n1", "n2"]
        assert [n["id"] for n in second_batch] == ["n0", "gone"]
        assert second_batch[1]["deleted"] is True

        assert sync_client.state.last_push == 40
        saved = json.loads((tmp_path / "state.json").read_text(encoding="utf-8"))
        assert saved["last_push"] == 40

    @pytest.mark.asyncio
    async def test_push_only_changes_since_watermark(self, sync_client, device_store):
        """Test already-pushed notes are not sent again."""
        await device_store.upsert(make_note("old", updated_at=10))
        await device_store.upsert(make_note("new", updated_at=20))
        sync_client.state.last_push = 10

        with patch.object(
            sync_client,
            "_request_with_retry",
            new=AsyncMock(return_value=({"results": [{"id": "new", "status": "created"}]}, None)),
        ) as mock_req:
            result = await sync_client.push_changes()

        assert result.notes_pushed == 1
        sent = mock_req.call_args[0][2]["notes"]
        assert [n["id"] for n in sent] == ["new"]

    @pytest.mark.asyncio
    async def test_push_partial_failure(self, sync_client, device_store):
        """Test a failed second batch keeps the first batch's watermark."""
        for i in range(4):
            await device_store.upsert(make_note(f"n{i}", updated_at=i + 1))

        responses = [
            ({"results": [{"id": "n0", "status": "created"}, {"id": "n1", "status": "created"}]}, None),
            (None, "HTTP 500"),
        ]
        with patch.object(
            sync_client, "_request_with_retry", new=AsyncMock(side_effect=responses)
        ):
            result = await sync_client.push_changes()

        assert result.status == SyncStatus.PARTIAL
        assert result.notes_pushed == 2
        assert sync_client.state.last_push == 2

    @pytest.mark.asyncio
    async def test_batch_split_on_equal_timestamps_resends_rest(self, device_store):
        """Test notes sharing a timestamp with a sent batch are retried after a failure."""
        client = SyncClient(device_store, "http://notes:3001", batch_size=1, max_retries=1)
        await device_store.upsert(make_note("a", updated_at=10))
        await device_store.upsert(make_note("b", updated_at=10))

        responses = [
            ({"results": [{"id": "a", "status": "created"}]}, None),
            (None, "HTTP 500"),
            ({"results": [{"id": "a", "status": "skipped_server_newer"}]}, None),
            ({"results": [{"id": "b", "status": "created"}]}, None),
        ]
        with patch.object(
            client, "_request_with_retry", new=AsyncMock(side_effect=responses)
        ) as mock_req:
            first = await client.push_changes()
            assert first.status == SyncStatus.PARTIAL
            assert client.state.last_push < 10

            second = await client.push_changes()

        assert second.status == SyncStatus.SUCCESS
        sent = [call[0][2]["notes"][0]["id"] for call in mock_req.call_args_list]
        assert sent == ["a", "b", "a", "b"]
        assert client.state.last_push == 10

    @pytest.mark.asyncio
    async def test_pull_applies_last_write_wins(self, sync_client, device_store):
        """Test pulled notes replace only older local copies."""
        await device_store.upsert(make_note("keep", title="local", updated_at=500))
        await device_store.upsert(make_note("replace", title="local", updated_at=100))

        remote = [
            make_note("keep", title="server", updated_at=400).to_dict(),
            make_note("replace", title="server", updated_at=300).to_dict(),
            make_note("new", title="server", updated_at=200, deleted=True).to_dict(),
        ]
        with patch.object(
            sync_client,
            "_request_with_retry",
            new=AsyncMock(return_value=({"notes": remote}, None)),
        ) as mock_req:
            result = await sync_client.pull_changes()

        assert result.status == SyncStatus.SUCCESS
        assert result.notes_pulled == 2
        assert (await device_store.get("keep")).title == "local"
        assert (await device_store.get("replace")).title == "server"
        assert (await device_store.get("new")).deleted is True
        assert sync_client.state.last_pull == 400
        assert mock_req.call_args[1]["params"] == {"lastSync": 0}

    @pytest.mark.asyncio
    async def test_pull_malformed_response(self, sync_client):
        """Test a response without ids fails the pull."""
        with patch.object(
            sync_client,
            "_request_with_retry",
            new=AsyncMock(return_value=({"notes": [{"title": "x"}]}, None)),
        ):
            result = await sync_client.pull_changes()

        assert result.status == SyncStatus.FAILED
        assert sync_client.state.last_pull == 0

    @pytest.mark.asyncio
    async def test_full_sync(self, sync_client, device_store):
        """Test push then pull are combined into one result."""
        await device_store.upsert(make_note("local", updated_at=10))

        with patch.object(
            sync_client,
            "_request_with_retry",
            new=AsyncMock(
                side_effect=[
                    ({"results": [{"id": "local", "status": "created"}]}, None),
                    ({"notes": [make_note("remote", updated_at=20).to_dict()]}, None),
                ]
            ),
        ):
            result = await sync_client.full_sync()

        assert result.status == SyncStatus.SUCCESS
        assert result.notes_pushed == 1
        assert result.notes_pulled == 1
        assert "remote" in device_store

    def test_get_sync_status(self, sync_client):
        """Test status reports watermarks."""
        sync_client.state.last_push = 3

        status = sync_client.get_sync_status()

        assert status["server_url"] == "http://notes:3001"
        assert status["last_push"] == 3
        assert status["last_pull"] == 0
        assert status["last_sync"] is None


def patched_async_client(transport):
    """Make SyncClient's httpx.AsyncClient use the given transport."""
    real_client = httpx.AsyncClient

    def factory(*args, **kwargs):
        return real_client(*args, transport=transport, **kwargs)

    return patch.object(httpx, "AsyncClient", side_effect=factory)


class TestRequestWithRetry:
    """Tests for HTTP retry behavior."""

    @pytest.mark.asyncio
    async def test_success_sends_bearer(self, sync_client):
        """Test a 200 response is decoded and the token is sent."""
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"notes": []})

        with patched_async_client(httpx.MockTransport(handler)):
            data, error = await sync_client._request_with_retry("GET", "/sync/pull")

        assert error is None
        assert data == {"notes": []}
        assert seen["auth"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, sync_client):
        """Test 4xx responses fail immediately."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, json={"error": "invalid_token"})

        with patched_async_client(httpx.MockTransport(handler)):
            data, error = await sync_client._request_with_retry("GET", "/sync/pull")

        assert data is None
        assert error.startswith("HTTP 401")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_server_error_retried(self, sync_client):
        """Test 5xx responses are retried up to max_retries."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, json={"error": "server_error"})

        with patched_async_client(httpx.MockTransport(handler)), patch(
            "notesync.sync.client.asyncio.sleep", new=AsyncMock()
        ):
            data, error = await sync_client._request_with_retry("POST", "/sync/push", {})

        assert data is None
        assert "Max retries" in error
        assert len(calls) == 2
        assert sync_client._last_error_offline is False

    @pytest.mark.asyncio
    async def test_unreachable_server_is_offline(self, sync_client, device_store):
        """Test connection failures report OFFLINE."""
        await device_store.upsert(make_note())

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with patched_async_client(httpx.MockTransport(handler)), patch(
            "notesync.sync.client.asyncio.sleep", new=AsyncMock()
        ):
            result = await sync_client.full_sync()

        assert result.status == SyncStatus.OFFLINE
        assert sync_client.state.last_push == 0
        assert sync_client.get_sync_status()["consecutive_failures"] == 1


class TestEndToEnd:
    """SyncClient against the real API over an in-process transport."""

    @pytest.mark.asyncio
    async def test_two_devices_converge(self, tmp_path):
        """Test a note and its deletion travel between two devices."""
        config = Config()
        config.auth.tokens = {"tok-alice": "alice"}
        server_primary = MemoryNoteStore("primary")
        app = create_app(config, Reconciler(server_primary, MemoryNoteStore("mirror")))

        phone = MemoryNoteStore("phone")
        laptop = MemoryNoteStore("laptop")
        phone_client = SyncClient(phone, "http://server", token="tok-alice", state_path=tmp_path / "phone.json")
        laptop_client = SyncClient(laptop, "http://server", token="tok-alice", state_path=tmp_path / "laptop.json")

        with patched_async_client(httpx.ASGITransport(app=app)):
            await phone.upsert(make_note("n1", owner_id="alice", title="groceries", updated_at=100))
            result = await phone_client.full_sync()
            assert result.status == SyncStatus.SUCCESS
            assert result.outcomes == {"created": 1}

            await laptop_client.full_sync()
            assert (await laptop.get("n1")).title == "groceries"

            tomb = (await laptop.get("n1")).tombstone(200)
            await laptop.upsert(tomb)
            await laptop_client.full_sync()

            await phone_client.full_sync()

        assert (await server_primary.get("n1")).deleted is True
        assert (await phone.get("n1")).deleted is True
