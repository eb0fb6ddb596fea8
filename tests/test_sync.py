"""Tests for the delta sync client."""

import itertools
import json
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx

from daybook.storage import Entry, EntryStore, SyncLedger, utcnow
from daybook.sync import SyncClient, SyncOutcome, SyncStatus, chunk_entries

BASE = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def ts(seconds: float) -> datetime:
    return BASE + timedelta(seconds=seconds)


class FakeServer:
    """Records sync requests and answers them like the journal server."""

    def __init__(self, pull_entries=None, fail_chunks=(), status_code=200):
        self.pull_entries = pull_entries or []
        self.fail_chunks = set(fail_chunks)
        self.status_code = status_code
        self.requests: list[dict] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)

        if self.status_code != 200:
            return httpx.Response(self.status_code, text="nope")
        if body["action"] == "pull":
            return httpx.Response(200, json={"entries": self.pull_entries})
        if body["chunkIndex"] in self.fail_chunks:
            return httpx.Response(500, text="chunk failed")
        return httpx.Response(200, json={"success": True, "count": len(body["entries"])})

    @property
    def pulls(self) -> list[dict]:
        return [r for r in self.requests if r["action"] == "pull"]

    @property
    def pushes(self) -> list[dict]:
        return [r for r in self.requests if r["action"] == "push"]

    def pushed_dates(self) -> list[str]:
        return [e["date"] for push in self.pushes for e in push["entries"]]


def make_client(store, ledger, handler, **kwargs) -> SyncClient:
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url="http://journal.test",
    )
    return SyncClient(store, ledger, http_client=http_client, **kwargs)


@pytest.fixture
def store():
    """Create an in-memory EntryStore for testing."""
    store = EntryStore(":memory:")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def ledger():
    """Create an in-memory SyncLedger for testing."""
    ledger = SyncLedger(":memory:")
    ledger.connect()
    yield ledger
    ledger.close()


class TestChunking:
    """Tests for chunk_entries."""

    def test_chunk_sizes(self):
        entries = [Entry(f"2024-01-{i % 28 + 1:02d}", "x", ts(i)) for i in range(120)]

        chunks = chunk_entries(entries, 50)

        assert [len(c) for c in chunks] == [50, 50, 20]
        assert [e for c in chunks for e in c] == entries

    def test_chunk_empty(self):
        assert chunk_entries([], 50) == []

    def test_chunk_size_must_be_positive(self):
        with pytest.raises(ValueError):
            chunk_entries([], 0)

    def test_client_rejects_bad_chunk_size(self, store, ledger):
        with pytest.raises(ValueError):
            SyncClient(store, ledger, server_url="http://x", chunk_size=0)


class TestSyncOutcome:
    """Tests for SyncOutcome."""

    def test_success_property(self):
        assert SyncOutcome(status=SyncStatus.SUCCESS).success is True
        assert SyncOutcome(status=SyncStatus.PARTIAL).success is False

    def test_defaults(self):
        outcome = SyncOutcome(status=SyncStatus.FAILED)

        assert outcome.pulled == 0
        assert outcome.pushed == 0
        assert outcome.error is None
        assert outcome.timestamp.tzinfo is not None


class TestMerge:
    """Tests for merging pulled entries into the local store."""

    @pytest.mark.parametrize(
        "local_offset, pulled_offset",
        list(itertools.product([None, -5, 0, 5], [-5, 0, 5])),
    )
    def test_merge_last_write_wins(self, store, ledger, local_offset, pulled_offset):
        """Test the pulled entry lands only if strictly newer than the local one."""
        client = SyncClient(store, ledger)
        if local_offset is not None:
            store.put(Entry("2024-01-01", "local", ts(local_offset)))

        winners = client.merge([Entry("2024-01-01", "pulled", ts(pulled_offset))])

        pulled_wins = local_offset is None or pulled_offset > local_offset
        assert store.get("2024-01-01").message == ("pulled" if pulled_wins else "local")
        assert len(winners) == (1 if pulled_wins else 0)

    def test_merge_tombstone_deletes_local(self, store, ledger):
        client = SyncClient(store, ledger)
        store.put(Entry("2024-01-01", "local", ts(0)))

        client.merge([Entry("2024-01-01", "", ts(1))])

        assert store.get("2024-01-01").is_tombstone
        assert store.visible_entries() == {}

    def test_merge_older_tombstone_ignored(self, store, ledger):
        client = SyncClient(store, ledger)
        store.put(Entry("2024-01-01", "local", ts(1)))

        client.merge([Entry("2024-01-01", "", ts(0))])

        assert store.get("2024-01-01").message == "local"

    def test_merge_tombstone_for_unknown_date_is_stored(self, store, ledger):
        client = SyncClient(store, ledger)

        client.merge([Entry("2024-01-01", "", ts(0))])

        assert store.get("2024-01-01").is_tombstone

    def test_merge_duplicate_dates_newest_wins(self, store, ledger):
        """Test the outcome does not depend on the order of pulled entries."""
        client = SyncClient(store, ledger)

        client.merge(
            [
                Entry("2024-01-01", "middle", ts(1)),
                Entry("2024-01-01", "newest", ts(2)),
                Entry("2024-01-01", "oldest", ts(0)),
            ]
        )

        assert store.get("2024-01-01").message == "newest"

    def test_merge_empty(self, store, ledger):
        client = SyncClient(store, ledger)

        assert client.merge([]) == []

    def test_merged_entries_are_not_local_changes(self, store, ledger):
        """Test a pulled winner is never offered back to the server."""
        client = SyncClient(store, ledger)
        future = utcnow() + timedelta(seconds=30)

        client.merge([Entry("2024-01-01", "pulled", future)])

        assert client.local_changes(None) == []
        assert client.local_changes(utcnow()) == []


class TestSyncRound:
    """Tests for a full pull/merge/push round."""

    @pytest.mark.asyncio
    async def test_first_sync_pulls_everything(self, store, ledger):
        server = FakeServer()
        client = make_client(store, ledger, server.handler)

        outcome = await client.sync_once()

        assert outcome.status == SyncStatus.SUCCESS
        assert server.pulls[0]["lastSync"] is None
        assert ledger.read() is not None

    @pytest.mark.asyncio
    async def test_second_sync_sends_ledger(self, store, ledger):
        server = FakeServer()
        client = make_client(store, ledger, server.handler)

        await client.sync_once()
        recorded = ledger.read()
        await client.sync_once()

        assert server.pulls[1]["lastSync"] is not None
        assert datetime.fromisoformat(server.pulls[1]["lastSync"].replace("Z", "+00:00")) == recorded

    @pytest.mark.asyncio
    async def test_push_is_chunked(self, store, ledger):
        """Test 120 local changes go out as chunks of 50, 50 and 20."""
        store.put_all(
            Entry((BASE.date() + timedelta(days=i)).isoformat(), f"day {i}", ts(i))
            for i in range(120)
        )
        server = FakeServer()
        client = make_client(store, ledger, server.handler, chunk_size=50)

        outcome = await client.sync_once()

        assert [len(p["entries"]) for p in server.pushes] == [50, 50, 20]
        assert [p["chunkIndex"] for p in server.pushes] == [0, 1, 2]
        assert {p["totalChunks"] for p in server.pushes} == {3}
        assert outcome.pushed == 120
        assert outcome.status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_failed_chunk_stops_push_and_keeps_ledger(self, store, ledger):
        """Test a failed chunk aborts the rest and the ledger stays put."""
        store.put_all(
            Entry((BASE.date() + timedelta(days=i)).isoformat(), f"day {i}", ts(i))
            for i in range(120)
        )
        server = FakeServer(fail_chunks={1})
        client = make_client(store, ledger, server.handler, chunk_size=50)

        outcome = await client.sync_once()

        assert [p["chunkIndex"] for p in server.pushes] == [0, 1]
        assert outcome.pushed == 50
        assert outcome.pull_ok is True
        assert outcome.push_ok is False
        assert outcome.status == SyncStatus.PARTIAL
        assert ledger.read() is None

    @pytest.mark.asyncio
    async def test_failed_round_is_retried_in_full(self, store, ledger):
        """Test everything since the unchanged ledger is pushed again."""
        store.save_entry("2024-01-01", "a")
        store.save_entry("2024-01-02", "b")
        server = FakeServer(fail_chunks={1})
        client = make_client(store, ledger, server.handler, chunk_size=1)

        await client.sync_once()
        server.fail_chunks.clear()
        server.requests.clear()
        outcome = await client.sync_once()

        assert outcome.success
        assert sorted(server.pushed_dates()) == ["2024-01-01", "2024-01-02"]

    @pytest.mark.asyncio
    async def test_pulled_entries_not_pushed_back(self, store, ledger):
        store.save_entry("2024-01-01", "mine")
        remote = Entry("2024-02-02", "theirs", utcnow() + timedelta(minutes=5))
        server = FakeServer(pull_entries=[remote.to_dict()])
        client = make_client(store, ledger, server.handler)

        outcome = await client.sync_once()

        assert server.pushed_dates() == ["2024-01-01"]
        assert store.get("2024-02-02").message == "theirs"
        assert outcome.merged == 1

    @pytest.mark.asyncio
    async def test_superseded_local_entry_not_pushed(self, store, ledger):
        """Test a local edit that lost the merge is not sent to the server."""
        store.save_entry("2024-01-01", "older local")
        remote = Entry("2024-01-01", "newer remote", utcnow() + timedelta(minutes=5))
        server = FakeServer(pull_entries=[remote.to_dict()])
        client = make_client(store, ledger, server.handler)

        await client.sync_once()

        assert server.pushes == []
        assert store.get("2024-01-01").message == "newer remote"

    @pytest.mark.asyncio
    async def test_newer_local_entry_wins_and_is_pushed(self, store, ledger):
        remote = Entry("2024-01-01", "older remote", utcnow() - timedelta(minutes=5))
        store.save_entry("2024-01-01", "newer local")
        server = FakeServer(pull_entries=[remote.to_dict()])
        client = make_client(store, ledger, server.handler)

        await client.sync_once()

        assert store.get("2024-01-01").message == "newer local"
        assert server.pushes[0]["entries"][0]["message"] == "newer local"

    @pytest.mark.asyncio
    async def test_edit_during_pull_is_pushed_not_stale_value(self, store, ledger):
        """Test the push carries the current local value, not the one from round start."""
        stale = store.save_entry("2024-01-01", "before pull")
        remote = Entry("2024-01-01", "remote", stale.timestamp + timedelta(microseconds=1))
        pushed = []

        def handler(request):
            body = json.loads(request.content)
            if body["action"] == "pull":
                # The user saves again while the pull is on the wire
                store.put(
                    Entry("2024-01-01", "during pull", stale.timestamp + timedelta(microseconds=2))
                )
                return httpx.Response(200, json={"entries": [remote.to_dict()]})
            pushed.extend(body["entries"])
            return httpx.Response(200, json={"success": True})

        client = make_client(store, ledger, handler)

        outcome = await client.sync_once()

        assert outcome.merged == 0
        assert [e["message"] for e in pushed] == ["during pull"]
        assert store.get("2024-01-01").message == "during pull"

    @pytest.mark.asyncio
    async def test_tombstones_are_pushed(self, store, ledger):
        store.save_entry("2024-01-01", "x")
        store.delete_entry("2024-01-01")
        server = FakeServer()
        client = make_client(store, ledger, server.handler)

        await client.sync_once()

        assert server.pushes[0]["entries"] == [store.get("2024-01-01").to_dict()]
        assert server.pushes[0]["entries"][0]["message"] == ""

    @pytest.mark.asyncio
    async def test_nothing_to_push(self, store, ledger):
        server = FakeServer()
        client = make_client(store, ledger, server.handler)

        outcome = await client.sync_once()

        assert server.pushes == []
        assert outcome.push_ok is True
        assert outcome.pushed == 0

    @pytest.mark.asyncio
    async def test_only_changes_since_ledger_are_pushed(self, store, ledger):
        server = FakeServer()
        client = make_client(store, ledger, server.handler)

        store.save_entry("2024-01-01", "synced")
        await client.sync_once()
        server.requests.clear()

        store.save_entry("2024-01-02", "new")
        await client.sync_once()

        assert server.pushed_dates() == ["2024-01-02"]

    @pytest.mark.asyncio
    async def test_pull_failure_still_pushes(self, store, ledger):
        """Test a failed pull leaves the ledger alone but the push still runs."""
        store.save_entry("2024-01-01", "x")
        requests = []

        def handler(request):
            body = json.loads(request.content)
            requests.append(body)
            if body["action"] == "pull":
                return httpx.Response(503)
            return httpx.Response(200, json={"success": True})

        client = make_client(store, ledger, handler)

        outcome = await client.sync_once()

        assert outcome.pull_ok is False
        assert outcome.pushed == 1
        assert outcome.status == SyncStatus.PARTIAL
        assert ledger.read() is None

    @pytest.mark.asyncio
    async def test_ledger_not_moved_backwards(self, store, ledger):
        future = utcnow() + timedelta(days=1)
        ledger.write(future)
        client = make_client(store, ledger, FakeServer().handler)

        outcome = await client.sync_once()

        assert outcome.success
        assert ledger.read() == future


class TestSyncErrors:
    """Tests for transport and protocol errors."""

    @pytest.mark.asyncio
    async def test_no_server_url_is_offline(self, store, ledger):
        store.save_entry("2024-01-01", "x")
        client = SyncClient(store, ledger)

        outcome = await client.sync_once()

        assert outcome.status == SyncStatus.OFFLINE
        assert outcome.error == "No server URL configured"
        assert ledger.read() is None

    @pytest.mark.asyncio
    async def test_connection_error_is_offline(self, store, ledger):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = make_client(store, ledger, handler)

        outcome = await client.sync_once()

        assert outcome.status == SyncStatus.OFFLINE
        assert outcome.error == "Connection failed"

    @pytest.mark.asyncio
    async def test_timeout_is_failed(self, store, ledger):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = make_client(store, ledger, handler)

        outcome = await client.sync_once()

        assert outcome.status == SyncStatus.FAILED
        assert outcome.error == "Request timeout"

    @pytest.mark.asyncio
    async def test_server_error_is_retried_with_backoff(self, store, ledger):
        server = FakeServer(status_code=500)
        client = make_client(
            store, ledger, server.handler, max_retries=3, retry_backoff_seconds=1.0
        )

        with patch("daybook.sync.sync_client.asyncio.sleep", new=AsyncMock()) as sleep:
            data, error = await client._post({"action": "pull", "lastSync": None})

        assert data is None
        assert error == "HTTP 500"
        assert len(server.requests) == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retry_succeeds_after_server_error(self, store, ledger):
        responses = [httpx.Response(502), httpx.Response(200, json={"entries": []})]

        def handler(request):
            return responses.pop(0)

        client = make_client(store, ledger, handler, max_retries=2, retry_backoff_seconds=0)

        entries, error = await client.pull(None)

        assert error is None
        assert entries == []

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, store, ledger):
        server = FakeServer(status_code=400)
        client = make_client(store, ledger, server.handler, max_retries=3)

        data, error = await client._post({"action": "pull", "lastSync": None})

        assert error == "HTTP 400: nope"
        assert len(server.requests) == 1

    @pytest.mark.asyncio
    async def test_invalid_json_response(self, store, ledger):
        def handler(request):
            return httpx.Response(200, content=b"<html>not json</html>")

        client = make_client(store, ledger, handler)

        entries, error = await client.pull(None)

        assert entries == []
        assert error == "Invalid JSON in server response"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {},
            {"entries": None},
            {"entries": "not a list"},
            ["not", "an", "object"],
            {"entries": [{"date": "bad", "message": "x", "timestamp": "2024-01-01T00:00:00Z"}]},
            {"entries": [{"date": "2024-01-01", "message": "x"}]},
        ],
    )
    async def test_malformed_pull_changes_nothing(self, store, ledger, body):
        def handler(request):
            return httpx.Response(200, json=body)

        client = make_client(store, ledger, handler)

        outcome = await client.sync_once()

        assert outcome.pull_ok is False
        assert outcome.error.startswith("Malformed pull response")
        assert store.all() == []
        assert ledger.read() is None

    @pytest.mark.asyncio
    async def test_unacknowledged_chunk_is_failure(self, store, ledger):
        store.save_entry("2024-01-01", "x")

        def handler(request):
            body = json.loads(request.content)
            if body["action"] == "pull":
                return httpx.Response(200, json={"entries": []})
            return httpx.Response(200, json={"count": 1})

        client = make_client(store, ledger, handler)

        outcome = await client.sync_once()

        assert outcome.push_ok is False
        assert outcome.error == "Server did not acknowledge chunk"
        assert ledger.read() is None


class TestSyncStatusReport:
    """Tests for get_sync_status and bookkeeping."""

    def test_status_before_first_sync(self, store, ledger):
        store.save_entry("2024-01-01", "x")
        client = SyncClient(store, ledger, server_url="http://journal.test")

        status = client.get_sync_status()

        assert status["server_url"] == "http://journal.test"
        assert status["last_sync"] is None
        assert status["pending_entries"] == 1
        assert status["consecutive_failures"] == 0
        assert status["last_status"] is None

    @pytest.mark.asyncio
    async def test_status_after_sync(self, store, ledger):
        store.save_entry("2024-01-01", "x")
        client = make_client(store, ledger, FakeServer().handler)

        await client.sync_once()
        status = client.get_sync_status()

        assert status["pending_entries"] == 0
        assert len(status["last_sync"]) == 27
        assert status["last_status"] == "success"
        assert client.last_outcome.success

    @pytest.mark.asyncio
    async def test_consecutive_failures_counted_and_reset(self, store, ledger):
        server = FakeServer(status_code=500)
        client = make_client(store, ledger, server.handler)

        await client.sync_once()
        await client.sync_once()
        assert client.get_sync_status()["consecutive_failures"] == 2

        server.status_code = 200
        await client.sync_once()
        assert client.get_sync_status()["consecutive_failures"] == 0

    @pytest.mark.asyncio
    async def test_set_server_url_rebuilds_client(self, store, ledger):
        client = SyncClient(store, ledger, server_url="http://old.test")
        old = client._get_client()

        client.set_server_url("http://new.test")
        new = client._get_client()

        assert new is not old
        assert str(new.base_url).startswith("http://new.test")
        await client.close()
        assert old.is_closed
        assert new.is_closed

    @pytest.mark.asyncio
    async def test_set_server_url_with_provided_client(self, store, ledger, caplog):
        """Test a provided HTTP client keeps its base URL and the change is refused."""
        server = FakeServer()
        client = make_client(store, ledger, server.handler)

        with caplog.at_level("WARNING", logger="daybook.sync.sync_client"):
            client.set_server_url("http://elsewhere.test")

        assert client.server_url is None
        assert "not changed" in caplog.text
        assert (await client.sync_once()).success
        assert len(server.pulls) == 1
