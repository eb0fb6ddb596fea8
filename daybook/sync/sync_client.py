"""Delta sync client for exchanging journal entries with the server.

Handles pull/merge/push with chunked transfer. Conflicts are settled by
last-write-wins on entry timestamps.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import httpx

from ..storage import (
    Entry,
    EntryStore,
    EntryValidationError,
    SyncLedger,
    format_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

SYNC_PATH = "/api/sync"
DEFAULT_CHUNK_SIZE = 50


class SyncStatus(Enum):
    """Status of a sync round."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Pull or push went through, not both
    FAILED = "failed"
    OFFLINE = "offline"  # Server unreachable


@dataclass
class SyncOutcome:
    """Result of one sync round."""

    status: SyncStatus
    pulled: int = 0  # Entries received from the server
    merged: int = 0  # Pulled entries that won the merge
    pushed: int = 0  # Entries in acknowledged chunks
    pull_ok: bool = False
    push_ok: bool = False
    error: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def success(self) -> bool:
        return self.status == SyncStatus.SUCCESS


def chunk_entries(entries: list[Entry], chunk_size: int) -> list[list[Entry]]:
    """Split entries into consecutive chunks of at most ``chunk_size``."""
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return [entries[i : i + chunk_size] for i in range(0, len(entries), chunk_size)]


class SyncClient:
    """Client that reconciles the local entry store with the server.

    One call to :meth:`sync_once` is one round: pull changes since the
    ledger, merge them, push local changes since the ledger in chunks, and
    advance the ledger only if every step went through.
    """

    def __init__(
        self,
        store: EntryStore,
        ledger: SyncLedger,
        server_url: str | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_retries: int = 1,
        retry_backoff_seconds: float = 1.0,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the sync client.

        Args:
            store: Local entry store.
            ledger: Ledger holding the last successful sync time.
            server_url: Base URL of the journal server (e.g., "http://localhost:3000").
            chunk_size: Maximum entries per push request.
            max_retries: Attempts per request on connection errors and 5xx.
            retry_backoff_seconds: Delay before the first retry, doubled after each.
            timeout: Request timeout in seconds.
            http_client: Optional preconfigured client; its base URL is used as is.
        """
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")

        self.store = store
        self.ledger = ledger
        self.server_url = server_url
        self.chunk_size = chunk_size
        self.max_retries = max(1, max_retries)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None
        self._stale_clients: list[httpx.AsyncClient] = []
        self._last_outcome: SyncOutcome | None = None
        self._consecutive_failures = 0

    def set_server_url(self, url: str) -> None:
        """Set or update the server URL.

        Ignored when the HTTP client was passed in, since its base URL
        belongs to the caller.
        """
        if not self._owns_client:
            logger.warning(
                f"Server URL not changed to {url}: using a provided HTTP client"
            )
            return

        self.server_url = url
        if self._client is not None:
            # Rebuilt lazily against the new base URL; old one closed in close()
            self._stale_clients.append(self._client)
            self._client = None
        logger.info(f"Server URL set to {url}")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.server_url.rstrip("/"),
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
        for stale in self._stale_clients:
            await stale.aclose()
        self._stale_clients.clear()

    async def _post(self, payload: dict[str, Any]) -> tuple[Any, str | None]:
        """POST to the sync route, retrying connection errors and 5xx.

        Returns:
            Tuple of (response_data, error_message).
        """
        if not self.server_url and self._client is None:
            return None, "No server URL configured"

        client = self._get_client()
        backoff = self.retry_backoff_seconds
        error = None

        for attempt in range(self.max_retries):
            try:
                response = await client.post(SYNC_PATH, json=payload)

                if response.is_success:
                    return response.json(), None

                if response.status_code >= 500:
                    error = f"HTTP {response.status_code}"
                    logger.warning(
                        f"Server error {response.status_code}, "
                        f"attempt {attempt + 1}/{self.max_retries}"
                    )
                else:
                    # Client error, don't retry
                    return None, f"HTTP {response.status_code}: {response.text}"

            except httpx.ConnectError:
                error = "Connection failed"
                logger.warning(
                    f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                )
            except httpx.TimeoutException:
                error = "Request timeout"
                logger.warning(
                    f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                )
            except httpx.HTTPError as e:
                logger.error(f"Request error: {e}")
                return None, str(e)
            except ValueError:
                return None, "Invalid JSON in server response"

            if attempt < self.max_retries - 1:
                await asyncio.sleep(backoff)
                backoff *= 2

        return None, error

    # ==================== Protocol steps ====================

    async def pull(self, last_sync: datetime | None) -> tuple[list[Entry], str | None]:
        """Fetch server entries newer than ``last_sync`` (all if None).

        Returns:
            Tuple of (entries, error_message). Entries is empty on error.
        """
        payload = {
            "action": "pull",
            "lastSync": format_timestamp(last_sync) if last_sync else None,
        }
        data, error = await self._post(payload)
        if error:
            logger.warning(f"Pull failed: {error}")
            return [], error

        # A missing list must not pass for "nothing changed"
        if not isinstance(data, dict) or not isinstance(data.get("entries"), list):
            logger.warning("Pull returned a malformed response")
            return [], "Malformed pull response"

        try:
            entries = [Entry.from_dict(item) for item in data["entries"]]
        except EntryValidationError as e:
            logger.warning(f"Pull returned an invalid entry: {e}")
            return [], f"Malformed pull response: {e}"

        return entries, None

    def merge(self, pulled: list[Entry]) -> list[Entry]:
        """Apply pulled entries that are strictly newer than the local copy.

        Ties keep the local value. Winners, tombstones included, are written
        in one atomic batch and marked as pulled, so they never count as
        local changes.

        Returns:
            The pulled entries that replaced local state.
        """
        newest: dict[str, Entry] = {}
        for entry in pulled:
            if entry.supersedes(newest.get(entry.date)):
                newest[entry.date] = entry

        winners = [
            entry
            for entry in newest.values()
            if entry.supersedes(self.store.get(entry.date))
        ]
        self.store.put_all(winners, local=False)

        if winners:
            logger.info(f"Merged {len(winners)} of {len(pulled)} pulled entries")
        return winners

    async def push(self, entries: list[Entry]) -> tuple[int, str | None]:
        """Send entries to the server in sequential chunks.

        Stops at the first chunk that is not acknowledged.

        Returns:
            Tuple of (entries_acknowledged, error_message).
        """
        chunks = chunk_entries(entries, self.chunk_size)
        pushed = 0

        for index, chunk in enumerate(chunks):
            payload = {
                "action": "push",
                "entries": [entry.to_dict() for entry in chunk],
                "chunkIndex": index,
                "totalChunks": len(chunks),
            }
            data, error = await self._post(payload)

            if error is None and not (isinstance(data, dict) and data.get("success")):
                error = "Server did not acknowledge chunk"

            if error:
                logger.warning(f"Push failed for chunk {index + 1}/{len(chunks)}: {error}")
                return pushed, error

            pushed += len(chunk)
            logger.debug(f"Pushed chunk {index + 1}/{len(chunks)} ({len(chunk)} entries)")

        return pushed, None

    def local_changes(self, last_sync: datetime | None) -> list[Entry]:
        """Entries modified on this device after ``last_sync`` (all if None)."""
        return self.store.local_changes_since(last_sync)

    async def sync_once(self) -> SyncOutcome:
        """Run one pull/merge/push round.

        Network failures are reported in the outcome. Local store errors
        propagate to the caller.

        Returns:
            SyncOutcome for the round.
        """
        round_started = utcnow()
        last_sync = self.ledger.read()

        pulled, pull_error = await self.pull(last_sync)
        winners = self.merge(pulled)

        # Read after the merge with no await in between: dates the pull won
        # are no longer local, and edits made during the pull go out as is
        outgoing = self.local_changes(last_sync)

        pushed, push_error = await self.push(outgoing)

        pull_ok = pull_error is None
        push_ok = push_error is None

        if pull_ok and push_ok:
            self.ledger.write(round_started)
            status = SyncStatus.SUCCESS
            self._consecutive_failures = 0
        else:
            self._consecutive_failures += 1
            if pull_ok or pushed:
                status = SyncStatus.PARTIAL
            elif "Connection failed" in (pull_error or "") or "No server URL" in (pull_error or ""):
                status = SyncStatus.OFFLINE
            else:
                status = SyncStatus.FAILED

        outcome = SyncOutcome(
            status=status,
            pulled=len(pulled),
            merged=len(winners),
            pushed=pushed,
            pull_ok=pull_ok,
            push_ok=push_ok,
            error=push_error or pull_error,
        )
        self._last_outcome = outcome

        logger.info(
            f"Sync: {status.value}, pulled={outcome.pulled}, "
            f"merged={outcome.merged}, pushed={outcome.pushed}"
        )
        return outcome

    @property
    def last_outcome(self) -> SyncOutcome | None:
        """Outcome of the most recent round."""
        return self._last_outcome

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with sync statistics.
        """
        last_sync = self.ledger.read()
        return {
            "server_url": self.server_url,
            "last_sync": format_timestamp(last_sync) if last_sync else None,
            "consecutive_failures": self._consecutive_failures,
            "pending_entries": len(self.local_changes(last_sync)),
            "last_status": self._last_outcome.status.value if self._last_outcome else None,
        }
