"""Decides when sync rounds run.

Three triggers share one guard: a debounced trigger after local edits, a
one-off trigger shortly after start, and a periodic timer with exponential
backoff on failure. At most one round is ever in flight; a trigger that
arrives while a round runs is dropped, not queued.
"""

import asyncio
import logging
from contextlib import contextmanager
from enum import Enum
from typing import Iterator

from .sync_client import SyncClient, SyncOutcome, SyncStatus

logger = logging.getLogger(__name__)


class SchedulerState(Enum):
    """Whether a sync round is in flight."""

    IDLE = "idle"
    SYNCING = "syncing"


class SyncScheduler:
    """Runs :meth:`SyncClient.sync_once` on change, on start and periodically."""

    def __init__(
        self,
        client: SyncClient,
        debounce_seconds: float = 1.0,
        startup_delay_seconds: float = 1.0,
        base_interval_seconds: float = 10.0,
        max_interval_seconds: float = 300.0,
    ):
        """Initialize the scheduler.

        Args:
            client: Sync client that performs the rounds.
            debounce_seconds: Quiet period after the last edit before syncing.
            startup_delay_seconds: Delay before the initial sync after start().
            base_interval_seconds: Periodic interval after a successful round.
            max_interval_seconds: Ceiling for the backed-off periodic interval.
        """
        self._client = client
        self._debounce = debounce_seconds
        self._startup_delay = startup_delay_seconds
        self._base_interval = base_interval_seconds
        self._max_interval = max(max_interval_seconds, base_interval_seconds)
        self._interval = base_interval_seconds

        self._state = SchedulerState.IDLE
        self._current_round: asyncio.Task | None = None
        self._changes = 0
        self._synced_changes = 0
        self._saves_in_flight = 0

        self._running = False
        self._stop_event: asyncio.Event | None = None
        self._periodic_task: asyncio.Task | None = None
        self._startup_task: asyncio.Task | None = None
        self._debounce_task: asyncio.Task | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def interval(self) -> float:
        """Current periodic interval in seconds."""
        return self._interval

    @property
    def dirty(self) -> bool:
        """True if local edits have not yet been covered by a successful round."""
        return self._changes != self._synced_changes

    @property
    def current_round(self) -> asyncio.Task | None:
        """Task of the round in flight, if any. Await it to get its outcome."""
        return self._current_round

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Start the startup sync and the periodic timer."""
        if self._running:
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._startup_task = asyncio.create_task(self._run_startup())
        self._periodic_task = asyncio.create_task(self._run_periodic())
        logger.info(
            f"Sync scheduler started (interval={self._base_interval}s, "
            f"max={self._max_interval}s, debounce={self._debounce}s)"
        )

    async def stop(self) -> None:
        """Stop all timers and let a round in flight finish."""
        self._running = False
        if self._stop_event:
            self._stop_event.set()

        for task in (self._debounce_task, self._startup_task, self._periodic_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._debounce_task = None
        self._startup_task = None
        self._periodic_task = None

        if self._current_round is not None:
            # Rounds are never cancelled mid-flight
            await asyncio.wait({self._current_round})

        logger.info("Sync scheduler stopped")

    # ==================== Triggers ====================

    async def trigger(self, reason: str = "manual") -> SyncOutcome | None:
        """Run one round unless one is already in flight.

        The state check and the transition to SYNCING happen with no await
        in between, so concurrent triggers collapse to one round.

        Returns:
            The round's outcome, or None if the trigger was dropped.
        """
        if self._state is SchedulerState.SYNCING:
            logger.debug(f"Sync already in flight, dropping {reason} trigger")
            return None

        self._state = SchedulerState.SYNCING
        self._current_round = asyncio.create_task(self._run_round(reason))
        # Shielded so cancelling the caller never cancels the round
        return await asyncio.shield(self._current_round)

    async def _run_round(self, reason: str) -> SyncOutcome:
        logger.debug(f"Sync round started ({reason})")
        changes_seen = self._changes
        try:
            outcome = await self._client.sync_once()
        except Exception as e:
            logger.error(f"Sync round failed ({reason}): {e}", exc_info=True)
            outcome = SyncOutcome(status=SyncStatus.FAILED, error=str(e))
        finally:
            self._state = SchedulerState.IDLE
            self._current_round = None

        # Edits made while the round ran stay dirty
        if outcome.success:
            self._synced_changes = max(self._synced_changes, changes_seen)
        return outcome

    def notify_change(self) -> None:
        """Record a local mutation and (re)start the debounce window."""
        self._changes += 1
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = asyncio.create_task(self._run_debounced())

    async def _run_debounced(self) -> None:
        await asyncio.sleep(self._debounce)
        # Past this point a new edit must not cancel us
        self._debounce_task = None
        await self.trigger("change")

    @contextmanager
    def local_save(self) -> Iterator[None]:
        """Mark a local save as in flight; the periodic timer skips meanwhile.

        Only a save that awaits inside the block can overlap a tick. The
        journal's SQLite writes are synchronous, so on one event loop they
        finish before any tick runs and the guard never fires for them.
        """
        self._saves_in_flight += 1
        try:
            yield
        finally:
            self._saves_in_flight -= 1

    async def _run_startup(self) -> None:
        await asyncio.sleep(self._startup_delay)
        await self.trigger("startup")

    # ==================== Periodic timer ====================

    def record_outcome(self, outcome: SyncOutcome) -> float:
        """Adjust the periodic interval: reset on success, double on failure.

        Returns:
            The new interval in seconds.
        """
        if outcome.success:
            self._interval = self._base_interval
        else:
            self._interval = min(self._interval * 2, self._max_interval)
            logger.debug(f"Backing off periodic sync to {self._interval}s")
        return self._interval

    async def tick(self) -> SyncOutcome | None:
        """One periodic attempt, skipped while a round or a save is in flight."""
        if self._saves_in_flight:
            logger.debug("Local save in flight, skipping periodic sync")
            return None

        outcome = await self.trigger("periodic")
        if outcome is not None:
            self.record_outcome(outcome)
        return outcome

    async def _run_periodic(self) -> None:
        while self._running:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                break  # Stop event was set
            except asyncio.TimeoutError:
                pass  # Interval elapsed

            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Periodic sync error: {e}", exc_info=True)
