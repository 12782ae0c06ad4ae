"""Refresh scheduling for the analytics cache.

Decides when cached query rows are re-fetched from the analytics source and
performs the refresh with mutual exclusion. A refresh pass runs when at
least one managed query is due:

- its cached rows are empty (never populated), or
- the UTC time of day is within a tolerance of a configured update time AND
  a minimum cooldown has elapsed since the entry was last updated or
  attempted.

Passes that store fresh rows are capped per UTC day; the counter resets on
the first check after the day rolls over. Passes in which every fetch fails
do not count toward the cap.
"""

import asyncio
import contextlib
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from .cache import CacheSnapshot, CacheStore, QueryCacheEntry
from .lookup import Number, as_number, row_user_key
from .sources import RowSource

logger = structlog.get_logger(__name__)

MS_PER_MINUTE = 60_000
MS_PER_DAY = 86_400_000
MINUTES_PER_DAY = 1440

DEFAULT_UPDATE_TIMES = (180, 540, 900, 1080, 1260)


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def utc_day_start(timestamp_ms: int) -> int:
    """Start of the UTC day containing ``timestamp_ms``, in milliseconds."""
    return timestamp_ms - timestamp_ms % MS_PER_DAY


def minutes_since_utc_midnight(timestamp_ms: int) -> int:
    return (timestamp_ms % MS_PER_DAY) // MS_PER_MINUTE


@dataclass(frozen=True)
class UpdatePolicy:
    """When cached entries become due for a refresh.

    Attributes:
        update_times: Daily update offsets in minutes since UTC midnight.
        tolerance_minutes: How far from an update time a refresh may start.
        cooldown_minutes: Minimum age of an entry before it is refreshed
            again.
        max_updates_per_day: Ceiling on refresh passes that store rows, per
            UTC day.
    """

    update_times: tuple[int, ...] = DEFAULT_UPDATE_TIMES
    tolerance_minutes: int = 5
    cooldown_minutes: int = 30
    max_updates_per_day: int = 6

    def in_update_window(self, timestamp_ms: int) -> bool:
        minute = minutes_since_utc_midnight(timestamp_ms)
        for update_time in self.update_times:
            distance = abs(minute - update_time) % MINUTES_PER_DAY
            distance = min(distance, MINUTES_PER_DAY - distance)
            if distance <= self.tolerance_minutes:
                return True
        return False

    def is_due(self, entry: QueryCacheEntry, timestamp_ms: int) -> bool:
        """Whether ``entry`` should be re-fetched at ``timestamp_ms``.

        An empty entry is always due. A populated entry is due inside an
        update window once the cooldown has elapsed since its last update or
        its last failed attempt, whichever is later.
        """
        if not entry.rows:
            return True
        cooled_down = timestamp_ms - entry.last_touched >= self.cooldown_minutes * MS_PER_MINUTE
        return cooled_down and self.in_update_window(timestamp_ms)


def carry_forward_excess(
    previous: dict[str, Number],
    old_rows: Sequence[dict[str, Any]],
    new_rows: Sequence[dict[str, Any]],
    ceiling: int,
    column: str,
) -> dict[str, Number]:
    """Add each user's newly observed usage above ``ceiling`` to their total.

    The usage counter in ``column`` may reset between refreshes (a new day);
    a value lower than the previous one is treated as counting from zero.

    Args:
        previous: Carried totals per user key.
        old_rows: Rows before the refresh.
        new_rows: Rows after the refresh.
        ceiling: Allowance above which usage counts as excess.
        column: Usage counter column.

    Returns:
        New totals; users missing from ``new_rows`` keep their previous total.
    """
    old_usage: dict[str, Number] = {}
    for row in old_rows:
        key = row_user_key(row)
        if key is not None:
            old_usage[key] = as_number(row.get(column))

    totals = dict(previous)
    for row in new_rows:
        key = row_user_key(row)
        if key is None:
            continue
        new = as_number(row.get(column))
        old = old_usage.get(key, 0)
        if new < old:
            old = 0
        increment = max(new - max(old, ceiling), 0)
        if increment:
            totals[key] = totals.get(key, 0) + increment
    return totals


@dataclass(frozen=True)
class ExcessTracker:
    """Which query and column feed the cumulative excess, and its ceiling."""

    query_id: str
    column: str
    ceiling: int

    def carry_forward(
        self,
        previous: dict[str, Number],
        old_rows: Sequence[dict[str, Any]],
        new_rows: Sequence[dict[str, Any]],
    ) -> dict[str, Number]:
        return carry_forward_excess(previous, old_rows, new_rows, self.ceiling, self.column)


class RefreshScheduler:
    """Keeps the cache store's query entries fresh.

    At most one refresh pass is in flight at any time, enforced by an
    ``asyncio.Lock``. A pass requested while another runs is dropped, not
    queued.
    """

    def __init__(
        self,
        store: CacheStore,
        source: RowSource,
        query_ids: Sequence[str],
        policy: UpdatePolicy | None = None,
        excess: ExcessTracker | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize the scheduler.

        Args:
            store: Cache store owning the snapshot to refresh.
            source: Where fresh rows come from.
            query_ids: Query identifiers managed by this scheduler.
            policy: Update-due policy (defaults to :class:`UpdatePolicy`).
            excess: Optional cumulative excess tracking.
            clock: Wall-clock time source in milliseconds.
        """
        self._store = store
        self._source = source
        self.query_ids = list(query_ids)
        self.policy = policy or UpdatePolicy()
        self._excess = excess
        self._clock = clock
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

        # Counters, read by the metrics collector
        self.pass_count = 0
        self.failed_fetches = 0

    @property
    def is_refreshing(self) -> bool:
        return self._lock.locked()

    def _updates_today(self, snapshot: CacheSnapshot, timestamp_ms: int) -> int:
        if snapshot.last_update_day < utc_day_start(timestamp_ms):
            return 0
        return snapshot.update_count_today

    def due_queries(self, timestamp_ms: int | None = None) -> list[str]:
        """List the managed queries a refresh at ``timestamp_ms`` would fetch.

        Does not modify the snapshot. Returns an empty list once the daily
        ceiling has been reached.
        """
        timestamp_ms = self._clock() if timestamp_ms is None else timestamp_ms
        snapshot = self._store.snapshot
        if self._updates_today(snapshot, timestamp_ms) >= self.policy.max_updates_per_day:
            return []
        return [
            query_id
            for query_id in self.query_ids
            if self.policy.is_due(snapshot.queries.get(query_id) or QueryCacheEntry(), timestamp_ms)
        ]

    def is_due(self, timestamp_ms: int | None = None) -> bool:
        """Whether a refresh at ``timestamp_ms`` would fetch anything."""
        return bool(self.due_queries(timestamp_ms))

    async def refresh(self, timestamp_ms: int | None = None) -> bool:
        """Run one refresh pass if one is due and none is in flight.

        Args:
            timestamp_ms: Time of the pass; defaults to the clock.

        Returns:
            True if a pass ran (even if some fetches came back empty), False
            if it was skipped.
        """
        if self._lock.locked():
            logger.info("Refresh already in progress, skipping")
            return False
        async with self._lock:
            return await self._refresh_locked(
                self._clock() if timestamp_ms is None else timestamp_ms,
            )

    async def _refresh_locked(self, timestamp_ms: int) -> bool:
        snapshot = self._store.snapshot
        day = utc_day_start(timestamp_ms)

        if snapshot.last_update_day < day:
            logger.info(
                "New UTC day, resetting update count",
                previous_count=snapshot.update_count_today,
            )
            snapshot.update_count_today = 0
            snapshot.last_update_day = day

        if snapshot.update_count_today >= self.policy.max_updates_per_day:
            logger.info(
                "Daily update limit reached, skipping",
                limit=self.policy.max_updates_per_day,
            )
            return False

        due = [
            query_id
            for query_id in self.query_ids
            if self.policy.is_due(snapshot.entry(query_id), timestamp_ms)
        ]
        if not due:
            logger.debug("No query due for refresh")
            return False

        logger.info(
            "Refreshing queries",
            query_ids=due,
            update_count_today=snapshot.update_count_today,
            initial=not snapshot.initial_fetch_done,
        )
        stored = 0
        for query_id in due:
            previous = snapshot.entry(query_id)
            rows = await self._source.fetch(query_id)
            if not rows:
                previous.last_attempted = timestamp_ms
                self.failed_fetches += 1
                logger.warning(
                    "No rows fetched, keeping previous rows",
                    query_id=query_id,
                    previous_rows=len(previous.rows),
                )
                continue

            if self._excess is not None and query_id == self._excess.query_id:
                snapshot.excess = self._excess.carry_forward(
                    snapshot.excess,
                    previous.rows,
                    rows,
                )
            snapshot.queries[query_id] = QueryCacheEntry(
                rows=rows,
                last_updated=timestamp_ms,
                last_attempted=timestamp_ms,
            )
            stored += 1
            logger.info("Stored rows", query_id=query_id, rows=len(rows))

        if stored:
            snapshot.update_count_today += 1
        else:
            logger.warning("Refresh pass stored no rows, not counted", query_ids=due)
        snapshot.last_update_day = day
        if any(snapshot.entry(query_id).rows for query_id in self.query_ids):
            snapshot.initial_fetch_done = True
        self.pass_count += 1

        try:
            self._store.save()
        except OSError:
            logger.exception("Failed to persist cache", path=str(self._store.path))
        logger.info("Refresh completed", update_count_today=snapshot.update_count_today)
        return True

    def request_refresh(self) -> asyncio.Task | None:
        """Start a refresh pass in the background.

        Returns:
            The scheduled task, or None if a pass is already running.
        """
        if self._lock.locked() or (self._task is not None and not self._task.done()):
            logger.debug("Refresh already scheduled")
            return None
        self._task = asyncio.get_running_loop().create_task(self.refresh())
        self._task.add_done_callback(_log_task_failure)
        return self._task

    async def run_periodic(self, interval: float) -> None:
        """Check for due refreshes every ``interval`` seconds until cancelled."""
        logger.info("Periodic refresh started", interval_seconds=interval)
        while True:
            try:
                await self.refresh()
            except Exception:
                logger.exception("Periodic refresh failed")
            await asyncio.sleep(interval)

    async def aclose(self) -> None:
        """Cancel a background refresh pass, if any."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    if exc := task.exception():
        logger.error("Background refresh failed", exc_info=exc)
