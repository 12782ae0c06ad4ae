"""On-disk snapshot cache of analytics query results.

The whole cache is one JSON document. It is loaded once at startup, mutated
in memory by the refresh scheduler, and rewritten in full after every refresh
pass. A missing or unreadable file is a cold start, not an error.
"""

import os
import tempfile
from pathlib import Path
from typing import Any

import pydantic
import structlog

logger = structlog.get_logger(__name__)


class QueryCacheEntry(pydantic.BaseModel):
    """Rows of one analytics query as last returned by the API.

    Rows are kept opaque. ``last_updated`` is the time of the last successful
    fetch and ``last_attempted`` the time of the last fetch attempt, both in
    milliseconds since the epoch.
    """

    model_config = pydantic.ConfigDict(populate_by_name=True)

    rows: list[dict[str, Any]] = pydantic.Field(default_factory=list)
    last_updated: int = pydantic.Field(0, alias="lastUpdated")
    last_attempted: int = pydantic.Field(0, alias="lastAttempted")

    @property
    def last_touched(self) -> int:
        """Latest of the last attempt and the last success."""
        return max(self.last_updated, self.last_attempted)


class CacheSnapshot(pydantic.BaseModel):
    """Complete persisted cache state, including refresh bookkeeping."""

    model_config = pydantic.ConfigDict(populate_by_name=True)

    queries: dict[str, QueryCacheEntry] = pydantic.Field(default_factory=dict)
    initial_fetch_done: bool = pydantic.Field(False, alias="initialFetchDone")
    update_count_today: int = pydantic.Field(0, alias="updateCountToday")
    last_update_day: int = pydantic.Field(0, alias="lastUpdateDay")
    # Cumulative excess per user key, carried forward across refreshes
    excess: dict[str, int | float] = pydantic.Field(default_factory=dict)

    def entry(self, query_id: str) -> QueryCacheEntry:
        """Return the entry for ``query_id``, creating an empty one if absent."""
        if query_id not in self.queries:
            self.queries[query_id] = QueryCacheEntry()
        return self.queries[query_id]


class CacheStore:
    """Owner of the single in-memory snapshot and its backing file."""

    def __init__(self, path: str | Path, query_ids: list[str] | None = None):
        """Initialize the store with an empty snapshot.

        Args:
            path: Location of the JSON cache document.
            query_ids: Query identifiers to pre-create empty entries for.
        """
        self.path = Path(path)
        self._query_ids = list(query_ids or [])
        self.snapshot = self._default_snapshot()

    def _default_snapshot(self) -> CacheSnapshot:
        snapshot = CacheSnapshot()
        for query_id in self._query_ids:
            snapshot.entry(query_id)
        return snapshot

    def load(self) -> CacheSnapshot:
        """Replace the in-memory snapshot with the one on disk.

        Falls back to an empty snapshot when the file is missing or cannot be
        parsed. Never raises.

        Returns:
            The snapshot now held by the store.
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
            snapshot = CacheSnapshot.model_validate_json(raw)
        except FileNotFoundError:
            logger.info("No cache file found, starting fresh", path=str(self.path))
            snapshot = self._default_snapshot()
        except (OSError, ValueError):
            # pydantic.ValidationError is a ValueError
            logger.warning(
                "Cache file unreadable, starting fresh",
                path=str(self.path),
                exc_info=True,
            )
            snapshot = self._default_snapshot()
        else:
            for query_id in self._query_ids:
                snapshot.entry(query_id)
            logger.info(
                "Cache loaded",
                initial_fetch_done=snapshot.initial_fetch_done,
                update_count_today=snapshot.update_count_today,
                last_update_day=snapshot.last_update_day,
            )

        self.snapshot = snapshot
        return snapshot

    def save(self, snapshot: CacheSnapshot | None = None) -> None:
        """Write the snapshot to disk, replacing the previous document.

        The document is written to a temporary file in the same directory and
        renamed over the target, so a reader sees either the old or the new
        document.

        Args:
            snapshot: Snapshot to persist. Defaults to the store's own.

        Raises:
            OSError: If the document cannot be written.
        """
        if snapshot is not None:
            self.snapshot = snapshot
        payload = self.snapshot.model_dump_json(by_alias=True, indent=2)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=f".{self.path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_name, self.path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Cache saved", path=str(self.path), queries=len(self.snapshot.queries))
