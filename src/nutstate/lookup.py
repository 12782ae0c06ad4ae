"""Per-user statistics projected from the cached query rows.

The lookup is a pure read of the cache snapshot: it never triggers a
refresh. Users without a matching row get zero-valued statistics.
"""

import random
import string
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from .cache import CacheStore

logger = structlog.get_logger(__name__)

USER_KEY_COLUMNS = ("fid", "parent_fid")

DEFAULT_ALLOWANCE_CEILING = 30

_TOKEN_ALPHABET = string.digits + string.ascii_lowercase


Number = int | float


def as_number(value: Any) -> Number:
    """Coerce a row value to a number, treating missing or junk values as 0.

    Ints and floats are returned unchanged. Numeric strings parse as an int
    when they can and as a float otherwise.
    """
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        for parse in (int, float):
            try:
                return parse(value)
            except ValueError:
                continue
    return 0


def row_user_key(row: dict[str, Any]) -> str | None:
    """Return the user identifier a row belongs to, if any."""
    for column in USER_KEY_COLUMNS:
        value = row.get(column)
        if value is not None and value != "":
            return str(value)
    return None


def row_matches(row: dict[str, Any], user_id: str) -> bool:
    """Whether the row's ``fid`` or ``parent_fid`` equals ``user_id``."""
    return any(
        row.get(column) is not None and str(row.get(column)) == user_id
        for column in USER_KEY_COLUMNS
    )


@dataclass(frozen=True)
class StatField:
    """Where one statistic lives: a query and a column of its rows."""

    query_id: str
    column: str


@dataclass(frozen=True)
class StatFields:
    """Query/column locations of every displayed statistic."""

    today: StatField
    total: StatField
    sent: StatField
    rank: StatField

    @property
    def query_ids(self) -> list[str]:
        """Distinct query ids, in display order."""
        ids: list[str] = []
        for field in (self.today, self.total, self.sent, self.rank):
            if field.query_id not in ids:
                ids.append(field.query_id)
        return ids


@dataclass(frozen=True)
class UserStats:
    """Statistics shown on a user's frame."""

    today_count: Number = 0
    total_count: Number = 0
    sent_count: Number = 0
    remaining_allowance: Number = 0
    rank: Number = 0
    cumulative_excess: Number = 0


class StatsLookup:
    """Reads user statistics out of the cache store."""

    def __init__(
        self,
        store: CacheStore,
        fields: StatFields,
        allowance_ceiling: int | Callable[[str], int] = DEFAULT_ALLOWANCE_CEILING,
    ):
        """Initialize the lookup.

        Args:
            store: Cache store holding the current snapshot.
            fields: Where each statistic is found.
            allowance_ceiling: Daily sending allowance, either a constant or a
                function of the user id.
        """
        self._store = store
        self._fields = fields
        self._allowance_ceiling = allowance_ceiling

    def _find(self, field: StatField, user_id: str) -> Number:
        entry = self._store.snapshot.queries.get(field.query_id)
        if entry is None:
            return 0
        for row in entry.rows:
            if row_matches(row, user_id):
                return as_number(row.get(field.column))
        return 0

    def allowance_ceiling(self, user_id: str) -> int:
        if callable(self._allowance_ceiling):
            return self._allowance_ceiling(user_id)
        return self._allowance_ceiling

    def get_stats(self, user_id: str) -> UserStats:
        """Project the cached rows into statistics for one user.

        Args:
            user_id: The user's identifier (fid).

        Returns:
            UserStats; every value is 0 when the user has no rows.
        """
        user_id = str(user_id)
        sent = self._find(self._fields.sent, user_id)
        stats = UserStats(
            today_count=self._find(self._fields.today, user_id),
            total_count=self._find(self._fields.total, user_id),
            sent_count=sent,
            remaining_allowance=max(self.allowance_ceiling(user_id) - sent, 0),
            rank=self._find(self._fields.rank, user_id),
            cumulative_excess=self._store.snapshot.excess.get(user_id, 0),
        )
        logger.debug("User stats", user_id=user_id, **vars(stats))
        return stats


class HashRegistry:
    """Process-lifetime map from user id to an opaque share token.

    Tokens are generated on first request and never invalidated.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._tokens: dict[str, str] = {}
        self._clock = clock

    def __len__(self) -> int:
        return len(self._tokens)

    def get_or_create(self, user_id: str) -> str:
        """Return the token for ``user_id``, generating it on first use."""
        token = self._tokens.get(user_id)
        if token is None:
            suffix = "".join(random.choices(_TOKEN_ALPHABET, k=9))
            token = f"{int(self._clock() * 1000)}-{user_id}-{suffix}"
            self._tokens[user_id] = token
            logger.debug("Generated share token", user_id=user_id)
        return token
