"""Sliding-window admission control for inbound frame requests.

Two windows are tracked: a short one (one second) and a long one (one
minute). Requests are rejected once either window is full, and admitted in a
degraded "load shedding" mode when the short window gets close to its
ceiling.
"""

import time
from collections import deque
from dataclasses import dataclass
from threading import Lock

import structlog

logger = structlog.get_logger(__name__)

SHORT_WINDOW_SECONDS = 1.0
LONG_WINDOW_SECONDS = 60.0


@dataclass(frozen=True)
class Admission:
    """Outcome of a single admission check."""

    allowed: bool
    load_shedding: bool = False


class SlidingWindowRateLimiter:
    """Thread-safe two-window request limiter.

    Timestamps are appended in increasing order, so expiring old entries is a
    prefix trim of each deque. Windows are closed intervals: a request exactly
    one window duration old still counts, and is expired only once it is
    strictly older. Load-shedding admissions are not recorded and therefore
    do not consume quota.
    """

    def __init__(
        self,
        per_second: int,
        per_minute: int,
        load_margin: int = 0,
        clock=time.monotonic,
    ):
        """Initialize the limiter.

        Args:
            per_second: Capacity of the one-second window.
            per_minute: Capacity of the sixty-second window.
            load_margin: How close to ``per_second`` the short window may get
                before admissions are flagged as load shedding. Zero disables
                load shedding.
            clock: Monotonic time source in seconds.

        Raises:
            ValueError: If a capacity is not positive or the margin is out
                of range.
        """
        if per_second <= 0 or per_minute <= 0:
            msg = "rate limit capacities must be positive"
            raise ValueError(msg)
        if not 0 <= load_margin < per_second:
            msg = "load_margin must be between 0 and per_second - 1"
            raise ValueError(msg)

        self.per_second = per_second
        self.per_minute = per_minute
        self.load_margin = load_margin
        self._clock = clock
        self._lock = Lock()
        self._short: deque[float] = deque()
        self._long: deque[float] = deque()

        # Outcome counters, read by the metrics collector
        self.admitted = 0
        self.rejected = 0
        self.shed = 0

    @staticmethod
    def _evict(window: deque[float], now: float, duration: float) -> None:
        while window and now - window[0] > duration:
            window.popleft()

    def check_admission(self) -> Admission:
        """Decide whether the current request may proceed.

        Returns:
            Admission with ``allowed`` False when either window is full, and
            ``load_shedding`` True when the short window is within
            ``load_margin`` of its ceiling.
        """
        with self._lock:
            now = self._clock()
            self._evict(self._short, now, SHORT_WINDOW_SECONDS)
            self._evict(self._long, now, LONG_WINDOW_SECONDS)

            if len(self._short) >= self.per_second or len(self._long) >= self.per_minute:
                self.rejected += 1
                logger.warning(
                    "Request rejected by rate limiter",
                    second_window=len(self._short),
                    minute_window=len(self._long),
                )
                return Admission(allowed=False)

            if self.load_margin and len(self._short) >= self.per_second - self.load_margin:
                self.shed += 1
                logger.info("Request admitted under load shedding", second_window=len(self._short))
                return Admission(allowed=True, load_shedding=True)

            self._short.append(now)
            self._long.append(now)
            self.admitted += 1
            logger.debug(
                "Request admitted",
                remaining_minute=self.per_minute - len(self._long),
            )
            return Admission(allowed=True)
