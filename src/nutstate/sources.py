"""Row sources used by the refresh scheduler.

A row source turns a query identifier into a fresh list of rows. An empty
list means "no data this round": the scheduler keeps the previous rows.
"""

import asyncio
from typing import Any, Protocol

import structlog

from . import duneapi

logger = structlog.get_logger(__name__)

DEFAULT_POLL_DELAY = 180.0


class RowSource(Protocol):
    """Anything that can fetch the current rows of a query."""

    async def fetch(self, query_id: str) -> list[dict[str, Any]]: ...


class ResultsRowSource:
    """Reads the latest precomputed results, one request per query."""

    def __init__(self, client: duneapi.DuneApiClient):
        self._client = client

    async def fetch(self, query_id: str) -> list[dict[str, Any]]:
        return await self._client.fetch_rows(query_id)


class ExecutionRowSource:
    """Starts a fresh execution, waits a fixed delay, then polls once.

    If the execution is still running at that single poll, the query is
    abandoned for this pass and picked up again at the next eligible refresh.
    The wait is an ``asyncio.sleep``, so the event loop keeps serving other
    requests meanwhile.
    """

    def __init__(
        self,
        client: duneapi.DuneApiClient,
        poll_delay: float = DEFAULT_POLL_DELAY,
        sleep=asyncio.sleep,
    ):
        """Initialize the source.

        Args:
            client: Dune API client.
            poll_delay: Seconds to wait between starting the execution and
                polling it.
            sleep: Coroutine function used for the wait.
        """
        self._client = client
        self._poll_delay = poll_delay
        self._sleep = sleep

    async def fetch(self, query_id: str) -> list[dict[str, Any]]:
        execution_id = await self._client.execute(query_id)
        if execution_id is None:
            return []

        logger.info(
            "Waiting before polling execution",
            query_id=query_id,
            execution_id=execution_id,
            delay_seconds=self._poll_delay,
        )
        await self._sleep(self._poll_delay)

        result = await self._client.poll_result(execution_id, query_id)
        if result is duneapi.STILL_RUNNING:
            logger.warning(
                "Execution not finished at poll, skipping query this round",
                query_id=query_id,
                execution_id=execution_id,
            )
            return []
        if result is None:
            return []
        return result
