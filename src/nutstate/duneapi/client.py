"""Dune REST API client.

Provides an async HTTP client with API-key authentication and response
validation using Pydantic models. Every failure is logged and mapped to an
empty result so callers can treat it as "no data this round".
"""

import enum
import time
from pathlib import Path
from typing import Any

import httpx
import pydantic
import structlog

from .types import COMPLETED_STATE, RawExecuteResponse, RawResultsResponse

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://api.dune.com/api/v1"

DEFAULT_TIMEOUT = 30.0

API_KEY_HEADER = "X-Dune-API-Key"


class PollStatus(enum.Enum):
    """Marker returned by :meth:`DuneApiClient.poll_result` for unfinished executions."""

    STILL_RUNNING = "still_running"


STILL_RUNNING = PollStatus.STILL_RUNNING


class DuneApiClient:
    """Async HTTP client for the Dune REST API.

    Supports both ways of obtaining rows: reading the latest precomputed
    results of a query, and starting an execution to poll later. The
    underlying ``httpx.AsyncClient`` is created lazily and can be closed via
    :meth:`aclose` or the async context manager protocol.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_key_file: str | Path | None = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the API client.

        Args:
            api_key: Dune API key.
            api_key_file: Path to a file holding the API key, used when
                ``api_key`` is not given.
            base_url: Base URL for the Dune API.
            timeout: Request timeout in seconds (default: 30.0).
            transport: Optional httpx transport, mainly for tests.

        Raises:
            ValueError: If base_url is empty, timeout is not positive or no
                API key is available.
            FileNotFoundError: If api_key_file is specified but doesn't exist.
        """
        if not base_url:
            msg = "base_url cannot be empty"
            raise ValueError(msg)
        if timeout <= 0:
            msg = "timeout must be positive"
            raise ValueError(msg)

        if api_key is None and api_key_file:
            key_path = Path(api_key_file)
            if not key_path.exists():
                msg = f"API key file not found: {api_key_file}"
                raise FileNotFoundError(msg)
            api_key = key_path.read_text().strip()
        if not api_key:
            msg = "a Dune API key is required"
            raise ValueError(msg)

        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._headers = {
            "Accept": "application/json",
            API_KEY_HEADER: api_key,
        }
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the shared httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def __aenter__(self):
        """Enter async context manager."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context manager and cleanup resources."""
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if open."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def _request(self, method: str, endpoint: str) -> dict[str, Any] | None:
        """Make an HTTP request and decode the JSON body.

        Args:
            method: HTTP method.
            endpoint: Endpoint path relative to the base URL.

        Returns:
            Decoded JSON object, or None if the request failed, returned a
            non-success status, or the body was not a JSON object.
        """
        start_time = time.time()
        try:
            logger.debug("Making API request", method=method, endpoint=endpoint)
            response = await self.client.request(method, endpoint)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError:
            logger.exception(
                "API request failed",
                method=method,
                endpoint=endpoint,
                duration_seconds=round(time.time() - start_time, 3),
            )
            return None
        except ValueError:
            logger.exception("API response is not valid JSON", endpoint=endpoint)
            return None

        logger.debug(
            "API request completed",
            endpoint=endpoint,
            duration_seconds=round(time.time() - start_time, 3),
        )
        if not isinstance(data, dict):
            logger.error("Unexpected API response shape", endpoint=endpoint)
            return None
        if data.get("error"):
            logger.error("API error response", endpoint=endpoint, error_message=data["error"])
            return None
        return data

    async def fetch_rows(self, query_id: str) -> list[dict[str, Any]]:
        """Fetch the latest precomputed rows of a query.

        Args:
            query_id: Dune query identifier.

        Returns:
            Result rows, or an empty list on any failure.
        """
        data = await self._request("GET", f"/query/{query_id}/results")
        if data is None:
            return []
        try:
            parsed = RawResultsResponse.model_validate(data)
        except pydantic.ValidationError:
            logger.exception("Malformed results response", query_id=query_id)
            return []

        rows = parsed.result.rows if parsed.result is not None else []
        logger.info("Fetched rows", query_id=query_id, rows=len(rows))
        return rows

    async def execute(self, query_id: str) -> str | None:
        """Start a new execution of a query.

        Args:
            query_id: Dune query identifier.

        Returns:
            Execution identifier, or None if the execution could not be
            started.
        """
        data = await self._request("POST", f"/query/{query_id}/execute")
        if data is None:
            return None
        try:
            parsed = RawExecuteResponse.model_validate(data)
        except pydantic.ValidationError:
            logger.exception("Malformed execute response", query_id=query_id)
            return None

        if not parsed.execution_id:
            logger.error("Execute response has no execution id", query_id=query_id)
            return None
        logger.info(
            "Execution started",
            query_id=query_id,
            execution_id=parsed.execution_id,
            state=parsed.state,
        )
        return parsed.execution_id

    async def poll_result(
        self,
        execution_id: str,
        query_id: str,
    ) -> list[dict[str, Any]] | PollStatus | None:
        """Poll an execution once.

        Args:
            execution_id: Identifier returned by :meth:`execute`.
            query_id: Query identifier, for logging.

        Returns:
            Result rows if the execution completed, ``STILL_RUNNING`` if it
            is pending or executing, or None if it failed or the poll itself
            failed.
        """
        data = await self._request("GET", f"/execution/{execution_id}/results")
        if data is None:
            return None
        try:
            parsed = RawResultsResponse.model_validate(data)
        except pydantic.ValidationError:
            logger.exception("Malformed execution response", query_id=query_id)
            return None

        if parsed.is_pending:
            logger.info(
                "Execution still running",
                query_id=query_id,
                execution_id=execution_id,
                state=parsed.state,
            )
            return STILL_RUNNING
        if parsed.state and parsed.state != COMPLETED_STATE:
            logger.error(
                "Execution did not complete",
                query_id=query_id,
                execution_id=execution_id,
                state=parsed.state,
            )
            return None

        rows = parsed.result.rows if parsed.result is not None else []
        logger.info("Fetched execution rows", query_id=query_id, rows=len(rows))
        return rows
