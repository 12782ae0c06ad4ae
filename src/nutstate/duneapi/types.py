"""Raw API response types for the Dune REST API.

Pydantic models describing the parts of Dune responses the service relies
on. Result rows stay untyped: each query has its own columns and the cache
stores them as returned.
"""

from typing import Any

from pydantic import BaseModel

PENDING_STATES = frozenset({"QUERY_STATE_PENDING", "QUERY_STATE_EXECUTING"})
COMPLETED_STATE = "QUERY_STATE_COMPLETED"


class RawResult(BaseModel):
    """Result block of a results response."""

    rows: list[dict[str, Any]] = []


class RawResultsResponse(BaseModel):
    """Response of ``GET /query/{id}/results`` and ``GET /execution/{id}/results``.

    ``result`` is absent while an execution is still pending or running.
    """

    execution_id: str = ""
    query_id: int | None = None
    state: str = ""
    is_execution_finished: bool | None = None
    result: RawResult | None = None
    error: Any = None

    @property
    def is_pending(self) -> bool:
        """Whether the execution has not finished yet."""
        return self.state in PENDING_STATES or self.is_execution_finished is False


class RawExecuteResponse(BaseModel):
    """Response of ``POST /query/{id}/execute``."""

    execution_id: str = ""
    state: str = ""
    error: Any = None
