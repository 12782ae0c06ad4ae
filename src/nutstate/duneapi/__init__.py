"""Dune analytics REST API client package.

Provides a lightweight async HTTP client for the Dune API that returns raw
result rows with minimal processing. Refresh policy and caching are handled
by the scheduler.

Exports:
    DuneApiClient: Async HTTP client with API-key authentication.
    STILL_RUNNING: Poll marker for executions that have not finished.
    types: Module containing Pydantic models for API responses.
    DEFAULT_BASE_URL: Default Dune API base URL.
    DEFAULT_TIMEOUT: Default HTTP request timeout.
"""

from . import types
from .client import (
    DEFAULT_BASE_URL,
    DEFAULT_TIMEOUT,
    STILL_RUNNING,
    DuneApiClient,
    PollStatus,
)

__all__ = [
    "DEFAULT_BASE_URL",
    "DEFAULT_TIMEOUT",
    "STILL_RUNNING",
    "DuneApiClient",
    "PollStatus",
    "types",
]
