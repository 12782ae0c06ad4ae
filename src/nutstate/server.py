"""HTTP server for the Nut State frame."""

import asyncio
import contextlib
import json
import logging
import os
import pathlib
from typing import Literal

import prometheus_client
import prometheus_client.core
import pydantic
import starlette.applications
import starlette.requests
import starlette.responses
import starlette.routing
import starlette.staticfiles
import structlog

from . import duneapi, frame
from .cache import CacheStore
from .collector import CacheCollector
from .lookup import HashRegistry, StatField, StatFields, StatsLookup
from .ratelimit import SlidingWindowRateLimiter
from .scheduler import ExcessTracker, RefreshScheduler, UpdatePolicy
from .sources import DEFAULT_POLL_DELAY, ExecutionRowSource, ResultsRowSource, RowSource

CONFIG_ENV_VAR = "NUTSTATE_CONFIG_PATH"
logger = structlog.get_logger(__name__)


class QueryConfig(pydantic.BaseModel):
    """A Dune query and the column holding one statistic."""

    query_id: str = pydantic.Field(description="Dune query identifier")
    column: str = pydantic.Field(description="Column holding the statistic")


class FrameConfig(pydantic.BaseModel):
    """Configuration for the Nut State frame service."""

    dune_api_url: str = pydantic.Field(
        duneapi.DEFAULT_BASE_URL,
        description="Base URL for the Dune API",
    )
    dune_api_key: str | None = pydantic.Field(None, description="Dune API key")
    dune_api_key_file: str | None = pydantic.Field(
        None,
        description="Path to file containing the Dune API key",
    )
    dune_timeout: float = pydantic.Field(
        duneapi.DEFAULT_TIMEOUT,
        description="Request timeout in seconds",
        gt=0,
    )
    fetch_mode: Literal["results", "execute"] = pydantic.Field(
        "results",
        description="Read precomputed results, or execute queries and poll",
    )
    poll_delay: float = pydantic.Field(
        DEFAULT_POLL_DELAY,
        description="Seconds between starting an execution and polling it",
        ge=0,
    )
    cache_path: str = pydantic.Field("cache.json", description="Cache document path")
    today_query: QueryConfig = QueryConfig(query_id="4816299", column="peanut_count")
    total_query: QueryConfig = QueryConfig(query_id="4815993", column="total_peanut_count")
    sent_query: QueryConfig = QueryConfig(query_id="4811780", column="sent_peanut_count")
    rank_query: QueryConfig = QueryConfig(query_id="4801919", column="rank")
    track_excess: bool = pydantic.Field(
        False,
        description="Carry forward per-user sends above the allowance",
    )
    update_times: list[int] = pydantic.Field(
        [180, 540, 900, 1080, 1260],
        description="Daily update times in minutes since UTC midnight",
    )
    update_tolerance_minutes: int = pydantic.Field(5, ge=0)
    update_cooldown_minutes: int = pydantic.Field(30, ge=0)
    max_updates_per_day: int = pydantic.Field(6, gt=0)
    refresh_interval: float = pydantic.Field(
        60.0,
        description="Seconds between timer refresh checks, 0 disables the timer",
        ge=0,
    )
    block_on_refresh: bool = pydantic.Field(
        True,
        description="Whether frame requests wait for a due refresh to finish",
    )
    rate_limit_per_second: int = pydantic.Field(10, gt=0)
    rate_limit_per_minute: int = pydantic.Field(30, gt=0)
    rate_limit_load_margin: int = pydantic.Field(2, ge=0)
    allowance_ceiling: int = pydantic.Field(30, ge=0)
    frame_base_url: str | None = pydantic.Field(
        None,
        description="Public base URL used in share links, defaults to the request's",
    )
    static_dir: str = pydantic.Field("public", description="Static assets directory")
    port: int = pydantic.Field(3000, description="HTTP server port", gt=0, lt=65536)
    log_level: str = pydantic.Field("INFO", description="Logging level")

    @pydantic.model_validator(mode="after")
    def _check(self) -> "FrameConfig":
        if not self.dune_api_key and not self.dune_api_key_file:
            msg = "one of dune_api_key or dune_api_key_file is required"
            raise ValueError(msg)
        if self.fetch_mode == "execute" and self.block_on_refresh:
            msg = "block_on_refresh must be false with fetch_mode 'execute'"
            raise ValueError(msg)
        if self.rate_limit_load_margin >= self.rate_limit_per_second:
            msg = "rate_limit_load_margin must be below rate_limit_per_second"
            raise ValueError(msg)
        return self

    def stat_fields(self) -> StatFields:
        return StatFields(
            today=StatField(self.today_query.query_id, self.today_query.column),
            total=StatField(self.total_query.query_id, self.total_query.column),
            sent=StatField(self.sent_query.query_id, self.sent_query.column),
            rank=StatField(self.rank_query.query_id, self.rank_query.column),
        )


def configure_logging(log_level_name: str) -> None:
    """Configure structlog for logfmt output."""
    log_level = getattr(logging, log_level_name.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.EventRenamer("msg"),
            structlog.processors.format_exc_info,
            structlog.processors.LogfmtRenderer(
                key_order=("timestamp", "level", "msg"),
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def load_config(config_path: str) -> FrameConfig:
    """Load configuration from JSON file."""
    path = pathlib.Path(config_path)
    if not path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with path.open("r") as f:
        data = json.load(f)

    return FrameConfig(**data)


def create_row_source(config: FrameConfig, client: duneapi.DuneApiClient) -> RowSource:
    """Pick the row source matching the configured fetch mode."""
    if config.fetch_mode == "execute":
        return ExecutionRowSource(client, poll_delay=config.poll_delay)
    return ResultsRowSource(client)


def create_starlette_app(
    config: FrameConfig,
    store: CacheStore,
    scheduler: RefreshScheduler,
    lookup: StatsLookup,
    limiter: SlidingWindowRateLimiter,
    registry: prometheus_client.core.CollectorRegistry,
    client: duneapi.DuneApiClient | None = None,
) -> starlette.applications.Starlette:
    """Create the Starlette application serving the frame.

    Args:
        config: Validated service configuration.
        store: Cache store, already loaded.
        scheduler: Refresh scheduler over ``store``.
        lookup: Statistics lookup over ``store``.
        limiter: Inbound request rate limiter.
        registry: Prometheus registry for the metrics endpoint.
        client: Dune API client to close on shutdown.

    Returns:
        Configured Starlette application.
    """
    hashes = HashRegistry()

    def user_params(request: starlette.requests.Request) -> tuple[str, str, str]:
        params = request.query_params
        return (
            params.get("fid") or "N/A",
            params.get("username") or "Unknown",
            params.get("pfpUrl") or "",
        )

    def message_response(
        request: starlette.requests.Request,
        kind: str,
    ) -> starlette.responses.Response:
        body = frame.render_frame(
            image_url=str(request.url_for("message_image", kind=kind)),
            post_url=str(request.url_for("frame")),
            buttons=[frame.Button("Try Again")],
        )
        return starlette.responses.HTMLResponse(body)

    async def frame_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        """Serve the frame for the user named in the query string."""
        fid, username, pfp_url = user_params(request)
        logger.info(
            "HTTP request",
            client_ip=request.client.host if request.client else "unknown",
            method=request.method,
            path=request.url.path,
            fid=fid,
        )

        admission = limiter.check_admission()
        if not admission.allowed:
            return message_response(request, "rate_limited")
        if admission.load_shedding:
            return message_response(request, "busy")

        try:
            if config.block_on_refresh:
                await scheduler.refresh()
            else:
                scheduler.request_refresh()

            token = hashes.get_or_create(fid)
            base_url = config.frame_base_url or str(request.base_url)
            share_url = frame.share_frame_url(base_url, token, fid, username, pfp_url)
            image_url = request.url_for("image").include_query_params(
                fid=fid,
                username=username,
                pfpUrl=pfp_url,
            )
            body = frame.render_frame(
                image_url=str(image_url),
                post_url=str(request.url_for("frame")),
                buttons=[
                    frame.Button("My State"),
                    frame.Button("Share", frame.compose_cast_url(share_url)),
                    frame.Button("Join Us", frame.JOIN_URL),
                ],
            )
        except Exception:
            logger.exception("Failed to render frame", fid=fid)
            return message_response(request, "error")

        return starlette.responses.HTMLResponse(body)

    def image_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        """Render the statistics card from the current cache."""
        fid, username, pfp_url = user_params(request)
        stats = lookup.get_stats(fid)
        return starlette.responses.Response(
            frame.render_stats_card(username, fid, pfp_url, stats),
            media_type="image/svg+xml",
            headers={"Cache-Control": "max-age=0"},
        )

    def message_image_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        return starlette.responses.Response(
            frame.render_message_card(request.path_params["kind"]),
            media_type="image/svg+xml",
        )

    def status_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        """Report cache bookkeeping as JSON."""
        snapshot = store.snapshot
        return starlette.responses.JSONResponse(
            {
                "initialFetchDone": snapshot.initial_fetch_done,
                "updateCountToday": snapshot.update_count_today,
                "lastUpdateDay": snapshot.last_update_day,
                "refreshing": scheduler.is_refreshing,
                "due": scheduler.due_queries(),
                "queries": {
                    query_id: {
                        "rows": len(snapshot.entry(query_id).rows),
                        "lastUpdated": snapshot.entry(query_id).last_updated,
                    }
                    for query_id in scheduler.query_ids
                },
            },
        )

    def metrics_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        """Serve Prometheus metrics."""
        return starlette.responses.PlainTextResponse(
            content=prometheus_client.generate_latest(registry),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    @contextlib.asynccontextmanager
    async def lifespan(app: starlette.applications.Starlette):
        timer = None
        if config.refresh_interval > 0:
            timer = asyncio.create_task(scheduler.run_periodic(config.refresh_interval))
        try:
            yield
        finally:
            if timer is not None:
                timer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await timer
            await scheduler.aclose()
            if client is not None:
                await client.aclose()
            try:
                store.save()
            except OSError:
                logger.exception("Failed to flush cache on shutdown")

    routes = [
        starlette.routing.Route("/", frame_endpoint, methods=["GET", "POST"], name="frame"),
        starlette.routing.Route("/image", image_endpoint, methods=["GET"], name="image"),
        starlette.routing.Route(
            "/image/{kind}",
            message_image_endpoint,
            methods=["GET"],
            name="message_image",
        ),
        starlette.routing.Route("/status", status_endpoint, methods=["GET"]),
        starlette.routing.Route("/metrics", metrics_endpoint, methods=["GET"]),
    ]
    if pathlib.Path(config.static_dir).is_dir():
        routes.append(
            starlette.routing.Mount(
                "/public",
                app=starlette.staticfiles.StaticFiles(directory=config.static_dir),
                name="public",
            ),
        )

    return starlette.applications.Starlette(routes=routes, lifespan=lifespan)


def create_frame_app(
    config: FrameConfig,
    client: duneapi.DuneApiClient | None = None,
) -> starlette.applications.Starlette:
    """Construct the frame ASGI app from validated config."""
    if client is None:
        client = duneapi.DuneApiClient(
            api_key=config.dune_api_key,
            api_key_file=config.dune_api_key_file,
            base_url=config.dune_api_url,
            timeout=config.dune_timeout,
        )
    logger.info("Created Dune client", base_url=client.base_url, fetch_mode=config.fetch_mode)

    fields = config.stat_fields()
    store = CacheStore(config.cache_path, query_ids=fields.query_ids)
    store.load()

    excess = None
    if config.track_excess:
        excess = ExcessTracker(
            query_id=config.sent_query.query_id,
            column=config.sent_query.column,
            ceiling=config.allowance_ceiling,
        )
    scheduler = RefreshScheduler(
        store=store,
        source=create_row_source(config, client),
        query_ids=fields.query_ids,
        policy=UpdatePolicy(
            update_times=tuple(config.update_times),
            tolerance_minutes=config.update_tolerance_minutes,
            cooldown_minutes=config.update_cooldown_minutes,
            max_updates_per_day=config.max_updates_per_day,
        ),
        excess=excess,
    )
    lookup = StatsLookup(store, fields, allowance_ceiling=config.allowance_ceiling)
    limiter = SlidingWindowRateLimiter(
        per_second=config.rate_limit_per_second,
        per_minute=config.rate_limit_per_minute,
        load_margin=config.rate_limit_load_margin,
    )

    # Private registry instead of the global REGISTRY
    registry = prometheus_client.core.CollectorRegistry()
    registry.register(CacheCollector(store, scheduler, limiter))

    return create_starlette_app(
        config=config,
        store=store,
        scheduler=scheduler,
        lookup=lookup,
        limiter=limiter,
        registry=registry,
        client=client,
    )


def create_app(config_path: str | None = None) -> starlette.applications.Starlette:
    """Create the frame ASGI app using a config path or environment default."""
    resolved_path = config_path or os.environ.get(CONFIG_ENV_VAR, "/config.json")
    config = load_config(resolved_path)
    configure_logging(config.log_level)
    return create_frame_app(config)
