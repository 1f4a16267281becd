from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from typing import Iterator

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .config import Config, load_config
from .db import connect_db, ping
from .errors import RateLimitExceeded
from .models import ARTICLE_STATUSES, ApiKey, FeedRunSummary
from .orchestrator import IngestionOrchestrator, build_orchestrator
from .publisher import RSS_CONTENT_TYPE, FeedFilters, FeedPublisher
from .ratelimit import CooldownGate, SlidingWindowLimiter
from .ssrf import SsrfGuard
from .storage import find_api_key, get_feed, update_api_key_last_used
from .transport import Opener
from .utils import configure_logging, iso_z, log_event

app = FastAPI(title="Unfurl API")

GENERIC_ERROR = "An error occurred while processing your request"

_logger = logging.getLogger("unfurl.api")
_state_lock = threading.Lock()


class ProcessResponse(BaseModel):
    success: bool
    feeds_processed: int
    articles_created: int
    articles_failed: int
    articles_duplicate: int
    timestamp: str


class RetryResponse(ProcessResponse):
    articles_retried: int


class ApiError(Exception):
    def __init__(self, status_code: int, message: str, headers: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.headers = headers


@dataclass
class AppState:
    config: Config
    limiter: SlidingWindowLimiter
    cooldown: CooldownGate
    publisher: FeedPublisher
    opener: Opener | None = None
    guard: SsrfGuard | None = None


def configure_app(
    config: Config | None = None,
    *,
    opener: Opener | None = None,
    guard: SsrfGuard | None = None,
) -> AppState:
    config = config or load_config()
    db_path = config.paths.state_db
    state = AppState(
        config=config,
        limiter=SlidingWindowLimiter(config.api.rate_limit, config.api.rate_window_seconds),
        cooldown=CooldownGate(config.processing.cooldown_seconds),
        publisher=FeedPublisher(
            lambda: connect_db(db_path),
            site_name=config.app.site_name,
            base_url=config.app.base_url,
            version=config.app.version,
            ttl_seconds=config.publishing.cache_ttl_seconds,
        ),
        opener=opener,
        guard=guard,
    )
    app.state.unfurl = state
    return state


def get_app_state() -> AppState:
    state = getattr(app.state, "unfurl", None)
    if state is None:
        with _state_lock:
            state = getattr(app.state, "unfurl", None)
            if state is None:
                state = configure_app()
    return state


def _get_conn(state: AppState = Depends(get_app_state)) -> Iterator[sqlite3.Connection]:
    conn = connect_db(state.config.paths.state_db)
    try:
        yield conn
    finally:
        conn.close()


def _require_api_key(
    x_api_key: str | None = Header(default=None),
    conn: sqlite3.Connection = Depends(_get_conn),
    state: AppState = Depends(get_app_state),
) -> ApiKey:
    if not x_api_key:
        raise ApiError(401, "Missing X-API-Key header")
    api_key = find_api_key(conn, x_api_key)
    if api_key is None:
        log_event(_logger, logging.WARNING, "api_key_invalid", api_key=x_api_key[:8] + "...")
        raise ApiError(401, "Invalid API key")
    if not api_key.enabled:
        log_event(_logger, logging.WARNING, "api_key_disabled", api_key_id=api_key.id)
        raise ApiError(403, "API key is disabled")
    try:
        state.limiter.hit(api_key.id)
    except RateLimitExceeded as exc:
        log_event(_logger, logging.WARNING, "rate_limit_exceeded", api_key_id=api_key.id)
        raise ApiError(
            429,
            "Rate limit exceeded. Please try again later.",
            headers={"Retry-After": str(max(int(exc.retry_after), 1))},
        ) from exc
    update_api_key_last_used(conn, api_key.id)
    return api_key


@app.exception_handler(ApiError)
async def _api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, "timestamp": iso_z()},
        headers=exc.headers,
    )


def _internal_error(event: str, exc: Exception) -> ApiError:
    _logger.error("event=%s error=%s", event, exc, exc_info=exc)
    return ApiError(500, GENERIC_ERROR)


def _orchestrator(state: AppState, conn: sqlite3.Connection) -> IngestionOrchestrator:
    return build_orchestrator(
        state.config,
        conn,
        cooldown=state.cooldown,
        opener=state.opener,
        guard=state.guard,
    )


def _summary_fields(summary: FeedRunSummary) -> dict[str, object]:
    return {
        "success": True,
        "feeds_processed": summary.feeds_processed,
        "articles_created": summary.created,
        "articles_failed": summary.articles_failed,
        "articles_duplicate": summary.duplicates,
        "timestamp": iso_z(),
    }


@app.get("/health")
def health(state: AppState = Depends(get_app_state)) -> JSONResponse:
    try:
        conn = connect_db(state.config.paths.state_db)
        try:
            ok = ping(conn)
        finally:
            conn.close()
    except (sqlite3.Error, OSError) as exc:
        log_event(_logger, logging.ERROR, "health_check_failed", error=exc)
        ok = False
    return JSONResponse(
        status_code=200 if ok else 503,
        content={"status": "ok" if ok else "error", "timestamp": iso_z()},
    )


@app.post("/api/process", response_model=ProcessResponse)
def process_all(
    api_key: ApiKey = Depends(_require_api_key),
    conn: sqlite3.Connection = Depends(_get_conn),
    state: AppState = Depends(get_app_state),
) -> ProcessResponse:
    try:
        summary = _orchestrator(state, conn).process_enabled_feeds()
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("process_failed", exc) from exc
    log_event(
        _logger,
        logging.INFO,
        "api_process_complete",
        api_key_id=api_key.id,
        feeds=summary.feeds_processed,
        created=summary.created,
        failed=summary.articles_failed,
    )
    return ProcessResponse(**_summary_fields(summary))


@app.post("/api/feeds/{feed_id}/process", response_model=ProcessResponse)
def process_one(
    feed_id: int,
    api_key: ApiKey = Depends(_require_api_key),
    conn: sqlite3.Connection = Depends(_get_conn),
    state: AppState = Depends(get_app_state),
) -> ProcessResponse:
    feed = get_feed(conn, feed_id)
    if feed is None:
        raise ApiError(404, "Feed not found")
    if not state.cooldown.try_acquire(feed_id):
        wait = max(int(state.cooldown.remaining(feed_id)) + 1, 1)
        raise ApiError(
            429,
            "Feed was processed recently. Please wait before processing again.",
            headers={"Retry-After": str(wait)},
        )
    try:
        summary = _orchestrator(state, conn).process_feed(feed)
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("feed_process_failed", exc) from exc
    log_event(
        _logger,
        logging.INFO,
        "api_feed_process_complete",
        api_key_id=api_key.id,
        feed_id=feed_id,
        created=summary.created,
    )
    return ProcessResponse(**_summary_fields(summary))


@app.post("/api/retries", response_model=RetryResponse)
def process_retries(
    limit: int | None = None,
    api_key: ApiKey = Depends(_require_api_key),
    conn: sqlite3.Connection = Depends(_get_conn),
    state: AppState = Depends(get_app_state),
) -> RetryResponse:
    batch = limit if limit and limit > 0 else state.config.processing.retry_batch_size
    try:
        summary = _orchestrator(state, conn).process_ready_retries(batch)
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("retries_failed", exc) from exc
    return RetryResponse(articles_retried=summary.processed, **_summary_fields(summary))


@app.get("/feed.xml")
@app.get("/rss")
def rss_feed(
    topic: str | None = None,
    feed_id: int | None = None,
    status: str | None = None,
    limit: int | None = None,
    offset: int | None = None,
    if_none_match: str | None = Header(default=None),
    state: AppState = Depends(get_app_state),
) -> Response:
    if status and status not in ARTICLE_STATUSES:
        raise ApiError(400, "Invalid status filter")
    filters = FeedFilters.normalized(
        topic=topic,
        feed_id=feed_id,
        status=status,
        limit=limit,
        offset=offset,
        default_limit=state.config.publishing.default_limit,
        max_limit=state.config.publishing.max_limit,
    )
    try:
        published = state.publisher.render(filters)
    except Exception as exc:  # noqa: BLE001
        raise _internal_error("feed_render_failed", exc) from exc
    headers = {
        "ETag": published.etag,
        "Last-Modified": published.last_modified,
        "Cache-Control": f"public, max-age={int(state.config.publishing.cache_ttl_seconds)}",
    }
    if if_none_match and published.etag in [tag.strip() for tag in if_none_match.split(",")]:
        return Response(status_code=304, headers=headers)
    return Response(content=published.document, media_type=RSS_CONTENT_TYPE, headers=headers)


def _setup_logging() -> None:
    configure_logging("unfurl.api")


_setup_logging()
