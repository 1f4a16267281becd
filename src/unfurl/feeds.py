from __future__ import annotations

import logging
from typing import Any

import feedparser

from .errors import ErrorKind, FetchError
from .models import FeedEntry, FeedSource
from .ssrf import SsrfGuard
from .transport import Opener, build_http_opener, get_following_redirects, retry_after_seconds
from .utils import collapse_whitespace, extract_published_at, log_event


class FeedReader:
    def __init__(
        self,
        guard: SsrfGuard,
        *,
        user_agent: str = "Mozilla/5.0 (compatible; Unfurl/1.0)",
        timeout_seconds: float = 30.0,
        max_redirects: int = 5,
        max_bytes: int = 5_000_000,
        opener: Opener | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._guard = guard
        self._user_agent = user_agent
        self._timeout = timeout_seconds
        self._max_redirects = max_redirects
        self._max_bytes = max_bytes
        self._opener = opener or build_http_opener()
        self._logger = logger or logging.getLogger("unfurl.feeds")

    def read(self, feed: FeedSource) -> list[FeedEntry]:
        content = self.fetch(feed.url)
        entries = parse_feed(content, source=str(feed.id), logger=self._logger)
        limit = feed.result_limit if feed.result_limit > 0 else 10
        return entries[:limit]

    def fetch(self, url: str) -> bytes:
        response = get_following_redirects(
            self._opener,
            url,
            validate=self._guard.validate,
            error_cls=FetchError,
            headers={"User-Agent": self._user_agent},
            connect_timeout=self._timeout,
            total_timeout=self._timeout,
            max_redirects=self._max_redirects,
            max_bytes=self._max_bytes,
            logger=self._logger,
        )
        if not response.ok:
            raise FetchError.from_status(
                response.status,
                f"HTTP {response.status} fetching feed",
                retry_after=retry_after_seconds(response),
            )
        if not response.body:
            raise FetchError("empty feed response", kind=ErrorKind.NO_CONTENT)
        return response.body


def parse_feed(content: bytes | str, source: str = "", logger: logging.Logger | None = None) -> list[FeedEntry]:
    parsed = feedparser.parse(content)
    if parsed.bozo and logger is not None:
        log_event(
            logger,
            logging.WARNING,
            "feed_parse_warning",
            feed_id=source,
            error=str(parsed.bozo_exception),
        )
    entries: list[FeedEntry] = []
    for entry in parsed.entries or []:
        item = _entry_from_parsed(entry)
        if item is not None:
            entries.append(item)
    return entries


def _entry_from_parsed(entry: Any) -> FeedEntry | None:
    link = (entry.get("link") or entry.get("id") or "").strip()
    if not link:
        return None
    source = entry.get("source")
    source_title = None
    if isinstance(source, dict):
        source_title = source.get("title")
    return FeedEntry(
        title=collapse_whitespace(entry.get("title")),
        link=link,
        description=entry.get("description") or entry.get("summary"),
        pub_date=extract_published_at(entry),
        source=source_title,
    )
