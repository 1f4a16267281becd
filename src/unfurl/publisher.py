from __future__ import annotations

import hashlib
import logging
import threading
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Callable

from .models import STATUS_SUCCESS, ArticleRecord
from .storage import list_articles
from .utils import log_event, parse_datetime, rfc2822, utc_now

CONTENT_NS = "http://purl.org/rss/1.0/modules/content/"
DC_NS = "http://purl.org/dc/elements/1.1/"

RSS_CONTENT_TYPE = "application/rss+xml; charset=utf-8"


@dataclass(frozen=True)
class FeedFilters:
    topic: str | None = None
    feed_id: int | None = None
    status: str = STATUS_SUCCESS
    limit: int = 20
    offset: int = 0

    @classmethod
    def normalized(
        cls,
        *,
        topic: str | None = None,
        feed_id: int | None = None,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
        default_limit: int = 20,
        max_limit: int = 100,
    ) -> "FeedFilters":
        topic = (topic or "").strip() or None
        if limit is None:
            limit = default_limit
        return cls(
            topic=topic,
            feed_id=feed_id,
            status=(status or "").strip() or STATUS_SUCCESS,
            limit=min(max(int(limit), 1), max_limit),
            offset=max(int(offset or 0), 0),
        )


@dataclass(frozen=True)
class PublishedFeed:
    document: str
    etag: str
    last_modified: str


class FeedPublisher:
    """Render stored articles as RSS 2.0, cached per filter set.

    ``connect`` opens a store connection; it is only called on a cache miss and
    the connection is closed after the query.
    """

    def __init__(
        self,
        connect: Callable[[], Any],
        *,
        site_name: str = "Unfurl",
        base_url: str = "",
        version: str = "1.0",
        ttl_seconds: float = 300,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self._connect = connect
        self.site_name = site_name
        self.base_url = base_url
        self.version = version
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(max_entries, 1)
        self._clock = clock
        self._cache: dict[FeedFilters, tuple[float, PublishedFeed]] = {}
        self._lock = threading.Lock()
        self._logger = logger or logging.getLogger("unfurl.publisher")

    def generate(self, filters: FeedFilters | None = None) -> str:
        return self.render(filters).document

    def render(self, filters: FeedFilters | None = None) -> PublishedFeed:
        filters = filters or FeedFilters()
        now = self._clock()
        with self._lock:
            cached = self._cache.get(filters)
        if cached is not None and cached[0] > now:
            return cached[1]

        published = self._build(filters)
        with self._lock:
            self._store(filters, now, published)
        return published

    def _store(self, filters: FeedFilters, now: float, published: PublishedFeed) -> None:
        # Insertion order is expiry order, so the oldest entries sit at the front.
        for key in [key for key, (expires, _) in self._cache.items() if expires <= now]:
            del self._cache[key]
        self._cache.pop(filters, None)
        self._cache[filters] = (now + self.ttl_seconds, published)
        while len(self._cache) > self.max_entries:
            del self._cache[next(iter(self._cache))]

    def _build(self, filters: FeedFilters) -> PublishedFeed:
        conn = self._connect()
        try:
            articles = list_articles(
                conn,
                topic=filters.topic,
                feed_id=filters.feed_id,
                status=filters.status,
                limit=filters.limit,
                offset=filters.offset,
            )
        finally:
            conn.close()

        document = build_rss(
            articles,
            site_name=self.site_name,
            base_url=self.base_url,
            version=self.version,
            topic=filters.topic,
        )
        updated = [parse_datetime(article.updated_at) for article in articles]
        newest = max((value for value in updated if value), default=None)
        log_event(
            self._logger,
            logging.DEBUG,
            "feed_rendered",
            topic=filters.topic,
            feed_id=filters.feed_id,
            items=len(articles),
        )
        return PublishedFeed(
            document=document,
            etag='"' + hashlib.sha1(document.encode("utf-8")).hexdigest() + '"',
            last_modified=rfc2822(newest or utc_now()),
        )


def build_rss(
    articles: list[ArticleRecord],
    *,
    site_name: str,
    base_url: str,
    version: str,
    topic: str | None = None,
) -> str:
    rss = ET.Element("rss", version="2.0")
    rss.set("xmlns:content", CONTENT_NS)
    rss.set("xmlns:dc", DC_NS)
    channel = ET.SubElement(rss, "channel")
    if topic:
        ET.SubElement(channel, "title").text = f"{site_name} - {topic}"
        ET.SubElement(channel, "description").text = f"Curated articles about {topic}"
    else:
        ET.SubElement(channel, "title").text = f"{site_name} - All Articles"
        ET.SubElement(channel, "description").text = "Curated news articles from various sources"
    ET.SubElement(channel, "link").text = base_url
    ET.SubElement(channel, "language").text = "en-us"
    ET.SubElement(channel, "lastBuildDate").text = rfc2822(utc_now())
    ET.SubElement(channel, "generator").text = f"Unfurl v{version}"

    for article in articles:
        _add_item(channel, article)

    return ET.tostring(rss, encoding="utf-8", xml_declaration=True).decode("utf-8")


def _add_item(channel: ET.Element, article: ArticleRecord) -> None:
    metadata = article.metadata
    link = article.final_url or article.google_news_url
    item = ET.SubElement(channel, "item")
    ET.SubElement(item, "title").text = article.display_title
    ET.SubElement(item, "link").text = link
    ET.SubElement(item, "description").text = article.display_description
    if metadata.article_content:
        ET.SubElement(item, "content:encoded").text = metadata.article_content

    published = parse_datetime(article.pub_date) or parse_datetime(article.created_at)
    if published:
        ET.SubElement(item, "pubDate").text = rfc2822(published)
    ET.SubElement(item, "guid", isPermaLink="true").text = link
    if metadata.author:
        ET.SubElement(item, "dc:creator").text = metadata.author

    for category in _item_categories(article):
        ET.SubElement(item, "category").text = category

    image = metadata.og_image or metadata.twitter_image
    if image:
        ET.SubElement(item, "enclosure", url=image, type="image/jpeg", length="0")


def _item_categories(article: ArticleRecord) -> list[str]:
    categories: list[str] = []
    for value in [article.topic, *article.metadata.categories]:
        value = (value or "").strip()
        if value and value not in categories:
            categories.append(value)
    return categories
