"""Per-article ingestion pipeline and the feed/retry drivers built on it.

An article moves through ``decode -> dedup -> guard -> extract -> persist``.
Failures are persisted as data: the record keeps its ``retry_count``,
``last_error`` and, while it still has attempts left, a ``next_retry_at`` that
:meth:`IngestionOrchestrator.process_ready_retries` picks up later.  Nothing
in here sleeps.
"""

from __future__ import annotations

import logging
import random
import sqlite3
from dataclasses import dataclass
from typing import Any

from .config import Config
from .decoder import UrlDecoder
from .errors import DuplicateArticleError, ErrorKind, PipelineError
from .extractor import ArticleExtractor
from .feeds import FeedReader
from .models import (
    OUTCOME_CREATED,
    OUTCOME_DUPLICATE,
    OUTCOME_FAILED,
    OUTCOME_RETRY_SCHEDULED,
    STATUS_FAILED,
    STATUS_SUCCESS,
    ArticleRecord,
    ArticleResult,
    AttemptOutcome,
    FeedEntry,
    FeedRunSummary,
    FeedSource,
)
from .ratelimit import CooldownGate
from .ssrf import SsrfGuard
from .storage import (
    create_article,
    find_by_final_url,
    find_by_google_news_url,
    find_enabled_feeds,
    find_ready_for_retry,
    get_article,
    update_article,
    update_last_processed_at,
)
from .transport import Opener
from .utils import log_event, utc_now_iso, utc_now_iso_offset


@dataclass(frozen=True)
class _Candidate:
    feed_id: int
    topic: str
    google_news_url: str
    rss_title: str | None
    rss_description: str | None
    rss_source: str | None
    pub_date: str | None

    @classmethod
    def from_entry(cls, feed: FeedSource, entry: FeedEntry) -> "_Candidate":
        return cls(
            feed_id=feed.id,
            topic=feed.topic,
            google_news_url=entry.link,
            rss_title=entry.title or None,
            rss_description=entry.description,
            rss_source=entry.source,
            pub_date=entry.pub_date,
        )

    @classmethod
    def from_record(cls, record: ArticleRecord) -> "_Candidate":
        return cls(
            feed_id=record.feed_id,
            topic=record.topic,
            google_news_url=record.google_news_url,
            rss_title=record.rss_title,
            rss_description=record.rss_description,
            rss_source=record.rss_source,
            pub_date=record.pub_date,
        )

    def fields(self) -> dict[str, Any]:
        return {
            "feed_id": self.feed_id,
            "topic": self.topic,
            "google_news_url": self.google_news_url,
            "rss_title": self.rss_title,
            "rss_description": self.rss_description,
            "rss_source": self.rss_source,
            "pub_date": self.pub_date,
        }


class IngestionOrchestrator:
    def __init__(
        self,
        conn: Any,
        decoder: UrlDecoder,
        guard: SsrfGuard,
        extractor: ArticleExtractor,
        feed_reader: FeedReader,
        *,
        cooldown: CooldownGate | None = None,
        max_retries: int = 3,
        base_backoff_seconds: float = 60,
        max_jitter_seconds: float = 10,
        rng: random.Random | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.conn = conn
        self.decoder = decoder
        self.guard = guard
        self.extractor = extractor
        self.feed_reader = feed_reader
        self.cooldown = cooldown or CooldownGate()
        self.max_retries = max_retries
        self.base_backoff_seconds = base_backoff_seconds
        self.max_jitter_seconds = max_jitter_seconds
        self._rng = rng or random.Random()
        self.logger = logger or logging.getLogger("unfurl.orchestrator")

    # Drivers

    def process_enabled_feeds(self) -> FeedRunSummary:
        summary = FeedRunSummary()
        for feed in find_enabled_feeds(self.conn):
            summary.merge(self.process_feed(feed))
        return summary

    def process_feed(self, feed: FeedSource) -> FeedRunSummary:
        summary = FeedRunSummary(feeds_processed=1)
        try:
            entries = self.feed_reader.read(feed)
        except PipelineError as exc:
            log_event(
                self.logger,
                logging.WARNING,
                "feed_fetch_failed",
                feed_id=feed.id,
                topic=feed.topic,
                error=exc.describe(),
            )
            summary.errors.append(f"feed {feed.id}: {exc.describe()}")
            return summary

        for entry in entries:
            try:
                result = self.process_article(feed, entry)
            except Exception as exc:  # noqa: BLE001
                self.logger.exception(
                    "event=article_unhandled_error feed_id=%s link=%s", feed.id, entry.link
                )
                result = ArticleResult(OUTCOME_FAILED, None, None, str(exc))
            summary.record(result)
            if result.error and result.outcome != OUTCOME_DUPLICATE:
                summary.errors.append(result.error)

        update_last_processed_at(self.conn, feed.id)
        log_event(
            self.logger,
            logging.INFO,
            "feed_processed",
            feed_id=feed.id,
            topic=feed.topic,
            entries=len(entries),
            created=summary.created,
            duplicates=summary.duplicates,
            retry_scheduled=summary.retry_scheduled,
            failed=summary.failed,
        )
        return summary

    def process_ready_retries(self, limit: int = 50) -> FeedRunSummary:
        summary = FeedRunSummary()
        for record in find_ready_for_retry(self.conn, limit, max_retries=self.max_retries):
            try:
                result = self._run(_Candidate.from_record(record), record)
            except Exception as exc:  # noqa: BLE001
                self.logger.exception("event=retry_unhandled_error article_id=%s", record.id)
                result = ArticleResult(OUTCOME_FAILED, record.id, record.final_url, str(exc))
            summary.record(result)
            if result.error and result.outcome != OUTCOME_DUPLICATE:
                summary.errors.append(result.error)
        if summary.processed:
            log_event(
                self.logger,
                logging.INFO,
                "retries_processed",
                processed=summary.processed,
                created=summary.created,
                retry_scheduled=summary.retry_scheduled,
                failed=summary.failed,
            )
        return summary

    def retry_article(self, article_id: int) -> ArticleResult | None:
        record = get_article(self.conn, article_id)
        if record is None:
            return None
        update_article(self.conn, article_id, {"retry_count": 0, "next_retry_at": None})
        record = get_article(self.conn, article_id)
        log_event(self.logger, logging.INFO, "manual_retry", article_id=article_id)
        try:
            return self._run(_Candidate.from_record(record), record)
        except Exception as exc:  # noqa: BLE001
            self.logger.exception("event=retry_unhandled_error article_id=%s", article_id)
            return ArticleResult(OUTCOME_FAILED, article_id, record.final_url, str(exc))

    # Per-article pipeline

    def process_article(self, feed: FeedSource, entry: FeedEntry) -> ArticleResult:
        existing = find_by_google_news_url(self.conn, entry.link)
        if existing is not None:
            # Failed records come back through process_ready_retries.
            return ArticleResult(OUTCOME_DUPLICATE, existing.id, existing.final_url)
        return self._run(_Candidate.from_entry(feed, entry), None)

    def attempt(self, google_news_url: str, existing: ArticleRecord | None = None) -> AttemptOutcome:
        """Decode, dedup, guard and extract one link without writing anything."""
        final_url = existing.final_url if existing else None
        try:
            if not final_url:
                final_url = self.decoder.resolve(google_news_url)

            owner = find_by_final_url(self.conn, final_url)
            if owner is not None and (existing is None or owner.id != existing.id):
                return AttemptOutcome(ok=False, final_url=final_url, duplicate_of=owner.id)

            self.guard.validate(final_url)
            metadata = self.extractor.fetch(final_url)
        except PipelineError as exc:
            return AttemptOutcome(ok=False, final_url=final_url, error=exc)
        except sqlite3.Error:
            raise
        except Exception as exc:  # noqa: BLE001
            self.logger.exception(
                "event=attempt_unexpected_error link=%s final_url=%s", google_news_url, final_url
            )
            error = PipelineError(
                f"unexpected {exc.__class__.__name__}: {exc}",
                kind=ErrorKind.INVALID_RESPONSE,
                retryable=True,
            )
            return AttemptOutcome(ok=False, final_url=final_url, error=error)
        return AttemptOutcome(ok=True, final_url=final_url, metadata=metadata)

    def _run(self, candidate: _Candidate, existing: ArticleRecord | None) -> ArticleResult:
        outcome = self.attempt(candidate.google_news_url, existing)
        if outcome.duplicate_of is not None:
            return self._record_duplicate(candidate, existing, outcome)
        if not outcome.ok:
            return self._record_failure(candidate, existing, outcome.final_url, outcome.error)

        final_url = outcome.final_url
        metadata = outcome.metadata
        fields = candidate.fields()
        fields.update(
            {
                "final_url": final_url,
                "metadata": metadata,
                "status": STATUS_SUCCESS,
                "next_retry_at": None,
                "last_error": None,
                "processed_at": utc_now_iso(),
            }
        )
        try:
            if existing is None:
                article_id = create_article(self.conn, fields)
            else:
                update_article(self.conn, existing.id, fields)
                article_id = existing.id
        except DuplicateArticleError:
            log_event(
                self.logger,
                logging.INFO,
                "article_duplicate_on_insert",
                final_url=final_url,
                topic=candidate.topic,
            )
            if existing is not None:
                self._close_as_duplicate(existing.id, final_url)
            return ArticleResult(OUTCOME_DUPLICATE, existing.id if existing else None, final_url)

        log_event(
            self.logger,
            logging.INFO,
            "article_processed",
            article_id=article_id,
            feed_id=candidate.feed_id,
            final_url=final_url,
            words=metadata.word_count,
        )
        return ArticleResult(OUTCOME_CREATED, article_id, final_url)

    def _record_duplicate(
        self, candidate: _Candidate, existing: ArticleRecord | None, outcome: AttemptOutcome
    ) -> ArticleResult:
        log_event(
            self.logger,
            logging.DEBUG,
            "article_duplicate",
            final_url=outcome.final_url,
            owner_id=outcome.duplicate_of,
            topic=candidate.topic,
        )
        if existing is not None:
            self._close_as_duplicate(existing.id, outcome.final_url or "")
        return ArticleResult(
            OUTCOME_DUPLICATE, existing.id if existing else outcome.duplicate_of, outcome.final_url
        )

    def _close_as_duplicate(self, article_id: int, final_url: str) -> None:
        update_article(
            self.conn,
            article_id,
            {
                "status": STATUS_FAILED,
                "next_retry_at": None,
                "last_error": f"duplicate: {final_url} already stored",
            },
        )

    def _record_failure(
        self,
        candidate: _Candidate,
        existing: ArticleRecord | None,
        final_url: str | None,
        exc: PipelineError,
    ) -> ArticleResult:
        retry_count = (existing.retry_count if existing else 0) + 1
        scheduled = exc.retryable and retry_count < self.max_retries
        next_retry_at = None
        if scheduled:
            delay = max(self.compute_retry_delay(retry_count), exc.retry_after or 0)
            next_retry_at = utc_now_iso_offset(seconds=delay)
        error = exc.describe()
        fields = candidate.fields()
        fields.update(
            {
                "final_url": final_url,
                "status": STATUS_FAILED,
                "retry_count": retry_count,
                "next_retry_at": next_retry_at,
                "last_error": error,
            }
        )
        try:
            if existing is None:
                article_id = create_article(self.conn, fields)
            else:
                update_article(self.conn, existing.id, fields)
                article_id = existing.id
        except DuplicateArticleError:
            if existing is not None:
                self._close_as_duplicate(existing.id, final_url or "")
            return ArticleResult(OUTCOME_DUPLICATE, existing.id if existing else None, final_url)

        log_event(
            self.logger,
            logging.WARNING,
            "article_failed",
            article_id=article_id,
            feed_id=candidate.feed_id,
            kind=exc.kind.value,
            retryable=exc.retryable,
            retry_count=retry_count,
            next_retry_at=next_retry_at,
            error=str(exc),
        )
        outcome = OUTCOME_RETRY_SCHEDULED if scheduled else OUTCOME_FAILED
        return ArticleResult(outcome, article_id, final_url, error)

    # Backoff and manual-run gate

    def compute_retry_delay(self, attempt: int) -> float:
        """Seconds until the next attempt: base * 2^(attempt-1) plus [0, jitter)."""
        exponent = max(attempt, 1) - 1
        return self.base_backoff_seconds * (2**exponent) + self._rng.random() * self.max_jitter_seconds

    def can_process_now(self, feed_id: int) -> bool:
        return self.cooldown.can_proceed(feed_id)

    def set_last_process_time(self, feed_id: int, timestamp: float | None = None) -> None:
        self.cooldown.mark(feed_id, timestamp)


def build_orchestrator(
    config: Config,
    conn: Any,
    *,
    cooldown: CooldownGate | None = None,
    opener: Opener | None = None,
    guard: SsrfGuard | None = None,
    logger: logging.Logger | None = None,
) -> IngestionOrchestrator:
    http = config.http
    guard = guard or SsrfGuard()
    decoder = UrlDecoder(
        timeout_seconds=http.decoder_timeout_seconds,
        user_agent=http.user_agent,
        opener=opener,
    )
    extractor = ArticleExtractor(
        guard,
        user_agent=http.user_agent,
        connect_timeout_seconds=http.connect_timeout_seconds,
        total_timeout_seconds=http.total_timeout_seconds,
        max_redirects=http.max_redirects,
        max_bytes=http.max_bytes,
        opener=opener,
    )
    feed_reader = FeedReader(
        guard,
        user_agent=http.user_agent,
        timeout_seconds=http.total_timeout_seconds,
        max_redirects=http.max_redirects,
        max_bytes=http.max_bytes,
        opener=opener,
    )
    processing = config.processing
    return IngestionOrchestrator(
        conn,
        decoder,
        guard,
        extractor,
        feed_reader,
        cooldown=cooldown or CooldownGate(processing.cooldown_seconds),
        max_retries=processing.max_retries,
        base_backoff_seconds=processing.base_backoff_seconds,
        max_jitter_seconds=processing.max_jitter_seconds,
        logger=logger,
    )
