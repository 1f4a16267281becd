from __future__ import annotations

from dataclasses import dataclass, field

from .errors import PipelineError

STATUS_PENDING = "pending"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
ARTICLE_STATUSES = (STATUS_PENDING, STATUS_SUCCESS, STATUS_FAILED)

OUTCOME_CREATED = "created"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_RETRY_SCHEDULED = "retry_scheduled"
OUTCOME_FAILED = "failed"


@dataclass(frozen=True)
class FeedSource:
    id: int
    topic: str
    url: str
    result_limit: int
    enabled: bool
    last_processed_at: str | None


@dataclass(frozen=True)
class FeedEntry:
    title: str
    link: str
    description: str | None
    pub_date: str | None
    source: str | None


@dataclass(frozen=True)
class ArticleMetadata:
    page_title: str | None = None
    og_title: str | None = None
    og_description: str | None = None
    og_image: str | None = None
    og_url: str | None = None
    og_site_name: str | None = None
    twitter_image: str | None = None
    author: str | None = None
    published_time: str | None = None
    section: str | None = None
    article_content: str = ""
    word_count: int = 0
    categories: list[str] = field(default_factory=list)

    @property
    def title(self) -> str | None:
        return self.og_title or self.page_title


@dataclass(frozen=True)
class ArticleRecord:
    id: int
    feed_id: int
    topic: str
    google_news_url: str
    rss_title: str | None
    rss_description: str | None
    rss_source: str | None
    pub_date: str | None
    final_url: str | None
    status: str
    retry_count: int
    next_retry_at: str | None
    last_error: str | None
    metadata: ArticleMetadata
    processed_at: str | None
    created_at: str
    updated_at: str

    @property
    def display_title(self) -> str:
        return self.metadata.title or self.rss_title or "Untitled"

    @property
    def display_description(self) -> str:
        return self.metadata.og_description or self.rss_description or ""


@dataclass(frozen=True)
class ApiKey:
    id: int
    key_name: str
    key_value: str
    enabled: bool
    last_used_at: str | None


@dataclass(frozen=True)
class AttemptOutcome:
    ok: bool
    final_url: str | None = None
    metadata: ArticleMetadata | None = None
    error: PipelineError | None = None
    duplicate_of: int | None = None


@dataclass(frozen=True)
class ArticleResult:
    outcome: str
    article_id: int | None
    final_url: str | None
    error: str | None = None


@dataclass
class FeedRunSummary:
    feeds_processed: int = 0
    processed: int = 0
    created: int = 0
    duplicates: int = 0
    failed: int = 0
    retry_scheduled: int = 0
    errors: list[str] = field(default_factory=list)

    def record(self, result: ArticleResult) -> None:
        self.processed += 1
        if result.outcome == OUTCOME_CREATED:
            self.created += 1
        elif result.outcome == OUTCOME_DUPLICATE:
            self.duplicates += 1
        elif result.outcome == OUTCOME_RETRY_SCHEDULED:
            self.retry_scheduled += 1
        else:
            self.failed += 1

    def merge(self, other: "FeedRunSummary") -> None:
        self.feeds_processed += other.feeds_processed
        self.processed += other.processed
        self.created += other.created
        self.duplicates += other.duplicates
        self.failed += other.failed
        self.retry_scheduled += other.retry_scheduled
        self.errors.extend(other.errors)

    @property
    def articles_failed(self) -> int:
        return self.failed + self.retry_scheduled
