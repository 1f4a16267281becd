from __future__ import annotations

import json
import secrets
import sqlite3
from typing import Any

from .errors import DuplicateArticleError
from .models import (
    STATUS_FAILED,
    ApiKey,
    ArticleMetadata,
    ArticleRecord,
    FeedSource,
)
from .utils import utc_now_iso

_FEED_COLUMNS = "id, topic, url, result_limit, enabled, last_processed_at"

_ARTICLE_COLUMNS = (
    "id",
    "feed_id",
    "topic",
    "google_news_url",
    "rss_title",
    "rss_description",
    "rss_source",
    "pub_date",
    "final_url",
    "status",
    "retry_count",
    "next_retry_at",
    "last_error",
    "page_title",
    "og_title",
    "og_description",
    "og_image",
    "og_url",
    "og_site_name",
    "twitter_image",
    "author",
    "published_time",
    "section",
    "article_content",
    "word_count",
    "categories_json",
    "processed_at",
    "created_at",
    "updated_at",
)

_ARTICLE_WRITABLE = set(_ARTICLE_COLUMNS) - {"id", "created_at"}

_METADATA_COLUMNS = (
    "page_title",
    "og_title",
    "og_description",
    "og_image",
    "og_url",
    "og_site_name",
    "twitter_image",
    "author",
    "published_time",
    "section",
    "article_content",
    "word_count",
)


# Feeds


def upsert_feed(
    conn: Any,
    *,
    topic: str,
    url: str,
    result_limit: int = 10,
    enabled: bool = True,
) -> int:
    topic = topic.strip()
    url = url.strip()
    if not topic:
        raise ValueError("topic is required")
    if not url:
        raise ValueError("url is required")
    if result_limit < 1:
        raise ValueError("result_limit must be positive")
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO feeds (topic, url, result_limit, enabled, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(topic) DO UPDATE SET
            url=excluded.url,
            result_limit=excluded.result_limit,
            enabled=excluded.enabled,
            updated_at=excluded.updated_at
        """,
        (topic, url, result_limit, 1 if enabled else 0, now, now),
    )
    conn.commit()
    row = conn.execute("SELECT id FROM feeds WHERE topic = ?", (topic,)).fetchone()
    return int(row[0])


def get_feed(conn: Any, feed_id: int) -> FeedSource | None:
    row = conn.execute(
        f"SELECT {_FEED_COLUMNS} FROM feeds WHERE id = ?", (feed_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_feed(row)


def list_feeds(conn: Any, enabled_only: bool = False) -> list[FeedSource]:
    if enabled_only:
        cursor = conn.execute(
            f"SELECT {_FEED_COLUMNS} FROM feeds WHERE enabled = 1 ORDER BY id"
        )
    else:
        cursor = conn.execute(f"SELECT {_FEED_COLUMNS} FROM feeds ORDER BY id")
    return [_row_to_feed(row) for row in cursor.fetchall()]


def find_enabled_feeds(conn: Any) -> list[FeedSource]:
    return list_feeds(conn, enabled_only=True)


def update_last_processed_at(conn: Any, feed_id: int, when: str | None = None) -> None:
    now = when or utc_now_iso()
    conn.execute(
        "UPDATE feeds SET last_processed_at = ?, updated_at = ? WHERE id = ?",
        (now, now, feed_id),
    )
    conn.commit()


# Articles


def find_by_final_url(conn: Any, final_url: str) -> ArticleRecord | None:
    row = conn.execute(
        f"SELECT {', '.join(_ARTICLE_COLUMNS)} FROM articles WHERE final_url = ?",
        (final_url,),
    ).fetchone()
    if not row:
        return None
    return _row_to_article(row)


def find_by_google_news_url(conn: Any, google_news_url: str) -> ArticleRecord | None:
    row = conn.execute(
        f"SELECT {', '.join(_ARTICLE_COLUMNS)} FROM articles WHERE google_news_url = ? ORDER BY id LIMIT 1",
        (google_news_url,),
    ).fetchone()
    if not row:
        return None
    return _row_to_article(row)


def get_article(conn: Any, article_id: int) -> ArticleRecord | None:
    row = conn.execute(
        f"SELECT {', '.join(_ARTICLE_COLUMNS)} FROM articles WHERE id = ?",
        (article_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_article(row)


def create_article(conn: Any, data: dict[str, Any]) -> int:
    """Insert an article row and return its id.

    Raises DuplicateArticleError when another writer already stored the same
    final_url.
    """
    data = dict(data)
    created_at = data.pop("created_at", None)
    fields = _article_fields(data)
    now = utc_now_iso()
    fields.setdefault("status", "pending")
    fields.setdefault("retry_count", 0)
    fields.setdefault("updated_at", now)
    fields["created_at"] = created_at or now
    columns = list(fields.keys())
    placeholders = ", ".join("?" for _ in columns)
    try:
        cursor = conn.execute(
            f"INSERT INTO articles ({', '.join(columns)}) VALUES ({placeholders})",
            tuple(fields[column] for column in columns),
        )
        conn.commit()
    except sqlite3.IntegrityError as exc:
        conn.rollback()
        final_url = fields.get("final_url")
        if final_url and "final_url" in str(exc):
            raise DuplicateArticleError(final_url) from exc
        raise
    return int(cursor.lastrowid)


def update_article(conn: Any, article_id: int, data: dict[str, Any]) -> bool:
    fields = _article_fields(data)
    if not fields:
        return False
    fields["updated_at"] = utc_now_iso()
    assignments = ", ".join(f"{column} = ?" for column in fields)
    try:
        cursor = conn.execute(
            f"UPDATE articles SET {assignments} WHERE id = ?",
            (*fields.values(), article_id),
        )
        conn.commit()
    except sqlite3.IntegrityError as exc:
        conn.rollback()
        final_url = fields.get("final_url")
        if final_url and "final_url" in str(exc):
            raise DuplicateArticleError(final_url) from exc
        raise
    return cursor.rowcount > 0


def find_ready_for_retry(
    conn: Any, limit: int, *, max_retries: int = 3, now: str | None = None
) -> list[ArticleRecord]:
    cursor = conn.execute(
        f"""
        SELECT {', '.join(_ARTICLE_COLUMNS)}
        FROM articles
        WHERE status = ?
          AND retry_count < ?
          AND next_retry_at IS NOT NULL
          AND next_retry_at <= ?
        ORDER BY next_retry_at ASC, id ASC
        LIMIT ?
        """,
        (STATUS_FAILED, max_retries, now or utc_now_iso(), limit),
    )
    return [_row_to_article(row) for row in cursor.fetchall()]


def list_articles(
    conn: Any,
    *,
    topic: str | None = None,
    feed_id: int | None = None,
    status: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[ArticleRecord]:
    where: list[str] = []
    params: list[Any] = []
    if topic:
        where.append("topic = ?")
        params.append(topic)
    if feed_id is not None:
        where.append("feed_id = ?")
        params.append(feed_id)
    if status:
        where.append("status = ?")
        params.append(status)
    clause = f"WHERE {' AND '.join(where)}" if where else ""
    cursor = conn.execute(
        f"""
        SELECT {', '.join(_ARTICLE_COLUMNS)}
        FROM articles
        {clause}
        ORDER BY created_at DESC, id DESC
        LIMIT ? OFFSET ?
        """,
        (*params, limit, offset),
    )
    return [_row_to_article(row) for row in cursor.fetchall()]


def metadata_fields(metadata: ArticleMetadata) -> dict[str, Any]:
    fields = {column: getattr(metadata, column) for column in _METADATA_COLUMNS}
    fields["categories_json"] = json.dumps(metadata.categories) if metadata.categories else None
    return fields


# API keys


def create_api_key(conn: Any, key_name: str, key_value: str | None = None, enabled: bool = True) -> ApiKey:
    key_name = key_name.strip()
    if not key_name:
        raise ValueError("key_name is required")
    key_value = key_value or secrets.token_hex(32)
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT INTO api_keys (key_name, key_value, enabled, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (key_name, key_value, 1 if enabled else 0, now, now),
    )
    conn.commit()
    return ApiKey(
        id=int(cursor.lastrowid),
        key_name=key_name,
        key_value=key_value,
        enabled=enabled,
        last_used_at=None,
    )


def find_api_key(conn: Any, key_value: str) -> ApiKey | None:
    row = conn.execute(
        """
        SELECT id, key_name, key_value, enabled, last_used_at
        FROM api_keys
        WHERE key_value = ?
        """,
        (key_value,),
    ).fetchone()
    if not row:
        return None
    return ApiKey(
        id=int(row[0]),
        key_name=row[1],
        key_value=row[2],
        enabled=bool(row[3]),
        last_used_at=row[4],
    )


def update_api_key_last_used(conn: Any, api_key_id: int) -> None:
    now = utc_now_iso()
    conn.execute(
        "UPDATE api_keys SET last_used_at = ?, updated_at = ? WHERE id = ?",
        (now, now, api_key_id),
    )
    conn.commit()


def _article_fields(data: dict[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key, value in data.items():
        if key == "metadata":
            fields.update(metadata_fields(value))
            continue
        if key == "categories":
            fields["categories_json"] = json.dumps(list(value)) if value else None
            continue
        if key not in _ARTICLE_WRITABLE:
            raise ValueError(f"unknown article field: {key}")
        fields[key] = value
    return fields


def _row_to_feed(row: tuple) -> FeedSource:
    return FeedSource(
        id=int(row[0]),
        topic=row[1],
        url=row[2],
        result_limit=int(row[3]),
        enabled=bool(row[4]),
        last_processed_at=row[5],
    )


def _row_to_article(row: tuple) -> ArticleRecord:
    data = dict(zip(_ARTICLE_COLUMNS, row))
    categories: list[str] = []
    if data["categories_json"]:
        try:
            parsed = json.loads(data["categories_json"])
        except json.JSONDecodeError:
            parsed = []
        if isinstance(parsed, list):
            categories = [str(item) for item in parsed if item]
    metadata = ArticleMetadata(
        page_title=data["page_title"],
        og_title=data["og_title"],
        og_description=data["og_description"],
        og_image=data["og_image"],
        og_url=data["og_url"],
        og_site_name=data["og_site_name"],
        twitter_image=data["twitter_image"],
        author=data["author"],
        published_time=data["published_time"],
        section=data["section"],
        article_content=data["article_content"] or "",
        word_count=int(data["word_count"] or 0),
        categories=categories,
    )
    return ArticleRecord(
        id=int(data["id"]),
        feed_id=int(data["feed_id"]),
        topic=data["topic"],
        google_news_url=data["google_news_url"],
        rss_title=data["rss_title"],
        rss_description=data["rss_description"],
        rss_source=data["rss_source"],
        pub_date=data["pub_date"],
        final_url=data["final_url"],
        status=data["status"],
        retry_count=int(data["retry_count"] or 0),
        next_retry_at=data["next_retry_at"],
        last_error=data["last_error"],
        metadata=metadata,
        processed_at=data["processed_at"],
        created_at=data["created_at"],
        updated_at=data["updated_at"],
    )
