from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("unfurl.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS feeds (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            topic TEXT NOT NULL UNIQUE,
            url TEXT NOT NULL,
            result_limit INTEGER NOT NULL DEFAULT 10,
            enabled INTEGER NOT NULL DEFAULT 1,
            last_processed_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS articles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            feed_id INTEGER NOT NULL REFERENCES feeds(id),
            topic TEXT NOT NULL,
            google_news_url TEXT NOT NULL,
            rss_title TEXT NULL,
            rss_description TEXT NULL,
            rss_source TEXT NULL,
            pub_date TEXT NULL,
            final_url TEXT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'success', 'failed')),
            page_title TEXT NULL,
            og_title TEXT NULL,
            og_description TEXT NULL,
            og_image TEXT NULL,
            og_url TEXT NULL,
            og_site_name TEXT NULL,
            twitter_image TEXT NULL,
            author TEXT NULL,
            published_time TEXT NULL,
            section TEXT NULL,
            article_content TEXT NULL,
            word_count INTEGER NULL,
            categories_json TEXT NULL,
            retry_count INTEGER NOT NULL DEFAULT 0,
            next_retry_at TEXT NULL,
            last_error TEXT NULL,
            processed_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS api_keys (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            key_name TEXT NOT NULL,
            key_value TEXT NOT NULL UNIQUE,
            enabled INTEGER NOT NULL DEFAULT 1,
            last_used_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _migration_article_indexes(conn: sqlite3.Connection) -> None:
    # NULL final_url rows are failures that never resolved; UNIQUE ignores them.
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_articles_final_url ON articles(final_url)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_articles_feed_id ON articles(feed_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_articles_topic ON articles(topic)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_articles_google_news_url ON articles(google_news_url)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_articles_status_created ON articles(status, created_at)"
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_articles_retry
        ON articles(status, retry_count, next_retry_at)
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_feeds_enabled ON feeds(enabled)")


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_article_indexes", _migration_article_indexes),
    ]
