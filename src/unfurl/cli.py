from __future__ import annotations

import argparse
import functools
import logging
import sqlite3
import sys

from .config import Config, ConfigError, load_config
from .db import connect_db
from .models import ARTICLE_STATUSES, FeedRunSummary
from .orchestrator import build_orchestrator
from .publisher import FeedFilters, FeedPublisher
from .storage import create_api_key, get_feed, list_feeds, upsert_feed
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("unfurl")


def _load(args: argparse.Namespace, logger: logging.Logger) -> Config | None:
    try:
        return load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None


def _log_summary(logger: logging.Logger, event: str, summary: FeedRunSummary) -> None:
    log_event(
        logger,
        logging.INFO,
        event,
        feeds_processed=summary.feeds_processed,
        processed=summary.processed,
        created=summary.created,
        duplicates=summary.duplicates,
        retry_scheduled=summary.retry_scheduled,
        failed=summary.failed,
    )


def _cmd_process(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect_db(config.paths.state_db)
    orchestrator = build_orchestrator(config, conn)
    if args.feed_id is None:
        summary = orchestrator.process_enabled_feeds()
    else:
        feed = get_feed(conn, args.feed_id)
        if feed is None:
            log_event(logger, logging.ERROR, "feed_not_found", feed_id=args.feed_id)
            return 1
        summary = orchestrator.process_feed(feed)
    _log_summary(logger, "process_complete", summary)
    return 0


def _cmd_retries(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect_db(config.paths.state_db)
    limit = args.limit or config.processing.retry_batch_size
    summary = build_orchestrator(config, conn).process_ready_retries(limit)
    _log_summary(logger, "retries_complete", summary)
    return 0


def _cmd_retry(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect_db(config.paths.state_db)
    result = build_orchestrator(config, conn).retry_article(args.article_id)
    if result is None:
        log_event(logger, logging.ERROR, "article_not_found", article_id=args.article_id)
        return 1
    log_event(
        logger,
        logging.INFO,
        "retry_complete",
        article_id=args.article_id,
        outcome=result.outcome,
        final_url=result.final_url,
        error=result.error,
    )
    return 0


def _cmd_feeds_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect_db(config.paths.state_db)
    feed_id = upsert_feed(
        conn,
        topic=args.topic,
        url=args.url,
        result_limit=args.result_limit,
        enabled=args.enabled,
    )
    log_event(logger, logging.INFO, "feed_added", feed_id=feed_id, topic=args.topic)
    return 0


def _cmd_feeds_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect_db(config.paths.state_db)
    feeds = list_feeds(conn)
    if not feeds:
        log_event(
            logger,
            logging.WARNING,
            "no_feeds",
            hint="Add one with `unfurl feeds add --topic ... --url ...`",
        )
        return 1
    for feed in feeds:
        log_event(
            logger,
            logging.INFO,
            "feed",
            feed_id=feed.id,
            topic=feed.topic,
            enabled=feed.enabled,
            result_limit=feed.result_limit,
            last_processed_at=feed.last_processed_at,
        )
    log_event(logger, logging.INFO, "feeds_listed", count=len(feeds))
    return 0


def _cmd_keys_create(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect_db(config.paths.state_db)
    try:
        api_key = create_api_key(conn, args.name, enabled=not args.disabled)
    except (ValueError, sqlite3.IntegrityError) as exc:
        log_event(logger, logging.ERROR, "api_key_create_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "api_key_created", api_key_id=api_key.id, name=api_key.key_name)
    print(api_key.key_value)
    return 0


def _cmd_publish(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    publisher = FeedPublisher(
        functools.partial(connect_db, config.paths.state_db),
        site_name=config.app.site_name,
        base_url=config.app.base_url,
        version=config.app.version,
        ttl_seconds=0,
    )
    filters = FeedFilters.normalized(
        topic=args.topic,
        feed_id=args.feed_id,
        status=args.status,
        limit=args.limit,
        offset=args.offset,
        default_limit=config.publishing.default_limit,
        max_limit=config.publishing.max_limit,
    )
    document = publisher.generate(filters)
    if args.out:
        try:
            with open(args.out, "w", encoding="utf-8") as handle:
                handle.write(document)
        except OSError as exc:
            log_event(logger, logging.ERROR, "publish_write_error", error=str(exc))
            return 1
        log_event(logger, logging.INFO, "feed_published", path=args.out)
    else:
        sys.stdout.write(document + "\n")
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    connect_db(config.paths.state_db).close()
    log_event(logger, logging.INFO, "db_migrated", path=config.paths.state_db)
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    log_event(logger, logging.INFO, "api_starting", host=args.host, port=args.port)
    uvicorn.run("unfurl.api:app", host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="unfurl", description="Unfurl CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to UNFURL_CONFIG_PATH or built-in defaults)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    process_parser = subparsers.add_parser("process", help="Process enabled feeds now")
    process_parser.add_argument("--feed-id", type=int, default=None, help="Process a single feed")
    process_parser.set_defaults(func=_cmd_process)

    retries_parser = subparsers.add_parser("retries", help="Retry failed articles that are due")
    retries_parser.add_argument("--limit", type=int, default=None, help="Maximum articles to retry")
    retries_parser.set_defaults(func=_cmd_retries)

    retry_parser = subparsers.add_parser("retry", help="Retry one article now")
    retry_parser.add_argument("article_id", type=int, help="Article id")
    retry_parser.set_defaults(func=_cmd_retry)

    feeds_parser = subparsers.add_parser("feeds", help="Manage feeds")
    feeds_subparsers = feeds_parser.add_subparsers(dest="feeds_command", required=True)

    feeds_add = feeds_subparsers.add_parser("add", help="Add or update a feed")
    feeds_add.add_argument("--topic", required=True, help="Topic name (unique)")
    feeds_add.add_argument("--url", required=True, help="Aggregator RSS URL")
    feeds_add.add_argument("--result-limit", type=int, default=10, help="Entries per run")
    feeds_add.add_argument(
        "--disabled",
        dest="enabled",
        action="store_false",
        default=True,
        help="Add the feed disabled",
    )
    feeds_add.set_defaults(func=_cmd_feeds_add)

    feeds_list = feeds_subparsers.add_parser("list", help="List feeds")
    feeds_list.set_defaults(func=_cmd_feeds_list)

    keys_parser = subparsers.add_parser("keys", help="Manage API keys")
    keys_subparsers = keys_parser.add_subparsers(dest="keys_command", required=True)

    keys_create = keys_subparsers.add_parser("create", help="Create an API key and print it")
    keys_create.add_argument("name", help="Key name")
    keys_create.add_argument("--disabled", action="store_true", help="Create the key disabled")
    keys_create.set_defaults(func=_cmd_keys_create)

    publish_parser = subparsers.add_parser("publish", help="Render the RSS feed")
    publish_parser.add_argument("--topic", default=None)
    publish_parser.add_argument("--feed-id", type=int, default=None)
    publish_parser.add_argument("--status", choices=ARTICLE_STATUSES, default=None)
    publish_parser.add_argument("--limit", type=int, default=None)
    publish_parser.add_argument("--offset", type=int, default=0)
    publish_parser.add_argument("--out", default=None, help="Write to a file instead of stdout")
    publish_parser.set_defaults(func=_cmd_publish)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)

    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    sys.exit(main())
