import re
from pathlib import Path

import yaml
from fastapi.testclient import TestClient

from fakes import FakeOpener, aggregator_link, article_html, decode_route, resolver, rss_feed
from unfurl.api import GENERIC_ERROR, app, configure_app
from unfurl.config import load_config
from unfurl.db import connect_db
from unfurl.orchestrator import IngestionOrchestrator
from unfurl.ssrf import SsrfGuard
from unfurl.storage import create_api_key, find_api_key, upsert_feed

FEED_URL = "https://news.google.com/rss/search?q=science"
PAGE_URL = "https://pub.example.com/moon"
TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")


def _write_config(tmp_path: Path, **overrides) -> Path:
    config = {
        "app": {"site_name": "Unfurl Test", "base_url": "https://example.com/"},
        "paths": {
            "data_dir": str(tmp_path / "data"),
            "state_db": str(tmp_path / "data" / "unfurl.sqlite3"),
        },
    }
    config.update(overrides)
    cfg_path = tmp_path / "config.yml"
    cfg_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    return cfg_path


def _client(tmp_path, monkeypatch, routes=None, connect=True, **overrides):
    monkeypatch.setenv("UNFURL_CONFIG_PATH", str(_write_config(tmp_path, **overrides)))
    monkeypatch.delenv("UNFURL_DATA_DIR", raising=False)
    config = load_config()
    opener = FakeOpener(routes or {})
    configure_app(config, opener=opener, guard=SsrfGuard(resolver=resolver()))
    conn = connect_db(config.paths.state_db) if connect else None
    return TestClient(app), conn


def _default_routes():
    routes = {
        FEED_URL: (200, rss_feed([("Moon story", aggregator_link("T1"))])),
        PAGE_URL: (200, article_html("Moon")),
    }
    routes.update(decode_route({"T1": PAGE_URL}))
    return routes


def test_health_ok(tmp_path, monkeypatch):
    client, _ = _client(tmp_path, monkeypatch)
    response = client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert TIMESTAMP_RE.match(payload["timestamp"])


def test_health_reports_unreachable_store(tmp_path, monkeypatch):
    blocked = tmp_path / "not-a-file"
    blocked.mkdir()
    client, _ = _client(
        tmp_path,
        monkeypatch,
        connect=False,
        paths={"data_dir": str(tmp_path), "state_db": str(blocked)},
    )
    response = client.get("/health")
    assert response.status_code == 503
    assert response.json()["status"] == "error"


def test_missing_and_invalid_keys_are_401(tmp_path, monkeypatch):
    client, _ = _client(tmp_path, monkeypatch)

    response = client.post("/api/process")
    assert response.status_code == 401
    payload = response.json()
    assert payload["success"] is False
    assert payload["error"] == "Missing X-API-Key header"
    assert TIMESTAMP_RE.match(payload["timestamp"])

    response = client.post("/api/process", headers={"X-API-Key": "wrong"})
    assert response.status_code == 401
    assert response.json()["error"] == "Invalid API key"


def test_disabled_key_is_403(tmp_path, monkeypatch):
    client, conn = _client(tmp_path, monkeypatch)
    key = create_api_key(conn, "cron", enabled=False)
    response = client.post("/api/process", headers={"X-API-Key": key.key_value})
    assert response.status_code == 403
    assert response.json()["error"] == "API key is disabled"


def test_process_runs_enabled_feeds(tmp_path, monkeypatch):
    client, conn = _client(tmp_path, monkeypatch, routes=_default_routes())
    upsert_feed(conn, topic="Science", url=FEED_URL)
    key = create_api_key(conn, "cron")

    response = client.post("/api/process", headers={"X-API-Key": key.key_value})

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["feeds_processed"] == 1
    assert payload["articles_created"] == 1
    assert payload["articles_failed"] == 0
    assert TIMESTAMP_RE.match(payload["timestamp"])
    assert find_api_key(conn, key.key_value).last_used_at is not None


def test_rate_limit_rejects_sixty_first_request(tmp_path, monkeypatch):
    client, conn = _client(tmp_path, monkeypatch)
    key = create_api_key(conn, "cron")
    other = create_api_key(conn, "other")
    headers = {"X-API-Key": key.key_value}

    for _ in range(60):
        assert client.post("/api/retries", headers=headers).status_code == 200
    response = client.post("/api/retries", headers=headers)

    assert response.status_code == 429
    assert response.json()["error"] == "Rate limit exceeded. Please try again later."
    assert "retry-after" in response.headers
    assert client.post("/api/retries", headers={"X-API-Key": other.key_value}).status_code == 200


def test_internal_errors_are_sanitized(tmp_path, monkeypatch):
    client, conn = _client(tmp_path, monkeypatch)
    key = create_api_key(conn, "cron")

    def _boom(self):
        raise RuntimeError("disk at /srv/secret/path is full")

    monkeypatch.setattr(IngestionOrchestrator, "process_enabled_feeds", _boom)
    response = client.post("/api/process", headers={"X-API-Key": key.key_value})

    assert response.status_code == 500
    assert response.json()["error"] == GENERIC_ERROR
    assert "secret" not in response.text


def test_single_feed_process_and_cooldown(tmp_path, monkeypatch):
    client, conn = _client(tmp_path, monkeypatch, routes=_default_routes())
    feed_id = upsert_feed(conn, topic="Science", url=FEED_URL)
    headers = {"X-API-Key": create_api_key(conn, "cron").key_value}

    assert client.post("/api/feeds/999/process", headers=headers).status_code == 404

    first = client.post(f"/api/feeds/{feed_id}/process", headers=headers)
    assert first.status_code == 200
    assert first.json()["articles_created"] == 1

    second = client.post(f"/api/feeds/{feed_id}/process", headers=headers)
    assert second.status_code == 429
    assert second.json()["success"] is False


def test_retries_endpoint_reports_counts(tmp_path, monkeypatch):
    client, conn = _client(tmp_path, monkeypatch)
    headers = {"X-API-Key": create_api_key(conn, "cron").key_value}
    response = client.post("/api/retries?limit=5", headers=headers)
    assert response.status_code == 200
    assert response.json()["articles_retried"] == 0


def test_feed_xml_with_validators(tmp_path, monkeypatch):
    client, conn = _client(tmp_path, monkeypatch, routes=_default_routes())
    upsert_feed(conn, topic="Science", url=FEED_URL)
    headers = {"X-API-Key": create_api_key(conn, "cron").key_value}
    client.post("/api/process", headers=headers)

    response = client.get("/feed.xml", params={"topic": "Science"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/rss+xml")
    assert "<title>Unfurl Test - Science</title>" in response.text
    assert PAGE_URL in response.text
    etag = response.headers["etag"]
    assert response.headers["last-modified"]

    cached = client.get("/feed.xml", params={"topic": "Science"}, headers={"If-None-Match": etag})
    assert cached.status_code == 304
    assert cached.content == b""

    alias = client.get("/rss", params={"topic": "Science"})
    assert alias.status_code == 200
    assert alias.headers["etag"] == etag


def test_feed_xml_rejects_unknown_status(tmp_path, monkeypatch):
    client, _ = _client(tmp_path, monkeypatch)
    response = client.get("/feed.xml", params={"status": "bogus"})
    assert response.status_code == 400
    assert response.json()["success"] is False
