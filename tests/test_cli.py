import xml.etree.ElementTree as ET

import yaml

from unfurl.cli import main
from unfurl.db import connect_db
from unfurl.storage import create_article, find_api_key, list_feeds


def _config(tmp_path) -> str:
    db_path = tmp_path / "data" / "unfurl.sqlite3"
    path = tmp_path / "config.yml"
    path.write_text(
        yaml.safe_dump({"paths": {"data_dir": str(db_path.parent), "state_db": str(db_path)}}),
        encoding="utf-8",
    )
    return str(path)


def test_db_migrate_creates_database(tmp_path):
    cfg = _config(tmp_path)
    assert main(["--config", cfg, "db", "migrate"]) == 0
    assert (tmp_path / "data" / "unfurl.sqlite3").exists()


def test_feeds_add_and_list(tmp_path):
    cfg = _config(tmp_path)
    assert main(["--config", cfg, "feeds", "list"]) == 1
    assert (
        main(
            [
                "--config",
                cfg,
                "feeds",
                "add",
                "--topic",
                "Science",
                "--url",
                "https://news.google.com/rss/search?q=science",
                "--result-limit",
                "5",
                "--disabled",
            ]
        )
        == 0
    )
    assert main(["--config", cfg, "feeds", "list"]) == 0

    feeds = list_feeds(connect_db(str(tmp_path / "data" / "unfurl.sqlite3")))
    assert len(feeds) == 1
    assert feeds[0].result_limit == 5
    assert feeds[0].enabled is False


def test_keys_create_prints_key(tmp_path, capsys):
    cfg = _config(tmp_path)
    assert main(["--config", cfg, "keys", "create", "cron"]) == 0
    key_value = capsys.readouterr().out.strip().splitlines()[-1]
    api_key = find_api_key(connect_db(str(tmp_path / "data" / "unfurl.sqlite3")), key_value)
    assert api_key is not None
    assert api_key.key_name == "cron"


def test_publish_writes_rss_file(tmp_path):
    cfg = _config(tmp_path)
    conn = connect_db(str(tmp_path / "data" / "unfurl.sqlite3"))
    main(["--config", cfg, "feeds", "add", "--topic", "Science", "--url", "https://news.google.com/rss/a"])
    create_article(
        conn,
        {
            "feed_id": list_feeds(conn)[0].id,
            "topic": "Science",
            "google_news_url": "https://news.google.com/rss/articles/T1",
            "rss_title": "Moon landing",
            "final_url": "https://pub.example.com/moon",
            "status": "success",
        },
    )
    out = tmp_path / "feed.xml"

    assert main(["--config", cfg, "publish", "--topic", "Science", "--out", str(out)]) == 0

    channel = ET.parse(str(out)).getroot().find("channel")
    assert channel.findtext("title") == "Unfurl - Science"
    assert [item.findtext("link") for item in channel.findall("item")] == ["https://pub.example.com/moon"]


def test_invalid_config_fails(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(yaml.safe_dump({"api": {"rate_limit": "lots"}}), encoding="utf-8")
    assert main(["--config", str(path), "db", "migrate"]) == 1


def test_retry_unknown_article(tmp_path):
    assert main(["--config", _config(tmp_path), "retry", "42"]) == 1
