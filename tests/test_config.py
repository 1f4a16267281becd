import pytest
import yaml

from unfurl.config import DEFAULT_CONFIG, ConfigError, load_config, validate_config


def _write(tmp_path, payload) -> str:
    path = tmp_path / "config.yml"
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")
    return str(path)


def test_defaults_without_file():
    cfg = load_config()
    assert cfg.app.site_name == "Unfurl"
    assert cfg.paths.state_db == "/data/unfurl.sqlite3"
    assert cfg.http.connect_timeout_seconds == 5.0
    assert cfg.http.total_timeout_seconds == 30.0
    assert cfg.http.max_redirects == 5
    assert cfg.processing.max_retries == 3
    assert cfg.api.rate_limit == 60
    assert cfg.publishing.cache_ttl_seconds == 300


def test_data_dir_env_moves_state_db(tmp_path, monkeypatch):
    monkeypatch.setenv("UNFURL_DATA_DIR", str(tmp_path))
    cfg = load_config()
    assert cfg.paths.data_dir == str(tmp_path)
    assert cfg.paths.state_db == str(tmp_path / "unfurl.sqlite3")


def test_yaml_overrides_merge_with_defaults(tmp_path):
    path = _write(tmp_path, {"app": {"site_name": "Daily Digest"}, "api": {"rate_limit": 10}})
    cfg = load_config(path)
    assert cfg.app.site_name == "Daily Digest"
    assert cfg.app.version == "1.0"
    assert cfg.api.rate_limit == 10
    assert cfg.api.rate_window_seconds == 60


def test_config_path_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("UNFURL_CONFIG_PATH", _write(tmp_path, {"processing": {"cooldown_seconds": 9}}))
    assert load_config().processing.cooldown_seconds == 9


def test_rejects_wrong_types_and_unknown_keys(tmp_path):
    path = _write(tmp_path, {"api": {"rate_limit": "many"}, "extra": {}})
    with pytest.raises(ConfigError) as excinfo:
        load_config(path)
    message = str(excinfo.value)
    assert "config.api.rate_limit must be an integer" in message
    assert "unknown config.extra" in message


def test_timeouts_cannot_exceed_ceilings(tmp_path):
    path = _write(tmp_path, {"http": {"total_timeout_seconds": 120, "max_redirects": 9}})
    with pytest.raises(ConfigError) as excinfo:
        load_config(path)
    assert "http.total_timeout_seconds" in str(excinfo.value)
    assert "http.max_redirects" in str(excinfo.value)


def test_missing_file_is_config_error(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.yml"))


def test_default_config_is_valid():
    assert validate_config(DEFAULT_CONFIG) == []
