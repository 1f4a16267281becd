from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    site_name: str
    base_url: str
    version: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str


@dataclass(frozen=True)
class HttpConfig:
    user_agent: str
    connect_timeout_seconds: float
    total_timeout_seconds: float
    decoder_timeout_seconds: float
    max_redirects: int
    max_bytes: int


@dataclass(frozen=True)
class ProcessingConfig:
    max_retries: int
    base_backoff_seconds: int
    max_jitter_seconds: int
    cooldown_seconds: int
    retry_batch_size: int


@dataclass(frozen=True)
class ApiConfig:
    rate_limit: int
    rate_window_seconds: int


@dataclass(frozen=True)
class PublishingConfig:
    cache_ttl_seconds: int
    default_limit: int
    max_limit: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    http: HttpConfig
    processing: ProcessingConfig
    api: ApiConfig
    publishing: PublishingConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "Unfurl",
        "site_name": "Unfurl",
        "base_url": "https://example.com/unfurl/",
        "version": "1.0",
    },
    "paths": {
        "data_dir": "/data",
        "state_db": "/data/unfurl.sqlite3",
    },
    "http": {
        "user_agent": "Mozilla/5.0 (compatible; Unfurl/1.0)",
        "connect_timeout_seconds": 5.0,
        "total_timeout_seconds": 30.0,
        "decoder_timeout_seconds": 10.0,
        "max_redirects": 5,
        "max_bytes": 5_000_000,
    },
    "processing": {
        "max_retries": 3,
        "base_backoff_seconds": 60,
        "max_jitter_seconds": 10,
        "cooldown_seconds": 5,
        "retry_batch_size": 50,
    },
    "api": {
        "rate_limit": 60,
        "rate_window_seconds": 60,
    },
    "publishing": {
        "cache_ttl_seconds": 300,
        "default_limit": 20,
        "max_limit": 100,
    },
}

_LIMITS = {
    "http.connect_timeout_seconds": (0.1, 5.0),
    "http.total_timeout_seconds": (0.1, 30.0),
    "http.decoder_timeout_seconds": (0.1, 10.0),
    "http.max_redirects": (0, 5),
}


def get_data_dir() -> str:
    return os.environ.get("UNFURL_DATA_DIR", DEFAULT_CONFIG["paths"]["data_dir"])


def get_state_db_path() -> str:
    return os.path.join(get_data_dir(), "unfurl.sqlite3")


def load_config(path: str | None = None) -> Config:
    path = path or os.environ.get("UNFURL_CONFIG_PATH")
    raw: dict[str, Any] = {}
    if path:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                raw = yaml.safe_load(handle) or {}
        except FileNotFoundError as exc:
            raise ConfigError(f"config file not found: {path}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"config file is not valid YAML: {path}") from exc
    if not isinstance(raw, dict):
        raise ConfigError("config must be a mapping")
    defaults = _deep_copy(DEFAULT_CONFIG)
    if "UNFURL_DATA_DIR" in os.environ:
        defaults["paths"]["data_dir"] = get_data_dir()
        defaults["paths"]["state_db"] = get_state_db_path()
    cfg = _merge(defaults, raw)
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if errors:
        return errors
    for dotted, (low, high) in _LIMITS.items():
        section, key = dotted.split(".", 1)
        value = cfg[section][key]
        if value < low or value > high:
            errors.append(f"config.{dotted} must be between {low} and {high}")
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg["app"]
    paths_cfg = cfg["paths"]
    http_cfg = cfg["http"]
    processing_cfg = cfg["processing"]
    api_cfg = cfg["api"]
    publishing_cfg = cfg["publishing"]

    return Config(
        app=AppConfig(
            name=str(app_cfg["name"]),
            site_name=str(app_cfg["site_name"]),
            base_url=str(app_cfg["base_url"]),
            version=str(app_cfg["version"]),
        ),
        paths=PathsConfig(
            data_dir=str(paths_cfg["data_dir"]),
            state_db=str(paths_cfg["state_db"]),
        ),
        http=HttpConfig(
            user_agent=str(http_cfg["user_agent"]),
            connect_timeout_seconds=float(http_cfg["connect_timeout_seconds"]),
            total_timeout_seconds=float(http_cfg["total_timeout_seconds"]),
            decoder_timeout_seconds=float(http_cfg["decoder_timeout_seconds"]),
            max_redirects=int(http_cfg["max_redirects"]),
            max_bytes=int(http_cfg["max_bytes"]),
        ),
        processing=ProcessingConfig(
            max_retries=int(processing_cfg["max_retries"]),
            base_backoff_seconds=int(processing_cfg["base_backoff_seconds"]),
            max_jitter_seconds=int(processing_cfg["max_jitter_seconds"]),
            cooldown_seconds=int(processing_cfg["cooldown_seconds"]),
            retry_batch_size=int(processing_cfg["retry_batch_size"]),
        ),
        api=ApiConfig(
            rate_limit=int(api_cfg["rate_limit"]),
            rate_window_seconds=int(api_cfg["rate_window_seconds"]),
        ),
        publishing=PublishingConfig(
            cache_ttl_seconds=int(publishing_cfg["cache_ttl_seconds"]),
            default_limit=int(publishing_cfg["default_limit"]),
            max_limit=int(publishing_cfg["max_limit"]),
        ),
    )


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
