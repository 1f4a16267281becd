from __future__ import annotations

import pytest

_ENV_VARS = (
    "UNFURL_CONFIG_PATH",
    "UNFURL_DATA_DIR",
    "UNFURL_LOG_FILE",
    "UNFURL_LOG_LEVELS",
)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
