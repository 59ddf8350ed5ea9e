"""Pytest fixtures and config."""


import pytest

_ENV_VARS = (
    "CODEX_REFRESH_TOKEN",
    "CODEX_MODEL",
    "CODEX_SYSTEM_PROMPT_FILE",
    "MAX_THREAD_HISTORY",
    "SLACK_BOT_TOKEN",
    "SLACK_APP_TOKEN",
    "SLACK_STREAM_UPDATE_MS",
    "DISCORD_STREAM_UPDATE_MS",
    "LOG_LEVEL",
    "CHATBRIDGE_ENV_PREFIX",
    "CHATBRIDGE_CONFIG",
)


@pytest.fixture(autouse=True)
def env_cleanup(monkeypatch):
    """Keep real tokens and overrides from the developer's shell out of tests."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield
