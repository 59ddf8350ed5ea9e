"""Load configuration from YAML and environment variables. Secrets come from env only."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chatbridge.core.events import ChannelKind
from chatbridge.models.codex import DEFAULT_ENDPOINT, DEFAULT_SYSTEM_PROMPT
from chatbridge.models.credentials import DEFAULT_CLIENT_ID, DEFAULT_REFRESH_ENDPOINT

# Default config lives next to this module
_DEFAULT_CONFIG_PATH = Path(__file__).parent / "default.yaml"


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _env(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


class CodexSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CODEX_", extra="ignore")
    endpoint: str = DEFAULT_ENDPOINT
    refresh_endpoint: str = DEFAULT_REFRESH_ENDPOINT
    client_id: str = DEFAULT_CLIENT_ID
    refresh_token: str = ""
    model: str = "gpt-5-codex"
    system_prompt: str = ""
    system_prompt_file: Optional[str] = None
    request_timeout: float = 120.0

    def resolve_system_prompt(self) -> str:
        """Prompt file wins over inline prompt; both empty -> built-in default."""
        if self.system_prompt_file:
            path = Path(self.system_prompt_file)
            if path.exists():
                text = path.read_text(encoding="utf-8").strip()
                if text:
                    return text
        return self.system_prompt.strip() or DEFAULT_SYSTEM_PROMPT


class ConversationSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CONVERSATION_", extra="ignore")
    max_history: int = Field(default=20, ge=1)
    slack_stream_update_interval: float = 0.8
    discord_stream_update_interval: float = 1.0


class LoggingSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore")
    level: str = "INFO"
    use_json: bool = True


class SlackSettings(BaseModel):
    bot_token: str
    app_token: str


class DiscordSettings(BaseModel):
    bot_token: str


class SaslSettings(BaseModel):
    enabled: bool = False
    username: Optional[str] = None
    password: Optional[str] = None


class IrcSettings(BaseModel):
    server: str
    port: Optional[int] = None
    tls: bool = False
    nick: str
    username: Optional[str] = None
    realname: str = "chatbridge"
    password: Optional[str] = None
    channels: list[str] = Field(default_factory=list)
    sasl: SaslSettings = Field(default_factory=SaslSettings)
    max_message_length: int = Field(default=380, ge=16, le=450)
    connect_timeout: float = 15.0
    max_nick_retries: Optional[int] = None


class ServiceSettings(BaseModel):
    """One bot instance: a transport plus the model options it answers with."""

    kind: ChannelKind
    name: str
    enabled: bool = True
    model: Optional[str] = None
    web_search: bool = False
    system_prompt: Optional[str] = None
    slack: Optional[SlackSettings] = None
    discord: Optional[DiscordSettings] = None
    irc: Optional[IrcSettings] = None

    @model_validator(mode="after")
    def _check_transport_block(self) -> "ServiceSettings":
        if self.kind == ChannelKind.CLI:
            raise ValueError("cli is not a service kind; use chatbridge-cli")
        if getattr(self, self.kind.value) is None:
            raise ValueError(f"service {self.name!r} of kind {self.kind.value} needs a '{self.kind.value}' block")
        return self


class Config(BaseSettings):
    """Application config: YAML + env. Secrets from env only."""

    model_config = SettingsConfigDict(env_nested_delimiter="__", extra="ignore")

    codex: CodexSettings = Field(default_factory=CodexSettings)
    conversation: ConversationSettings = Field(default_factory=ConversationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    services: list[ServiceSettings] = Field(default_factory=list)

    def enabled_services(self) -> list[ServiceSettings]:
        return [s for s in self.services if s.enabled]

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "Config":
        path = Path(config_path) if config_path else _DEFAULT_CONFIG_PATH
        yaml_data = _load_yaml(path)
        env_prefix = os.getenv("CHATBRIDGE_ENV_PREFIX", "")
        if env_prefix:
            yaml_data = _deep_merge(yaml_data, _load_yaml(Path(f"config/{env_prefix}.yaml")))

        codex = yaml_data.setdefault("codex", {})
        for field, env_name in (
            ("refresh_token", "CODEX_REFRESH_TOKEN"),
            ("model", "CODEX_MODEL"),
            ("system_prompt_file", "CODEX_SYSTEM_PROMPT_FILE"),
        ):
            value = _env(env_name)
            if value:
                codex[field] = value

        conversation = yaml_data.setdefault("conversation", {})
        max_history = _env("MAX_THREAD_HISTORY")
        if max_history:
            conversation["max_history"] = int(max_history)
        # Stream intervals in the environment are milliseconds
        for field, env_name in (
            ("slack_stream_update_interval", "SLACK_STREAM_UPDATE_MS"),
            ("discord_stream_update_interval", "DISCORD_STREAM_UPDATE_MS"),
        ):
            value = _env(env_name)
            if value:
                conversation[field] = float(value) / 1000.0

        level = _env("LOG_LEVEL")
        if level:
            yaml_data.setdefault("logging", {})["level"] = level

        services = yaml_data.get("services") or []
        slack_bot, slack_app = _env("SLACK_BOT_TOKEN"), _env("SLACK_APP_TOKEN")
        if not services and slack_bot and slack_app:
            services = [
                {
                    "kind": "slack",
                    "name": "slack",
                    "slack": {"bot_token": slack_bot, "app_token": slack_app},
                }
            ]
        yaml_data["services"] = services
        return cls(**yaml_data)


def get_config(config_path: str | Path | None = None) -> Config:
    return Config.load(config_path)
