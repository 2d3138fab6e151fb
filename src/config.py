"""Settings for the webhook relay and the sources they are loaded from.

Two backends feed one schema: ``EnvConfigSource`` reads ``META_*`` and
``OPENCLAW_*`` environment variables, ``JsonFileConfigSource`` reads a
``config.json`` laid out with camelCase keys (``meta.appSecret``,
``meta.instagram.pageAccessToken``, ``openclaw.hookUrl``, ...). Both produce
the same nested mapping, validated into ``Settings``.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

DEFAULT_HOOK_URL = "http://localhost:8080/hooks/agent"
DEFAULT_UPSTREAM_URL = "http://localhost:8080"


class ConfigError(Exception):
    """Raised when settings are missing or invalid at startup."""


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True,
    )


class PlatformCredentials(_CamelModel):
    app_secret: str | None = None
    verify_token: str | None = None
    page_access_token: str | None = None


class MetaSettings(_CamelModel):
    app_secret: str | None = None
    verify_token: str | None = None
    access_token: str | None = None
    business_account_id: str | None = None
    strict_secret_scope: bool = False
    typing_indicator: bool = False
    instagram: PlatformCredentials = Field(default_factory=PlatformCredentials)
    messenger: PlatformCredentials = Field(default_factory=PlatformCredentials)


class AgentSettings(_CamelModel):
    hook_url: str = DEFAULT_HOOK_URL
    # Base URL of the OpenAI-compatible API used in chat mode
    upstream_url: str = DEFAULT_UPSTREAM_URL
    api_key: str | None = None
    mode: str = Field(default="hook", pattern="^(hook|chat)$")
    timeout_seconds: float = 30.0


class ServerSettings(_CamelModel):
    host: str = "0.0.0.0"
    port: int = 8080


class StorageSettings(_CamelModel):
    history_db_path: str | None = None
    history_max_turns: int = Field(default=20, ge=1)
    dedup_enabled: bool = True
    dedup_db_path: str = ":memory:"
    audit_log_path: str | None = None


class Settings(_CamelModel):
    meta: MetaSettings = Field(default_factory=MetaSettings)
    openclaw: AgentSettings = Field(default_factory=AgentSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


class ConfigSource(Protocol):
    """Anything that can produce the raw nested settings mapping."""

    def load(self) -> dict[str, Any]: ...


class JsonFileConfigSource:
    """Reads settings from a JSON file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def load(self) -> dict[str, Any]:
        try:
            data = json.loads(self._path.read_text())
        except FileNotFoundError as exc:
            raise ConfigError(f"Config file not found: {self._path}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Config file is not valid JSON: {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Config file must contain a JSON object: {self._path}")
        return data


# (section, key) -> environment variable; platform keys nest one level deeper
_ENV_KEYS: dict[tuple[str, ...], str] = {
    ("meta", "appSecret"): "META_APP_SECRET",
    ("meta", "verifyToken"): "META_VERIFY_TOKEN",
    ("meta", "accessToken"): "META_ACCESS_TOKEN",
    ("meta", "businessAccountId"): "META_BUSINESS_ACCOUNT_ID",
    ("meta", "strictSecretScope"): "META_STRICT_SECRET_SCOPE",
    ("meta", "typingIndicator"): "META_TYPING_INDICATOR",
    ("meta", "instagram", "appSecret"): "META_INSTAGRAM_APP_SECRET",
    ("meta", "instagram", "verifyToken"): "META_INSTAGRAM_VERIFY_TOKEN",
    ("meta", "instagram", "pageAccessToken"): "META_INSTAGRAM_PAGE_ACCESS_TOKEN",
    ("meta", "messenger", "appSecret"): "META_MESSENGER_APP_SECRET",
    ("meta", "messenger", "verifyToken"): "META_MESSENGER_VERIFY_TOKEN",
    ("meta", "messenger", "pageAccessToken"): "META_MESSENGER_PAGE_ACCESS_TOKEN",
    ("openclaw", "hookUrl"): "OPENCLAW_HOOK_URL",
    ("openclaw", "upstreamUrl"): "OPENCLAW_UPSTREAM_URL",
    ("openclaw", "apiKey"): "OPENCLAW_API_KEY",
    ("openclaw", "mode"): "AGENT_MODE",
    ("openclaw", "timeoutSeconds"): "OPENCLAW_TIMEOUT_SECONDS",
    ("server", "host"): "HOST",
    ("server", "port"): "PORT",
    ("storage", "historyDbPath"): "HISTORY_DB_PATH",
    ("storage", "historyMaxTurns"): "HISTORY_MAX_TURNS",
    ("storage", "dedupEnabled"): "DEDUP_ENABLED",
    ("storage", "dedupDbPath"): "DEDUP_DB_PATH",
    ("storage", "auditLogPath"): "AUDIT_LOG_PATH",
}


class EnvConfigSource:
    """Reads settings from environment variables (empty values are ignored)."""

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = os.environ if environ is None else environ

    def load(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for path, var in _ENV_KEYS.items():
            value = self._environ.get(var, "")
            if not value:
                continue
            node = data
            for key in path[:-1]:
                node = node.setdefault(key, {})
            node[path[-1]] = value
        return data


def load_settings(source: ConfigSource) -> Settings:
    """Validate settings from ``source``.

    Raises ConfigError if the data does not validate or if no signing
    secret or no verify token is configured in any scope.
    """
    try:
        settings = Settings.model_validate(source.load())
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc

    meta = settings.meta
    secrets = [meta.app_secret, meta.instagram.app_secret, meta.messenger.app_secret]
    tokens = [meta.verify_token, meta.instagram.verify_token, meta.messenger.verify_token]
    if not any(secrets):
        raise ConfigError("No Meta app secret configured (META_APP_SECRET or per-platform)")
    if not any(tokens):
        raise ConfigError("No Meta verify token configured (META_VERIFY_TOKEN or per-platform)")
    return settings


def source_from_env() -> ConfigSource:
    """Use the JSON file named by CONFIG_PATH when set, else the environment."""
    config_path = os.environ.get("CONFIG_PATH")
    if config_path:
        logger.info("Loading configuration from %s", config_path)
        return JsonFileConfigSource(config_path)
    return EnvConfigSource()
