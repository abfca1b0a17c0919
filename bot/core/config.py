from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

DEFAULT_EXTENSIONS = ["cogs.events", "cogs.tickets"]


class ConfigError(RuntimeError):
    pass


@dataclass(slots=True)
class DiscordConfig:
    token: str
    prefix: str = "t?"
    application_id: int | None = None
    sync_commands_on_start: bool = True
    status_text: str = "Support tickets"
    activity_type: str = "watching"
    allowed_mentions_everyone: bool = False


@dataclass(slots=True)
class DatabaseConfig:
    url: str = "sqlite:///./data/tickets.db"
    pool_min_size: int = 2
    pool_max_size: int = 10
    timeout_seconds: int = 30


@dataclass(slots=True)
class RedisConfig:
    enabled: bool = False
    url: str = "redis://localhost:6379/0"
    default_ttl: int = 120


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    directory: str = "logs"
    file_name: str = "bot.log"
    max_bytes: int = 10_000_000
    backup_count: int = 10
    json_console: bool = False


@dataclass(slots=True)
class TranscriptConfig:
    storage_directory: str = "transcripts"
    history_limit: int = 100
    public_base_url: str = "http://localhost:3000"


@dataclass(slots=True)
class TicketConfig:
    close_delete_delay_seconds: float = 5.0
    retention_days: int = 30
    retention_sweep_minutes: int = 60
    category_name: str = "Tickets"
    channel_prefix: str = "ticket"
    stats_cache_ttl: int = 60


@dataclass(slots=True)
class WebhookLogConfig:
    enabled: bool = False
    url: str = ""


@dataclass(slots=True)
class FastApiConfig:
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 3000
    api_key: str = ""


@dataclass(slots=True)
class AppConfig:
    discord: DiscordConfig
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    transcripts: TranscriptConfig = field(default_factory=TranscriptConfig)
    tickets: TicketConfig = field(default_factory=TicketConfig)
    webhook_log: WebhookLogConfig = field(default_factory=WebhookLogConfig)
    fastapi: FastApiConfig = field(default_factory=FastApiConfig)
    enabled_extensions: list[str] = field(default_factory=lambda: list(DEFAULT_EXTENSIONS))


def _get_env_str(key: str | None) -> str | None:
    if key is None:
        return None
    value = os.getenv(key)
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _as_number(value: Any, default: Any, cast: type) -> Any:
    if value is None:
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        return default


class _Section:
    """One top-level YAML mapping; environment variables win over file values."""

    def __init__(self, raw: dict[str, Any], name: str) -> None:
        data = raw.get(name)
        self.data: dict[str, Any] = data if isinstance(data, dict) else {}

    def value(self, key: str, env: str | None = None) -> Any:
        from_env = _get_env_str(env)
        if from_env is not None:
            return from_env
        return self.data.get(key)

    def text(self, key: str, default: str, env: str | None = None) -> str:
        value = self.value(key, env)
        return default if value is None else str(value)

    def integer(self, key: str, default: int, env: str | None = None) -> int:
        return _as_number(self.value(key, env), default, int)

    def optional_integer(self, key: str, env: str | None = None) -> int | None:
        return _as_number(self.value(key, env), None, int)

    def number(self, key: str, default: float, env: str | None = None) -> float:
        return _as_number(self.value(key, env), default, float)

    def flag(self, key: str, default: bool, env: str | None = None) -> bool:
        return _as_bool(self.value(key, env), default)


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Missing config file: {path}")
    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")
    return raw


def load_config(config_path: Path) -> AppConfig:
    load_dotenv(config_path.parent.parent / ".env")
    raw = _load_yaml(config_path)

    discord_section = _Section(raw, "discord")
    token = discord_section.text("token", "", env="DISCORD_TOKEN")
    if not token or "${" in token:
        raise ConfigError("DISCORD_TOKEN is required")

    discord_cfg = DiscordConfig(
        token=token,
        prefix=discord_section.text("prefix", "t?", env="BOT_PREFIX"),
        application_id=discord_section.optional_integer("application_id", env="DISCORD_APPLICATION_ID"),
        sync_commands_on_start=discord_section.flag("sync_commands_on_start", True, env="SYNC_COMMANDS"),
        status_text=discord_section.text("status_text", "Support tickets"),
        activity_type=discord_section.text("activity_type", "watching"),
        allowed_mentions_everyone=discord_section.flag("allowed_mentions_everyone", False),
    )

    database = _Section(raw, "database")
    database_cfg = DatabaseConfig(
        url=database.text("url", "sqlite:///./data/tickets.db", env="DATABASE_URL"),
        pool_min_size=database.integer("pool_min_size", 2, env="DB_POOL_MIN"),
        pool_max_size=database.integer("pool_max_size", 10, env="DB_POOL_MAX"),
        timeout_seconds=database.integer("timeout_seconds", 30, env="DB_TIMEOUT_SECONDS"),
    )

    redis = _Section(raw, "redis")
    redis_cfg = RedisConfig(
        enabled=redis.flag("enabled", False, env="REDIS_ENABLED"),
        url=redis.text("url", "redis://localhost:6379/0", env="REDIS_URL"),
        default_ttl=redis.integer("default_ttl", 120, env="REDIS_DEFAULT_TTL"),
    )

    logs = _Section(raw, "logging")
    logging_cfg = LoggingConfig(
        level=logs.text("level", "INFO", env="LOG_LEVEL"),
        directory=logs.text("directory", "logs"),
        file_name=logs.text("file_name", "bot.log"),
        max_bytes=logs.integer("max_bytes", 10_000_000),
        backup_count=logs.integer("backup_count", 10),
        json_console=logs.flag("json_console", False),
    )

    transcripts = _Section(raw, "transcripts")
    transcript_cfg = TranscriptConfig(
        storage_directory=transcripts.text("storage_directory", "transcripts"),
        history_limit=transcripts.integer("history_limit", 100),
        public_base_url=transcripts.text("public_base_url", "http://localhost:3000", env="WEBSITE_URL").rstrip("/"),
    )

    tickets = _Section(raw, "tickets")
    ticket_cfg = TicketConfig(
        close_delete_delay_seconds=tickets.number("close_delete_delay_seconds", 5.0),
        retention_days=tickets.integer("retention_days", 30),
        retention_sweep_minutes=tickets.integer("retention_sweep_minutes", 60),
        category_name=tickets.text("category_name", "Tickets"),
        channel_prefix=tickets.text("channel_prefix", "ticket"),
        stats_cache_ttl=tickets.integer("stats_cache_ttl", 60),
    )

    webhook = _Section(raw, "webhook_log")
    webhook_cfg = WebhookLogConfig(
        enabled=webhook.flag("enabled", False),
        url=webhook.text("url", "", env="WEBHOOK_LOG_URL"),
    )

    web = _Section(raw, "fastapi")
    fastapi_cfg = FastApiConfig(
        enabled=web.flag("enabled", False, env="WEB_ENABLED"),
        host=web.text("host", "0.0.0.0"),
        port=web.integer("port", 3000, env="PORT"),
        api_key=web.text("api_key", "", env="DASHBOARD_API_KEY"),
    )

    extensions = raw.get("enabled_extensions")
    enabled_extensions = [str(ext) for ext in extensions] if isinstance(extensions, list) else list(DEFAULT_EXTENSIONS)

    return AppConfig(
        discord=discord_cfg,
        database=database_cfg,
        redis=redis_cfg,
        logging=logging_cfg,
        transcripts=transcript_cfg,
        tickets=ticket_cfg,
        webhook_log=webhook_cfg,
        fastapi=fastapi_cfg,
        enabled_extensions=enabled_extensions,
    )
