"""
Configuration loader for the Anek Bot system.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(Exception):
    """Raised when settings are missing or inconsistent at startup."""


@dataclass
class AppConfig:
    name: str = "anek-bot"
    environment: str = "production"
    log_level: str = "info"
    log_json: bool = False
    debug: bool = False


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./anekbot.db"        # postgresql:// | sqlite://
    store_backend: str = "memory"              # "sql" | "memory"
    pool_size: int = 5                         # min connections kept open
    max_overflow: int = 20                     # pool_size + max_overflow = max connections


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    visibility_timeout: float = 30.0    # seconds before an unacked message is redelivered
    max_deliveries: int = 10            # dead-letter after this many deliveries; 0 = never
    batch_size: int = 10                # messages per pull
    pull_wait: float = 0.5              # seconds a pull may block
    error_backoff: float = 1.0          # seconds to wait after a broker error


@dataclass
class BotConfig:
    enabled: bool = True
    token: str = ""
    parse_mode: str = "Markdown"
    api_base_url: str = "https://api.telegram.org"
    poll_timeout: int = 10              # long-poll seconds for getUpdates
    send_rate: float = 25.0             # local token bucket, messages per second


@dataclass
class DeliveryConfig:
    max_attempts: int = 3
    initial_backoff: float = 1.0
    backoff_multiplier: float = 2.0


@dataclass
class RedditConfig:
    enabled: bool = True
    subreddits: list[str] = field(default_factory=lambda: ["Jokes"])
    limit: int = 25


@dataclass
class AnekdotConfig:
    enabled: bool = True
    limit: int = 20


@dataclass
class ParserConfig:
    enabled: bool = True
    interval_minutes: float = 30.0
    reddit: RedditConfig = field(default_factory=RedditConfig)
    anekdot: AnekdotConfig = field(default_factory=AnekdotConfig)


@dataclass
class HealthConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    endpoint: str = "/healthz"


@dataclass
class Settings:
    app: AppConfig = field(default_factory=AppConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    bot: BotConfig = field(default_factory=BotConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    parser: ParserConfig = field(default_factory=ParserConfig)
    health: HealthConfig = field(default_factory=HealthConfig)

    def validate(self) -> None:
        if self.bot.enabled and not self.bot.token:
            raise ConfigError("telegram bot token is required (bot.token / TELEGRAM_BOT_TOKEN)")
        if self.queue.backend not in ("memory", "redis"):
            raise ConfigError(f"unknown queue backend: {self.queue.backend}")
        if self.database.store_backend not in ("memory", "sql"):
            raise ConfigError(f"unknown store backend: {self.database.store_backend}")


_settings: Optional[Settings] = None

# ${VAR} keeps the placeholder when VAR is unset; ${VAR:-default} falls back
_ENV_PLACEHOLDER = re.compile(r'\$\{(\w+)(?::-([^}]*))?\}')

# Top-level YAML key (also the Settings attribute) → section dataclass
_FLAT_SECTIONS = {
    "app": AppConfig,
    "database": DatabaseConfig,
    "queue": QueueConfig,
    "bot": BotConfig,
    "delivery": DeliveryConfig,
    "health": HealthConfig,
}


def _expand_placeholder(match: re.Match) -> str:
    name, default = match.group(1), match.group(2)
    if default is None:
        return os.environ.get(name, match.group(0))
    return os.environ.get(name) or default


def _expand_env(node: Any) -> Any:
    """Walk parsed YAML and expand placeholders inside every string leaf."""
    if isinstance(node, dict):
        return {key: _expand_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_expand_env(item) for item in node]
    if isinstance(node, str):
        return _ENV_PLACEHOLDER.sub(_expand_placeholder, node)
    return node


def _section(cls, raw: dict[str, Any]):
    """Build a flat config dataclass from a dict, ignoring unknown keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def _parser_section(raw: dict[str, Any]) -> ParserConfig:
    sources = raw.get("sources") or {}
    return ParserConfig(
        enabled=raw.get("enabled", True),
        interval_minutes=float(raw.get("interval_minutes", 30.0)),
        reddit=_section(RedditConfig, sources.get("reddit")),
        anekdot=_section(AnekdotConfig, sources.get("anekdot")),
    )


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    return _expand_env(yaml.safe_load(path.read_text(encoding="utf-8")) or {})


def load_settings(config_path: str = None) -> Settings:
    """
    Build Settings from `config_path`, $ANEKBOT_CONFIG, or the bundled
    settings.yaml, in that order. A missing file yields the defaults.
    TELEGRAM_BOT_TOKEN and DATABASE_URL win over the file.
    """
    global _settings

    path = Path(config_path or os.environ.get("ANEKBOT_CONFIG")
                or Path(__file__).parent / "settings.yaml")
    raw = _read_yaml(path)

    settings = Settings()
    for key, cls in _FLAT_SECTIONS.items():
        if key in raw:
            setattr(settings, key, _section(cls, raw[key]))
    if "parser" in raw:
        settings.parser = _parser_section(raw["parser"] or {})

    settings.bot.token = os.environ.get("TELEGRAM_BOT_TOKEN", settings.bot.token)
    settings.database.url = os.environ.get("DATABASE_URL", settings.database.url)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Settings loaded once per process; tests reset `_settings` directly."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
