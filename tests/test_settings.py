"""Tests for YAML settings loading, env substitution and validation."""
import textwrap

import pytest

from config.settings import (
    BotConfig, ConfigError, QueueConfig, Settings, load_settings,
)


@pytest.fixture
def clean_env(monkeypatch):
    for var in ("TELEGRAM_BOT_TOKEN", "DATABASE_URL", "REDIS_URL", "ANEKBOT_CONFIG"):
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


def write_yaml(tmp_path, body: str) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(textwrap.dedent(body))
    return str(path)


class TestLoadSettings:
    def test_defaults_when_file_missing(self, tmp_path, clean_env):
        settings = load_settings(str(tmp_path / "missing.yaml"))
        assert settings.queue.backend == "memory"
        assert settings.queue.max_deliveries == 10
        assert settings.delivery.max_attempts == 3
        assert settings.delivery.initial_backoff == 1.0
        assert settings.parser.interval_minutes == 30.0
        assert settings.parser.reddit.limit == 25
        assert settings.parser.anekdot.limit == 20
        assert settings.health.endpoint == "/healthz"
        assert "sqlite" in settings.database.url

    def test_yaml_sections_and_env_substitution(self, tmp_path, clean_env):
        clean_env.setenv("TEST_REDIS_URL", "redis://cache:6380")
        path = write_yaml(tmp_path, """
            queue:
              backend: redis
              redis_url: "${TEST_REDIS_URL}"
              max_deliveries: 5
            bot:
              token: "abc"
              parse_mode: HTML
            parser:
              interval_minutes: 5
              sources:
                reddit:
                  subreddits: [Jokes, dadjokes]
                  limit: 10
                anekdot:
                  enabled: false
        """)
        settings = load_settings(path)
        assert settings.queue.backend == "redis"
        assert settings.queue.redis_url == "redis://cache:6380"
        assert settings.queue.max_deliveries == 5
        assert settings.bot.token == "abc"
        assert settings.bot.parse_mode == "HTML"
        assert settings.parser.interval_minutes == 5.0
        assert settings.parser.reddit.subreddits == ["Jokes", "dadjokes"]
        assert settings.parser.anekdot.enabled is False

    def test_default_placeholder(self, tmp_path, clean_env):
        path = write_yaml(tmp_path, """
            database:
              url: "${DATABASE_URL:-sqlite:///./fallback.db}"
        """)
        assert load_settings(path).database.url == "sqlite:///./fallback.db"

    def test_unknown_keys_ignored(self, tmp_path, clean_env):
        path = write_yaml(tmp_path, """
            queue:
              backend: memory
              not_a_field: 1
        """)
        assert load_settings(path).queue.backend == "memory"

    def test_token_from_environment(self, tmp_path, clean_env):
        clean_env.setenv("TELEGRAM_BOT_TOKEN", "from-env")
        settings = load_settings(str(tmp_path / "missing.yaml"))
        assert settings.bot.token == "from-env"

    def test_config_path_from_env(self, tmp_path, clean_env):
        path = write_yaml(tmp_path, """
            app:
              name: from-env-path
        """)
        clean_env.setenv("ANEKBOT_CONFIG", path)
        assert load_settings().app.name == "from-env-path"


class TestValidate:
    def test_missing_token_with_bot_enabled(self):
        with pytest.raises(ConfigError):
            Settings(bot=BotConfig(enabled=True, token="")).validate()

    def test_missing_token_with_bot_disabled(self):
        Settings(bot=BotConfig(enabled=False)).validate()

    def test_unknown_queue_backend(self):
        with pytest.raises(ConfigError):
            Settings(bot=BotConfig(enabled=False), queue=QueueConfig(backend="kafka")).validate()
