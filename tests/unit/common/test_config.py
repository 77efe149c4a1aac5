import pytest
import yaml

from webhook_automation.common.config import (
    DEFAULT_SOURCE_PRIORITIES,
    EngineConfig,
    QueueConfig,
    WebhookSourceConfig,
    load_config_from_file,
)


class TestQueueConfig:

    def test_defaults(self):
        """Test the documented retry defaults."""
        config = QueueConfig()
        assert config.base_delay == 30
        assert config.backoff_factor == 2
        assert config.max_delay == 3600
        assert config.max_attempts == 5

    def test_priority_for_known_source(self):
        config = QueueConfig()
        assert config.priority_for("twilio") == DEFAULT_SOURCE_PRIORITIES["twilio"]
        assert config.priority_for("asaas") == 7

    def test_priority_for_unknown_source(self):
        config = QueueConfig(default_priority=6)
        assert config.priority_for("carrier-pigeon") == 6

    def test_source_priorities_are_not_shared(self):
        first = QueueConfig()
        first.source_priorities["twilio"] = 9
        assert QueueConfig().priority_for("twilio") == 2


class TestEngineConfig:

    def test_validate_config_defaults(self):
        EngineConfig().validate_config()  # Should not raise an exception

    def test_validate_config_rejects_zero_attempts(self):
        config = EngineConfig(queue={"max_attempts": 0})
        with pytest.raises(ValueError, match="max_attempts"):
            config.validate_config()

    def test_validate_config_rejects_inverted_delays(self):
        config = EngineConfig(queue={"base_delay": 60, "max_delay": 10})
        with pytest.raises(ValueError, match="max_delay"):
            config.validate_config()

    def test_source_config(self):
        config = EngineConfig(webhook_sources=[{"name": "asaas", "priority": 3}])
        assert config.source_config("asaas") == WebhookSourceConfig(name="asaas", priority=3)
        assert config.source_config("missing") is None

    def test_env_variables(self, monkeypatch):
        """Test that environment variables are correctly loaded."""
        monkeypatch.setenv("WEBHOOK_AUTOMATION_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("WEBHOOK_AUTOMATION_QUEUE__MAX_ATTEMPTS", "3")
        monkeypatch.setenv("WEBHOOK_AUTOMATION_AI__ENDPOINT", "http://ai.internal/answer")

        config = EngineConfig()
        assert config.log_level == "DEBUG"
        assert config.queue.max_attempts == 3
        assert config.ai.endpoint == "http://ai.internal/answer"


class TestLoadConfigFromFile:

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "port": 9000,
                    "queue": {"max_attempts": 7},
                    "auth": {"api_tokens": ["secret"]},
                    "webhook_sources": [{"name": "meta", "priority": 4}],
                }
            )
        )

        config = load_config_from_file(str(path))
        assert config.port == 9000
        assert config.queue.max_attempts == 7
        assert config.auth.api_tokens == ["secret"]
        assert config.source_config("meta").priority == 4

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config_from_file(str(path)).port == 8000

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_config_from_file(str(tmp_path / "missing.yaml"))
