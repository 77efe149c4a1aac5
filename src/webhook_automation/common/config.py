from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SOURCE_PRIORITIES: Dict[str, int] = {
    "twilio": 2,
    "zapapi": 2,
    "whatsapp-business": 2,
    "twilio-sms": 3,
    "telegram": 3,
    "messenger": 4,
    "instagram": 4,
    "slack": 5,
    "discord": 5,
    "sendgrid": 6,
    "asaas": 7,
    "test": 10,
}


class QueueConfig(BaseModel):
    poll_interval: float = 1.0  # seconds
    error_backoff: float = 5.0  # seconds
    handler_timeout: float = 60.0  # seconds

    # Retry policy
    base_delay: float = 30.0  # seconds
    backoff_factor: float = 2.0
    max_delay: float = 3600.0  # seconds
    max_attempts: int = 5

    # Rebalancing policy
    failure_weight: float = 10.0
    latency_weight: float = 3.0
    rebalance_window_hours: int = 24
    aging_threshold_minutes: int = 60
    min_priority: int = 1

    cleanup_max_age_days: int = 7
    default_priority: int = 5
    source_priorities: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_SOURCE_PRIORITIES)
    )

    def priority_for(self, source: str) -> int:
        return self.source_priorities.get(source, self.default_priority)


class AutomationConfig(BaseModel):
    schedule_check_interval: float = 60.0  # seconds
    rebalance_interval: float = 300.0  # seconds, 0 disables
    cleanup_interval: float = 86400.0  # seconds, 0 disables
    ai_timeout: float = 30.0  # seconds
    webhook_timeout: float = 10.0  # seconds
    history_limit: int = 20


class AIConfig(BaseModel):
    endpoint: Optional[str] = None
    api_key: Optional[str] = None


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9090
    path: str = "/metrics"


class AuthConfig(BaseModel):
    api_tokens: List[str] = []


class WebhookSourceConfig(BaseModel):
    name: str
    priority: Optional[int] = None
    validate_payload: bool = True


class EngineConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="WEBHOOK_AUTOMATION_",
        extra="ignore",
    )

    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000
    queue: QueueConfig = QueueConfig()
    automation: AutomationConfig = AutomationConfig()
    ai: AIConfig = AIConfig()
    metrics: MetricsConfig = MetricsConfig()
    auth: AuthConfig = AuthConfig()
    webhook_sources: List[WebhookSourceConfig] = []

    def validate_config(self) -> None:
        queue = self.queue
        if queue.max_attempts < 1:
            raise ValueError("queue.max_attempts must be at least 1")
        if queue.base_delay <= 0 or queue.backoff_factor < 1:
            raise ValueError("queue backoff requires base_delay > 0 and backoff_factor >= 1")
        if queue.max_delay < queue.base_delay:
            raise ValueError("queue.max_delay must not be lower than queue.base_delay")
        if queue.poll_interval <= 0:
            raise ValueError("queue.poll_interval must be positive")

    def source_config(self, name: str) -> Optional[WebhookSourceConfig]:
        return next((src for src in self.webhook_sources if src.name == name), None)


def load_config_from_file(config_path: str) -> EngineConfig:
    """Load configuration from a YAML file."""
    file_path = Path(config_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(file_path, "r") as f:
        config_data = yaml.safe_load(f) or {}

    return EngineConfig.model_validate(config_data)
