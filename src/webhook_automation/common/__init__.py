"""Configuration, models, storage and metrics shared by the engine components."""

from webhook_automation.common.config import (
    AIConfig,
    AuthConfig,
    AutomationConfig,
    EngineConfig,
    MetricsConfig,
    QueueConfig,
    WebhookSourceConfig,
    load_config_from_file,
)
from webhook_automation.common.errors import (
    ExecutionError,
    InvalidStateError,
    NotFoundError,
    TransientIOError,
    ValidationError,
    WebhookAutomationError,
)
from webhook_automation.common.metrics import (
    MetricsRegistry,
    measure_time,
    metrics,
    start_metrics_server,
)
from webhook_automation.common.storage import InMemoryStorage, Storage

__all__ = [
    # Config
    "AIConfig",
    "AuthConfig",
    "AutomationConfig",
    "EngineConfig",
    "MetricsConfig",
    "QueueConfig",
    "WebhookSourceConfig",
    "load_config_from_file",
    # Errors
    "ExecutionError",
    "InvalidStateError",
    "NotFoundError",
    "TransientIOError",
    "ValidationError",
    "WebhookAutomationError",
    # Metrics
    "MetricsRegistry",
    "measure_time",
    "metrics",
    "start_metrics_server",
    # Storage
    "InMemoryStorage",
    "Storage",
]
