"""Worker component: engine wiring and the automation scheduler."""

from webhook_automation.worker.engine import Engine, build_handler_registry, create_ai_client
from webhook_automation.worker.scheduler import AutomationScheduler

__all__ = [
    "Engine",
    "build_handler_registry",
    "create_ai_client",
    "AutomationScheduler",
]
