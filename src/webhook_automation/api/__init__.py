"""HTTP API component: webhook ingestion, queue management and automation CRUD."""

from webhook_automation.api.app import cli, get_app_config, setup_app
from webhook_automation.api.server import create_app, run_server

__all__ = [
    "get_app_config",
    "setup_app",
    "cli",
    "create_app",
    "run_server",
]
