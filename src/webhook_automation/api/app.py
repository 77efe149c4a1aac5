import asyncio
import sys
from typing import Optional

import click
from loguru import logger

from webhook_automation.api.server import run_server
from webhook_automation.common.config import EngineConfig, load_config_from_file
from webhook_automation.common.log import configure_logging
from webhook_automation.worker.engine import Engine


_app_config: Optional[EngineConfig] = None


def get_app_config() -> EngineConfig:
    if not _app_config:
        raise RuntimeError("Application config not initialized")
    return _app_config


def setup_app(config: EngineConfig):
    """Initialize the API with the given config."""
    global _app_config

    configure_logging(config.log_level)
    config.validate_config()
    if not config.auth.api_tokens:
        logger.warning("No API tokens configured, management endpoints will reject every request")

    _app_config = config

    logger.info("Webhook Automation API initialized")


@click.group()
def cli():
    """Webhook Automation API CLI"""
    pass


@cli.command("serve")
@click.option(
    "--config",
    "-c",
    required=True,
    help="Path to configuration file",
)
def serve(config: str):
    """Start the API server together with the queue processor."""
    try:
        config_obj = load_config_from_file(config)
        setup_app(config_obj)
        engine = Engine(config_obj)
        asyncio.run(engine.check_storage())
        run_server(config_obj, engine)
    except Exception as e:
        logger.error(f"Failed to start API: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
