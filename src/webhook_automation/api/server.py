from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from webhook_automation.api import automation_routes, queue_routes
from webhook_automation.api.routes import router
from webhook_automation.common.config import EngineConfig
from webhook_automation.common.errors import (
    InvalidStateError,
    NotFoundError,
    ValidationError,
    WebhookAutomationError,
)
from webhook_automation.common.metrics import metrics, start_metrics_server
from webhook_automation.worker.engine import Engine

ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (InvalidStateError, 409),
)


def status_for(error: WebhookAutomationError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


def create_app(
    config: EngineConfig,
    engine: Optional[Engine] = None,
    run_background: bool = True,
) -> FastAPI:
    app = FastAPI(
        title="Webhook Automation",
        description="Receives webhooks, queues them and runs conversation automations",
        version="0.1.0",
    )
    app.state.config = config
    app.state.engine = engine or Engine(config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix="/webhooks")
    app.include_router(queue_routes.router, prefix="/webhook-queue")
    app.include_router(automation_routes.router)

    @app.exception_handler(WebhookAutomationError)
    async def engine_error_handler(request: Request, exc: WebhookAutomationError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(f"Unhandled engine error on {request.url.path}: {exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.on_event("startup")
    async def startup_event():
        if config.metrics.enabled:
            start_metrics_server(config.metrics.port, config.metrics.host)
            logger.info(f"Metrics server started on {config.metrics.host}:{config.metrics.port}")

        await app.state.engine.start(background=run_background)
        metrics.up.labels(component="api").set(1)
        logger.info(f"Webhook Automation API started on {config.host}:{config.port}")

        for source in config.webhook_sources:
            check = "with payload validation" if source.validate_payload else "without payload validation"
            logger.info(f"Registered webhook source: {source.name} {check}")

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.engine.stop()
        metrics.up.labels(component="api").set(0)
        logger.info("Webhook Automation API shutting down")

    return app


def run_server(config: Optional[EngineConfig] = None, engine: Optional[Engine] = None):
    if not config:
        from webhook_automation.api.app import get_app_config

        config = get_app_config()

    app = create_app(config, engine)

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
