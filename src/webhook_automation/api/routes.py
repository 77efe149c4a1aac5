import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from loguru import logger

from webhook_automation.api.auth import get_config, get_engine
from webhook_automation.common.config import EngineConfig
from webhook_automation.common.metrics import metrics
from webhook_automation.queue.handlers import identify_source, validate_payload
from webhook_automation.worker.engine import Engine


router = APIRouter()


async def read_json_body(request: Request) -> Any:
    body = await request.body()
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")


async def accept_webhook(
    source: str,
    payload: Any,
    channel_id: Optional[int],
    config: EngineConfig,
    engine: Engine,
):
    metrics.webhook_received_total.labels(source=source).inc()

    source_config = config.source_config(source)
    if source_config and source_config.validate_payload and not validate_payload(source, payload):
        metrics.webhook_rejected_total.labels(source=source).inc()
        logger.warning(f"Rejected webhook from {source}: unexpected payload shape")
        raise HTTPException(status_code=400, detail=f"Invalid payload for source: {source}")

    priority = source_config.priority if source_config else None
    item = await engine.queue.enqueue(source, channel_id, payload, priority=priority)
    return {"status": "accepted", "id": item.id, "priority": item.priority}


@router.post("", status_code=202)
async def receive_untyped_webhook(
    request: Request,
    channel_id: Optional[int] = None,
    config: EngineConfig = Depends(get_config),
    engine: Engine = Depends(get_engine),
):
    payload = await read_json_body(request)
    source = identify_source(payload)
    if source is None:
        raise HTTPException(status_code=400, detail="Could not identify webhook source")
    return await accept_webhook(source, payload, channel_id, config, engine)


@router.get("/health")
async def health_check():
    return {"status": "ok"}


@router.post("/{source}", status_code=202)
async def receive_webhook(
    source: str,
    request: Request,
    channel_id: Optional[int] = None,
    config: EngineConfig = Depends(get_config),
    engine: Engine = Depends(get_engine),
):
    payload = await read_json_body(request)
    return await accept_webhook(source, payload, channel_id, config, engine)
