from typing import Optional

from fastapi import APIRouter, Depends, Query

from webhook_automation.api.auth import get_engine, require_api_token
from webhook_automation.common.models import Record
from webhook_automation.worker.engine import Engine


router = APIRouter(dependencies=[Depends(require_api_token)])


class CleanupRequest(Record):
    max_age_in_days: Optional[int] = None


@router.get("/status")
async def queue_status(engine: Engine = Depends(get_engine)):
    return await engine.queue.get_status()


@router.get("/stats")
async def queue_stats(engine: Engine = Depends(get_engine)):
    return await engine.queue.get_stats_by_source()


@router.get("/performance")
async def queue_performance(engine: Engine = Depends(get_engine)):
    return await engine.queue.get_performance_metrics()


@router.get("/problematic")
async def queue_problematic(
    limit: int = Query(default=10, ge=1, le=100),
    engine: Engine = Depends(get_engine),
):
    return await engine.queue.get_problematic_items(limit)


@router.get("/processing")
async def queue_processing(engine: Engine = Depends(get_engine)):
    return engine.queue.get_processing_stats()


@router.post("/rebalance")
async def queue_rebalance(engine: Engine = Depends(get_engine)):
    return await engine.queue.rebalance()


@router.post("/cleanup")
async def queue_cleanup(
    body: Optional[CleanupRequest] = None,
    engine: Engine = Depends(get_engine),
):
    max_age = body.max_age_in_days if body else None
    return await engine.queue.cleanup(max_age)


@router.post("/{item_id}/retry")
async def queue_retry(item_id: int, engine: Engine = Depends(get_engine)):
    item = await engine.queue.retry(item_id)
    return {"success": True, "item": item}
