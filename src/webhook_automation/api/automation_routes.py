from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends
from loguru import logger
from pydantic import Field

from webhook_automation.api.auth import get_engine, require_api_token
from webhook_automation.common.models import AutomationType, Record
from webhook_automation.worker.engine import Engine


router = APIRouter(dependencies=[Depends(require_api_token)])


class AutomationCreate(Record):
    name: str = Field(min_length=1)
    type: AutomationType
    description: Optional[str] = None
    is_active: bool = True
    trigger: Optional[Dict[str, Any]] = None
    schedule: Optional[Dict[str, Any]] = None
    response: Union[str, Dict[str, Any], None] = None
    model_provider: Optional[str] = None
    model_settings: Optional[Dict[str, Any]] = Field(default=None, alias="modelConfig")


class AutomationUpdate(Record):
    name: Optional[str] = Field(default=None, min_length=1)
    type: Optional[AutomationType] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    trigger: Optional[Dict[str, Any]] = None
    schedule: Optional[Dict[str, Any]] = None
    response: Union[str, Dict[str, Any], None] = None
    model_provider: Optional[str] = None
    model_settings: Optional[Dict[str, Any]] = Field(default=None, alias="modelConfig")


class ToggleRequest(Record):
    active: bool


class ExecuteRequest(Record):
    conversation_id: int
    input_data: Optional[Dict[str, Any]] = None


@router.get("/automations")
async def list_automations(
    type: Optional[AutomationType] = None,
    engine: Engine = Depends(get_engine),
):
    return await engine.automations.list_automations(type)


@router.post("/automations", status_code=201)
async def create_automation(body: AutomationCreate, engine: Engine = Depends(get_engine)):
    return await engine.automations.create_automation(body.model_dump(exclude_none=True))


@router.get("/automations-stats")
async def automation_stats(engine: Engine = Depends(get_engine)):
    return await engine.automations.get_automation_stats()


@router.get("/automations/{automation_id}")
async def get_automation(automation_id: int, engine: Engine = Depends(get_engine)):
    return await engine.automations.get_automation(automation_id)


@router.put("/automations/{automation_id}")
async def update_automation(
    automation_id: int,
    body: AutomationUpdate,
    engine: Engine = Depends(get_engine),
):
    automation = await engine.automations.update_automation(
        automation_id, body.model_dump(exclude_unset=True)
    )
    logger.info(f"Automation {automation_id} ({automation.name}) updated")
    return automation


@router.delete("/automations/{automation_id}")
async def delete_automation(automation_id: int, engine: Engine = Depends(get_engine)):
    await engine.automations.delete_automation(automation_id)
    return {"success": True}


@router.patch("/automations/{automation_id}/toggle")
async def toggle_automation(
    automation_id: int,
    body: ToggleRequest,
    engine: Engine = Depends(get_engine),
):
    automation = await engine.automations.toggle_automation(automation_id, body.active)
    state = "activated" if body.active else "deactivated"
    logger.info(f"Automation {automation_id} ({automation.name}) {state}")
    return automation


@router.post("/automations/{automation_id}/execute")
async def execute_automation(
    automation_id: int,
    body: ExecuteRequest,
    engine: Engine = Depends(get_engine),
):
    result = await engine.automations.execute_automation(
        automation_id, body.conversation_id, body.input_data
    )
    logger.info(
        f"Automation {automation_id} executed manually "
        f"({'success' if result.success else 'failure'})"
    )
    return {
        "success": result.success,
        "message": result.message.content if result.message else None,
        "response": result.response,
        "error": result.error,
    }
