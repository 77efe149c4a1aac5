from typing import Annotated, Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

import aiohttp
import pydantic
from loguru import logger
from pydantic import Field, TypeAdapter, model_validator

from webhook_automation.automation.templates import TemplateEngine
from webhook_automation.common.errors import ExecutionError
from webhook_automation.common.metrics import metrics
from webhook_automation.common.models import AutomationContext, Record
from webhook_automation.common.storage import Storage


class UpdateConversationStatusAction(Record):
    type: Literal["update_conversation_status"]
    status: str = "open"


class AssignToUserAction(Record):
    type: Literal["assign_to_user"]
    user_id: int


class AddTagAction(Record):
    type: Literal["add_tag_to_contact", "add_tag"]
    tag: str = Field(min_length=1)


class RemoveTagAction(Record):
    type: Literal["remove_tag_from_contact", "remove_tag"]
    tag: str = Field(min_length=1)


class UpdateContactFieldAction(Record):
    type: Literal["update_contact_field"]
    field: str = Field(min_length=1)
    value: Any = None


class SendNotificationAction(Record):
    type: Literal["send_notification"]
    user_ids: List[Optional[int]] = Field(default_factory=lambda: [None])
    title: str = "Automation notification"
    message: str = "Automated action executed"
    priority: str = "normal"
    category: str = "automation"

    @model_validator(mode="before")
    @classmethod
    def _single_recipient(cls, data: Any) -> Any:
        if isinstance(data, dict) and "userIds" not in data and "user_ids" not in data:
            for key in ("userId", "user_id"):
                if key in data:
                    return {**data, "user_ids": [data[key]]}
        return data


class ExecuteWebhookAction(Record):
    type: Literal["execute_webhook"]
    url: str = Field(min_length=1)
    method: str = "POST"
    headers: Dict[str, Any] = Field(default_factory=dict)
    body: Any = Field(default_factory=dict)


Action = Annotated[
    Union[
        UpdateConversationStatusAction,
        AssignToUserAction,
        AddTagAction,
        RemoveTagAction,
        UpdateContactFieldAction,
        SendNotificationAction,
        ExecuteWebhookAction,
    ],
    Field(discriminator="type"),
]

_action_adapter = TypeAdapter(Action)


def parse_action(raw: Any) -> Action:
    if not isinstance(raw, dict) or not raw.get("type"):
        raise ExecutionError("Invalid action or action type not specified")
    try:
        return _action_adapter.validate_python(raw)
    except pydantic.ValidationError as e:
        raise ExecutionError(f"Invalid {raw.get('type')} action: {e}") from e


class ActionExecutor:
    """Runs the side-effecting actions of trigger and scheduled automations."""

    def __init__(
        self,
        storage: Storage,
        templates: TemplateEngine,
        webhook_timeout: float = 10.0,
    ):
        self.storage = storage
        self.templates = templates
        self.webhook_timeout = webhook_timeout
        self._handlers: Dict[type, Callable[[Any, AutomationContext], Awaitable[None]]] = {
            UpdateConversationStatusAction: self._update_conversation_status,
            AssignToUserAction: self._assign_to_user,
            AddTagAction: self._add_tag,
            RemoveTagAction: self._remove_tag,
            UpdateContactFieldAction: self._update_contact_field,
            SendNotificationAction: self._send_notification,
            ExecuteWebhookAction: self._execute_webhook,
        }

    async def execute_all(self, raw_actions: List[Any], context: AutomationContext) -> None:
        """Execute actions in order; the first failure aborts the rest."""
        for index, raw in enumerate(raw_actions):
            action_type = raw.get("type") if isinstance(raw, dict) else None
            try:
                await self.execute(parse_action(raw), context)
            except Exception as e:
                metrics.action_errors_total.labels(action=str(action_type)).inc()
                logger.error(f"Error executing action {index} ({action_type}): {e}")
                raise ExecutionError(f"Action {action_type} failed: {e}") from e

    async def execute(self, action: Action, context: AutomationContext) -> None:
        await self._handlers[type(action)](action, context)

    async def _update_conversation_status(
        self, action: UpdateConversationStatusAction, context: AutomationContext
    ) -> None:
        if not context.conversation:
            raise ExecutionError("Conversation not available in context")
        updated = await self.storage.update_conversation(
            context.conversation.id, {"status": action.status}
        )
        if updated is None:
            raise ExecutionError(f"Conversation {context.conversation.id} not found")
        context.conversation = updated

    async def _assign_to_user(self, action: AssignToUserAction, context: AutomationContext) -> None:
        if not context.conversation:
            raise ExecutionError("Conversation not available in context")
        updated = await self.storage.assign_conversation(context.conversation.id, action.user_id)
        if updated is None:
            raise ExecutionError(f"Conversation {context.conversation.id} not found")
        context.conversation = updated

    async def _add_tag(self, action: AddTagAction, context: AutomationContext) -> None:
        if not context.contact:
            raise ExecutionError("Contact not available in context")
        if action.tag in context.contact.tags:
            return
        await self._patch_contact(context, {"tags": [*context.contact.tags, action.tag]})

    async def _remove_tag(self, action: RemoveTagAction, context: AutomationContext) -> None:
        if not context.contact:
            raise ExecutionError("Contact not available in context")
        if action.tag not in context.contact.tags:
            return
        tags = [tag for tag in context.contact.tags if tag != action.tag]
        await self._patch_contact(context, {"tags": tags})

    async def _update_contact_field(
        self, action: UpdateContactFieldAction, context: AutomationContext
    ) -> None:
        if not context.contact:
            raise ExecutionError("Contact not available in context")
        value = action.value
        if isinstance(value, str):
            value = self.templates.render_text(value, context)
        await self._patch_contact(context, {action.field: value})

    async def _patch_contact(self, context: AutomationContext, patch: Dict[str, Any]) -> None:
        updated = await self.storage.update_contact(context.contact.id, patch)
        if updated is None:
            raise ExecutionError(f"Contact {context.contact.id} not found")
        context.contact = updated

    async def _send_notification(
        self, action: SendNotificationAction, context: AutomationContext
    ) -> None:
        title = self.templates.render_text(action.title, context)
        message = self.templates.render_text(action.message, context)
        data: Dict[str, Any] = {}
        if context.conversation:
            data["conversation_id"] = context.conversation.id
        if context.contact:
            data["contact_id"] = context.contact.id

        for user_id in action.user_ids:
            await self.storage.create_notification(
                {
                    "user_id": user_id,
                    "title": title,
                    "message": message,
                    "priority": action.priority,
                    "category": action.category,
                    "is_read": False,
                    "data": data,
                }
            )

    async def _execute_webhook(self, action: ExecuteWebhookAction, context: AutomationContext) -> None:
        url = self.templates.render_text(action.url, context)
        body = self.templates.render_json(action.body, context)
        headers = {
            key: self.templates.render_text(value, context) if isinstance(value, str) else str(value)
            for key, value in action.headers.items()
        }
        if not any(key.lower() == "content-type" for key in headers):
            headers["Content-Type"] = "application/json"

        method = action.method.upper()
        timeout = aiohttp.ClientTimeout(total=self.webhook_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method,
                    url,
                    headers=headers,
                    json=body if method != "GET" else None,
                ) as response:
                    if response.status >= 300:
                        response_text = await response.text()
                        raise ExecutionError(
                            f"Webhook {url} answered {response.status}: {response_text[:200]}"
                        )
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(f"Webhook call to {url} failed: {e}") from e
        logger.info(f"Automation webhook {method} {url} succeeded")
