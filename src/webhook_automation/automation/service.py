from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import pydantic
from loguru import logger

from webhook_automation.automation.executor import AutomationExecutor
from webhook_automation.automation.rules import RuleEngine
from webhook_automation.common.config import AutomationConfig
from webhook_automation.common.errors import NotFoundError, ValidationError
from webhook_automation.common.models import (
    MESSAGE_DRIVEN_TYPES,
    Automation,
    AutomationContext,
    AutomationResult,
    AutomationType,
    Conversation,
    Message,
    MessageDirection,
    utcnow,
)
from webhook_automation.common.storage import Storage

DEFAULT_SCHEDULE = {"frequency": "daily", "interval": 1, "actions": []}


class AutomationService:
    """Decides which automations fire for a message or schedule tick and runs them."""

    def __init__(
        self,
        storage: Storage,
        executor: AutomationExecutor,
        rules: RuleEngine,
        config: Optional[AutomationConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.executor = executor
        self.rules = rules
        self.config = config or AutomationConfig()
        self.clock = clock

    async def build_context(
        self,
        conversation: Conversation,
        incoming_message: Optional[Message] = None,
        variables: Optional[Dict[str, Any]] = None,
    ) -> AutomationContext:
        contact = (
            await self.storage.get_contact_by_id(conversation.contact_id)
            if conversation.contact_id
            else None
        )
        channel = (
            await self.storage.get_channel_by_id(conversation.channel_id)
            if conversation.channel_id
            else None
        )
        history = await self.storage.get_messages_by_conversation_id(conversation.id)
        last_message = history[-1] if history else None
        if incoming_message is not None:
            history = [m for m in history if m.id != incoming_message.id]

        return AutomationContext(
            conversation=conversation,
            contact=contact,
            channel=channel,
            messages=history[-self.config.history_limit:] if self.config.history_limit else [],
            incoming_message=incoming_message,
            last_message=last_message,
            variables=variables or {},
        )

    async def process_incoming_message(self, message: Message) -> List[AutomationResult]:
        """Run every eligible message-driven automation for an inbound message.

        Automations run sequentially in ascending id order and each result is
        collected independently; one failing automation never stops the others.
        """
        if message.direction != MessageDirection.INBOUND:
            return []

        conversation = await self.storage.get_conversation_by_id(message.conversation_id)
        if conversation is None:
            logger.warning(f"Conversation {message.conversation_id} not found for message {message.id}")
            return [AutomationResult.failure(f"Conversation {message.conversation_id} not found")]

        context = await self.build_context(conversation, incoming_message=message)
        automations = [
            a
            for a in await self.storage.get_automations()
            if a.is_active and a.type in MESSAGE_DRIVEN_TYPES
        ]

        results = []
        for automation in sorted(automations, key=lambda a: a.id):
            try:
                if not self.executor.matches(automation, context):
                    continue
                results.append(await self.executor.execute(automation, context, force=True))
            except Exception as e:
                logger.error(f"Automation {automation.id} raised while processing message {message.id}: {e}")
                results.append(AutomationResult.failure(str(e), automation.id))
        return results

    async def process_scheduled_automations(self) -> List[AutomationResult]:
        now = self.clock()
        automations = await self.storage.get_automations(AutomationType.SCHEDULED)

        results = []
        for automation in sorted(automations, key=lambda a: a.id):
            if not automation.is_active:
                continue
            try:
                if not self.rules.evaluate_schedule(automation, now):
                    continue
                contexts = await self._scheduled_contexts(automation)
            except Exception as e:
                logger.warning(f"Skipping scheduled automation {automation.id}: {e}")
                continue
            if not contexts:
                logger.warning(f"No target found for scheduled automation {automation.id}, skipping")
                continue

            for context in contexts:
                try:
                    results.append(await self.executor.execute(automation, context, force=True))
                except Exception as e:
                    logger.error(f"Scheduled automation {automation.id} raised: {e}")
                    results.append(AutomationResult.failure(str(e), automation.id))

        if results:
            logger.info(f"Executed {len(results)} scheduled automation run(s)")
        return results

    async def _scheduled_contexts(self, automation: Automation) -> List[AutomationContext]:
        schedule = automation.schedule or {}
        target_type = schedule.get("target_type") or schedule.get("targetType") or "all"
        target_id = schedule.get("target_id") or schedule.get("targetId")
        variables = schedule.get("variables") or {}

        if target_type == "conversation":
            if not target_id:
                return []
            conversation = await self.storage.get_conversation_by_id(int(target_id))
            conversations = [conversation] if conversation else []
        elif target_type == "contact":
            if not target_id:
                return []
            contact = await self.storage.get_contact_by_id(int(target_id))
            if contact is None:
                return []
            owned = await self.storage.get_conversations({"contact_id": contact.id})
            # Most recent conversation of the contact
            conversations = sorted(owned, key=lambda c: (c.updated_at, c.id))[-1:]
        elif target_type == "all":
            conversations = await self.storage.get_conversations({"status": "open"})
        else:
            logger.warning(f"Unknown target type '{target_type}' on automation {automation.id}")
            return []

        return [await self.build_context(c, variables=variables) for c in conversations]

    async def execute_automation(
        self,
        automation_id: int,
        conversation_id: int,
        variables: Optional[Dict[str, Any]] = None,
    ) -> AutomationResult:
        """Run an automation on demand against a conversation's latest inbound message."""
        automation = await self.get_automation(automation_id)
        conversation = await self.storage.get_conversation_by_id(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")

        messages = await self.storage.get_messages_by_conversation_id(conversation_id)
        inbound = [m for m in messages if m.direction == MessageDirection.INBOUND]
        latest = max(inbound, key=lambda m: (m.created_at, m.id)) if inbound else None

        context = await self.build_context(conversation, incoming_message=latest, variables=variables)
        return await self.executor.execute(automation, context, force=True)

    # CRUD

    async def list_automations(self, type: Optional[AutomationType] = None) -> List[Automation]:
        return await self.storage.get_automations(type)

    async def get_automation(self, automation_id: int) -> Automation:
        automation = await self.storage.get_automation_by_id(automation_id)
        if automation is None:
            raise NotFoundError(f"Automation {automation_id} not found")
        return automation

    async def create_automation(
        self, data: Dict[str, Any], user_id: Optional[int] = None
    ) -> Automation:
        data = dict(data)
        if not data.get("trigger"):
            data["trigger"] = {}
        if not data.get("response"):
            data["response"] = {"prompt": ""} if data.get("type") == AutomationType.CHATBOT else ""
        if data.get("type") == AutomationType.SCHEDULED and not data.get("schedule"):
            data["schedule"] = dict(DEFAULT_SCHEDULE)
        if user_id:
            data["created_by"] = user_id
        now = self.clock()
        data["created_at"] = now
        data["updated_at"] = now

        try:
            automation = await self.storage.create_automation(data)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid automation: {e}") from e
        logger.info(f"Automation {automation.id} ({automation.name}) created")
        return automation

    async def update_automation(self, automation_id: int, patch: Dict[str, Any]) -> Automation:
        await self.get_automation(automation_id)
        try:
            updated = await self.storage.update_automation(
                automation_id, {**patch, "updated_at": self.clock()}
            )
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid automation update: {e}") from e
        if updated is None:
            raise NotFoundError(f"Automation {automation_id} not found")
        return updated

    async def delete_automation(self, automation_id: int) -> bool:
        await self.get_automation(automation_id)
        deleted = await self.storage.delete_automation(automation_id)
        logger.info(f"Automation {automation_id} deleted")
        return deleted

    async def toggle_automation(self, automation_id: int, active: bool) -> Automation:
        return await self.update_automation(automation_id, {"is_active": active})

    async def get_automation_stats(self) -> Dict[str, Any]:
        automations = await self.storage.get_automations()
        by_type = {t.value: 0 for t in AutomationType}
        for automation in automations:
            by_type[automation.type.value] += 1
        active = sum(1 for a in automations if a.is_active)
        total = len(automations)

        executed = sorted(
            (a for a in automations if a.last_executed_at),
            key=lambda a: a.last_executed_at,
            reverse=True,
        )
        return {
            "total": total,
            "by_type": [{"type": t, "count": c} for t, c in by_type.items()],
            "active_count": active,
            "inactive_count": total - active,
            "active_percent": round(active / total * 100) if total else 0,
            "last_executions": [
                {"id": a.id, "name": a.name, "last_executed_at": a.last_executed_at}
                for a in executed[:10]
            ],
        }
