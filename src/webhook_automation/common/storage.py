from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from loguru import logger

from webhook_automation.common.models import (
    Automation,
    AutomationType,
    Channel,
    Contact,
    Conversation,
    Message,
    Notification,
    utcnow,
)


class Storage(ABC):
    """Persistence collaborator consumed by the automation engine.

    Expected absence is reported as ``None`` (or ``False`` for deletes);
    implementations raise :class:`TransientIOError` for I/O failures.
    """

    @abstractmethod
    async def ping(self) -> bool:
        pass

    @abstractmethod
    async def get_automations(self, type: Optional[AutomationType] = None) -> List[Automation]:
        pass

    @abstractmethod
    async def get_automation_by_id(self, automation_id: int) -> Optional[Automation]:
        pass

    @abstractmethod
    async def create_automation(self, data: Dict[str, Any]) -> Automation:
        pass

    @abstractmethod
    async def update_automation(
        self, automation_id: int, patch: Dict[str, Any]
    ) -> Optional[Automation]:
        pass

    @abstractmethod
    async def delete_automation(self, automation_id: int) -> bool:
        pass

    @abstractmethod
    async def get_conversation_by_id(self, conversation_id: int) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def get_conversations(
        self, filter: Optional[Dict[str, Any]] = None
    ) -> List[Conversation]:
        pass

    @abstractmethod
    async def update_conversation(
        self, conversation_id: int, patch: Dict[str, Any]
    ) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def assign_conversation(
        self, conversation_id: int, user_id: int
    ) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def get_contact_by_id(self, contact_id: int) -> Optional[Contact]:
        pass

    @abstractmethod
    async def update_contact(self, contact_id: int, patch: Dict[str, Any]) -> Optional[Contact]:
        pass

    @abstractmethod
    async def get_channel_by_id(self, channel_id: int) -> Optional[Channel]:
        pass

    @abstractmethod
    async def get_messages_by_conversation_id(self, conversation_id: int) -> List[Message]:
        pass

    @abstractmethod
    async def create_message(self, data: Dict[str, Any]) -> Message:
        pass

    @abstractmethod
    async def create_notification(self, data: Dict[str, Any]) -> Notification:
        pass


class InMemoryStorage(Storage):
    """Process-local storage backend, used for development and tests."""

    def __init__(self):
        self.automations: Dict[int, Automation] = {}
        self.conversations: Dict[int, Conversation] = {}
        self.contacts: Dict[int, Contact] = {}
        self.channels: Dict[int, Channel] = {}
        self.messages: Dict[int, Message] = {}
        self.notifications: Dict[int, Notification] = {}
        self._ids: Dict[str, int] = {}

    def _next_id(self, kind: str) -> int:
        self._ids[kind] = self._ids.get(kind, 0) + 1
        return self._ids[kind]

    # Seeding helpers

    def add_conversation(self, conversation: Conversation) -> Conversation:
        self.conversations[conversation.id] = conversation
        return conversation

    def add_contact(self, contact: Contact) -> Contact:
        self.contacts[contact.id] = contact
        return contact

    def add_channel(self, channel: Channel) -> Channel:
        self.channels[channel.id] = channel
        return channel

    async def ping(self) -> bool:
        return True

    async def get_automations(self, type: Optional[AutomationType] = None) -> List[Automation]:
        automations = sorted(self.automations.values(), key=lambda a: a.id)
        if type is not None:
            automations = [a for a in automations if a.type == type]
        return automations

    async def get_automation_by_id(self, automation_id: int) -> Optional[Automation]:
        return self.automations.get(automation_id)

    async def create_automation(self, data: Dict[str, Any]) -> Automation:
        automation = Automation.model_validate({**data, "id": self._next_id("automation")})
        self.automations[automation.id] = automation
        logger.debug(f"Created automation {automation.id} ({automation.name})")
        return automation

    async def update_automation(
        self, automation_id: int, patch: Dict[str, Any]
    ) -> Optional[Automation]:
        existing = self.automations.get(automation_id)
        if existing is None:
            return None
        updated = Automation.model_validate({**existing.model_dump(), **patch, "id": automation_id})
        self.automations[automation_id] = updated
        return updated

    async def delete_automation(self, automation_id: int) -> bool:
        return self.automations.pop(automation_id, None) is not None

    async def get_conversation_by_id(self, conversation_id: int) -> Optional[Conversation]:
        return self.conversations.get(conversation_id)

    async def get_conversations(
        self, filter: Optional[Dict[str, Any]] = None
    ) -> List[Conversation]:
        conversations = sorted(self.conversations.values(), key=lambda c: c.id)
        for key, value in (filter or {}).items():
            conversations = [c for c in conversations if getattr(c, key, None) == value]
        return conversations

    async def update_conversation(
        self, conversation_id: int, patch: Dict[str, Any]
    ) -> Optional[Conversation]:
        existing = self.conversations.get(conversation_id)
        if existing is None:
            return None
        updated = existing.model_copy(update={**patch, "updated_at": utcnow()})
        self.conversations[conversation_id] = updated
        return updated

    async def assign_conversation(
        self, conversation_id: int, user_id: int
    ) -> Optional[Conversation]:
        return await self.update_conversation(conversation_id, {"assigned_to_id": user_id})

    async def get_contact_by_id(self, contact_id: int) -> Optional[Contact]:
        return self.contacts.get(contact_id)

    async def update_contact(self, contact_id: int, patch: Dict[str, Any]) -> Optional[Contact]:
        existing = self.contacts.get(contact_id)
        if existing is None:
            return None
        known = {k: v for k, v in patch.items() if k in Contact.model_fields}
        custom = {k: v for k, v in patch.items() if k not in Contact.model_fields}
        if custom:
            known["custom_fields"] = {**existing.custom_fields, **custom}
        updated = existing.model_copy(update=known)
        self.contacts[contact_id] = updated
        return updated

    async def get_channel_by_id(self, channel_id: int) -> Optional[Channel]:
        return self.channels.get(channel_id)

    async def get_messages_by_conversation_id(self, conversation_id: int) -> List[Message]:
        return sorted(
            (m for m in self.messages.values() if m.conversation_id == conversation_id),
            key=lambda m: (m.created_at, m.id),
        )

    async def create_message(self, data: Dict[str, Any]) -> Message:
        message = Message.model_validate({**data, "id": self._next_id("message")})
        self.messages[message.id] = message
        return message

    async def create_notification(self, data: Dict[str, Any]) -> Notification:
        notification = Notification.model_validate(
            {**data, "id": self._next_id("notification")}
        )
        self.notifications[notification.id] = notification
        return notification
