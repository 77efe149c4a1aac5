import pytest

from webhook_automation.common.models import AutomationType, MessageDirection


class TestInMemoryStorage:

    @pytest.mark.asyncio
    async def test_ping(self, storage):
        assert await storage.ping() is True

    @pytest.mark.asyncio
    async def test_automation_crud(self, storage):
        created = await storage.create_automation({"name": "Pricing", "type": "quick_reply"})
        assert created.id == 1
        assert await storage.get_automation_by_id(1) == created

        updated = await storage.update_automation(1, {"is_active": False})
        assert updated.is_active is False
        assert updated.name == "Pricing"

        assert await storage.delete_automation(1) is True
        assert await storage.delete_automation(1) is False
        assert await storage.get_automation_by_id(1) is None

    @pytest.mark.asyncio
    async def test_update_missing_automation(self, storage):
        assert await storage.update_automation(42, {"name": "x"}) is None

    @pytest.mark.asyncio
    async def test_get_automations_by_type(self, storage):
        await storage.create_automation({"name": "a", "type": "trigger"})
        await storage.create_automation({"name": "b", "type": "scheduled"})
        await storage.create_automation({"name": "c", "type": "trigger"})

        triggers = await storage.get_automations(AutomationType.TRIGGER)
        assert [a.name for a in triggers] == ["a", "c"]
        assert len(await storage.get_automations()) == 3

    @pytest.mark.asyncio
    async def test_get_conversations_filter(self, storage, conversation):
        assert await storage.get_conversations({"status": "open"}) == [conversation]
        assert await storage.get_conversations({"status": "closed"}) == []

    @pytest.mark.asyncio
    async def test_update_and_assign_conversation(self, storage):
        closed = await storage.update_conversation(1, {"status": "closed"})
        assert closed.status == "closed"
        assigned = await storage.assign_conversation(1, 7)
        assert assigned.assigned_to_id == 7
        assert assigned.status == "closed"
        assert await storage.assign_conversation(99, 7) is None

    @pytest.mark.asyncio
    async def test_update_contact_custom_field(self, storage):
        updated = await storage.update_contact(1, {"name": "Maria S.", "city": "Recife"})
        assert updated.name == "Maria S."
        assert updated.custom_fields == {"plan": "gold", "city": "Recife"}
        assert await storage.update_contact(99, {"name": "x"}) is None

    @pytest.mark.asyncio
    async def test_messages_in_creation_order(self, storage):
        first = await storage.create_message(
            {"conversation_id": 1, "content": "hello", "direction": MessageDirection.INBOUND}
        )
        second = await storage.create_message(
            {"conversation_id": 1, "content": "hi!", "direction": MessageDirection.OUTBOUND}
        )
        await storage.create_message({"conversation_id": 2, "content": "elsewhere"})

        messages = await storage.get_messages_by_conversation_id(1)
        assert [m.id for m in messages] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_create_notification(self, storage):
        notification = await storage.create_notification(
            {"user_id": 3, "title": "Hello", "message": "World"}
        )
        assert notification.id == 1
        assert storage.notifications[1].user_id == 3
