from unittest.mock import AsyncMock

import pytest

from webhook_automation.automation.ai import DisabledAIClient, HttpAIClient
from webhook_automation.common.config import EngineConfig
from webhook_automation.common.errors import TransientIOError, ValidationError
from webhook_automation.common.models import WebhookQueueItem
from webhook_automation.queue.handlers import (
    MessageWebhookHandler,
    MetaWebhookHandler,
    PaymentWebhookHandler,
)
from webhook_automation.worker.engine import create_ai_client


class TestCreateAIClient:

    def test_disabled_without_endpoint(self):
        assert isinstance(create_ai_client(EngineConfig()), DisabledAIClient)

    def test_http_client(self):
        config = EngineConfig(
            ai={"endpoint": "https://ai.example.com", "api_key": "k"},
            automation={"ai_timeout": 12},
        )
        client = create_ai_client(config)
        assert isinstance(client, HttpAIClient)
        assert client.endpoint == "https://ai.example.com"
        assert client.api_key == "k"
        assert client.timeout == 12


class TestEngine:

    def test_handler_wiring(self, engine):
        """Test that payment and Meta sources get dedicated handlers."""
        assert isinstance(engine.handlers.resolve("asaas"), PaymentWebhookHandler)
        assert isinstance(engine.handlers.resolve("meta"), MetaWebhookHandler)
        assert isinstance(engine.handlers.resolve("whatsapp"), MessageWebhookHandler)
        assert engine.queue.handlers is engine.handlers
        assert engine.automations.executor is engine.executor

    def test_shares_storage(self, engine, storage):
        assert engine.storage is storage
        assert engine.actions.storage is storage
        assert engine.automations.storage is storage

    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine):
        await engine.start()
        assert engine.queue.is_processing
        assert engine.scheduler.is_running

        await engine.stop()
        assert not engine.queue.is_processing
        assert not engine.scheduler.is_running

    @pytest.mark.asyncio
    async def test_start_without_background_loops(self, engine):
        await engine.start(background=False)
        assert not engine.queue.is_processing
        assert not engine.scheduler.is_running

    @pytest.mark.asyncio
    async def test_unreachable_storage_is_fatal(self, engine, storage):
        storage.ping = AsyncMock(return_value=False)
        with pytest.raises(TransientIOError, match="unreachable"):
            await engine.start()
        assert not engine.queue.is_processing

    @pytest.mark.asyncio
    async def test_storage_ping_error(self, engine, storage):
        storage.ping = AsyncMock(side_effect=ConnectionError("refused"))
        with pytest.raises(TransientIOError, match="refused"):
            await engine.check_storage()

    @pytest.mark.asyncio
    async def test_webhook_to_reply_end_to_end(self, engine, storage, channel_sender):
        """Test that an enqueued message webhook ends in an automation reply."""
        await storage.create_automation(
            {
                "name": "Pricing",
                "type": "quick_reply",
                "trigger": {"keywords": ["valor"]},
                "response": "Olá {{contactName}}!",
            }
        )
        await engine.queue.enqueue("whatsapp", 1, {"conversationId": 1, "content": "qual o valor?"})

        assert await engine.queue.process_next() is True
        assert channel_sender.sent == [(1, "+5511999990000", "Olá Maria Silva!")]
        status = await engine.queue.get_status()
        assert (status.pending, status.failed) == (0, 0)

    @pytest.mark.asyncio
    async def test_raw_meta_envelope_is_rejected(self, engine):
        """Test that an unnormalized Meta event fails with a message naming the expected shape."""
        item = WebhookQueueItem(
            id=3,
            source="meta",
            payload={"object": "page", "entry": [{"messaging": [{"message": {"text": "oi"}}]}]},
        )
        with pytest.raises(ValidationError, match="conversationId and content are required"):
            await engine.handlers.resolve("meta").handle(item)

    @pytest.mark.asyncio
    async def test_normalized_meta_message_is_stored(self, engine, storage):
        item = WebhookQueueItem(
            id=4, source="meta", payload={"object": "instagram", "conversationId": 1, "content": "oi"}
        )
        await engine.handlers.resolve("meta").handle(item)

        [message] = await storage.get_messages_by_conversation_id(1)
        assert message.content == "oi"
        assert message.metadata["source"] == "meta"
