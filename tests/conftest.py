from datetime import timedelta
from typing import List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from webhook_automation.api.server import create_app
from webhook_automation.automation.actions import ActionExecutor
from webhook_automation.automation.ai import AIClient
from webhook_automation.automation.channels import ChannelSender
from webhook_automation.automation.executor import AutomationExecutor
from webhook_automation.automation.rules import RuleEngine
from webhook_automation.automation.service import AutomationService
from webhook_automation.automation.templates import TemplateEngine
from webhook_automation.common.config import AutomationConfig, EngineConfig, QueueConfig
from webhook_automation.common.models import (
    Automation,
    AutomationContext,
    AutomationType,
    Channel,
    Contact,
    Conversation,
    Message,
    MessageDirection,
    utcnow,
)
from webhook_automation.common.storage import InMemoryStorage
from webhook_automation.queue.handlers import HandlerRegistry, WebhookHandler
from webhook_automation.queue.service import WebhookQueue
from webhook_automation.queue.store import InMemoryQueueStore
from webhook_automation.worker.engine import Engine


API_TOKEN = "test-token"


class FakeClock:
    """Deterministic clock that tests advance explicitly."""

    def __init__(self, start=None):
        self.now = start or utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class StubAIClient(AIClient):
    """AI client returning a canned answer and recording every question."""

    def __init__(self, answer: str = "Our plans start at 10 USD."):
        self.answer = answer
        self.questions: List[Tuple[str, Optional[int], Optional[int], Optional[int]]] = []

    async def answer_question(self, question, conversation_id, contact_id, channel_id):
        self.questions.append((question, conversation_id, contact_id, channel_id))
        return self.answer


class RecordingChannelSender(ChannelSender):
    def __init__(self):
        self.sent = []

    async def send(self, channel, recipient, content):
        self.sent.append((channel.id, recipient, content))


class RecordingHandler(WebhookHandler):
    """Queue handler that records items and fails while ``failures`` remain."""

    def __init__(self, failures: int = 0, error: str = "handler failed"):
        self.failures = failures
        self.error = error
        self.handled = []

    async def handle(self, item):
        self.handled.append(item.id)
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError(self.error)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue_config():
    return QueueConfig(poll_interval=0.01, error_backoff=0.01, handler_timeout=1.0)


@pytest.fixture
def queue_store():
    return InMemoryQueueStore()


@pytest.fixture
def recording_handler():
    return RecordingHandler()


@pytest.fixture
def webhook_queue(queue_store, recording_handler, queue_config, clock):
    """Queue whose every source is handled by ``recording_handler``."""
    return WebhookQueue(
        queue_store,
        HandlerRegistry(default=recording_handler),
        queue_config,
        clock=clock,
    )


@pytest.fixture
def contact():
    return Contact(
        id=1,
        name="Maria Silva",
        email="maria@example.com",
        phone="+5511999990000",
        tags=["lead"],
        custom_fields={"plan": "gold"},
    )


@pytest.fixture
def channel():
    return Channel(id=1, type="whatsapp", name="Support WhatsApp")


@pytest.fixture
def conversation():
    return Conversation(id=1, contact_id=1, channel_id=1, contact_identifier="+5511999990000")


@pytest.fixture
def storage(contact, channel, conversation):
    """In-memory storage seeded with one contact, channel and open conversation."""
    storage = InMemoryStorage()
    storage.add_contact(contact)
    storage.add_channel(channel)
    storage.add_conversation(conversation)
    return storage


@pytest.fixture
def incoming_message(conversation):
    return Message(
        id=100,
        conversation_id=conversation.id,
        content="qual o valor do plano?",
        direction=MessageDirection.INBOUND,
    )


@pytest.fixture
def context(conversation, contact, channel, incoming_message):
    return AutomationContext(
        conversation=conversation,
        contact=contact,
        channel=channel,
        messages=[],
        incoming_message=incoming_message,
        last_message=incoming_message,
    )


@pytest.fixture
def templates():
    return TemplateEngine()


@pytest.fixture
def rules(clock):
    return RuleEngine(clock=clock)


@pytest.fixture
def action_executor(storage, templates):
    return ActionExecutor(storage, templates, webhook_timeout=1.0)


@pytest.fixture
def ai_client():
    return StubAIClient()


@pytest.fixture
def channel_sender():
    return RecordingChannelSender()


@pytest.fixture
def automation_executor(storage, templates, rules, action_executor, ai_client, channel_sender, clock):
    return AutomationExecutor(
        storage=storage,
        templates=templates,
        rules=rules,
        actions=action_executor,
        ai_client=ai_client,
        channel_sender=channel_sender,
        ai_timeout=1.0,
        clock=clock,
    )


@pytest.fixture
def automation_service(storage, automation_executor, rules, clock):
    return AutomationService(
        storage, automation_executor, rules, AutomationConfig(history_limit=20), clock=clock
    )


@pytest.fixture
def make_automation(storage):
    """Factory storing an automation and returning it."""

    async def factory(type: AutomationType, name: str = "Automation", **fields) -> Automation:
        return await storage.create_automation({"name": name, "type": type, **fields})

    return factory


@pytest.fixture
def engine_config():
    return EngineConfig(
        log_level="DEBUG",
        queue=QueueConfig(poll_interval=0.01, error_backoff=0.01),
        automation=AutomationConfig(schedule_check_interval=0.01),
        metrics={"enabled": False},
        auth={"api_tokens": [API_TOKEN]},
        webhook_sources=[
            {"name": "asaas", "priority": 7},
            {"name": "whatsapp", "priority": 2, "validate_payload": False},
        ],
    )


@pytest.fixture
def engine(engine_config, storage, ai_client, channel_sender):
    return Engine(engine_config, storage=storage, ai_client=ai_client, channel_sender=channel_sender)


@pytest.fixture
def api_app(engine_config, engine):
    """FastAPI app wired to the test engine; startup hooks do not run."""
    return create_app(engine_config, engine)


@pytest.fixture
def api_client(api_app):
    return TestClient(api_app)


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {API_TOKEN}"}
