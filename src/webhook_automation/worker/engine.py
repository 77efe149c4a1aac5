from typing import Optional

from loguru import logger

from webhook_automation.automation.actions import ActionExecutor
from webhook_automation.automation.ai import AIClient, DisabledAIClient, HttpAIClient
from webhook_automation.automation.channels import ChannelSender
from webhook_automation.automation.executor import AutomationExecutor
from webhook_automation.automation.rules import RuleEngine
from webhook_automation.automation.service import AutomationService
from webhook_automation.automation.templates import TemplateEngine
from webhook_automation.common.config import EngineConfig
from webhook_automation.common.errors import TransientIOError
from webhook_automation.common.storage import InMemoryStorage, Storage
from webhook_automation.queue.handlers import (
    HandlerRegistry,
    MessageWebhookHandler,
    MetaWebhookHandler,
    PaymentWebhookHandler,
)
from webhook_automation.queue.service import WebhookQueue
from webhook_automation.queue.store import InMemoryQueueStore, QueueStore
from webhook_automation.worker.scheduler import AutomationScheduler


def build_handler_registry(storage: Storage, automations: AutomationService) -> HandlerRegistry:
    """Payment and Meta sources get dedicated handlers, everything else is a message."""
    registry = HandlerRegistry(default=MessageWebhookHandler(storage, automations))
    registry.register("asaas", PaymentWebhookHandler(storage, provider="asaas"))
    registry.register("meta", MetaWebhookHandler(registry))
    return registry


def create_ai_client(config: EngineConfig) -> AIClient:
    if not config.ai.endpoint:
        logger.warning("No AI endpoint configured, chatbot automations will fail")
        return DisabledAIClient()
    return HttpAIClient(
        endpoint=config.ai.endpoint,
        api_key=config.ai.api_key,
        timeout=config.automation.ai_timeout,
    )


class Engine:
    """Wires storage, queue and automation components for one process."""

    def __init__(
        self,
        config: EngineConfig,
        storage: Optional[Storage] = None,
        queue_store: Optional[QueueStore] = None,
        ai_client: Optional[AIClient] = None,
        channel_sender: Optional[ChannelSender] = None,
    ):
        self.config = config
        self.storage = storage or InMemoryStorage()
        self.queue_store = queue_store or InMemoryQueueStore()

        self.templates = TemplateEngine()
        self.rules = RuleEngine()
        self.actions = ActionExecutor(
            self.storage,
            self.templates,
            webhook_timeout=config.automation.webhook_timeout,
        )
        self.executor = AutomationExecutor(
            storage=self.storage,
            templates=self.templates,
            rules=self.rules,
            actions=self.actions,
            ai_client=ai_client or create_ai_client(config),
            channel_sender=channel_sender,
            ai_timeout=config.automation.ai_timeout,
        )
        self.automations = AutomationService(
            self.storage, self.executor, self.rules, config.automation
        )
        self.handlers = build_handler_registry(self.storage, self.automations)
        self.queue = WebhookQueue(self.queue_store, self.handlers, config.queue)
        self.scheduler = AutomationScheduler(self.automations, self.queue, config.automation)

    async def check_storage(self) -> None:
        try:
            reachable = await self.storage.ping()
        except Exception as e:
            raise TransientIOError(f"Storage is unreachable: {e}") from e
        if not reachable:
            raise TransientIOError("Storage is unreachable")

    async def start(self, background: bool = True) -> None:
        """Verify storage and, with ``background``, start the queue and scheduler loops."""
        await self.check_storage()
        if background:
            self.queue.start_processing()
            self.scheduler.start()
        logger.info("Webhook automation engine started")

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.queue.stop_processing()
        logger.info("Webhook automation engine stopped")
