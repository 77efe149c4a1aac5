"""Webhook ingestion queue: persistence, policies, handlers and the processing loop."""

from webhook_automation.queue.handlers import (
    HandlerRegistry,
    MessageWebhookHandler,
    MetaWebhookHandler,
    PaymentWebhookHandler,
    WebhookHandler,
    identify_source,
    validate_payload,
)
from webhook_automation.queue.policy import compute_backoff
from webhook_automation.queue.service import WebhookQueue
from webhook_automation.queue.store import InMemoryQueueStore, QueueStore

__all__ = [
    # Handlers
    "HandlerRegistry",
    "MessageWebhookHandler",
    "MetaWebhookHandler",
    "PaymentWebhookHandler",
    "WebhookHandler",
    "identify_source",
    "validate_payload",
    # Policy
    "compute_backoff",
    # Service
    "WebhookQueue",
    # Store
    "InMemoryQueueStore",
    "QueueStore",
]
