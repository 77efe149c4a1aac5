from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

import pydantic
from loguru import logger

from webhook_automation.common.errors import ExecutionError, NotFoundError, ValidationError
from webhook_automation.common.models import Message, MessageDirection, Record, WebhookQueueItem
from webhook_automation.common.storage import Storage

if TYPE_CHECKING:
    from webhook_automation.automation.service import AutomationService


class WebhookHandler(ABC):
    @abstractmethod
    async def handle(self, item: WebhookQueueItem) -> None:
        """Process one queue item; raising marks the attempt as failed."""


class HandlerRegistry:
    """Lookup table from webhook source to handler, with an optional fallback."""

    def __init__(self, default: Optional[WebhookHandler] = None):
        self._handlers: Dict[str, WebhookHandler] = {}
        self.default = default

    def register(self, source: str, handler: WebhookHandler) -> None:
        self._handlers[source] = handler
        logger.info(f"Handler for source '{source}' registered with the webhook queue")

    def sources(self) -> List[str]:
        return sorted(self._handlers)

    def resolve(self, source: str) -> WebhookHandler:
        handler = self._handlers.get(source, self.default)
        if handler is None:
            raise ExecutionError(f"No handler registered for source: {source}")
        return handler


class InboundMessagePayload(Record):
    conversation_id: int
    content: str
    content_type: str = "text"
    direction: MessageDirection = MessageDirection.INBOUND
    metadata: Dict[str, Any] = {}


class MessageWebhookHandler(WebhookHandler):
    """Default path: persist the inbound message and run message automations.

    Channel payloads must already be normalized to ``{conversationId, content}``
    by the channel adapter that posts them; raw provider envelopes are rejected
    with a ``ValidationError``.
    """

    def __init__(self, storage: Storage, automation_service: "AutomationService"):
        self.storage = storage
        self.automation_service = automation_service

    async def handle(self, item: WebhookQueueItem) -> None:
        if not isinstance(item.payload, dict):
            raise ValidationError(f"Webhook {item.id} payload is not an object")
        try:
            inbound = InboundMessagePayload.model_validate(item.payload)
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"Webhook {item.id} from {item.source} is not a normalized message "
                f"(conversationId and content are required): {e}"
            ) from e

        conversation = await self.storage.get_conversation_by_id(inbound.conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {inbound.conversation_id} not found")

        message = await self._find_persisted(item, inbound.conversation_id)
        if message is not None:
            logger.info(f"Webhook {item.id} already stored as message {message.id}, rerunning automations")
        else:
            message = await self.storage.create_message(
                {
                    "conversation_id": inbound.conversation_id,
                    "content": inbound.content,
                    "content_type": inbound.content_type,
                    "direction": inbound.direction,
                    "status": "received",
                    "metadata": {
                        **inbound.metadata,
                        "source": item.source,
                        "queue_item_id": item.id,
                    },
                }
            )
        results = await self.automation_service.process_incoming_message(message)
        failed = [r for r in results if not r.success]
        logger.info(
            f"Message {message.id} from {item.source} triggered {len(results)} automation(s), "
            f"{len(failed)} failed"
        )

    async def _find_persisted(self, item: WebhookQueueItem, conversation_id: int) -> Optional[Message]:
        """The message an earlier attempt of this queue item already stored, if any."""
        for message in await self.storage.get_messages_by_conversation_id(conversation_id):
            if message.metadata.get("queue_item_id") == item.id:
                return message
        return None


class PaymentWebhookHandler(WebhookHandler):
    """Payment gateway callbacks: record a notification about the status change."""

    def __init__(self, storage: Storage, provider: str = "asaas"):
        self.storage = storage
        self.provider = provider

    async def handle(self, item: WebhookQueueItem) -> None:
        payload = item.payload if isinstance(item.payload, dict) else {}
        event = payload.get("event")
        payment = payload.get("payment")
        if not event or not isinstance(payment, dict) or not payment.get("id"):
            raise ValidationError(f"Invalid {self.provider} payment webhook {item.id}")

        status = payment.get("status", "UNKNOWN")
        logger.info(f"Received {self.provider} event {event} for payment {payment['id']} ({status})")
        await self.storage.create_notification(
            {
                "user_id": None,
                "title": f"Payment {payment['id']}: {event}",
                "message": f"Payment {payment['id']} is now {status}",
                "category": "payment",
                "data": {
                    "provider": self.provider,
                    "event": event,
                    "payment_id": payment["id"],
                    "status": status,
                    "value": payment.get("value"),
                },
            }
        )


class MetaWebhookHandler(WebhookHandler):
    """Meta sends Instagram and Messenger events to one endpoint; route by ``object``.

    Only the envelope is inspected here. The routed handler still expects the
    normalized message shape alongside ``object``.
    """

    ROUTES = {"instagram": "instagram", "page": "messenger"}

    def __init__(self, registry: HandlerRegistry):
        self.registry = registry

    async def handle(self, item: WebhookQueueItem) -> None:
        kind = item.payload.get("object") if isinstance(item.payload, dict) else None
        source = self.ROUTES.get(kind)
        if source is None:
            raise ValidationError(f"Unknown Meta webhook object: {kind}")
        await self.registry.resolve(source).handle(item)


def _any_change_is_message(data: Dict[str, Any]) -> bool:
    entries = data.get("entry")
    if not isinstance(entries, list):
        return False
    return any(
        change.get("field") == "messages"
        for entry in entries
        if isinstance(entry, dict)
        for change in entry.get("changes") or []
        if isinstance(change, dict)
    )


PAYLOAD_VALIDATORS: Dict[str, Callable[[Any], bool]] = {
    "twilio": lambda d: bool(d.get("SmsMessageSid") or d.get("SmsSid") or d.get("MessageSid")),
    "twilio-sms": lambda d: bool(d.get("SmsSid") or d.get("MessageSid")),
    "meta": lambda d: d.get("object") in ("page", "instagram"),
    "messenger": lambda d: d.get("object") == "page",
    "instagram": lambda d: d.get("object") == "instagram",
    "telegram": lambda d: bool(d.get("update_id") or d.get("message") or d.get("callback_query")),
    "zapapi": lambda d: bool(d.get("from") or (d.get("key") and d.get("phone"))),
    "whatsapp-business": lambda d: (
        d.get("object") == "whatsapp_business_account" or _any_change_is_message(d)
    ),
    "asaas": lambda d: bool(d.get("event") and d.get("payment")),
    "slack": lambda d: bool(d.get("event") or d.get("challenge") or d.get("payload")),
    "discord": lambda d: bool(d.get("id") or d.get("t") or d.get("op")),
}


def _is_sendgrid_batch(data: Any) -> bool:
    return isinstance(data, list) and any(
        isinstance(event, dict) and event.get("sg_event_id") for event in data
    )


def validate_payload(source: str, payload: Any) -> bool:
    """Shape check for a known source; unknown sources are accepted as-is."""
    if source == "sendgrid":
        return _is_sendgrid_batch(payload)
    validator = PAYLOAD_VALIDATORS.get(source)
    if validator is None:
        return True
    if not isinstance(payload, dict):
        return False
    return validator(payload)


def identify_source(payload: Any) -> Optional[str]:
    """Best guess of which producer sent an untyped payload."""
    if _is_sendgrid_batch(payload):
        return "sendgrid"
    if not isinstance(payload, dict):
        return None
    for source, validator in PAYLOAD_VALIDATORS.items():
        if validator(payload):
            return source
    return None
