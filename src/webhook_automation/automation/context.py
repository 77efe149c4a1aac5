from datetime import datetime
from typing import Any, Dict, Optional

from webhook_automation.common.models import AutomationContext, utcnow

DEFAULT_DATE_FORMAT = "DD/MM/YYYY"


def parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def format_date(value: Any, fmt: str = DEFAULT_DATE_FORMAT) -> str:
    """Format a datetime (or ISO string) with ``DD MM YYYY HH mm`` tokens."""
    moment = parse_datetime(value)
    if moment is None:
        return ""
    return (
        fmt.replace("DD", f"{moment.day:02d}")
        .replace("MM", f"{moment.month:02d}")
        .replace("YYYY", f"{moment.year:04d}")
        .replace("HH", f"{moment.hour:02d}")
        .replace("mm", f"{moment.minute:02d}")
    )


def flatten_context(
    context: AutomationContext, now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Project the nested context onto top-level keys usable by templates and rules.

    Entities stay available under their own key (``contact.name``) and are
    also exposed as prefixed scalars (``contactName``). Custom contact fields
    become ``contact_<key>``; variables are merged last and win on conflict.
    """
    flat: Dict[str, Any] = {}

    if context.conversation:
        conversation = context.conversation
        flat["conversation"] = conversation.model_dump(by_alias=True)
        flat["conversationId"] = conversation.id
        flat["conversationStatus"] = conversation.status

    if context.contact:
        contact = context.contact
        flat["contact"] = contact.model_dump(by_alias=True)
        flat["contactId"] = contact.id
        flat["contactName"] = contact.name
        flat["contactEmail"] = contact.email or ""
        flat["contactPhone"] = contact.phone or ""
        flat["contactTags"] = list(contact.tags)
        for key, value in contact.custom_fields.items():
            flat[f"contact_{key}"] = value

    if context.channel:
        channel = context.channel
        flat["channel"] = channel.model_dump(by_alias=True)
        flat["channelId"] = channel.id
        flat["channelType"] = channel.type
        flat["channelName"] = channel.name

    if context.incoming_message:
        message = context.incoming_message
        flat["incomingMessage"] = message.model_dump(by_alias=True)
        flat["messageContent"] = message.content
        flat["messageType"] = message.content_type
        flat["messageDirection"] = message.direction.value

    if context.last_message:
        message = context.last_message
        flat["lastMessage"] = message.model_dump(by_alias=True)
        flat["lastMessageContent"] = message.content
        flat["lastMessageType"] = message.content_type
        flat["lastMessageDirection"] = message.direction.value

    flat["messages"] = [m.model_dump(by_alias=True) for m in context.messages]
    flat["messageCount"] = len(context.messages)

    flat.update(context.variables)

    moment = now or utcnow()
    flat.setdefault("currentDate", moment)
    flat.setdefault("today", format_date(moment))
    flat.setdefault("now", format_date(moment, "DD/MM/YYYY HH:mm"))
    return flat


_MISSING = object()


def resolve_path(data: Dict[str, Any], path: str, default: Any = None) -> Any:
    """Look up a dotted path (``contact.customFields.plan``, ``messages.0.content``)."""
    current: Any = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return default
    return current


def has_path(data: Dict[str, Any], path: str) -> bool:
    return resolve_path(data, path, _MISSING) is not _MISSING


def describe_context(context: AutomationContext) -> str:
    parts = []
    if context.conversation:
        parts.append(f"conversation={context.conversation.id}")
    if context.contact:
        parts.append(f"contact={context.contact.id}")
    if context.incoming_message:
        parts.append(f"message={context.incoming_message.id}")
    return ", ".join(parts) or "empty context"
