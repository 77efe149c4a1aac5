from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Record(BaseModel):
    """Base for every record; camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
    )


class QueueItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"
    COMPLETED = "completed"


class WebhookQueueItem(Record):
    id: int
    source: str
    channel_id: Optional[int] = None
    payload: Any
    status: QueueItemStatus = QueueItemStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    process_after: datetime = Field(default_factory=utcnow)
    priority: int = 5
    base_priority: int = 5
    tags: List[str] = Field(default_factory=list)
    batch_id: Optional[str] = None
    processing_time_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def is_eligible(self, now: datetime) -> bool:
        return self.status == QueueItemStatus.PENDING and self.process_after <= now


class AutomationType(str, Enum):
    QUICK_REPLY = "quick_reply"
    CHATBOT = "chatbot"
    TRIGGER = "trigger"
    SCHEDULED = "scheduled"


MESSAGE_DRIVEN_TYPES = (
    AutomationType.QUICK_REPLY,
    AutomationType.CHATBOT,
    AutomationType.TRIGGER,
)


class Automation(Record):
    id: int
    name: str
    description: Optional[str] = None
    type: AutomationType
    is_active: bool = True
    trigger: Dict[str, Any] = Field(default_factory=dict)
    schedule: Optional[Dict[str, Any]] = None
    response: Union[str, Dict[str, Any], None] = None
    model_provider: Optional[str] = None
    model_settings: Dict[str, Any] = Field(default_factory=dict, alias="modelConfig")
    last_executed_at: Optional[datetime] = None
    created_by: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class Message(Record):
    id: int
    conversation_id: int
    content: str = ""
    content_type: str = "text"
    direction: MessageDirection = MessageDirection.INBOUND
    status: str = "received"
    sent_by_id: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class Conversation(Record):
    id: int
    contact_id: Optional[int] = None
    channel_id: Optional[int] = None
    status: str = "open"
    assigned_to_id: Optional[int] = None
    contact_identifier: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Contact(Record):
    id: int
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)


class Channel(Record):
    id: int
    type: str
    name: str = ""
    config: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


class Notification(Record):
    id: int
    user_id: Optional[int] = None
    title: str
    message: str
    priority: str = "normal"
    category: str = "automation"
    data: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class AutomationContext(Record):
    conversation: Optional[Conversation] = None
    contact: Optional[Contact] = None
    channel: Optional[Channel] = None
    messages: List[Message] = Field(default_factory=list)
    incoming_message: Optional[Message] = None
    last_message: Optional[Message] = None
    variables: Dict[str, Any] = Field(default_factory=dict)


class AutomationResult(Record):
    success: bool
    automation_id: Optional[int] = None
    response: Optional[str] = None
    message: Optional[Message] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str, automation_id: Optional[int] = None) -> "AutomationResult":
        return cls(success=False, error=error, automation_id=automation_id)


class QueueStatus(Record):
    pending: int
    processing: int
    failed: int
    is_processing: bool


class SourceStats(Record):
    source: str
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    avg_processing_time_ms: Optional[float] = None
