import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from webhook_automation.common.models import QueueItemStatus, WebhookQueueItem, utcnow


class QueueStore(ABC):
    """Persistence for webhook queue items.

    ``claim_next`` and ``transition`` must be atomic with respect to each
    other: a shared backend implements them as a single conditional update
    (``UPDATE ... WHERE status = :expected``) so that two loop instances can
    never hold the same item.
    """

    @abstractmethod
    async def add(self, **fields: Any) -> WebhookQueueItem:
        pass

    @abstractmethod
    async def get(self, item_id: int) -> Optional[WebhookQueueItem]:
        pass

    @abstractmethod
    async def claim_next(self, now: datetime) -> Optional[WebhookQueueItem]:
        """Move the best eligible pending item to processing and return it."""

    @abstractmethod
    async def transition(
        self, item_id: int, expected: QueueItemStatus, **changes: Any
    ) -> Optional[WebhookQueueItem]:
        """Apply ``changes`` only if the item is currently in ``expected`` status."""

    @abstractmethod
    async def list(self, status: Optional[QueueItemStatus] = None) -> List[WebhookQueueItem]:
        pass

    @abstractmethod
    async def delete_completed_before(self, cutoff: datetime) -> int:
        pass


class InMemoryQueueStore(QueueStore):
    def __init__(self):
        self._items: Dict[int, WebhookQueueItem] = {}
        self._last_id = 0
        self._lock = asyncio.Lock()

    async def add(self, **fields: Any) -> WebhookQueueItem:
        async with self._lock:
            self._last_id += 1
            item = WebhookQueueItem(id=self._last_id, **fields)
            self._items[item.id] = item
            return item.model_copy()

    async def get(self, item_id: int) -> Optional[WebhookQueueItem]:
        item = self._items.get(item_id)
        return item.model_copy() if item else None

    async def claim_next(self, now: datetime) -> Optional[WebhookQueueItem]:
        async with self._lock:
            eligible = [item for item in self._items.values() if item.is_eligible(now)]
            if not eligible:
                return None
            chosen = min(eligible, key=lambda i: (i.priority, i.process_after, i.id))
            claimed = chosen.model_copy(
                update={
                    "status": QueueItemStatus.PROCESSING,
                    "attempts": chosen.attempts + 1,
                    "updated_at": now,
                }
            )
            self._items[claimed.id] = claimed
            return claimed.model_copy()

    async def transition(
        self, item_id: int, expected: QueueItemStatus, **changes: Any
    ) -> Optional[WebhookQueueItem]:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item.status != expected:
                return None
            updated = item.model_copy(update={"updated_at": utcnow(), **changes})
            self._items[item_id] = updated
            return updated.model_copy()

    async def list(self, status: Optional[QueueItemStatus] = None) -> List[WebhookQueueItem]:
        items = sorted(self._items.values(), key=lambda i: i.id)
        if status is not None:
            items = [i for i in items if i.status == status]
        return [i.model_copy() for i in items]

    async def delete_completed_before(self, cutoff: datetime) -> int:
        async with self._lock:
            doomed = [
                item.id
                for item in self._items.values()
                if item.status == QueueItemStatus.COMPLETED
                and item.completed_at is not None
                and item.completed_at < cutoff
            ]
            for item_id in doomed:
                del self._items[item_id]
            return len(doomed)
