import asyncio
import json
import time
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from webhook_automation.common.config import QueueConfig
from webhook_automation.common.errors import InvalidStateError, NotFoundError, ValidationError
from webhook_automation.common.metrics import metrics
from webhook_automation.common.models import (
    QueueItemStatus,
    QueueStatus,
    SourceStats,
    WebhookQueueItem,
    utcnow,
)
from webhook_automation.queue.handlers import HandlerRegistry
from webhook_automation.queue.policy import (
    collect_source_health,
    compute_backoff,
    rebalanced_priority,
    source_penalties,
)
from webhook_automation.queue.store import QueueStore


class WebhookQueue:
    """Durable, priority-ordered webhook processing with retries and backoff.

    One instance runs at most one background loop, and that loop holds at
    most one item in flight. Several instances may share a store; the store's
    conditional claim keeps them from processing the same item twice.
    """

    def __init__(
        self,
        store: QueueStore,
        handlers: HandlerRegistry,
        config: Optional[QueueConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.handlers = handlers
        self.config = config or QueueConfig()
        self.clock = clock

        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._stats = {
            "total_processed": 0,
            "success_count": 0,
            "failure_count": 0,
            "dead_lettered": 0,
            "avg_processing_time_ms": 0.0,
            "last_processed_at": None,
        }
        self._started_at = time.monotonic()

    @property
    def is_processing(self) -> bool:
        return self._task is not None and not self._task.done()

    async def enqueue(
        self,
        source: str,
        channel_id: Optional[int],
        payload: Any,
        priority: Optional[int] = None,
        tags: Optional[List[str]] = None,
        batch_id: Optional[str] = None,
        process_after: Optional[datetime] = None,
    ) -> WebhookQueueItem:
        if not source or not source.strip():
            raise ValidationError("Webhook source must not be empty")
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Webhook payload is not serializable: {e}") from e

        if priority is None:
            priority = self.config.priority_for(source)
        now = self.clock()
        item = await self.store.add(
            source=source,
            channel_id=channel_id,
            payload=payload,
            status=QueueItemStatus.PENDING,
            priority=priority,
            base_priority=priority,
            tags=tags or [],
            batch_id=batch_id,
            process_after=process_after or now,
            created_at=now,
            updated_at=now,
        )
        metrics.queue_enqueued_total.labels(source=source).inc()
        logger.info(f"Webhook from {source} queued with ID {item.id}, priority {priority}")
        return item

    def start_processing(self) -> None:
        if self.is_processing:
            logger.warning("Webhook queue processor is already running")
            return
        logger.info("Starting webhook queue processor")
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run(self._stop_event))

    async def stop_processing(self) -> None:
        """Stop claiming new items and wait for the in-flight one to finish."""
        if not self.is_processing:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Webhook queue processor stopped")

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Poll the store until ``shutdown_event`` is set."""
        while not shutdown_event.is_set():
            try:
                processed = await self.process_next()
            except Exception as e:
                logger.error(f"Error in webhook queue loop: {e}")
                await self._wait(shutdown_event, self.config.error_backoff)
                continue
            if not processed:
                await self._wait(shutdown_event, self.config.poll_interval)

    @staticmethod
    async def _wait(shutdown_event: asyncio.Event, seconds: float) -> None:
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def process_next(self) -> bool:
        """Claim and process one eligible item; False when nothing was eligible."""
        item = await self.store.claim_next(self.clock())
        if item is None:
            return False
        logger.debug(f"Claimed webhook {item.id} from {item.source} (attempt {item.attempts})")
        await self.process_item(item)
        return True

    async def process_item(self, item: WebhookQueueItem) -> bool:
        """Run the handler for an item already in ``processing`` and record the outcome."""
        start = time.perf_counter()
        try:
            handler = self.handlers.resolve(item.source)
            await asyncio.wait_for(handler.handle(item), timeout=self.config.handler_timeout)
        except asyncio.TimeoutError:
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            await self._record_failure(
                item, f"Handler timed out after {self.config.handler_timeout}s", elapsed_ms
            )
            return False
        except Exception as e:
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            await self._record_failure(item, str(e) or e.__class__.__name__, elapsed_ms)
            return False

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        now = self.clock()
        await self.store.transition(
            item.id,
            QueueItemStatus.PROCESSING,
            status=QueueItemStatus.COMPLETED,
            completed_at=now,
            processing_time_ms=elapsed_ms,
            last_error=None,
        )
        metrics.queue_processed_total.labels(source=item.source, outcome="completed").inc()
        metrics.queue_processing_time.labels(source=item.source).observe(elapsed_ms / 1000)
        self._track(success=True, elapsed_ms=elapsed_ms)
        logger.info(f"Processed webhook {item.id} from {item.source} in {elapsed_ms}ms")
        return True

    async def _record_failure(self, item: WebhookQueueItem, error: str, elapsed_ms: int) -> None:
        now = self.clock()
        if item.attempts >= self.config.max_attempts:
            await self.store.transition(
                item.id,
                QueueItemStatus.PROCESSING,
                status=QueueItemStatus.FAILED,
                last_error=error,
                processing_time_ms=elapsed_ms,
            )
            metrics.queue_processed_total.labels(source=item.source, outcome="failed").inc()
            metrics.queue_dead_letter_total.labels(source=item.source).inc()
            self._stats["dead_lettered"] += 1
            logger.error(
                f"Webhook {item.id} from {item.source} failed permanently "
                f"after {item.attempts} attempts: {error}"
            )
        else:
            delay = compute_backoff(item.attempts, self.config)
            await self.store.transition(
                item.id,
                QueueItemStatus.PROCESSING,
                status=QueueItemStatus.PENDING,
                last_error=error,
                processing_time_ms=elapsed_ms,
                process_after=now + timedelta(seconds=delay),
            )
            metrics.queue_processed_total.labels(source=item.source, outcome="retry").inc()
            metrics.queue_retry_total.labels(source=item.source).inc()
            logger.warning(
                f"Webhook {item.id} from {item.source} failed "
                f"(attempt {item.attempts}/{self.config.max_attempts}), retrying in {delay:.0f}s: {error}"
            )
        self._track(success=False, elapsed_ms=elapsed_ms)

    def _track(self, success: bool, elapsed_ms: int) -> None:
        stats = self._stats
        stats["total_processed"] += 1
        stats["success_count" if success else "failure_count"] += 1
        total = stats["total_processed"]
        stats["avg_processing_time_ms"] += (elapsed_ms - stats["avg_processing_time_ms"]) / total
        stats["last_processed_at"] = self.clock()

    def get_processing_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "uptime_seconds": int(time.monotonic() - self._started_at),
            "is_processing": self.is_processing,
        }

    async def get_status(self) -> QueueStatus:
        counts: Dict[QueueItemStatus, int] = defaultdict(int)
        for item in await self.store.list():
            counts[item.status] += 1
        return QueueStatus(
            pending=counts[QueueItemStatus.PENDING],
            processing=counts[QueueItemStatus.PROCESSING],
            failed=counts[QueueItemStatus.FAILED],
            is_processing=self.is_processing,
        )

    async def get_stats_by_source(self) -> List[SourceStats]:
        counts: Dict[str, Dict[QueueItemStatus, int]] = defaultdict(lambda: defaultdict(int))
        timings: Dict[str, List[int]] = defaultdict(list)
        for item in await self.store.list():
            counts[item.source][item.status] += 1
            if item.processing_time_ms and item.processing_time_ms > 0:
                timings[item.source].append(item.processing_time_ms)

        stats = []
        for source, by_status in counts.items():
            samples = timings.get(source)
            stats.append(
                SourceStats(
                    source=source,
                    pending=by_status[QueueItemStatus.PENDING],
                    processing=by_status[QueueItemStatus.PROCESSING],
                    completed=by_status[QueueItemStatus.COMPLETED],
                    failed=by_status[QueueItemStatus.FAILED],
                    avg_processing_time_ms=sum(samples) / len(samples) if samples else None,
                )
            )
        stats.sort(key=lambda s: (-s.pending, -s.failed, s.source))
        return stats

    async def get_performance_metrics(self) -> Dict[str, List[Dict[str, Any]]]:
        """Average time per source, daily throughput for a week and failure rates."""
        items = await self.store.list()
        week_ago = self.clock() - timedelta(days=7)
        timings: Dict[str, List[int]] = defaultdict(list)
        throughput: Dict[str, int] = defaultdict(int)
        totals: Dict[str, int] = defaultdict(int)
        failures: Dict[str, int] = defaultdict(int)

        for item in items:
            totals[item.source] += 1
            if item.processing_time_ms is not None:
                timings[item.source].append(item.processing_time_ms)
            if item.status == QueueItemStatus.FAILED:
                failures[item.source] += 1
            if item.status == QueueItemStatus.COMPLETED and item.completed_at:
                if item.completed_at >= week_ago:
                    throughput[item.completed_at.strftime("%Y-%m-%d")] += 1

        processing_times = sorted(
            (
                {"source": source, "avg_time_ms": sum(values) / len(values)}
                for source, values in timings.items()
            ),
            key=lambda row: -row["avg_time_ms"],
        )
        failure_rate = sorted(
            (
                {"source": source, "rate": failures[source] / total}
                for source, total in totals.items()
            ),
            key=lambda row: -row["rate"],
        )
        return {
            "processing_times": processing_times,
            "throughput": [{"date": d, "count": c} for d, c in sorted(throughput.items())],
            "failure_rate": failure_rate,
        }

    async def get_problematic_items(self, limit: int = 10) -> List[WebhookQueueItem]:
        failed = await self.store.list(QueueItemStatus.FAILED)
        failed.sort(key=lambda i: (-i.attempts, -i.updated_at.timestamp()))
        return failed[:limit]

    async def retry(self, item_id: int) -> WebhookQueueItem:
        item = await self.store.get(item_id)
        if item is None:
            raise NotFoundError(f"Webhook queue item {item_id} not found")
        if item.status != QueueItemStatus.FAILED:
            raise InvalidStateError(
                f"Webhook queue item {item_id} is {item.status.value}, only failed items can be retried"
            )
        retried = await self.store.transition(
            item_id,
            QueueItemStatus.FAILED,
            status=QueueItemStatus.PENDING,
            process_after=self.clock(),
        )
        if retried is None:
            raise InvalidStateError(f"Webhook queue item {item_id} changed state during retry")
        logger.info(f"Webhook {item_id} from {item.source} manually requeued")
        return retried

    async def rebalance(self) -> Dict[str, int]:
        now = self.clock()
        items = await self.store.list()
        penalties = source_penalties(collect_source_health(items, now, self.config), self.config)

        count = 0
        for item in items:
            if item.status != QueueItemStatus.PENDING:
                continue
            priority = rebalanced_priority(item, penalties, now, self.config)
            if priority == item.priority:
                continue
            updated = await self.store.transition(
                item.id, QueueItemStatus.PENDING, priority=priority
            )
            if updated is not None:
                count += 1

        if count:
            metrics.queue_rebalanced_total.inc(count)
            logger.info(f"Queue rebalance: {count} items reprioritized")
        return {"count": count}

    async def cleanup(self, max_age_in_days: Optional[int] = None) -> Dict[str, Any]:
        if max_age_in_days is None:
            max_age_in_days = self.config.cleanup_max_age_days
        if max_age_in_days < 0:
            raise ValidationError("max_age_in_days must not be negative")
        cutoff = self.clock() - timedelta(days=max_age_in_days)
        count = await self.store.delete_completed_before(cutoff)
        message = f"{count} completed webhooks older than {max_age_in_days} days removed"
        if count:
            logger.info(f"Queue cleanup: {message}")
        return {"count": count, "message": message}
