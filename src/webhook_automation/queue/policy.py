"""Retry and rebalancing policies for the webhook queue.

Both are pure functions of the queue configuration and a snapshot of queue
items, so they can be unit-tested without a running loop.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from webhook_automation.common.config import QueueConfig
from webhook_automation.common.models import QueueItemStatus, WebhookQueueItem


def compute_backoff(attempts: int, config: QueueConfig) -> float:
    """Delay in seconds before an item that failed ``attempts`` times is retried.

    ``base_delay * backoff_factor ** (attempts - 1)``, capped at ``max_delay``.
    """
    exponent = max(attempts - 1, 0)
    try:
        delay = config.base_delay * (config.backoff_factor ** exponent)
    except OverflowError:
        return config.max_delay
    return min(delay, config.max_delay)


@dataclass(frozen=True)
class SourceHealth:
    source: str
    completed: int = 0
    failed: int = 0
    avg_processing_time_ms: Optional[float] = None

    @property
    def failure_rate(self) -> float:
        finished = self.completed + self.failed
        return self.failed / finished if finished else 0.0


def collect_source_health(
    items: Iterable[WebhookQueueItem], now: datetime, config: QueueConfig
) -> Dict[str, SourceHealth]:
    """Per-source failure rate and latency over the rebalance window."""
    window_start = now - timedelta(hours=config.rebalance_window_hours)
    completed: Dict[str, int] = defaultdict(int)
    failed: Dict[str, int] = defaultdict(int)
    timings: Dict[str, list] = defaultdict(list)
    sources = set()

    for item in items:
        sources.add(item.source)
        if item.updated_at < window_start:
            continue
        if item.status == QueueItemStatus.COMPLETED:
            completed[item.source] += 1
            if item.processing_time_ms:
                timings[item.source].append(item.processing_time_ms)
        elif item.status == QueueItemStatus.FAILED:
            failed[item.source] += 1

    health = {}
    for source in sources:
        samples = timings.get(source)
        health[source] = SourceHealth(
            source=source,
            completed=completed.get(source, 0),
            failed=failed.get(source, 0),
            avg_processing_time_ms=sum(samples) / len(samples) if samples else None,
        )
    return health


def source_penalties(health: Dict[str, SourceHealth], config: QueueConfig) -> Dict[str, int]:
    """Priority penalty per source; higher failure rate or latency means a larger penalty."""
    known_latencies = [
        h.avg_processing_time_ms for h in health.values() if h.avg_processing_time_ms
    ]
    slowest = max(known_latencies) if known_latencies else 0.0

    penalties = {}
    for source, h in health.items():
        latency_ratio = (h.avg_processing_time_ms or 0.0) / slowest if slowest else 0.0
        score = config.failure_weight * h.failure_rate + config.latency_weight * latency_ratio
        penalties[source] = int(round(score))
    return penalties


def rebalanced_priority(
    item: WebhookQueueItem, penalties: Dict[str, int], now: datetime, config: QueueConfig
) -> int:
    priority = item.base_priority + penalties.get(item.source, 0)
    if now - item.created_at >= timedelta(minutes=config.aging_threshold_minutes):
        priority -= 1
    return max(priority, config.min_priority)
