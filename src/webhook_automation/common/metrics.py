import time
from functools import wraps
from typing import Callable, Dict, Optional, Union

from loguru import logger
from prometheus_client import REGISTRY, Counter, Gauge, Histogram, start_http_server


class MetricsRegistry:
    def __init__(self, registry=None):
        # Use a provided registry or the default one
        self.registry = registry or REGISTRY

        # Ingestion metrics
        self.webhook_received_total = Counter(
            "webhook_automation_received_total",
            "Total number of webhooks received",
            ["source"],
            registry=self.registry,
        )
        self.webhook_rejected_total = Counter(
            "webhook_automation_rejected_total",
            "Total number of webhooks rejected before enqueue",
            ["source"],
            registry=self.registry,
        )
        self.queue_enqueued_total = Counter(
            "webhook_automation_queue_enqueued_total",
            "Total number of items added to the webhook queue",
            ["source"],
            registry=self.registry,
        )

        # Queue processing metrics
        self.queue_processed_total = Counter(
            "webhook_automation_queue_processed_total",
            "Total number of queue items processed",
            ["source", "outcome"],
            registry=self.registry,
        )
        self.queue_processing_time = Histogram(
            "webhook_automation_queue_processing_seconds",
            "Time spent processing queue items",
            ["source"],
            registry=self.registry,
        )
        self.queue_retry_total = Counter(
            "webhook_automation_queue_retry_total",
            "Total number of queue items rescheduled with backoff",
            ["source"],
            registry=self.registry,
        )
        self.queue_dead_letter_total = Counter(
            "webhook_automation_queue_dead_letter_total",
            "Total number of queue items moved to failed after exhausting attempts",
            ["source"],
            registry=self.registry,
        )
        self.queue_rebalanced_total = Counter(
            "webhook_automation_queue_rebalanced_total",
            "Total number of pending items whose priority changed on rebalance",
            registry=self.registry,
        )

        # Automation metrics
        self.automation_executions_total = Counter(
            "webhook_automation_executions_total",
            "Total number of automation executions",
            ["type", "outcome"],
            registry=self.registry,
        )
        self.automation_execution_time = Histogram(
            "webhook_automation_execution_seconds",
            "Time spent executing automations",
            ["type"],
            registry=self.registry,
        )
        self.action_errors_total = Counter(
            "webhook_automation_action_errors_total",
            "Total number of failed automation actions",
            ["action"],
            registry=self.registry,
        )

        # Common metrics
        self.up = Gauge(
            "webhook_automation_up",
            "Whether the component is up",
            ["component"],
            registry=self.registry,
        )


# Global metrics registry
metrics = MetricsRegistry()


def start_metrics_server(port: int = 9090, host: str = "127.0.0.1"):
    """Start the Prometheus metrics server."""
    start_http_server(port, host)


def measure_time(
    metric: Histogram, labels: Optional[Union[Dict[str, str], Callable]] = None
) -> Callable:
    """Decorator to measure the execution time of a coroutine.

    ``labels`` is either a static mapping or a callable receiving the
    decorated call's positional arguments.
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            labels_dict = {}
            if callable(labels):
                try:
                    labels_dict = labels(*args)
                except Exception as e:
                    logger.error(f"Error getting labels from function: {e}")
            elif isinstance(labels, dict):
                labels_dict = labels

            start_time = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                duration = time.perf_counter() - start_time
                try:
                    metric.labels(**labels_dict).observe(duration)
                except Exception as e:
                    logger.error(f"Error recording metric: {e}")

        return wrapper

    return decorator
