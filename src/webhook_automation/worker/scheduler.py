import asyncio
import time
from typing import Callable, Optional

from loguru import logger

from webhook_automation.automation.service import AutomationService
from webhook_automation.common.config import AutomationConfig
from webhook_automation.queue.service import WebhookQueue


class AutomationScheduler:
    """Periodic maintenance loop, independent of the queue processing loop.

    Every tick runs due scheduled automations; queue rebalance and cleanup
    run on their own, longer intervals (an interval of 0 disables them).
    """

    def __init__(
        self,
        automations: AutomationService,
        queue: WebhookQueue,
        config: Optional[AutomationConfig] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.automations = automations
        self.queue = queue
        self.config = config or AutomationConfig()
        self.monotonic = monotonic

        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._last_rebalance = monotonic()
        self._last_cleanup = monotonic()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.warning("Automation scheduler is already running")
            return
        logger.info(
            f"Starting automation scheduler (every {self.config.schedule_check_interval}s)"
        )
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run(self._stop_event))

    async def stop(self) -> None:
        if not self.is_running:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Automation scheduler stopped")

    async def run(self, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(
                    shutdown_event.wait(), timeout=self.config.schedule_check_interval
                )
            except asyncio.TimeoutError:
                pass

    async def tick(self) -> None:
        try:
            await self.automations.process_scheduled_automations()
        except Exception as e:
            logger.error(f"Error processing scheduled automations: {e}")

        now = self.monotonic()
        if self._due(self._last_rebalance, self.config.rebalance_interval, now):
            self._last_rebalance = now
            try:
                await self.queue.rebalance()
            except Exception as e:
                logger.error(f"Error rebalancing webhook queue: {e}")

        if self._due(self._last_cleanup, self.config.cleanup_interval, now):
            self._last_cleanup = now
            try:
                await self.queue.cleanup()
            except Exception as e:
                logger.error(f"Error cleaning up webhook queue: {e}")

    @staticmethod
    def _due(last: float, interval: float, now: float) -> bool:
        return interval > 0 and now - last >= interval
