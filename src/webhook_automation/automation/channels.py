from abc import ABC, abstractmethod
from typing import Optional

from loguru import logger

from webhook_automation.common.models import Channel


class ChannelSender(ABC):
    """Delivers outbound automation replies through a messaging channel."""

    @abstractmethod
    async def send(self, channel: Channel, recipient: Optional[str], content: str) -> None:
        pass


class LoggingChannelSender(ChannelSender):
    async def send(self, channel: Channel, recipient: Optional[str], content: str) -> None:
        logger.info(
            f"Sending message via {channel.type} channel {channel.id} to {recipient or 'unknown'}: "
            f"{content[:80]}"
        )
