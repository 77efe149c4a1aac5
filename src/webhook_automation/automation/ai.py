from abc import ABC, abstractmethod
from typing import Dict, Optional

import aiohttp
from loguru import logger

from webhook_automation.common.errors import TransientIOError


class AIClient(ABC):
    """Question answering service used by chatbot automations."""

    @abstractmethod
    async def answer_question(
        self,
        question: str,
        conversation_id: Optional[int],
        contact_id: Optional[int],
        channel_id: Optional[int],
    ) -> str:
        """Return the answer text; raise on failure."""
        pass


class HttpAIClient(AIClient):
    """Posts questions as JSON to an HTTP endpoint and reads ``answer`` back."""

    def __init__(self, endpoint: str, api_key: Optional[str] = None, timeout: float = 30.0):
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def answer_question(
        self,
        question: str,
        conversation_id: Optional[int],
        contact_id: Optional[int],
        channel_id: Optional[int],
    ) -> str:
        body = {
            "question": question,
            "conversationId": conversation_id,
            "contactId": contact_id,
            "channelId": channel_id,
        }
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.endpoint,
                    headers=self._headers(),
                    json=body,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    if response.status >= 400:
                        response_text = await response.text()
                        raise TransientIOError(
                            f"AI endpoint answered {response.status}: {response_text[:200]}"
                        )
                    data = await response.json()
        except TransientIOError:
            raise
        except Exception as e:
            logger.error(f"Error calling AI endpoint {self.endpoint}: {e}")
            raise TransientIOError(f"AI request failed: {e}") from e

        answer = data.get("answer") if isinstance(data, dict) else None
        return answer or ""


class DisabledAIClient(AIClient):
    """Used when no AI endpoint is configured; every chatbot call fails."""

    async def answer_question(
        self,
        question: str,
        conversation_id: Optional[int],
        contact_id: Optional[int],
        channel_id: Optional[int],
    ) -> str:
        raise TransientIOError("No AI endpoint configured")
