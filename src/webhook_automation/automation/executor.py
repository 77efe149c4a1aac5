import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

from loguru import logger

from webhook_automation.automation.actions import ActionExecutor
from webhook_automation.automation.ai import AIClient
from webhook_automation.automation.channels import ChannelSender, LoggingChannelSender
from webhook_automation.automation.context import describe_context
from webhook_automation.automation.rules import RuleEngine
from webhook_automation.automation.templates import TemplateEngine
from webhook_automation.common.errors import ExecutionError
from webhook_automation.common.metrics import measure_time, metrics
from webhook_automation.common.models import (
    Automation,
    AutomationContext,
    AutomationResult,
    AutomationType,
    Message,
    MessageDirection,
    utcnow,
)
from webhook_automation.common.storage import Storage

Strategy = Callable[[Automation, AutomationContext], Awaitable[AutomationResult]]
Matcher = Callable[[Automation, AutomationContext], bool]


class AutomationExecutor:
    """Runs one automation against one context and always returns a result.

    Each automation type has an eligibility check and an execution strategy,
    both resolved through lookup tables keyed by ``AutomationType``.
    """

    def __init__(
        self,
        storage: Storage,
        templates: TemplateEngine,
        rules: RuleEngine,
        actions: ActionExecutor,
        ai_client: AIClient,
        channel_sender: Optional[ChannelSender] = None,
        ai_timeout: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.templates = templates
        self.rules = rules
        self.actions = actions
        self.ai_client = ai_client
        self.channel_sender = channel_sender or LoggingChannelSender()
        self.ai_timeout = ai_timeout
        self.clock = clock

        self._matchers: Dict[AutomationType, Matcher] = {
            AutomationType.QUICK_REPLY: self._matches_keywords,
            AutomationType.CHATBOT: self._matches_optional_rules,
            AutomationType.TRIGGER: self._matches_rules,
            AutomationType.SCHEDULED: self._matches_schedule,
        }
        self._strategies: Dict[AutomationType, Strategy] = {
            AutomationType.QUICK_REPLY: self._execute_quick_reply,
            AutomationType.CHATBOT: self._execute_chatbot,
            AutomationType.TRIGGER: self._execute_trigger,
            AutomationType.SCHEDULED: self._execute_scheduled,
        }

    def matches(self, automation: Automation, context: AutomationContext) -> bool:
        try:
            return self._matchers[automation.type](automation, context)
        except Exception as e:
            logger.error(f"Error checking eligibility of automation {automation.id}: {e}")
            return False

    @measure_time(
        metrics.automation_execution_time,
        lambda self, automation, *args: {"type": automation.type.value},
    )
    async def execute(
        self, automation: Automation, context: AutomationContext, force: bool = False
    ) -> AutomationResult:
        """Execute ``automation``; ``force`` skips the eligibility check.

        ``last_executed_at`` is stored before the strategy runs, whatever its
        outcome. Errors from collaborators become a failed result.
        """
        if not force and not self.matches(automation, context):
            metrics.automation_executions_total.labels(
                type=automation.type.value, outcome="not_matched"
            ).inc()
            return AutomationResult.failure("Automation conditions not matched", automation.id)

        logger.debug(
            f"Executing automation {automation.id} ({automation.type.value}) "
            f"for {describe_context(context)}"
        )
        try:
            await self.storage.update_automation(automation.id, {"last_executed_at": self.clock()})
            result = await self._strategies[automation.type](automation, context)
        except Exception as e:
            logger.error(f"Error executing automation {automation.id} ({automation.name}): {e}")
            result = AutomationResult.failure(str(e) or e.__class__.__name__)
        result.automation_id = automation.id

        outcome = "success" if result.success else "failure"
        metrics.automation_executions_total.labels(type=automation.type.value, outcome=outcome).inc()
        if result.success:
            logger.info(f"Automation {automation.id} ({automation.name}) executed")
        else:
            logger.warning(f"Automation {automation.id} ({automation.name}) failed: {result.error}")
        return result

    # Eligibility

    def _matches_keywords(self, automation: Automation, context: AutomationContext) -> bool:
        if not context.incoming_message:
            return False
        keywords = automation.trigger.get("keywords") or []
        content = context.incoming_message.content.lower()
        return any(str(keyword).lower() in content for keyword in keywords if keyword)

    def _matches_optional_rules(self, automation: Automation, context: AutomationContext) -> bool:
        return self.rules.evaluate_rules(automation.trigger.get("rules"), context)

    def _matches_rules(self, automation: Automation, context: AutomationContext) -> bool:
        return self.rules.evaluate_rules(automation.trigger.get("rules") or [], context)

    def _matches_schedule(self, automation: Automation, context: AutomationContext) -> bool:
        return self.rules.evaluate_schedule(automation, self.clock())

    # Strategies

    async def _execute_quick_reply(
        self, automation: Automation, context: AutomationContext
    ) -> AutomationResult:
        if not context.incoming_message or not context.conversation:
            raise ExecutionError("Incomplete context: incoming message or conversation missing")
        if not automation.trigger.get("keywords"):
            raise ExecutionError("No keywords configured for quick reply")

        template = automation.response if isinstance(automation.response, str) else ""
        content = self.templates.render_text(template, context)
        message = await self._send_response(context, content)
        return AutomationResult(success=True, response=content, message=message)

    async def _execute_chatbot(
        self, automation: Automation, context: AutomationContext
    ) -> AutomationResult:
        if not context.incoming_message or not context.conversation:
            raise ExecutionError("Incomplete context: incoming message or conversation missing")

        prompt = self.build_prompt(automation, context)
        provider = automation.model_provider or "default"
        conversation = context.conversation
        try:
            answer = await asyncio.wait_for(
                self.ai_client.answer_question(
                    prompt,
                    conversation.id,
                    conversation.contact_id,
                    conversation.channel_id,
                ),
                timeout=self.ai_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExecutionError(
                f"AI provider {provider} did not answer within {self.ai_timeout}s"
            ) from e
        except Exception as e:
            raise ExecutionError(f"Error generating answer with provider {provider}: {e}") from e
        if not answer or not answer.strip():
            raise ExecutionError(f"Empty answer from AI provider {provider}")

        content = self.templates.render_text(answer, context)
        message = await self._send_response(context, content)
        return AutomationResult(success=True, response=content, message=message)

    def build_prompt(self, automation: Automation, context: AutomationContext) -> str:
        response = automation.response if isinstance(automation.response, dict) else {}
        system_prompt = self.templates.render_text(response.get("prompt") or "", context)

        lines = [system_prompt, "", "Conversation history:"]
        for message in context.messages:
            role = "Customer" if message.direction == MessageDirection.INBOUND else "Agent"
            lines.append(f"{role}: {message.content}")
        lines.extend(["", f"Customer: {context.incoming_message.content}", "", "Answer:"])
        return "\n".join(lines)

    async def _execute_trigger(
        self, automation: Automation, context: AutomationContext
    ) -> AutomationResult:
        if not context.conversation:
            raise ExecutionError("Incomplete context: conversation missing")
        actions = automation.trigger.get("actions") or []
        if not actions:
            raise ExecutionError("No actions configured for trigger")

        await self.actions.execute_all(actions, context)
        return await self._respond_if_configured(automation, context)

    async def _execute_scheduled(
        self, automation: Automation, context: AutomationContext
    ) -> AutomationResult:
        if not context.conversation:
            raise ExecutionError("Incomplete context: conversation missing")
        actions = (automation.schedule or {}).get("actions") or []

        await self.actions.execute_all(actions, context)
        return await self._respond_if_configured(automation, context)

    async def _respond_if_configured(
        self, automation: Automation, context: AutomationContext
    ) -> AutomationResult:
        if not isinstance(automation.response, str) or not automation.response:
            return AutomationResult(success=True)
        content = self.templates.render_text(automation.response, context)
        message = await self._send_response(context, content)
        return AutomationResult(success=True, response=content, message=message)

    async def _send_response(self, context: AutomationContext, content: str) -> Message:
        conversation = context.conversation
        message = await self.storage.create_message(
            {
                "conversation_id": conversation.id,
                "content": content,
                "content_type": "text",
                "direction": MessageDirection.OUTBOUND,
                "status": "sent",
                "sent_by_id": None,
            }
        )
        if context.channel:
            await self.channel_sender.send(context.channel, conversation.contact_identifier, content)
        return message
