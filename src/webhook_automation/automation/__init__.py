"""Automation engine: rules, templates, actions and per-type execution strategies."""

from webhook_automation.automation.actions import ActionExecutor, parse_action
from webhook_automation.automation.ai import AIClient, DisabledAIClient, HttpAIClient
from webhook_automation.automation.channels import ChannelSender, LoggingChannelSender
from webhook_automation.automation.executor import AutomationExecutor
from webhook_automation.automation.rules import RuleEngine
from webhook_automation.automation.service import AutomationService
from webhook_automation.automation.templates import TemplateEngine

__all__ = [
    # Actions
    "ActionExecutor",
    "parse_action",
    # Collaborators
    "AIClient",
    "DisabledAIClient",
    "HttpAIClient",
    "ChannelSender",
    "LoggingChannelSender",
    # Engine
    "AutomationExecutor",
    "AutomationService",
    "RuleEngine",
    "TemplateEngine",
]
