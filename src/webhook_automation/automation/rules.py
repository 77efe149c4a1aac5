import re
from calendar import monthrange
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from croniter import croniter
from loguru import logger

from webhook_automation.automation.context import flatten_context, has_path, resolve_path
from webhook_automation.common.models import Automation, AutomationContext, utcnow


def _as_number(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _numeric(compare: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def check(actual: Any, expected: Any) -> bool:
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        return compare(left, right)

    return check


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(expected, str) and expected in actual
    if isinstance(actual, (list, tuple)):
        return expected in actual
    return False


def _regex_match(actual: Any, expected: Any) -> bool:
    if not isinstance(actual, str):
        return False
    try:
        return re.search(str(expected), actual) is not None
    except re.error as e:
        logger.warning(f"Invalid regular expression in rule {expected!r}: {e}")
        return False


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda actual, expected: actual == expected,
    "not_equals": lambda actual, expected: actual != expected,
    "contains": _contains,
    "not_contains": lambda actual, expected: (
        isinstance(actual, (str, list, tuple)) and not _contains(actual, expected)
    ),
    "starts_with": lambda actual, expected: (
        isinstance(actual, str) and actual.startswith(str(expected))
    ),
    "ends_with": lambda actual, expected: (
        isinstance(actual, str) and actual.endswith(str(expected))
    ),
    "greater_than": _numeric(lambda a, b: a > b),
    "less_than": _numeric(lambda a, b: a < b),
    "greater_than_or_equals": _numeric(lambda a, b: a >= b),
    "less_than_or_equals": _numeric(lambda a, b: a <= b),
    "in": lambda actual, expected: isinstance(expected, list) and actual in expected,
    "not_in": lambda actual, expected: isinstance(expected, list) and actual not in expected,
    "is_null": lambda actual, expected: actual is None,
    "is_not_null": lambda actual, expected: actual is not None,
    "regex_match": _regex_match,
}

NULL_OPERATORS = ("is_null", "is_not_null")


def _add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        return None
    try:
        number = int(value)
    except ValueError:
        return None
    return number if number > 0 else None


FREQUENCIES: Dict[str, Callable[[datetime, int], datetime]] = {
    "minutely": lambda last, n: last + timedelta(minutes=n),
    "hourly": lambda last, n: last + timedelta(hours=n),
    "daily": lambda last, n: last + timedelta(days=n),
    "weekly": lambda last, n: last + timedelta(weeks=n),
    "monthly": _add_months,
}


class RuleEngine:
    """Side-effect-free evaluation of trigger rules and schedule due-checks."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def evaluate_condition(self, condition: Dict[str, Any], data: Dict[str, Any]) -> bool:
        field = condition.get("field")
        operator = condition.get("operator", "equals")
        check = OPERATORS.get(operator)
        if check is None:
            logger.warning(f"Unknown rule operator: {operator}")
            return False
        if not field or (not has_path(data, field) and operator not in NULL_OPERATORS):
            return False
        return check(resolve_path(data, field), condition.get("value"))

    def evaluate_group(self, group: Dict[str, Any], data: Dict[str, Any]) -> bool:
        if "conditions" not in group:
            # A bare condition is a group of one
            return self.evaluate_condition(group, data)
        conditions = group.get("conditions") or []
        if not conditions:
            return True
        results = (self.evaluate_condition(c, data) for c in conditions)
        return any(results) if group.get("operator", "and") == "or" else all(results)

    def evaluate_rules(
        self,
        rules: Optional[List[Dict[str, Any]]],
        context: Union[AutomationContext, Dict[str, Any]],
    ) -> bool:
        """True iff the rule groups are satisfied; no rules means no restriction."""
        if not rules:
            return True
        data = flatten_context(context) if isinstance(context, AutomationContext) else context
        root_operator = rules[0].get("root_operator", rules[0].get("rootOperator", "and"))
        results = (self.evaluate_group(group, data) for group in rules)
        return any(results) if root_operator == "or" else all(results)

    def next_execution(self, automation: Automation) -> Optional[datetime]:
        """When the automation becomes due again, or None if it never does."""
        last = automation.last_executed_at
        if last is None:
            return None
        schedule = automation.schedule or {}

        cron = schedule.get("cron")
        if cron:
            if not isinstance(cron, str) or not croniter.is_valid(cron):
                logger.warning(f"Invalid cron expression on automation {automation.id}: {cron}")
                return None
            return croniter(cron, last).get_next(datetime)

        frequency = schedule.get("frequency")
        if frequency == "once":
            return None
        advance = FREQUENCIES.get(frequency) if isinstance(frequency, str) else None
        if advance is None:
            logger.warning(f"Unknown schedule frequency on automation {automation.id}: {frequency!r}")
            return None
        interval = _positive_int(schedule.get("interval") or 1)
        if interval is None:
            logger.warning(
                f"Invalid schedule interval on automation {automation.id}: {schedule.get('interval')!r}"
            )
            return None
        try:
            return advance(last, interval)
        except (OverflowError, ValueError):
            logger.warning(f"Schedule interval out of range on automation {automation.id}: {interval}")
            return None

    def evaluate_schedule(self, automation: Automation, now: Optional[datetime] = None) -> bool:
        """True iff a scheduled automation is due at ``now``.

        An automation that never ran is due immediately; afterwards it is due
        once its next cron occurrence or frequency period after
        ``last_executed_at`` has been reached.
        """
        if automation.last_executed_at is None:
            return True
        next_run = self.next_execution(automation)
        if next_run is None:
            return False
        return (now or self.clock()) >= next_run
