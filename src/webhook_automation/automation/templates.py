"""Message templates.

Templates use ``{{ ... }}`` tags over a flattened automation context:

* ``{{ contactName }}`` / ``{{ contact.customFields.plan }}``: path lookup,
  unknown paths render as an empty string;
* ``{{ uppercase(contactName) }}``: whitelisted helpers taking paths or
  string/number literals as arguments;
* ``{{#if cond}} ... {{else}} ... {{/if}}``: conditional blocks, where
  ``cond`` is ``path``, ``not path`` or ``path OP literal`` with OP one of
  ``== != > < >= <=``.

There is no general expression evaluation: no attribute access beyond dict
keys, no calls outside the helper table and no loops.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Tuple, Union

from loguru import logger

from webhook_automation.automation.context import (
    DEFAULT_DATE_FORMAT,
    flatten_context,
    format_date,
    resolve_path,
)
from webhook_automation.common.models import AutomationContext


class TemplateSyntaxError(ValueError):
    pass


def _capitalize(value: Any) -> str:
    text = _to_text(value)
    return text[:1].upper() + text[1:].lower()


def _default(value: Any, fallback: Any = "") -> Any:
    return value if value not in (None, "", [], {}) else fallback


HELPERS: Dict[str, Callable[..., Any]] = {
    "uppercase": lambda value: _to_text(value).upper(),
    "lowercase": lambda value: _to_text(value).lower(),
    "capitalize": _capitalize,
    "formatDate": lambda value, fmt=DEFAULT_DATE_FORMAT: format_date(value, _to_text(fmt)),
    "default": _default,
}


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return ", ".join(_to_text(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    return str(value)


# Expression tokens

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<op>==|!=|>=|<=|>|<)
      | (?P<punct>[(),])
      | (?P<name>[A-Za-z_][A-Za-z0-9_]*(?:\.(?:[A-Za-z_][A-Za-z0-9_]*|\d+))*)
    )\s*
    """,
    re.VERBOSE,
)

Token = Tuple[str, str]


def _tokenize(source: str) -> List[Token]:
    tokens: List[Token] = []
    position = 0
    source = source.strip()
    while position < len(source):
        match = _TOKEN_RE.match(source, position)
        if not match or match.end() == position:
            raise TemplateSyntaxError(f"Unexpected input in expression: {source[position:]!r}")
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        position = match.end()
    return tokens


@dataclass
class _Literal:
    value: Any

    def evaluate(self, data: Dict[str, Any]) -> Any:
        return self.value


@dataclass
class _Path:
    path: str

    def evaluate(self, data: Dict[str, Any]) -> Any:
        return resolve_path(data, self.path)


@dataclass
class _Call:
    helper: str
    args: List[Any]

    def evaluate(self, data: Dict[str, Any]) -> Any:
        return HELPERS[self.helper](*(arg.evaluate(data) for arg in self.args))


@dataclass
class _Condition:
    left: Any
    op: str = ""
    right: Any = None
    negate: bool = False

    def evaluate(self, data: Dict[str, Any]) -> bool:
        left = self.left.evaluate(data)
        if not self.op:
            result = bool(left)
        else:
            result = _compare(left, self.op, self.right.evaluate(data))
        return not result if self.negate else result


def _compare(left: Any, op: str, right: Any) -> bool:
    try:
        left_num, right_num = float(left), float(right)
    except (TypeError, ValueError):
        left_cmp, right_cmp = _to_text(left), _to_text(right)
    else:
        left_cmp, right_cmp = left_num, right_num

    if op == "==":
        return left_cmp == right_cmp
    if op == "!=":
        return left_cmp != right_cmp
    if op == ">":
        return left_cmp > right_cmp
    if op == "<":
        return left_cmp < right_cmp
    if op == ">=":
        return left_cmp >= right_cmp
    return left_cmp <= right_cmp


class _ExpressionParser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.index = 0

    def _peek(self) -> Token:
        return self.tokens[self.index] if self.index < len(self.tokens) else ("end", "")

    def _next(self) -> Token:
        token = self._peek()
        self.index += 1
        return token

    def _expect_end(self) -> None:
        if self.index != len(self.tokens):
            raise TemplateSyntaxError(f"Unexpected trailing input in {self.source!r}")

    def parse_expression(self):
        node = self._value()
        self._expect_end()
        return node

    def parse_condition(self) -> _Condition:
        negate = False
        if self._peek() == ("name", "not"):
            self._next()
            negate = True
        left = self._value()
        condition = _Condition(left=left, negate=negate)
        if self._peek()[0] == "op":
            condition.op = self._next()[1]
            condition.right = self._value()
        self._expect_end()
        return condition

    def _value(self):
        kind, text = self._next()
        if kind == "string":
            return _Literal(_unquote(text))
        if kind == "number":
            return _Literal(float(text) if "." in text else int(text))
        if kind != "name":
            raise TemplateSyntaxError(f"Expected a value in {self.source!r}")
        if text in ("true", "false"):
            return _Literal(text == "true")
        if text == "null":
            return _Literal(None)
        if self._peek() == ("punct", "("):
            return self._call(text)
        return _Path(text)

    def _call(self, helper: str) -> _Call:
        if helper not in HELPERS:
            raise TemplateSyntaxError(f"Unknown helper: {helper}")
        self._next()  # (
        args = []
        if self._peek() != ("punct", ")"):
            while True:
                args.append(self._value())
                if self._peek() == ("punct", ","):
                    self._next()
                    continue
                break
        if self._next() != ("punct", ")"):
            raise TemplateSyntaxError(f"Unclosed call to {helper}")
        return _Call(helper=helper, args=args)


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


# Template structure

_TAG_RE = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)


@dataclass
class _IfBlock:
    condition: _Condition
    then_nodes: List[Any] = field(default_factory=list)
    else_nodes: List[Any] = field(default_factory=list)
    in_else: bool = False

    def current(self) -> List[Any]:
        return self.else_nodes if self.in_else else self.then_nodes


def _parse_template(template: str) -> List[Any]:
    root: List[Any] = []
    stack: List[_IfBlock] = []

    def sink() -> List[Any]:
        return stack[-1].current() if stack else root

    position = 0
    for match in _TAG_RE.finditer(template):
        text = template[position:match.start()]
        if "{{" in text:
            raise TemplateSyntaxError("Unterminated tag")
        if text:
            sink().append(text)
        position = match.end()

        tag = match.group(1).strip()
        if tag.startswith("#if"):
            block = _IfBlock(condition=_ExpressionParser(tag[3:]).parse_condition())
            sink().append(block)
            stack.append(block)
        elif tag == "else":
            if not stack or stack[-1].in_else:
                raise TemplateSyntaxError("{{else}} without a matching {{#if}}")
            stack[-1].in_else = True
        elif tag == "/if":
            if not stack:
                raise TemplateSyntaxError("{{/if}} without a matching {{#if}}")
            stack.pop()
        elif not tag:
            raise TemplateSyntaxError("Empty tag")
        else:
            sink().append(_ExpressionParser(tag).parse_expression())

    tail = template[position:]
    if "{{" in tail:
        raise TemplateSyntaxError("Unterminated tag")
    if tail:
        sink().append(tail)
    if stack:
        raise TemplateSyntaxError("Unclosed {{#if}} block")
    return root


def _render_nodes(nodes: List[Any], data: Dict[str, Any]) -> str:
    parts = []
    for node in nodes:
        if isinstance(node, str):
            parts.append(node)
        elif isinstance(node, _IfBlock):
            branch = node.then_nodes if node.condition.evaluate(data) else node.else_nodes
            parts.append(_render_nodes(branch, data))
        else:
            parts.append(_to_text(node.evaluate(data)))
    return "".join(parts)


class TemplateEngine:
    def flatten(self, context: Union[AutomationContext, Dict[str, Any]]) -> Dict[str, Any]:
        if isinstance(context, AutomationContext):
            return flatten_context(context)
        return context

    def render_text(
        self, template: str, context: Union[AutomationContext, Dict[str, Any]]
    ) -> str:
        """Render ``template``; on malformed syntax log a warning and return it unchanged."""
        if not template:
            return ""
        try:
            return _render_nodes(_parse_template(template), self.flatten(context))
        except Exception as e:
            logger.warning(f"Error processing template, returning it unrendered: {e}")
            return template

    def render_json(self, template_object: Any, context: Union[AutomationContext, Dict[str, Any]]) -> Any:
        """Render every string inside a JSON-compatible object, keys included.

        Non-string leaves are kept as they are; each string is rendered on its
        own, so a malformed placeholder only leaves that string unrendered.
        """
        if template_object is None:
            return None
        return self._render_value(template_object, self.flatten(context))

    def _render_value(self, value: Any, data: Dict[str, Any]) -> Any:
        if isinstance(value, str):
            return self.render_text(value, data)
        if isinstance(value, dict):
            return {
                self._render_value(key, data): self._render_value(item, data)
                for key, item in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [self._render_value(item, data) for item in value]
        return value
