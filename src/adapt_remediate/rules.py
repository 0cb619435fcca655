"""
Rule expressions for routing and guarding remediation.

Rules are a small closed grammar evaluated by an interpreter: field
comparisons combined with all/any/not. Nothing here compiles or executes
user-supplied code.

Classes:
    RuleExpression: Base class for all expressions
    Comparison: Compare one field of a detected error against a value
    AllOf, AnyOf, Not: Boolean combinators

Functions:
    parse_rule: Build an expression tree from a config/YAML dictionary
    resolve_field: Look up a (dotted) field on a detected error

Example:
    >>> rule = parse_rule({
    ...     "all": [
    ...         {"field": "category", "op": "==", "value": "security"},
    ...         {"field": "context.service", "op": "in", "value": ["api", "web"]},
    ...     ]
    ... })
    >>> rule.evaluate(error)
    True
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

from .exceptions import InvalidRuleError

logger = logging.getLogger(__name__)

_MISSING = object()

OPERATORS = ("==", "!=", ">", "<", ">=", "<=", "in", "not_in", "contains", "matches")


def resolve_field(subject: Any, path: str) -> Any:
    """
    Resolve a field on a detected error (or any object/mapping).

    Top-level names are read as attributes, or as keys when the subject is a
    mapping. Dotted segments walk nested mappings, e.g. ``context.service``.

    Args:
        subject: Object to inspect
        path: Field name or dotted path

    Returns:
        Field value, or a sentinel if any segment is missing
    """
    current = subject
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif hasattr(current, part):
            current = getattr(current, part)
        else:
            return _MISSING

    if isinstance(current, Enum):
        return current.value
    return current


class RuleExpression:
    """Base class for rule expressions."""

    def evaluate(self, subject: Any) -> bool:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class Comparison(RuleExpression):
    """
    Field comparison.

    Attributes:
        field: Field to check (e.g., "severity", "context.service")
        op: One of ==, !=, >, <, >=, <=, in, not_in, contains, matches
        value: Expected value
    """

    field: str
    op: str
    value: Any = None

    def __post_init__(self):
        if self.op not in OPERATORS:
            raise InvalidRuleError(f"Unknown operator: {self.op}")
        if self.op == "matches":
            try:
                re.compile(str(self.value))
            except re.error as e:
                raise InvalidRuleError(f"Invalid pattern for '{self.field}': {e}")

    def evaluate(self, subject: Any) -> bool:
        actual = resolve_field(subject, self.field)
        if actual is _MISSING:
            logger.debug(f"Field '{self.field}' not present, comparison is false")
            return False

        try:
            if self.op == "==":
                return actual == self.value
            if self.op == "!=":
                return actual != self.value
            if self.op == ">":
                return float(actual) > float(self.value)
            if self.op == "<":
                return float(actual) < float(self.value)
            if self.op == ">=":
                return float(actual) >= float(self.value)
            if self.op == "<=":
                return float(actual) <= float(self.value)
            if self.op == "in":
                return actual in self.value
            if self.op == "not_in":
                return actual not in self.value
            if self.op == "contains":
                return self.value in actual
            return re.search(str(self.value), str(actual)) is not None
        except (TypeError, ValueError) as e:
            logger.debug(f"Comparison {self.field} {self.op} {self.value!r} failed: {e}")
            return False

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "op": self.op, "value": self.value}


@dataclass(frozen=True)
class AllOf(RuleExpression):
    """True when every child expression is true."""

    children: List[RuleExpression] = field(default_factory=list)

    def evaluate(self, subject: Any) -> bool:
        return all(child.evaluate(subject) for child in self.children)

    def to_dict(self) -> Dict[str, Any]:
        return {"all": [child.to_dict() for child in self.children]}


@dataclass(frozen=True)
class AnyOf(RuleExpression):
    """True when at least one child expression is true."""

    children: List[RuleExpression] = field(default_factory=list)

    def evaluate(self, subject: Any) -> bool:
        return any(child.evaluate(subject) for child in self.children)

    def to_dict(self) -> Dict[str, Any]:
        return {"any": [child.to_dict() for child in self.children]}


@dataclass(frozen=True)
class Not(RuleExpression):
    """Negates its child expression."""

    child: RuleExpression

    def evaluate(self, subject: Any) -> bool:
        return not self.child.evaluate(subject)

    def to_dict(self) -> Dict[str, Any]:
        return {"not": self.child.to_dict()}


def parse_rule(data: Any) -> RuleExpression:
    """
    Parse a rule expression from its dictionary form.

    Supported shapes:
        {"field": "severity", "op": "in", "value": ["critical", "high"]}
        {"all": [<rule>, ...]}
        {"any": [<rule>, ...]}
        {"not": <rule>}

    Args:
        data: Dictionary (or an already-built RuleExpression)

    Returns:
        Parsed RuleExpression

    Raises:
        InvalidRuleError: If the shape or operator is not recognized
    """
    if isinstance(data, RuleExpression):
        return data

    if not isinstance(data, dict):
        raise InvalidRuleError(f"Rule must be a mapping, got {type(data).__name__}")

    if "all" in data:
        return AllOf([parse_rule(child) for child in _as_list(data["all"], "all")])
    if "any" in data:
        return AnyOf([parse_rule(child) for child in _as_list(data["any"], "any")])
    if "not" in data:
        return Not(parse_rule(data["not"]))

    if "field" not in data:
        raise InvalidRuleError(f"Rule is missing 'field': {data}")

    return Comparison(
        field=str(data["field"]),
        op=str(data.get("op", "==")),
        value=data.get("value"),
    )


def _as_list(value: Any, key: str) -> list:
    if not isinstance(value, list):
        raise InvalidRuleError(f"'{key}' must be a list of rules")
    return value
