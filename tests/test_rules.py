"""
Tests for rule expressions.
"""

import pytest

from adapt_remediate.exceptions import InvalidRuleError
from adapt_remediate.rules import AllOf, AnyOf, Comparison, Not, parse_rule, resolve_field

from conftest import make_error


def test_resolve_field_reads_enum_values():
    error = make_error()

    assert resolve_field(error, "category") == "security"
    assert resolve_field(error, "severity") == "high"


def test_resolve_field_walks_context():
    error = make_error(context={"service": {"name": "api"}})

    assert resolve_field(error, "context.service.name") == "api"


@pytest.mark.parametrize("rule, expected", [
    ({"field": "severity", "op": "==", "value": "high"}, True),
    ({"field": "severity", "op": "!=", "value": "high"}, False),
    ({"field": "severity", "op": "in", "value": ["critical", "high"]}, True),
    ({"field": "severity", "op": "not_in", "value": ["low"]}, True),
    ({"field": "message", "op": "contains", "value": "777"}, True),
    ({"field": "message", "op": "matches", "value": r"permissions\s+\d+"}, True),
    ({"field": "context.retries", "op": ">", "value": 2}, True),
    ({"field": "context.retries", "op": "<=", "value": 2}, False),
])
def test_comparison_operators(rule, expected):
    error = make_error(context={"retries": 3})

    assert parse_rule(rule).evaluate(error) is expected


def test_missing_field_is_false():
    rule = parse_rule({"field": "context.absent", "op": "!=", "value": "x"})

    assert rule.evaluate(make_error()) is False


def test_type_mismatch_is_false():
    rule = parse_rule({"field": "message", "op": ">", "value": 3})

    assert rule.evaluate(make_error()) is False


def test_combinators():
    rule = parse_rule({
        "all": [
            {"field": "category", "op": "==", "value": "security"},
            {"any": [
                {"field": "severity", "op": "==", "value": "critical"},
                {"not": {"field": "context.env", "op": "==", "value": "prod"}},
            ]},
        ]
    })

    assert isinstance(rule, AllOf)
    assert isinstance(rule.children[1], AnyOf)
    assert isinstance(rule.children[1].children[1], Not)
    assert rule.evaluate(make_error(context={"env": "dev"}))
    assert not rule.evaluate(make_error(context={"env": "prod"}))


def test_to_dict_round_trips_through_parse():
    data = {"not": {"field": "severity", "op": "in", "value": ["low"]}}

    assert parse_rule(data).to_dict() == data


def test_op_defaults_to_equality():
    rule = parse_rule({"field": "id", "value": "E1"})

    assert isinstance(rule, Comparison)
    assert rule.op == "=="


@pytest.mark.parametrize("bad", [
    "severity == high",
    {"op": "==", "value": "x"},
    {"field": "severity", "op": "~="},
    {"all": {"field": "severity"}},
    {"field": "message", "op": "matches", "value": "(unclosed"},
])
def test_invalid_rules_raise(bad):
    with pytest.raises(InvalidRuleError):
        parse_rule(bad)
