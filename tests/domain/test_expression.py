"""
Tests for the restricted condition language.

This module tests tokenizing, parsing and evaluating condition expressions.
"""

import pytest

from maestro.domain.error import ConditionEvaluationError
from maestro.domain.expression import And, Compare, Not, Or, Variable, parse, referenced_variables, truthy


def lookup_from(values: dict):
    def lookup(namespace, path):
        current = values[namespace]
        for key in path:
            current = current[key]
        return current

    return lookup


class TestParse:
    """Test cases for parsing expressions into nodes."""

    def test_parse_comparison(self):
        """Test that a comparison parses into a Compare node."""
        node = parse('$params.env == "prod"')

        assert isinstance(node, Compare)
        assert node.op == "=="
        assert node.left == Variable("params", ("env",))

    def test_parse_precedence(self):
        """Test that 'and' binds tighter than 'or'."""
        node = parse("$params.a or $params.b and $params.c")

        assert isinstance(node, Or)
        assert isinstance(node.operands[1], And)

    def test_parse_not_and_grouping(self):
        """Test negation of a parenthesised expression."""
        node = parse("not ($params.a or $params.b)")

        assert isinstance(node, Not)
        assert isinstance(node.operand, Or)

    def test_keywords_are_case_insensitive(self):
        """Test that keywords are accepted in any case."""
        node = parse("$params.a AND NOT $params.b")

        assert isinstance(node, And)

    @pytest.mark.parametrize(
        "expression",
        [
            "",
            "   ",
            "$params.a ==",
            "($params.a == 1",
            "$params.a == 1)",
            "region == 'us'",
            "$secrets.token == 'x'",
            "$params.a === 1",
            "__import__('os')",
        ],
    )
    def test_malformed_expressions_raise(self, expression):
        """Test that malformed or unsafe expressions raise ConditionEvaluationError."""
        with pytest.raises(ConditionEvaluationError):
            parse(expression)

    def test_bare_identifier_error_mentions_dollar(self):
        """Test that a bare identifier explains the variable syntax."""
        with pytest.raises(ConditionEvaluationError, match=r"must start with '\$'"):
            parse("region == 'us'")

    def test_referenced_variables(self):
        """Test collecting variable references in source order."""
        variables = referenced_variables('$params.env == "prod" and $env.context != "dev"')

        assert [v.reference for v in variables] == ["$params.env", "$env.context"]


class TestEvaluate:
    """Test cases for evaluating expressions."""

    def setup_method(self):
        """Setup test fixtures."""
        self.lookup = lookup_from(
            {
                "params": {"env": "dev", "count": 5, "ratio": "2.5", "enabled": True, "flag": "false", "cfg": {"tier": "gold"}},
                "env": {"context": "staging"},
            }
        )

    @pytest.mark.parametrize(
        "expression, expected",
        [
            ('$params.env == "prod"', False),
            ("$params.env == 'dev'", True),
            ('$params.env != "prod"', True),
            ("$params.count > 3", True),
            ("$params.count <= 4", False),
            ("$params.ratio >= 2.5", True),
            ("$params.enabled == true", True),
            ("$params.enabled", True),
            ("$params.flag", False),
            ("not $params.flag", True),
            ('$env.context == "staging" and $params.count < 10', True),
            ('$env.context == "prod" or $params.count == 5', True),
            ('$params.cfg.tier == "gold"', True),
            ("$params.env == null", False),
            ('("b" > "a")', True),
        ],
    )
    def test_evaluate(self, expression, expected):
        """Test evaluating expressions against a context."""
        assert truthy(parse(expression).evaluate(self.lookup)) is expected

    def test_unknown_variable_propagates_lookup_error(self):
        """Test that the lookup's error surfaces unchanged."""
        with pytest.raises(KeyError):
            parse("$params.missing == 1").evaluate(self.lookup)

    def test_ordering_incompatible_types_raises(self):
        """Test that ordering a string against a number is an evaluation error."""
        with pytest.raises(ConditionEvaluationError):
            parse('$params.env > 3').evaluate(self.lookup)

    def test_short_circuit(self):
        """Test that 'and' does not evaluate its right operand when the left is false."""
        assert parse("$params.flag and $params.missing").evaluate(self.lookup) is False


class TestTruthy:
    """Test cases for truthiness of context values."""

    @pytest.mark.parametrize("value", ["", "false", "False", "0", "no", 0, None, False, [], {}])
    def test_falsy(self, value):
        assert truthy(value) is False

    @pytest.mark.parametrize("value", ["yes", "true", "prod", 1, True, [1], {"a": 1}])
    def test_truthy(self, value):
        assert truthy(value) is True
