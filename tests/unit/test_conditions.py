"""Tests for the equality condition evaluator."""

from __future__ import annotations

import pytest

from src.executor.conditions import EqualityEvaluator


@pytest.fixture
def evaluator() -> EqualityEvaluator:
    return EqualityEvaluator()


def test_literal_match(evaluator: EqualityEvaluator) -> None:
    assert evaluator.evaluate("mode==fast", {"mode": "fast"})
    assert not evaluator.evaluate("mode==fast", {"mode": "slow"})


def test_whitespace_and_quotes(evaluator: EqualityEvaluator) -> None:
    assert evaluator.evaluate("dataset == 'Sales'", {"dataset": "Sales"})
    assert evaluator.evaluate('dataset=="Sales"', {"dataset": "Sales"})


def test_dotted_lookup_into_responses(evaluator: EqualityEvaluator) -> None:
    variables = {"responses": {"step-1": {"approved": True, "count": 3}}}
    assert evaluator.evaluate("responses.step-1.approved==true", variables)
    assert evaluator.evaluate("responses.step-1.count==3", variables)
    assert not evaluator.evaluate("responses.step-2.approved==true", variables)


def test_booleans_and_none(evaluator: EqualityEvaluator) -> None:
    assert evaluator.evaluate("skip==false", {"skip": False})
    assert evaluator.evaluate("owner==null", {"owner": None})


def test_missing_variable_is_false(evaluator: EqualityEvaluator) -> None:
    assert not evaluator.evaluate("mode==fast", {})


@pytest.mark.parametrize("condition", ["mode != fast", "count > 3", "mode"])
def test_unsupported_shapes_are_false(evaluator: EqualityEvaluator, condition: str) -> None:
    assert not evaluator.evaluate(condition, {"mode": "fast", "count": 5})
