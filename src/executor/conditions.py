"""Condition evaluation for skip conditions and external waits.

The StepExecutor only depends on the Evaluator interface, so the literal
equality matcher here can be replaced by a proper expression language
without touching step execution.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping

logger = logging.getLogger(__name__)

_MISSING = object()


class Evaluator(ABC):
    """Evaluates a condition string against a variable mapping."""

    @abstractmethod
    def evaluate(self, condition: str, variables: Mapping[str, Any]) -> bool:
        """Return True if the condition holds."""


class EqualityEvaluator(Evaluator):
    """Matches conditions of the form ``left==right`` and nothing else.

    ``left`` names a variable. Dotted names walk nested mappings, so
    ``responses.step-1.approved`` reads a prior step's response. ``right`` is
    a literal compared as text; booleans and None render as ``true``,
    ``false`` and ``null``. Any other condition shape evaluates to False.
    """

    def evaluate(self, condition: str, variables: Mapping[str, Any]) -> bool:
        if "==" not in condition:
            logger.debug("Unsupported condition %r, treating as false", condition)
            return False

        left, right = (part.strip() for part in condition.split("==", 1))
        value = self._lookup(left, variables)
        if value is _MISSING:
            return False
        return _as_text(value) == right.strip("'\"")

    @staticmethod
    def _lookup(name: str, variables: Mapping[str, Any]) -> Any:
        if name in variables:
            return variables[name]
        current: Any = variables
        for part in name.split("."):
            if not isinstance(current, Mapping) or part not in current:
                return _MISSING
            current = current[part]
        return current


def _as_text(value: Any) -> str:
    if value is True:
        return "true"
    if value is False:
        return "false"
    if value is None:
        return "null"
    return str(value)
