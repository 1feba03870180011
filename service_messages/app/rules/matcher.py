"""
Operator matching for a single rule against a resolved field value.
"""

import re
from functools import lru_cache
from typing import Any, Pattern

from .document import to_comparable_string, to_number_or_none
from .models import RuleOperator


class InvalidRulePatternError(ValueError):
    """A regex rule value does not compile."""

    def __init__(self, pattern: str, error: re.error):
        self.pattern = pattern
        self.error = error
        super().__init__(f"Invalid pattern {pattern!r}: {error}")


@lru_cache(maxsize=512)
def _compile(pattern: str) -> Pattern[str]:
    return re.compile(pattern)


def compile_pattern(pattern: str) -> Pattern[str]:
    """Compile (and cache) a rule pattern."""
    try:
        return _compile(pattern)
    except re.error as e:
        raise InvalidRulePatternError(pattern, e) from e


def matches(operator: RuleOperator, field_value: Any, rule_value: str) -> bool:
    """Evaluate ``operator`` for a present field value.

    Raises ``InvalidRulePatternError`` for a regex rule whose value does not
    compile; every other operator is total.
    """
    if operator == RuleOperator.CONTAINS:
        return rule_value in to_comparable_string(field_value)

    elif operator == RuleOperator.EQUALS:
        return to_comparable_string(field_value) == rule_value

    elif operator == RuleOperator.REGEX:
        return compile_pattern(rule_value).search(to_comparable_string(field_value)) is not None

    elif operator in (RuleOperator.GREATER_THAN, RuleOperator.LESS_THAN):
        left = to_number_or_none(field_value)
        right = to_number_or_none(rule_value)
        if left is None or right is None:
            return False
        if operator == RuleOperator.GREATER_THAN:
            return left > right
        return left < right

    raise ValueError(f"Unknown rule operator: {operator!r}")
