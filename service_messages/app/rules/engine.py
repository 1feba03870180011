"""
Rule evaluation engine for the Messages Service.
"""

import time
from typing import Iterable, Optional, Tuple

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .document import ABSENT, Document, resolve_field, serialize_document
from .matcher import InvalidRulePatternError, matches
from .models import EvaluationResult, MessageStatus, Rule, RuleAction, rule_snapshot

FORBIDDEN_KEYWORDS: Tuple[str, ...] = ("ban",)
ALLOWED_KEYWORDS: Tuple[str, ...] = ("allow", "ok")


class RuleEngine:
    """Classifies documents against a rule snapshot.

    Evaluation is pure: the engine keeps no rule state of its own and every
    call works on the snapshot it is handed.
    """

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.logger = get_logger("messages.rule_engine")
        self.metrics = metrics

    def evaluate(self, document: Document, rules: Iterable[Rule]) -> EvaluationResult:
        """Apply rules in (priority, created_at) order.

        Tag rules accumulate tags; the first matching Allowed/Forbidden rule
        sets the status and ends evaluation.
        """
        start_time = time.time()
        result = EvaluationResult(status=MessageStatus.MAYBE)

        for rule in rule_snapshot(rules):
            field_value = resolve_field(document, rule.field)
            if field_value is ABSENT:
                continue

            try:
                matched = matches(rule.operator, field_value, rule.value)
            except InvalidRulePatternError as e:
                self.logger.warning(
                    "Skipping rule with invalid pattern",
                    rule_id=rule.rule_id,
                    name=rule.name,
                    pattern=e.pattern,
                    error=str(e.error)
                )
                if self.metrics:
                    self.metrics.increment_counter("rule_pattern_errors_total")
                continue

            if not matched:
                continue

            result.matched_rules.append(rule.rule_id)

            if rule.action == RuleAction.TAG:
                result.tags.append(rule.tag or "")
                continue

            result.status = MessageStatus(rule.action.value)
            result.reason = f"Rule '{rule.name}' matched"
            break

        result.evaluation_time_ms = (time.time() - start_time) * 1000

        self.logger.debug(
            "Rule evaluation result",
            status=result.status.value,
            tags=result.tags,
            matched_rules=result.matched_rules
        )

        return result

    def fallback(self, document: Document, status: MessageStatus = MessageStatus.MAYBE) -> MessageStatus:
        """Keyword heuristic over the serialized document.

        Only an undetermined (Maybe) status is changed; ``ban`` wins over
        ``allow``/``ok``.
        """
        if status != MessageStatus.MAYBE:
            return status

        text = serialize_document(document).lower()
        if any(keyword in text for keyword in FORBIDDEN_KEYWORDS):
            return MessageStatus.FORBIDDEN
        if any(keyword in text for keyword in ALLOWED_KEYWORDS):
            return MessageStatus.ALLOWED
        return status

    def classify(self, document: Document, rules: Iterable[Rule]) -> EvaluationResult:
        """Evaluate rules, then fall back to keywords if no rule was terminal."""
        start_time = time.time()
        result = self.evaluate(document, rules)

        if result.status == MessageStatus.MAYBE:
            status = self.fallback(document, result.status)
            if status != MessageStatus.MAYBE:
                result.status = status
                result.fallback_applied = True
                result.reason = "Fallback keyword matched"
            else:
                result.reason = "No rule or keyword matched"

        result.evaluation_time_ms = (time.time() - start_time) * 1000

        if self.metrics:
            self.metrics.record_classification(
                result.status.value,
                result.evaluation_time_ms / 1000,
                fallback_applied=result.fallback_applied
            )

        return result
