"""
Rules engine package.

Defines the rule model and the classification engine used by the Messages
Service. Rules are evaluated in ascending (priority, created_at) order:
Tag rules accumulate tags, the first matching Allowed/Forbidden rule decides
the status, and a keyword fallback runs when no rule decided.

Modules of interest:
- models: Rule, enums, evaluation results and API models.
- document: Field-path resolution and value coercion over documents.
- matcher: Per-operator matching.
- engine: Evaluation and fallback orchestration.
"""

from .document import ABSENT, resolve_field
from .engine import RuleEngine
from .models import MessageStatus, Rule, RuleAction, RuleOperator, rule_snapshot

__all__ = [
    "ABSENT",
    "MessageStatus",
    "Rule",
    "RuleAction",
    "RuleEngine",
    "RuleOperator",
    "resolve_field",
    "rule_snapshot",
]
