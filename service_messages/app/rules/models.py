"""
Rule and message data models for the Messages Service.
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import uuid

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RuleOperator(str, Enum):
    """Rule comparison operators."""
    CONTAINS = "contains"
    EQUALS = "equals"
    REGEX = "regex"
    GREATER_THAN = "gt"
    LESS_THAN = "lt"


class RuleAction(str, Enum):
    """What a matching rule does."""
    ALLOWED = "Allowed"
    FORBIDDEN = "Forbidden"
    TAG = "Tag"

    @property
    def is_terminal(self) -> bool:
        return self is not RuleAction.TAG


class MessageStatus(str, Enum):
    """Message disposition."""
    ALLOWED = "Allowed"
    MAYBE = "Maybe"
    FORBIDDEN = "Forbidden"


@dataclass
class Rule:
    """Classification rule.

    ``operator`` and ``action`` accept their string values and are coerced
    on construction; unknown values raise ``ValueError``.
    """
    name: str
    field: str
    value: str
    action: RuleAction
    operator: RuleOperator = RuleOperator.CONTAINS
    tag: Optional[str] = None
    priority: int = 100
    rule_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.operator = RuleOperator(self.operator)
        self.action = RuleAction(self.action)


def rule_snapshot(rules: Iterable[Rule]) -> Tuple[Rule, ...]:
    """Freeze rules into evaluation order: priority ascending, then oldest first."""
    return tuple(sorted(rules, key=lambda r: (r.priority, r.created_at)))


@dataclass
class EvaluationResult:
    """Result of classifying one document."""
    status: MessageStatus = MessageStatus.MAYBE
    tags: List[str] = field(default_factory=list)
    matched_rules: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    fallback_applied: bool = False
    evaluation_time_ms: float = 0.0


@dataclass
class Message:
    """A classified incoming message."""
    raw_body: str
    parsed: Any
    status: MessageStatus = MessageStatus.MAYBE
    tags: List[str] = field(default_factory=list)
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    received_at: datetime = field(default_factory=utcnow)


class RuleCreateRequest(BaseModel):
    """Request model for creating a rule."""
    name: str = Field(..., min_length=1, description="Rule name")
    field: str = Field(..., min_length=1, description="Dot-delimited document path")
    operator: RuleOperator = Field(RuleOperator.CONTAINS, description="Comparison operator")
    value: str = Field(..., min_length=1, description="Comparison operand")
    action: RuleAction = Field(..., description="Action on match")
    tag: Optional[str] = Field(None, description="Tag to attach when action is Tag")
    priority: int = Field(100, ge=1, description="Lower evaluates earlier")

    @model_validator(mode="after")
    def _tag_required_for_tag_action(self):
        if self.action == RuleAction.TAG and not (self.tag and self.tag.strip()):
            raise ValueError("tag is required when action is Tag")
        return self


class RuleUpdateRequest(BaseModel):
    """Request model for updating a rule."""
    name: Optional[str] = Field(None, min_length=1, description="Rule name")
    field: Optional[str] = Field(None, min_length=1, description="Dot-delimited document path")
    operator: Optional[RuleOperator] = Field(None, description="Comparison operator")
    value: Optional[str] = Field(None, min_length=1, description="Comparison operand")
    action: Optional[RuleAction] = Field(None, description="Action on match")
    tag: Optional[str] = Field(None, description="Tag to attach when action is Tag")
    priority: Optional[int] = Field(None, ge=1, description="Lower evaluates earlier")


class RuleResponse(BaseModel):
    """Response model for rule operations."""
    rule_id: str
    name: str
    field: str
    operator: RuleOperator
    value: str
    action: RuleAction
    tag: Optional[str]
    priority: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_rule(cls, rule: Rule) -> "RuleResponse":
        return cls(
            rule_id=rule.rule_id,
            name=rule.name,
            field=rule.field,
            operator=rule.operator,
            value=rule.value,
            action=rule.action,
            tag=rule.tag,
            priority=rule.priority,
            created_at=rule.created_at,
            updated_at=rule.updated_at
        )


class ClassificationResponse(BaseModel):
    """Response model for a submitted message."""
    status: MessageStatus
    id: str
    tags: List[str] = Field(default_factory=list)


class MessageResponse(BaseModel):
    """Response model for stored messages."""
    id: str
    raw_body: str
    parsed: Any
    status: MessageStatus
    tags: List[str]
    received_at: datetime

    @classmethod
    def from_message(cls, message: Message) -> "MessageResponse":
        return cls(
            id=message.message_id,
            raw_body=message.raw_body,
            parsed=message.parsed,
            status=message.status,
            tags=message.tags,
            received_at=message.received_at
        )


def apply_rule_update(rule: Rule, request: RuleUpdateRequest) -> Rule:
    """Apply the fields set on an update request to a rule."""
    changes: Dict[str, Any] = request.model_dump(exclude_unset=True, exclude_none=True)
    for name, value in changes.items():
        setattr(rule, name, value)
    rule.updated_at = utcnow()
    return rule
