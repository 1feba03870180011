"""
Messages service for the message monitoring system.
"""

import json
from typing import List, Sequence
from datetime import datetime, timezone

from fastapi import Request, Response

from shared.base_service import BaseService
from shared.errors import DocumentParseError, NotFoundError, ValidationError
from shared.logging import set_message_context
from shared.tracing import trace_operation

from .parsing import xml_to_document
from .persistence.postgres import PostgreSQLPersistence
from .rules.document import Document
from .rules.engine import RuleEngine
from .rules.models import (
    ClassificationResponse, Message, MessageResponse, MessageStatus, Rule, RuleAction,
    RuleCreateRequest, RuleResponse, RuleUpdateRequest, apply_rule_update, rule_snapshot
)

XML_CONTENT_TYPES = ("application/xml", "text/xml")


def _is_xml(content_type: str) -> bool:
    return content_type in XML_CONTENT_TYPES or content_type.endswith("+xml")


def _reject_constant(name: str):
    raise ValueError(f"Invalid JSON constant {name}")


class MessagesService(BaseService):
    """Messages service implementation."""

    def __init__(self):
        super().__init__("messages", 3000)

        self.rule_engine = RuleEngine(metrics=self.metrics)
        self.persistence = PostgreSQLPersistence(
            self.config.postgres_dsn,
            min_size=self.config.postgres_min_pool_size,
            max_size=self.config.postgres_max_pool_size,
            command_timeout=self.config.postgres_command_timeout
        )

        self._setup_messages_routes()

    async def _read_document(self, request: Request):
        """Return (raw body text, document) for a submitted message."""
        content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
        body = await request.body()

        try:
            raw = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DocumentParseError("Message body is not valid UTF-8") from e

        if _is_xml(content_type):
            self.logger.debug("Raw XML received", size=len(raw))
            return raw, xml_to_document(raw)

        if content_type == "application/json":
            try:
                document = json.loads(raw, parse_constant=_reject_constant)
            except (ValueError, RecursionError) as e:
                raise DocumentParseError("Invalid JSON", {"error": str(e)}) from e
            if not isinstance(document, dict):
                raise DocumentParseError("JSON message body must be an object")
            return raw, document

        raise ValidationError(
            "Unsupported content type",
            {"content_type": content_type, "supported": list(XML_CONTENT_TYPES) + ["application/json"]}
        )

    def classify(self, document: Document, rules: Sequence[Rule]):
        """Classify a document against one rule snapshot."""
        with trace_operation("classify_message", rule_count=len(rules)):
            return self.rule_engine.classify(document, rules)

    def _setup_messages_routes(self):
        """Set up message and rule routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "messages",
                "message": "Message Monitoring - Messages Service",
                "version": "1.0.0",
                "capabilities": ["rule_engine", "keyword_fallback", "persistence"]
            }

        @self.app.post("/api/messages", response_model=ClassificationResponse)
        async def submit_message(request: Request):
            """Classify and store an incoming message."""
            raw, document = await self._read_document(request)

            rules = await self.persistence.list_rules()
            message = Message(raw_body=raw, parsed=document, received_at=datetime.now(timezone.utc))
            set_message_context(message.message_id)

            result = self.classify(document, rules)
            message.status = result.status
            message.tags = list(result.tags)

            await self.persistence.save_message(message)

            self.logger.info(
                "Message classified",
                status=result.status.value,
                tags=result.tags,
                matched_rules=result.matched_rules,
                fallback_applied=result.fallback_applied,
                reason=result.reason,
                evaluation_time_ms=round(result.evaluation_time_ms, 3)
            )

            return ClassificationResponse(status=result.status, id=message.message_id, tags=message.tags)

        @self.app.get("/api/messages", response_model=List[MessageResponse])
        async def list_messages():
            """All messages, newest first."""
            messages = await self.persistence.list_messages()
            return [MessageResponse.from_message(m) for m in messages]

        @self.app.get("/api/messages/maybe", response_model=List[MessageResponse])
        async def list_maybe_messages():
            """Messages still awaiting a decision, newest first."""
            messages = await self.persistence.list_messages(status=MessageStatus.MAYBE)
            return [MessageResponse.from_message(m) for m in messages]

        @self.app.get("/api/rules", response_model=List[RuleResponse])
        async def list_rules():
            """Rules in evaluation order."""
            rules = rule_snapshot(await self.persistence.list_rules())
            return [RuleResponse.from_rule(r) for r in rules]

        @self.app.post("/api/rules", response_model=RuleResponse, status_code=201)
        async def create_rule(request: RuleCreateRequest):
            """Create a new rule."""
            rule = Rule(**request.model_dump())
            await self.persistence.save_rule(rule)

            self.logger.info("Rule created", rule_id=rule.rule_id, name=rule.name)
            return RuleResponse.from_rule(rule)

        @self.app.put("/api/rules/{rule_id}", response_model=RuleResponse)
        async def update_rule(rule_id: str, request: RuleUpdateRequest):
            """Update an existing rule."""
            existing_rule = await self.persistence.get_rule(rule_id)
            if existing_rule is None:
                raise NotFoundError("Rule not found", {"rule_id": rule_id})

            rule = apply_rule_update(existing_rule, request)
            if rule.action == RuleAction.TAG and not (rule.tag and rule.tag.strip()):
                raise ValidationError("tag is required when action is Tag", {"rule_id": rule_id})

            await self.persistence.save_rule(rule)

            self.logger.info("Rule updated", rule_id=rule_id, name=rule.name)
            return RuleResponse.from_rule(rule)

        @self.app.delete("/api/rules/{rule_id}", status_code=204)
        async def delete_rule(rule_id: str):
            """Delete a rule."""
            if not await self.persistence.delete_rule(rule_id):
                raise NotFoundError("Rule not found", {"rule_id": rule_id})

            self.logger.info("Rule deleted", rule_id=rule_id)
            return Response(status_code=204)

        @self.app.get("/api/stats")
        async def get_stats():
            """Rule and message counts."""
            stats = await self.persistence.get_stats()
            return {
                "persistence": stats,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

    async def _check_dependencies(self):
        """Check messages service dependencies."""
        dependencies = {}
        dependencies["postgres"] = "ok" if await self.persistence.health_check() else "error"
        return dependencies

    async def start(self):
        """Start messages service components."""
        await self.persistence.start()
        self.logger.info("Messages service started")

    async def stop(self):
        """Stop messages service components."""
        await self.persistence.stop()
        self.logger.info("Messages service stopped")


def create_app():
    """Create messages service application."""
    service = MessagesService()
    return service.app


if __name__ == "__main__":
    service = MessagesService()
    service.run()
