"""
PostgreSQL persistence layer for the Messages Service.
"""

import json
from typing import Any, Dict, List, Optional

import asyncpg

from shared.logging import get_logger
from shared.errors import PersistenceError
from ..rules.models import Message, MessageStatus, Rule, RuleAction, RuleOperator


async def _init_connection(conn):
    """Decode JSONB columns as Python objects."""
    await conn.set_type_codec(
        "jsonb",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog"
    )


class PostgreSQLPersistence:
    """PostgreSQL persistence layer for rules and messages."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10, command_timeout: int = 30):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.logger = get_logger("messages.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout,
                init=_init_connection
            )

            await self._create_tables()

            self.logger.info("PostgreSQL persistence started")

        except (OSError, asyncpg.PostgresError) as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise PersistenceError("Failed to start PostgreSQL persistence", {"error": str(e)}) from e

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise PersistenceError("PostgreSQL persistence is not started")
        return self.pool

    async def _create_tables(self):
        """Create database tables."""
        async with self._require_pool().acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS rules (
                    rule_id VARCHAR(64) PRIMARY KEY,
                    name VARCHAR(255) NOT NULL,
                    field VARCHAR(512) NOT NULL,
                    operator VARCHAR(16) NOT NULL DEFAULT 'contains',
                    value TEXT NOT NULL,
                    action VARCHAR(16) NOT NULL,
                    tag VARCHAR(255),
                    priority INTEGER NOT NULL DEFAULT 100,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_rules_order ON rules(priority ASC, created_at ASC);
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    message_id VARCHAR(64) PRIMARY KEY,
                    raw_body TEXT NOT NULL,
                    parsed JSONB,
                    status VARCHAR(16) NOT NULL DEFAULT 'Maybe',
                    tags TEXT[] NOT NULL DEFAULT '{}',
                    received_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_messages_status ON messages(status, received_at DESC);
            """)

    async def list_rules(self) -> List[Rule]:
        """Load all rules in evaluation order."""
        try:
            async with self._require_pool().acquire() as conn:
                rows = await conn.fetch("""
                    SELECT * FROM rules ORDER BY priority ASC, created_at ASC
                """)
                return [self._row_to_rule(row) for row in rows]

        except asyncpg.PostgresError as e:
            self.logger.error("Error loading rules", error=str(e))
            raise PersistenceError("Error loading rules", {"error": str(e)}) from e

    async def get_rule(self, rule_id: str) -> Optional[Rule]:
        """Load a rule by ID."""
        try:
            async with self._require_pool().acquire() as conn:
                row = await conn.fetchrow("""
                    SELECT * FROM rules WHERE rule_id = $1
                """, rule_id)

                if not row:
                    return None

                return self._row_to_rule(row)

        except asyncpg.PostgresError as e:
            self.logger.error("Error loading rule", rule_id=rule_id, error=str(e))
            raise PersistenceError("Error loading rule", {"rule_id": rule_id}) from e

    async def save_rule(self, rule: Rule) -> Rule:
        """Insert or update a rule."""
        try:
            async with self._require_pool().acquire() as conn:
                await conn.execute("""
                    INSERT INTO rules (
                        rule_id, name, field, operator, value, action, tag,
                        priority, created_at, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    ON CONFLICT (rule_id) DO UPDATE SET
                        name = EXCLUDED.name,
                        field = EXCLUDED.field,
                        operator = EXCLUDED.operator,
                        value = EXCLUDED.value,
                        action = EXCLUDED.action,
                        tag = EXCLUDED.tag,
                        priority = EXCLUDED.priority,
                        updated_at = EXCLUDED.updated_at
                """,
                    rule.rule_id, rule.name, rule.field, rule.operator.value,
                    rule.value, rule.action.value, rule.tag, rule.priority,
                    rule.created_at, rule.updated_at
                )

                self.logger.info("Rule saved", rule_id=rule.rule_id, name=rule.name)
                return rule

        except asyncpg.PostgresError as e:
            self.logger.error("Error saving rule", rule_id=rule.rule_id, error=str(e))
            raise PersistenceError("Error saving rule", {"rule_id": rule.rule_id}) from e

    async def delete_rule(self, rule_id: str) -> bool:
        """Delete a rule; False when it did not exist."""
        try:
            async with self._require_pool().acquire() as conn:
                result = await conn.execute("""
                    DELETE FROM rules WHERE rule_id = $1
                """, rule_id)

                if result == "DELETE 1":
                    self.logger.info("Rule deleted", rule_id=rule_id)
                    return True

                self.logger.warning("Rule not found for deletion", rule_id=rule_id)
                return False

        except asyncpg.PostgresError as e:
            self.logger.error("Error deleting rule", rule_id=rule_id, error=str(e))
            raise PersistenceError("Error deleting rule", {"rule_id": rule_id}) from e

    async def save_message(self, message: Message) -> Message:
        """Store a classified message."""
        try:
            async with self._require_pool().acquire() as conn:
                await conn.execute("""
                    INSERT INTO messages (
                        message_id, raw_body, parsed, status, tags, received_at
                    ) VALUES ($1, $2, $3, $4, $5, $6)
                """,
                    message.message_id, message.raw_body, message.parsed,
                    message.status.value, message.tags, message.received_at
                )

                self.logger.info("Message saved", message_id=message.message_id, status=message.status.value)
                return message

        except asyncpg.PostgresError as e:
            self.logger.error("Error saving message", message_id=message.message_id, error=str(e))
            raise PersistenceError("Error saving message", {"message_id": message.message_id}) from e

    async def list_messages(self, status: Optional[MessageStatus] = None) -> List[Message]:
        """Load messages newest first, optionally only one status."""
        try:
            async with self._require_pool().acquire() as conn:
                if status is None:
                    rows = await conn.fetch("""
                        SELECT * FROM messages ORDER BY received_at DESC
                    """)
                else:
                    rows = await conn.fetch("""
                        SELECT * FROM messages WHERE status = $1 ORDER BY received_at DESC
                    """, status.value)

                return [self._row_to_message(row) for row in rows]

        except asyncpg.PostgresError as e:
            self.logger.error("Error loading messages", status=status, error=str(e))
            raise PersistenceError("Error loading messages") from e

    async def get_stats(self) -> Dict[str, Any]:
        """Message counts per status and rule total."""
        try:
            async with self._require_pool().acquire() as conn:
                rule_count = await conn.fetchval("SELECT COUNT(*) FROM rules")
                rows = await conn.fetch("""
                    SELECT status, COUNT(*) AS total FROM messages GROUP BY status
                """)

        except asyncpg.PostgresError as e:
            self.logger.error("Error loading stats", error=str(e))
            raise PersistenceError("Error loading stats") from e

        return {
            "total_rules": rule_count or 0,
            "messages_by_status": {row["status"]: row["total"] for row in rows}
        }

    def _row_to_rule(self, row) -> Rule:
        """Convert database row to Rule object."""
        return Rule(
            rule_id=row['rule_id'],
            name=row['name'],
            field=row['field'],
            operator=RuleOperator(row['operator']),
            value=row['value'],
            action=RuleAction(row['action']),
            tag=row['tag'],
            priority=row['priority'],
            created_at=row['created_at'],
            updated_at=row['updated_at']
        )

    def _row_to_message(self, row) -> Message:
        """Convert database row to Message object."""
        return Message(
            message_id=row['message_id'],
            raw_body=row['raw_body'],
            parsed=row['parsed'],
            status=MessageStatus(row['status']),
            tags=list(row['tags'] or []),
            received_at=row['received_at']
        )

    async def health_check(self) -> bool:
        """Check database health."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except (OSError, asyncpg.PostgresError):
            return False
