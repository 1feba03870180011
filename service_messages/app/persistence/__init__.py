"""
Persistence layer for rules and classified messages.
"""

from .postgres import PostgreSQLPersistence

__all__ = ["PostgreSQLPersistence"]
