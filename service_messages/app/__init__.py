"""
Messages Service package for the message monitoring system.

This package classifies incoming messages as Allowed, Forbidden or Maybe
and attaches tags using user-editable, priority-ordered rules. It provides:

- app.main: API surface for message submission, message listing and rule CRUD.
- app.rules: Rule model, document access, operator matching and the engine.
- app.parsing: Conversion of XML bodies into documents.
- app.persistence: PostgreSQL storage for rules and classified messages.

Guidelines:
- The service is stateless; rules and messages live in PostgreSQL.
- Each classification uses the rule snapshot fetched for that request.
"""
