"""
Unit tests for Messages main service.
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock
from fastapi.testclient import TestClient

from shared.errors import PersistenceError
from service_messages.app.main import MessagesService, create_app
from service_messages.app.persistence.postgres import PostgreSQLPersistence
from service_messages.app.rules.models import (
    Message, MessageStatus, Rule, RuleAction, RuleOperator
)


class TestMessagesService:
    """Test cases for MessagesService."""

    @pytest.fixture
    def messages_service(self):
        """Create MessagesService with mocked persistence."""
        service = MessagesService()
        service.persistence = MagicMock(spec=PostgreSQLPersistence)
        service.persistence.list_rules.return_value = []
        service.persistence.save_message.side_effect = lambda message: message
        service.persistence.save_rule.side_effect = lambda rule: rule
        return service

    @pytest.fixture
    def persistence(self, messages_service):
        """Mocked persistence of the service under test."""
        return messages_service.persistence

    @pytest.fixture
    def client(self, messages_service):
        """Create test client."""
        return TestClient(messages_service.app)

    @pytest.fixture
    def mock_rule_create_request(self):
        """Mock rule creation request."""
        return {
            "name": "Block casino",
            "field": "message.subject",
            "operator": "contains",
            "value": "casino",
            "action": "Forbidden",
            "priority": 10
        }

    def post_xml(self, client, body):
        return client.post("/api/messages", content=body, headers={"Content-Type": "application/xml"})

    def test_create_app(self):
        """Test the application factory."""
        app = create_app()
        assert app.title == "Messages Service"

    def test_service_initialization(self, messages_service):
        """Test service initialization."""
        assert messages_service.service_name == "messages"
        assert messages_service.port == 3000
        assert messages_service.rule_engine is not None
        assert messages_service.persistence is not None

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "messages"
        assert "rule_engine" in data["capabilities"]

    def test_health_with_dependencies(self, client, persistence):
        """Test health endpoint with dependency checks."""
        persistence.health_check.return_value = True

        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"]["postgres"] == "ok"

    def test_submit_xml_message_forbidden_by_rule(self, client, persistence):
        """Test a terminal rule decides the status and earlier tags are kept."""
        persistence.list_rules.return_value = [
            Rule(rule_id="r1", name="tag", field="message.subject", value="Win", action=RuleAction.TAG,
                 tag="promo", priority=1),
            Rule(rule_id="r2", name="casino", field="message.subject", value="casino",
                 action=RuleAction.FORBIDDEN, priority=2),
            Rule(rule_id="r3", name="late", field="message.subject", value="Win", action=RuleAction.TAG,
                 tag="late", priority=3),
        ]
        body = "<message><subject>Win big at the casino</subject></message>"

        response = self.post_xml(client, body)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "Forbidden"
        assert data["tags"] == ["promo"]
        assert data["id"]

        persistence.save_message.assert_called_once()
        saved = persistence.save_message.call_args.args[0]
        assert saved.raw_body == body
        assert saved.parsed == {"message": {"subject": "Win big at the casino"}}
        assert saved.status == MessageStatus.FORBIDDEN
        assert saved.message_id == data["id"]

    def test_submit_xml_message_fallback(self, client, persistence):
        """Test the keyword fallback with no rules."""
        response = self.post_xml(client, "<message><text>ban this sender</text></message>")

        assert response.status_code == 200
        assert response.json()["status"] == "Forbidden"
        assert response.json()["tags"] == []

    def test_submit_message_stays_maybe(self, client):
        """Test an undecided message."""
        response = self.post_xml(client, "<message><text>hello</text></message>")

        assert response.status_code == 200
        assert response.json()["status"] == "Maybe"

    def test_submit_invalid_xml(self, client, persistence):
        """Test malformed XML is rejected before classification."""
        response = self.post_xml(client, "<message><text>broken</message>")

        assert response.status_code == 400
        data = response.json()
        assert data["code"] == "DOCUMENT_PARSE_ERROR"
        assert data["message"] == "Invalid XML"
        persistence.list_rules.assert_not_called()
        persistence.save_message.assert_not_called()

    def test_submit_json_message(self, client, persistence):
        """Test JSON bodies are classified too."""
        persistence.list_rules.return_value = [
            Rule(name="big", field="order.total", operator=RuleOperator.GREATER_THAN, value="100",
                 action=RuleAction.ALLOWED)
        ]

        response = client.post("/api/messages", json={"order": {"total": 250}})

        assert response.status_code == 200
        assert response.json()["status"] == "Allowed"

    def test_submit_json_array_rejected(self, client):
        """Test a JSON body must be an object."""
        response = client.post("/api/messages", json=[1, 2, 3])

        assert response.status_code == 400
        assert response.json()["code"] == "DOCUMENT_PARSE_ERROR"

    def test_submit_json_oversized_integer_rejected(self, client, persistence):
        """Test an integer literal too long to convert is a parse error."""
        body = '{"order": {"total": ' + "9" * 5000 + "}}"

        response = client.post("/api/messages", content=body, headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json()["code"] == "DOCUMENT_PARSE_ERROR"
        persistence.save_message.assert_not_called()

    @pytest.mark.parametrize("constant", ["NaN", "Infinity", "-Infinity"])
    def test_submit_json_non_finite_constant_rejected(self, client, persistence, constant):
        """Test non-standard JSON constants are refused."""
        body = '{"order": {"total": ' + constant + "}}"

        response = client.post("/api/messages", content=body, headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json()["code"] == "DOCUMENT_PARSE_ERROR"
        persistence.save_message.assert_not_called()

    def test_submit_json_integer_beyond_float_range(self, client, persistence):
        """Test a huge integer is stored and numeric rules simply do not match."""
        persistence.list_rules.return_value = [
            Rule(name="big", field="order.total", operator=RuleOperator.GREATER_THAN, value="100",
                 action=RuleAction.FORBIDDEN)
        ]
        body = '{"order": {"total": 1' + "0" * 400 + "}}"

        response = client.post("/api/messages", content=body, headers={"Content-Type": "application/json"})

        assert response.status_code == 200
        assert response.json()["status"] == "Maybe"
        persistence.save_message.assert_called_once()

    def test_submit_xml_attributed_element(self, client, persistence):
        """Test an element carrying attributes is not matched on its text."""
        persistence.list_rules.return_value = [
            Rule(name="spam", field="message.subject", value="spam", action=RuleAction.FORBIDDEN)
        ]

        response = self.post_xml(client, '<message><subject lang="en">spam offer</subject></message>')

        assert response.status_code == 200
        assert response.json()["status"] == "Maybe"
        saved = persistence.save_message.call_args.args[0]
        assert saved.parsed == {"message": {"subject": {"$": {"lang": "en"}, "_": "spam offer"}}}

    def test_submit_unsupported_content_type(self, client):
        """Test plain text bodies are refused."""
        response = client.post("/api/messages", content="hello", headers={"Content-Type": "text/plain"})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_list_messages(self, client, persistence):
        """Test listing all messages."""
        persistence.list_messages.return_value = [
            Message(
                message_id="m1",
                raw_body="<a>ok</a>",
                parsed={"a": "ok"},
                status=MessageStatus.ALLOWED,
                tags=["t"],
                received_at=datetime(2024, 1, 1, tzinfo=timezone.utc)
            )
        ]

        response = client.get("/api/messages")

        assert response.status_code == 200
        data = response.json()
        assert len(data) == 1
        assert data[0]["id"] == "m1"
        assert data[0]["status"] == "Allowed"
        assert data[0]["parsed"] == {"a": "ok"}
        persistence.list_messages.assert_called_once_with()

    def test_list_maybe_messages(self, client, persistence):
        """Test listing only undecided messages."""
        persistence.list_messages.return_value = []

        response = client.get("/api/messages/maybe")

        assert response.status_code == 200
        assert response.json() == []
        persistence.list_messages.assert_called_once_with(status=MessageStatus.MAYBE)

    def test_list_rules_sorted(self, client, persistence):
        """Test rules are returned in evaluation order."""
        persistence.list_rules.return_value = [
            Rule(rule_id="b", name="b", field="x", value="1", action="Allowed", priority=50),
            Rule(rule_id="a", name="a", field="x", value="1", action="Forbidden", priority=5),
        ]

        response = client.get("/api/rules")

        assert response.status_code == 200
        assert [r["rule_id"] for r in response.json()] == ["a", "b"]

    def test_create_rule_success(self, client, persistence, mock_rule_create_request):
        """Test successful rule creation."""
        response = client.post("/api/rules", json=mock_rule_create_request)

        assert response.status_code == 201
        data = response.json()
        assert "rule_id" in data
        assert data["name"] == "Block casino"
        assert data["operator"] == "contains"
        assert data["action"] == "Forbidden"
        assert data["priority"] == 10
        persistence.save_rule.assert_called_once()

    def test_create_rule_defaults(self, client, mock_rule_create_request):
        """Test operator and priority defaults."""
        del mock_rule_create_request["operator"]
        del mock_rule_create_request["priority"]

        response = client.post("/api/rules", json=mock_rule_create_request)

        assert response.status_code == 201
        assert response.json()["operator"] == "contains"
        assert response.json()["priority"] == 100

    @pytest.mark.parametrize("changes", [
        {"operator": "startswith"},
        {"action": "Quarantine"},
        {"priority": 0},
        {"name": ""},
        {"value": ""},
        {"action": "Tag"},
        {"action": "Tag", "tag": "  "},
    ])
    def test_create_rule_validation(self, client, persistence, mock_rule_create_request, changes):
        """Test invalid rules are rejected."""
        mock_rule_create_request.update(changes)

        response = client.post("/api/rules", json=mock_rule_create_request)

        assert response.status_code == 422
        persistence.save_rule.assert_not_called()

    def test_update_rule_success(self, client, persistence):
        """Test partial rule update."""
        persistence.get_rule.return_value = Rule(
            rule_id="r1", name="old", field="x", value="1", action="Allowed"
        )

        response = client.put("/api/rules/r1", json={"name": "new", "priority": 7})

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "new"
        assert data["priority"] == 7
        assert data["field"] == "x"
        persistence.save_rule.assert_called_once()

    def test_update_rule_to_tag_requires_tag(self, client, persistence):
        """Test switching to Tag without a tag is rejected."""
        persistence.get_rule.return_value = Rule(
            rule_id="r1", name="old", field="x", value="1", action="Allowed"
        )

        response = client.put("/api/rules/r1", json={"action": "Tag"})

        assert response.status_code == 400
        persistence.save_rule.assert_not_called()

    def test_update_rule_not_found(self, client, persistence):
        """Test updating a missing rule."""
        persistence.get_rule.return_value = None

        response = client.put("/api/rules/missing", json={"name": "new"})

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_delete_rule(self, client, persistence):
        """Test rule deletion."""
        persistence.delete_rule.return_value = True

        response = client.delete("/api/rules/r1")

        assert response.status_code == 204
        persistence.delete_rule.assert_called_once_with("r1")

    def test_delete_rule_not_found(self, client, persistence):
        """Test deleting a missing rule."""
        persistence.delete_rule.return_value = False

        response = client.delete("/api/rules/missing")

        assert response.status_code == 404

    def test_stats(self, client, persistence):
        """Test rule and message counts."""
        persistence.get_stats.return_value = {"total_rules": 2, "messages_by_status": {"Maybe": 3}}

        response = client.get("/api/stats")

        assert response.status_code == 200
        assert response.json()["persistence"]["messages_by_status"] == {"Maybe": 3}

    def test_metrics_endpoint_reports_classifications(self, client):
        """Test classification metrics are exported."""
        self.post_xml(client, "<message><text>ban</text></message>")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert 'messages_classified_total{status="Forbidden"} 1.0' in response.text

    def test_stats_persistence_failure(self, client, persistence):
        """Test a database failure while counting maps to 503."""
        persistence.get_stats.side_effect = PersistenceError("Error loading stats")

        response = client.get("/api/stats")

        assert response.status_code == 503
        assert response.json()["code"] == "PERSISTENCE_ERROR"
