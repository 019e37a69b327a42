"""
Tests for chat API endpoints.
"""
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from kidcare.core.deps import get_chat_history_repository, get_chat_orchestrator
from kidcare.core.exceptions import ForbiddenError, LLMProviderError
from kidcare.main import app
from kidcare.services.allergy_checker import AllergyChecker
from kidcare.services.chat_orchestrator import ChatOrchestrator, GENERIC_SUGGESTIONS
from kidcare.services.context_builder import ChildSummary, Context
from kidcare.services.medical_checker import MedicalChecker

from fakes import FakeChatModel


def parse_sse(body: str) -> list:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


@pytest.fixture
def chat_history(make_chat):
    history = MagicMock()
    history.create_chat_history = AsyncMock(return_value=SimpleNamespace(id=42))
    history.get_user_chats = AsyncMock(return_value=[make_chat(2), make_chat(1)])
    history.get_child_chats = AsyncMock(return_value=[make_chat(2)])
    history.save_feedback = AsyncMock(return_value=SimpleNamespace(id=2, feedback=1))
    return history


@pytest.fixture
def chat_model():
    return FakeChatModel()


@pytest.fixture
def orchestrator(chat_history, chat_model):
    context_builder = MagicMock()
    context_builder.build_context = AsyncMock(
        return_value=Context(
            user_id=1,
            child=ChildSummary(id=3, name="Mia", age_in_months=8, gender="FEMALE", allergy_info=["Milk"]),
        )
    )
    return ChatOrchestrator(
        context_builder, chat_model, chat_history, AllergyChecker(), MedicalChecker()
    )


@pytest.fixture
def api(authenticated_client: TestClient, orchestrator, chat_history) -> TestClient:
    app.dependency_overrides[get_chat_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_chat_history_repository] = lambda: chat_history
    return authenticated_client


class TestAuthentication:
    """Tests for bearer token handling."""

    def test_missing_token(self, client: TestClient):
        response = client.post("/api/v1/chat/sync", json={"message": "Hi"})
        assert response.status_code in (401, 403)

    def test_invalid_token(self, client: TestClient, token_factory):
        """A token signed with another key is rejected."""
        token = token_factory(1, secret="another-secret-key-that-is-long-enough")
        response = client.post(
            "/api/v1/chat/sync",
            json={"message": "Hi"},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"


class TestChatSync:
    """Tests for POST /chat/sync."""

    def test_sync_success(self, api: TestClient, chat_history):
        response = api.post("/api/v1/chat/sync", json={"message": "What can Mia eat?", "child_id": 3})

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == 42
        assert data["safety_flags"] == ["ALLERGY:Milk(cheese)"]
        assert "[7-9 months]" in data["response"]
        assert chat_history.create_chat_history.await_args.kwargs["user_id"] == 1

    def test_empty_message(self, api: TestClient):
        response = api.post("/api/v1/chat/sync", json={"message": ""})
        assert response.status_code == 422
        assert response.json()["detail"] == "Request validation failed"

    def test_provider_failure(self, api: TestClient, chat_model):
        """Provider errors surface as 503 with the provider message."""
        chat_model.generate = AsyncMock(side_effect=LLMProviderError("LLM API request timed out"))

        response = api.post("/api/v1/chat/sync", json={"message": "Hi"})

        assert response.status_code == 503
        assert response.json()["message"] == "LLM API request timed out"


class TestChatStream:
    """Tests for the SSE endpoints."""

    def test_post_stream(self, api: TestClient):
        response = api.post("/api/v1/chat/stream", json={"message": "What can Mia eat?", "child_id": 3})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"

        events = parse_sse(response.text)
        assert [e["type"] for e in events] == ["content", "content", "done"]
        assert events[-1]["chatId"] == 42
        assert events[-1]["safetyFlags"] == ["ALLERGY:Milk(cheese)"]

    def test_get_stream_error_event(self, api: TestClient, chat_model, chat_history):
        """A provider failure mid-stream ends with one error event."""
        chat_model.fail_after = 1

        response = api.get("/api/v1/chat/stream", params={"message": "Hi", "child_id": 3})

        events = parse_sse(response.text)
        assert [e["type"] for e in events] == ["content", "error"]
        assert events[-1]["error"] == "Failed to generate response: connection reset"
        chat_history.create_chat_history.assert_not_awaited()

    def test_get_stream_requires_message(self, api: TestClient):
        response = api.get("/api/v1/chat/stream")
        assert response.status_code == 422


class TestHistoryAndFeedback:
    """Tests for history, feedback and suggestions."""

    def test_history(self, api: TestClient, chat_history):
        response = api.get("/api/v1/chat/history", params={"limit": 5})

        assert response.status_code == 200
        data = response.json()
        assert [item["id"] for item in data["items"]] == [2, 1]
        assert data["limit"] == 5
        chat_history.get_user_chats.assert_awaited_once_with(1, 5, 0)

    def test_child_history_forbidden(self, api: TestClient, chat_history):
        chat_history.get_child_chats.side_effect = ForbiddenError(
            "No permission to view this child's chat history"
        )
        response = api.get("/api/v1/chat/children/9/history")
        assert response.status_code == 403

    def test_feedback(self, api: TestClient, chat_history):
        response = api.post("/api/v1/chat/feedback", json={"chat_history_id": 2, "feedback": 1})

        assert response.status_code == 200
        assert response.json() == {"id": 2, "feedback": 1}
        chat_history.save_feedback.assert_awaited_once_with(2, 1, 1)

    def test_feedback_on_foreign_chat(self, api: TestClient, chat_history):
        chat_history.save_feedback.side_effect = ForbiddenError()
        response = api.post("/api/v1/chat/feedback", json={"chat_history_id": 2, "feedback": -1})
        assert response.status_code == 403

    def test_feedback_out_of_range(self, api: TestClient):
        response = api.post("/api/v1/chat/feedback", json={"chat_history_id": 2, "feedback": 5})
        assert response.status_code == 422

    def test_suggestions(self, api: TestClient):
        response = api.get("/api/v1/chat/suggestions")

        assert response.status_code == 200
        assert response.json()["suggestions"] == GENERIC_SUGGESTIONS
