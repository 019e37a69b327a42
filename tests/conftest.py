"""
Pytest configuration and fixtures for the test suite.
"""
import os
from datetime import date, datetime, timezone
from types import SimpleNamespace
from typing import Any, Optional

import pytest

# Set test environment before importing app
os.environ["ENV"] = "development"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-testing-purposes-only-32chars"
os.environ["EMBEDDING_DIM"] = "4"
os.environ["INDEX_CHATS_ON_SAVE"] = "false"

from jose import jwt

from kidcare.core.config import settings

from fakes import FakeSession, FakeSessionFactory


# =============================================================================
# Fake async session
# =============================================================================

@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def session_factory(fake_session: FakeSession) -> FakeSessionFactory:
    return FakeSessionFactory(fake_session)


# =============================================================================
# Domain objects
# =============================================================================

@pytest.fixture
def child():
    """A child row as returned by the child reader."""
    return SimpleNamespace(
        id=3,
        user_id=1,
        nickname="Mia",
        date_of_birth=date(2025, 12, 1),
        gender="FEMALE",
        allergy_info=["Milk"],
        more_info="Loves bath time.",
    )


@pytest.fixture
def make_record():
    def _make(record_id: int, record_type: str = "feeding", details=None, child_id: int = 3):
        return SimpleNamespace(
            id=record_id,
            child_id=child_id,
            record_type=record_type,
            details=details if details is not None else {"amount": 120},
            record_timestamp=datetime(2026, 9, 1, 8, 30, tzinfo=timezone.utc),
        )
    return _make


@pytest.fixture
def make_chat():
    def _make(chat_id: int, child_id: Optional[int] = 3, user_id: int = 1):
        return SimpleNamespace(
            id=chat_id,
            user_id=user_id,
            child_id=child_id,
            user_message=f"Question {chat_id}",
            ai_response=f"Answer {chat_id}",
            feedback=None,
            request_timestamp=datetime(2026, 9, 2, 9, 0, tzinfo=timezone.utc),
        )
    return _make


# =============================================================================
# Authentication
# =============================================================================

def make_token(user_id: Any, secret: Optional[str] = None) -> str:
    return jwt.encode(
        {"sub": str(user_id)},
        secret or settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )


@pytest.fixture
def auth_headers() -> dict:
    """Authentication headers for user 1."""
    return {"Authorization": f"Bearer {make_token(1)}"}


@pytest.fixture
def token_factory():
    return make_token


# =============================================================================
# API client
# =============================================================================

@pytest.fixture
def client():
    """Test client; routes get their services through dependency_overrides."""
    from fastapi.testclient import TestClient

    from kidcare.main import app

    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def authenticated_client(client, auth_headers):
    """Create an authenticated test client."""
    client.headers.update(auth_headers)
    return client
