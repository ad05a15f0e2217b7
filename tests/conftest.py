"""Pytest configuration and shared fixtures."""
import os

os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from unittest.mock import Mock, patch

from codementor.core.auth import create_access_token
from codementor.domain.engagement import ThresholdConfig
from codementor.infrastructure.api_client import TutorApiClient
from codementor.infrastructure.broadcast import BroadcastChannel, InMemoryTransport
from codementor.infrastructure.redis import LocalStorage
from codementor.services.engagement import EngagementTracker
from codementor.services.lesson_resolver import LessonResolver
from codementor.services.sequencer import ActivitySequencer
from codementor.services.session_store import SessionStore


class FakeRedis:
    """Dict-backed stand-in for the handful of Redis calls we make."""

    def __init__(self):
        self.data = {}
        self.published = []

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = value
        return True

    def setex(self, key, ttl, value):
        self.data[key] = value
        return True

    def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    def publish(self, channel, message):
        self.published.append((channel, message))
        return 0

    def ping(self):
        return True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def storage(fake_redis):
    """Local storage shared by every tab in a test."""
    return LocalStorage(redis_client=fake_redis)


@pytest.fixture
def transport():
    """Fresh in-memory hub per test so tabs from other tests never leak in."""
    return InMemoryTransport()


@pytest.fixture
def make_channel(transport):
    """Factory for additional tabs on the same hub."""
    channels = []

    def factory(origin=None):
        channel = BroadcastChannel(transport=transport, channel_name="test-sync", origin=origin)
        channels.append(channel)
        return channel

    yield factory
    for channel in channels:
        channel.close()


@pytest.fixture
def channel(make_channel):
    return make_channel("tab-a")


@pytest.fixture
def mock_api():
    """Mock tutoring API client with empty responses by default."""
    api = Mock(spec=TutorApiClient)
    api.get_active_session.return_value = None
    api.get_lesson_plans.return_value = []
    api.get_lesson_plan.return_value = {}
    api.get_lesson_plan_progress.return_value = {"overall_percentage": 0}
    api.get_module_quizzes.return_value = []
    api.get_user_quiz_attempts.return_value = []
    api.start_quiz_attempt.return_value = {"attempt": {"id": 900}}
    api.get_related_practice.return_value = []
    api.create_preference_log.return_value = {}
    api.update_progress.return_value = {}
    return api


@pytest.fixture
def active_session_payload():
    """Active session as returned by the server."""
    return {
        "id": 17,
        "user_id": "42",
        "session_identifier": "solo-42-abc",
        "topic_id": 3,
        "lesson_id": 7,
        "conversation_history": [
            {"id": 1, "sender": "user", "text": "What is a HashMap?", "timestamp": "2025-01-10T10:00:00+00:00"},
            {"id": 2, "sender": "ai", "text": "A key/value map.", "timestamp": "2025-01-10T10:00:05+00:00"},
        ],
        "session_metadata": {"last_tab": "chat", "server_only": True},
        "is_active": True,
    }


@pytest.fixture
def user_token():
    return create_access_token("42", email="learner@codementor.dev")


@pytest.fixture
def session_store(mock_api, storage, channel):
    store = SessionStore("42", mock_api, storage, channel)
    yield store
    store.close()


@pytest.fixture
def thresholds():
    return ThresholdConfig(quiz_threshold=30, practice_threshold=70)


@pytest.fixture
def tracker(thresholds):
    tracker = EngagementTracker(config=thresholds)
    tracker.start()
    return tracker


@pytest.fixture
def resolver(mock_api, session_store):
    return LessonResolver(mock_api, session_store=session_store)


@pytest.fixture
def sequencer(tracker, resolver, mock_api, session_store, storage):
    return ActivitySequencer(tracker, resolver, mock_api, session_store=session_store, storage=storage)


@pytest.fixture
def lesson_with_quiz(mock_api):
    """Lesson 7 with one module, one unpassed quiz and one practice problem."""
    mock_api.get_lesson_plan.return_value = {"id": 7, "modules": [{"id": 70, "title": "Collections"}]}
    mock_api.get_module_quizzes.return_value = [{"id": 700, "title": "Collections quiz"}]
    mock_api.get_related_practice.return_value = [{"id": 7000, "title": "Word counter", "topic_id": 3}]
    return mock_api


@pytest.fixture(autouse=True)
def mock_redis_connection():
    """Never open a real Redis connection in tests."""
    with patch("codementor.infrastructure.redis.redis.Redis") as mock:
        mock.return_value.ping.side_effect = ConnectionError("no redis in tests")
        yield mock
