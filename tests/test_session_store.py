"""Unit tests for the session store."""
import pytest

from codementor.core.auth import create_access_token
from codementor.core.exceptions import ApiError
from codementor.domain.session import Message
from codementor.infrastructure.broadcast import Topics
from codementor.services.session_store import SessionStore


class TestInitialize:
    """Test adopting the user's active session."""

    def test_adopts_active_session(self, session_store, active_session_payload, mock_api):
        mock_api.get_active_session.return_value = active_session_payload

        session = session_store.initialize()

        assert session.session_identifier == "solo-42-abc"
        assert session_store.current.id == 17
        mock_api.get_active_session.assert_called_once_with("42")

    def test_lesson_scoped_lookup(self, session_store, active_session_payload, mock_api):
        mock_api.get_active_session_by_lesson.return_value = active_session_payload

        session = session_store.initialize(lesson_id=7)

        assert session.lesson_id == 7
        mock_api.get_active_session_by_lesson.assert_called_once_with("42", 7)
        mock_api.get_active_session.assert_not_called()

    def test_no_active_session(self, session_store, mock_api):
        mock_api.get_active_session.return_value = None

        assert session_store.initialize() is None
        assert session_store.current is None

    def test_network_error_means_no_session(self, session_store, mock_api):
        mock_api.get_active_session.side_effect = ApiError("timeout")

        assert session_store.initialize() is None

    def test_invalid_payload_means_no_session(self, session_store, mock_api):
        mock_api.get_active_session.return_value = {"id": 1}

        assert session_store.initialize() is None

    def test_local_metadata_wins_merge(self, session_store, active_session_payload, mock_api, storage):
        storage.set_json(session_store.metadata_key, {"last_tab": "practice", "local_only": 1})
        mock_api.get_active_session.return_value = active_session_payload

        session = session_store.initialize()

        expected = {"last_tab": "practice", "local_only": 1, "server_only": True}
        assert session.session_metadata == expected
        assert session_store.load_session_metadata() == expected

    def test_seeds_empty_local_conversation(self, session_store, active_session_payload, mock_api):
        mock_api.get_active_session.return_value = active_session_payload

        session_store.initialize()

        history = session_store.load_conversation_history()
        assert [m.text for m in history] == ["What is a HashMap?", "A key/value map."]
        assert history[0].id == "1"

    def test_keeps_existing_local_conversation(self, session_store, active_session_payload, mock_api, storage):
        local = [Message(id="9", sender="user", text="Local draft").to_storage()]
        storage.set_json(session_store.conversation_key, local)
        mock_api.get_active_session.return_value = active_session_payload

        session_store.initialize()

        assert [m.text for m in session_store.load_conversation_history()] == ["Local draft"]

    def test_announces_activation(self, session_store, active_session_payload, mock_api, make_channel):
        received = []
        make_channel("tab-b").subscribe(Topics.SESSION_ACTIVATED, received.append)
        mock_api.get_active_session.return_value = active_session_payload

        session_store.initialize()

        assert received == [{"session_id": "solo-42-abc"}]


class TestOwnership:
    """Test the ownership policy applied on initialize."""

    def test_matching_owner(self, mock_api, storage, channel, active_session_payload, user_token):
        mock_api.get_active_session.return_value = active_session_payload
        store = SessionStore("42", mock_api, storage, channel, token=user_token)

        assert store.initialize() is not None

    def test_mismatch_tolerated_under_warn(self, mock_api, storage, channel, active_session_payload, monkeypatch):
        from codementor.core import auth
        monkeypatch.setattr(auth.settings, "session_ownership_policy", "warn")
        mock_api.get_active_session.return_value = active_session_payload
        store = SessionStore("42", mock_api, storage, channel, token=create_access_token("99"))

        assert store.initialize() is not None

    def test_mismatch_rejected_under_enforce(self, mock_api, storage, channel, active_session_payload, monkeypatch):
        from codementor.core import auth
        monkeypatch.setattr(auth.settings, "session_ownership_policy", "enforce")
        mock_api.get_active_session.return_value = active_session_payload
        store = SessionStore("42", mock_api, storage, channel, token=create_access_token("99"))

        assert store.initialize() is None
        assert store.current is None

    def test_token_passed_to_initialize(self, session_store, mock_api, active_session_payload, monkeypatch):
        from codementor.core import auth
        monkeypatch.setattr(auth.settings, "session_ownership_policy", "enforce")
        mock_api.get_active_session.return_value = active_session_payload

        assert session_store.initialize(token=create_access_token("99")) is None


class TestLifecycle:
    """Test reactivate, deactivate and clear."""

    def test_reactivate(self, session_store, active_session_payload, mock_api, storage):
        mock_api.reactivate_session.return_value = active_session_payload

        session = session_store.reactivate("solo-42-abc")

        assert session.is_active
        assert storage.get_json(session_store.session_key)["session_identifier"] == "solo-42-abc"

    def test_reactivate_propagates_errors(self, session_store, mock_api):
        mock_api.reactivate_session.side_effect = ApiError("gone", status_code=404)

        with pytest.raises(ApiError):
            session_store.reactivate("solo-42-abc")

    def test_deactivate_clears_local_state_even_on_failure(self, session_store, active_session_payload,
                                                          mock_api, storage, make_channel):
        received = []
        make_channel("tab-b").subscribe(Topics.SESSION_DEACTIVATED, received.append)
        mock_api.get_active_session.return_value = active_session_payload
        session_store.initialize()
        mock_api.deactivate_session.side_effect = ApiError("down", status_code=500)

        with pytest.raises(ApiError):
            session_store.deactivate("solo-42-abc")

        assert session_store.current is None
        assert storage.get_json(session_store.session_key) is None
        assert received == [{"session_id": "solo-42-abc"}]

    def test_clear(self, session_store, active_session_payload, mock_api):
        mock_api.get_active_session.return_value = active_session_payload
        session_store.initialize()

        session_store.clear()

        assert session_store.current is None
        mock_api.deactivate_session.assert_not_called()


class TestConversation:
    """Test transcript persistence and sync."""

    def test_save_then_load_round_trip(self, session_store):
        messages = [
            Message(id="1", sender="user", text="How do I reverse a String?"),
            Message(id="2", sender="bot", text="Use StringBuilder.", code="new StringBuilder(s).reverse()"),
        ]

        session_store.save_conversation_history(messages)

        assert session_store.load_conversation_history() == messages

    def test_malformed_items_skipped(self, session_store, storage):
        storage.set_json(session_store.conversation_key, [
            {"id": "1", "sender": "user", "text": "ok", "timestamp": "2025-01-10T10:00:00+00:00"},
            {"sender": "user"},
            "garbage",
        ])

        assert [m.id for m in session_store.load_conversation_history()] == ["1"]

    def test_append_marks_unsynced_and_notifies(self, session_store, make_channel):
        received = []
        make_channel("tab-b").subscribe(Topics.CONVERSATION_UPDATED, received.append)

        session_store.append_message(Message(id="1", sender="user", text="Hello there"))

        assert not session_store.conversation_synced
        assert received == [{"user_id": "42", "message_count": 1}]

    def test_sync_pushes_once(self, session_store, active_session_payload, mock_api):
        mock_api.get_active_session.return_value = active_session_payload
        session_store.initialize()
        session_store.append_message(Message(id="3", sender="user", text="Next question"))

        assert session_store.sync_conversation_with_backend()
        assert not session_store.sync_conversation_with_backend()

        identifier, payload = mock_api.update_conversation.call_args.args
        assert identifier == "solo-42-abc"
        assert payload[-1]["text"] == "Next question"

    def test_sync_failure_keeps_dirty_flag(self, session_store, active_session_payload, mock_api):
        mock_api.get_active_session.return_value = active_session_payload
        session_store.initialize()
        session_store.append_message(Message(id="3", sender="user", text="Next question"))
        mock_api.update_conversation.side_effect = ApiError("down")

        assert not session_store.sync_conversation_with_backend()
        assert not session_store.conversation_synced

    def test_sync_without_session_is_noop(self, session_store, mock_api):
        session_store.append_message(Message(id="1", sender="user", text="Hello there"))

        assert not session_store.sync_conversation_with_backend()
        mock_api.update_conversation.assert_not_called()


class TestMetadata:
    """Test metadata merge and sync."""

    def test_partial_merge(self, session_store):
        session_store.save_session_metadata({"a": 1, "b": 2})
        merged = session_store.save_session_metadata({"b": 3})

        assert merged == {"a": 1, "b": 3}

    def test_sync_metadata(self, session_store, active_session_payload, mock_api):
        mock_api.get_active_session.return_value = active_session_payload
        session_store.initialize()
        session_store.save_session_metadata({"selected_lesson_id": 7})

        assert session_store.sync_metadata_with_backend()
        identifier, metadata = mock_api.update_metadata.call_args.args
        assert identifier == "solo-42-abc"
        assert metadata["selected_lesson_id"] == 7


class TestCrossTab:
    """Test two stores of the same user sharing storage."""

    def test_other_tab_sees_activation(self, mock_api, storage, make_channel, active_session_payload):
        tab_a = SessionStore("42", mock_api, storage, make_channel("a"))
        tab_b = SessionStore("42", mock_api, storage, make_channel("b"))
        mock_api.get_active_session.return_value = active_session_payload

        tab_a.initialize()

        assert tab_b.current is not None
        assert tab_b.current.session_identifier == "solo-42-abc"

    def test_other_tab_sees_deactivation(self, mock_api, storage, make_channel, active_session_payload):
        tab_a = SessionStore("42", mock_api, storage, make_channel("a"))
        tab_b = SessionStore("42", mock_api, storage, make_channel("b"))
        mock_api.get_active_session.return_value = active_session_payload
        tab_a.initialize()

        tab_a.deactivate("solo-42-abc")

        assert tab_b.current.is_active is False

    def test_conversation_change_marks_other_tab_dirty(self, mock_api, storage, make_channel):
        tab_a = SessionStore("42", mock_api, storage, make_channel("a"))
        tab_b = SessionStore("42", mock_api, storage, make_channel("b"))

        tab_a.append_message(Message(id="1", sender="user", text="Hello there"))

        assert tab_b.conversation_synced is False
        assert [m.text for m in tab_b.load_conversation_history()] == ["Hello there"]

    def test_other_users_are_ignored(self, mock_api, storage, make_channel):
        tab_a = SessionStore("42", mock_api, storage, make_channel("a"))
        tab_b = SessionStore("7", mock_api, storage, make_channel("b"))

        tab_a.save_session_metadata({"x": 1})

        assert tab_b.metadata_synced is True
