"""Session store: the per-tab source of truth for the current session.

Holds the single active preserved session of the current user, persists it
with the transcript and metadata to shared local storage, reconciles with
the server, and keeps other tabs informed through the broadcast channel.

Local storage keys (per user):
    preserved_session_{user_id}
    conversation_history_{user_id}
    session_metadata_{user_id}
"""
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from codementor.core.auth import check_session_ownership
from codementor.core.exceptions import ApiError, SessionOwnershipError
from codementor.core.logging import LogTimer, get_logger
from codementor.domain.session import Message, PreservedSession
from codementor.infrastructure.api_client import TutorApiClient
from codementor.infrastructure.broadcast import BroadcastChannel, Topics
from codementor.infrastructure.redis import LocalStorage

logger = get_logger(__name__)


class SessionStore:
    """Current-session state for one tab.

    Construct one per tab when the user signs in and call :meth:`close` when
    the tab goes away. UI code reads ``current`` and mutates only through
    the store's methods.

    Args:
        user_id: Current user
        api: Tutoring API client
        storage: Shared local storage
        channel: Cross-tab broadcast channel
        token: Optional JWT used for the ownership check on initialize
    """

    def __init__(
        self,
        user_id: str,
        api: TutorApiClient,
        storage: LocalStorage,
        channel: BroadcastChannel,
        token: Optional[str] = None,
    ):
        self.user_id = str(user_id)
        self.api = api
        self.storage = storage
        self.channel = channel
        self.token = token
        self.current: Optional[PreservedSession] = None
        self.conversation_synced = True
        self.metadata_synced = True
        self.logger = get_logger(__name__, {"user_id": self.user_id})
        self._unsubscribers = [
            channel.subscribe(Topics.SESSION_UPDATED, self._on_session_updated),
            channel.subscribe(Topics.SESSION_ACTIVATED, self._on_session_activated),
            channel.subscribe(Topics.SESSION_DEACTIVATED, self._on_session_deactivated),
            channel.subscribe(Topics.CONVERSATION_UPDATED, self._on_conversation_updated),
            channel.subscribe(Topics.METADATA_UPDATED, self._on_metadata_updated),
        ]

    # Storage keys

    @property
    def session_key(self) -> str:
        return f"preserved_session_{self.user_id}"

    @property
    def conversation_key(self) -> str:
        return f"conversation_history_{self.user_id}"

    @property
    def metadata_key(self) -> str:
        return f"session_metadata_{self.user_id}"

    # Lifecycle

    def initialize(self, token: Optional[str] = None,
                   lesson_id: Optional[int] = None) -> Optional[PreservedSession]:
        """Adopt the user's active server-side session, if there is one.

        Never creates a session and never raises: network and data errors
        are logged and reported as "no session".

        Args:
            token: JWT for the ownership check (defaults to the store's token)
            lesson_id: Only adopt the session active for this lesson
        """
        token = token or self.token
        try:
            if lesson_id:
                data = self.api.get_active_session_by_lesson(self.user_id, lesson_id)
            else:
                data = self.api.get_active_session(self.user_id)
        except ApiError as e:
            self.logger.warning(f"Could not fetch active session: {e}")
            return None

        if not data:
            self.logger.info("No active session found for user")
            self.current = None
            return None

        try:
            session = PreservedSession.model_validate(data)
        except ValueError as e:
            self.logger.warning(f"Active session payload rejected: {e}", extra={"error_type": "bad_session"})
            return None

        if token:
            try:
                check_session_ownership(session.user_id, token)
            except SessionOwnershipError:
                return None

        local_metadata = self.load_session_metadata()
        merged = {**session.session_metadata, **local_metadata}
        session = session.model_copy(update={"session_metadata": merged})

        if not self.storage.get_json(self.conversation_key) and session.conversation_history:
            self._write_conversation(session.conversation_history)

        self.storage.set_json(self.metadata_key, merged)
        self._adopt(session)
        self.channel.publish(Topics.SESSION_ACTIVATED, {"session_id": session.session_identifier})
        self.logger.info(f"Session initialized: {session.session_identifier}",
                         extra={"session_id": session.session_identifier})
        return session

    def reactivate(self, session_identifier: str) -> PreservedSession:
        """Make a known session active again.

        Raises:
            ApiError: If the server rejects the reactivation
        """
        data = self.api.reactivate_session(session_identifier)
        session = PreservedSession.model_validate(data)
        self._adopt(session)
        self.channel.publish(Topics.SESSION_ACTIVATED, {"session_id": session.session_identifier})
        self.logger.info(f"Session reactivated: {session.session_identifier}",
                         extra={"session_id": session.session_identifier})
        return session

    def deactivate(self, session_identifier: str) -> None:
        """Deactivate a session on the server and drop it locally.

        Local state is cleared even if the server call fails; the failure
        is then re-raised.

        Raises:
            ApiError: If the server call failed
        """
        try:
            self.api.deactivate_session(session_identifier)
        finally:
            self._drop_current()
            self.channel.publish(Topics.SESSION_DEACTIVATED, {"session_id": session_identifier})
            self.logger.info(f"Session deactivated: {session_identifier}",
                             extra={"session_id": session_identifier})

    def clear(self) -> None:
        """Forget the current session locally without contacting the server."""
        session_identifier = self.current.session_identifier if self.current else None
        self._drop_current()
        if session_identifier:
            self.channel.publish(Topics.SESSION_DEACTIVATED, {"session_id": session_identifier})

    def update_activity(self) -> None:
        """Stamp the current session's last activity."""
        if self.current is None:
            return
        self.current = self.current.model_copy(update={"last_activity": datetime.now(timezone.utc)})
        self._persist_current()
        self.channel.publish(Topics.SESSION_UPDATED, {"session_id": self.current.session_identifier})

    def close(self) -> None:
        """Detach from the broadcast channel."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    # Conversation

    def load_conversation_history(self) -> List[Message]:
        raw = self.storage.get_json(self.conversation_key, default=[])
        if not isinstance(raw, list):
            return []
        messages = []
        for item in raw:
            try:
                messages.append(Message.model_validate(item))
            except ValueError as e:
                self.logger.warning(f"Dropping malformed stored message: {e}")
        return messages

    def save_conversation_history(self, messages: Iterable[Message]) -> None:
        messages = [m if isinstance(m, Message) else Message.model_validate(m) for m in messages]
        self._write_conversation(messages)
        self.conversation_synced = False
        self.channel.publish(Topics.CONVERSATION_UPDATED,
                             {"user_id": self.user_id, "message_count": len(messages)})

    def append_message(self, message: Message) -> List[Message]:
        messages = self.load_conversation_history()
        messages.append(message)
        self.save_conversation_history(messages)
        return messages

    def sync_conversation_with_backend(self) -> bool:
        """Push the local transcript to the server if it changed.

        Returns:
            True if a push happened and succeeded
        """
        if self.current is None or self.conversation_synced:
            return False

        payload = [m.to_storage() for m in self.load_conversation_history()]
        try:
            with LogTimer(self.logger, "conversation_sync"):
                self.api.update_conversation(self.current.session_identifier, payload)
        except ApiError as e:
            self.logger.warning(f"Conversation sync failed, retrying next cycle: {e}")
            return False

        self.conversation_synced = True
        return True

    # Metadata

    def load_session_metadata(self) -> Dict[str, Any]:
        raw = self.storage.get_json(self.metadata_key, default={})
        return raw if isinstance(raw, dict) else {}

    def save_session_metadata(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        """Shallow-merge ``partial`` into the stored metadata."""
        merged = {**self.load_session_metadata(), **partial}
        self.storage.set_json(self.metadata_key, merged)
        self.metadata_synced = False
        if self.current is not None:
            self.current = self.current.model_copy(update={"session_metadata": merged})
        self.channel.publish(Topics.METADATA_UPDATED,
                             {"user_id": self.user_id, "keys": sorted(partial)})
        return merged

    def sync_metadata_with_backend(self) -> bool:
        """Push local metadata to the server if it changed."""
        if self.current is None or self.metadata_synced:
            return False

        try:
            with LogTimer(self.logger, "metadata_sync"):
                self.api.update_metadata(self.current.session_identifier, self.load_session_metadata())
        except ApiError as e:
            self.logger.warning(f"Metadata sync failed, retrying next cycle: {e}")
            return False

        self.metadata_synced = True
        return True

    # Internals

    def _adopt(self, session: PreservedSession) -> None:
        self.current = session
        self._persist_current()

    def _persist_current(self) -> None:
        if self.current is not None:
            self.storage.set_json(self.session_key, self.current.to_storage())

    def _drop_current(self) -> None:
        self.current = None
        self.storage.remove(self.session_key)

    def _write_conversation(self, messages: List[Message]) -> None:
        self.storage.set_json(self.conversation_key, [m.to_storage() for m in messages])

    def _read_stored_session(self) -> Optional[PreservedSession]:
        raw = self.storage.get_json(self.session_key)
        if not raw:
            return None
        try:
            return PreservedSession.model_validate(raw)
        except ValueError as e:
            self.logger.warning(f"Stored session unreadable: {e}")
            return None

    # Cross-tab handlers

    def _on_session_updated(self, payload: Dict[str, Any]) -> None:
        stored = self._read_stored_session()
        if stored is not None:
            self.current = stored

    def _on_session_activated(self, payload: Dict[str, Any]) -> None:
        session_id = payload.get("session_id")
        if self.current is not None and self.current.session_identifier == session_id:
            self.current = self.current.model_copy(update={"is_active": True})
        elif self.current is None:
            self.current = self._read_stored_session()

    def _on_session_deactivated(self, payload: Dict[str, Any]) -> None:
        session_id = payload.get("session_id")
        if self.current is not None and self.current.session_identifier == session_id:
            self.current = self.current.model_copy(update={"is_active": False})

    def _on_conversation_updated(self, payload: Dict[str, Any]) -> None:
        if payload.get("user_id") == self.user_id:
            self.conversation_synced = False

    def _on_metadata_updated(self, payload: Dict[str, Any]) -> None:
        if payload.get("user_id") == self.user_id:
            self.metadata_synced = False
