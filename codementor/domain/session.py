"""Domain models for preserved tutoring sessions and their transcripts."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from codementor.utils.ids import coerce_numeric_id


class Sender(str, Enum):
    """Author of a transcript message.

    ``bot`` and ``ai`` are the two tutor variants the dashboard runs side
    by side.
    """
    USER = "user"
    BOT = "bot"
    AI = "ai"


class Message(BaseModel):
    """One turn in the conversation transcript.

    Messages are append-only. Ids are always strings and timestamps are
    serialized as ISO-8601 text.
    """
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: str
    sender: Sender
    text: str
    code: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        if value is None:
            raise ValueError("message id is required")
        return str(value)

    def to_storage(self) -> Dict[str, Any]:
        """Canonical JSON-ready form used for local storage and the server."""
        data = {
            "id": self.id,
            "sender": self.sender,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.code is not None:
            data["code"] = self.code
        return data


class PreservedSession(BaseModel):
    """A resumable tutoring conversation owned by one user.

    Attributes:
        id: Numeric server id (absent for sessions not yet backed server-side)
        user_id: Owning user
        session_identifier: Opaque identifier used by the session endpoints
        topic_id: Topic the session is about, if any
        lesson_id: Lesson (lesson plan) the session is about, if any
        conversation_history: Ordered transcript
        session_metadata: Free-form key/value record
        is_active: Whether the session is the user's active one
        last_activity: Last time the user interacted with the session
    """
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    user_id: str
    session_identifier: str
    topic_id: Optional[int] = None
    lesson_id: Optional[int] = None
    conversation_history: List[Message] = Field(default_factory=list)
    session_metadata: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    last_activity: Optional[datetime] = None
    session_type: str = "solo"
    ai_models_used: List[str] = Field(default_factory=list)

    @field_validator("user_id", "session_identifier", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> str:
        if value is None:
            raise ValueError("value is required")
        return str(value)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_numeric_id(cls, value: Any) -> Optional[int]:
        return coerce_numeric_id(value)

    @field_validator("session_metadata", mode="before")
    @classmethod
    def _default_metadata(cls, value: Any) -> Dict[str, Any]:
        return value if isinstance(value, dict) else {}

    @field_validator("conversation_history", mode="before")
    @classmethod
    def _keep_valid_messages(cls, value: Any) -> List[Any]:
        if not isinstance(value, list):
            return []
        valid = []
        for item in value:
            if isinstance(item, Message):
                valid.append(item)
                continue
            try:
                valid.append(Message.model_validate(item))
            except ValueError:
                continue
        return valid

    def to_storage(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", exclude={"conversation_history"})
        data["conversation_history"] = [m.to_storage() for m in self.conversation_history]
        return data
