"""Domain models for engagement scoring and the activity sequencer."""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator

from codementor.core.config import settings


class EngagementEventType(str, Enum):
    MESSAGE = "message"
    CODE_EXECUTION = "code_execution"
    SCROLL = "scroll"
    INTERACTION = "interaction"
    TIME = "time"
    QUIZ_COMPLETED = "quiz_completed"
    PRACTICE_COMPLETED = "practice_completed"


class TriggeredActivity(str, Enum):
    NONE = "none"
    QUIZ = "quiz"
    PRACTICE = "practice"


class ActivityStage(str, Enum):
    """States of the activity sequencer, in cycle order."""
    IDLE = "idle"
    QUIZ_PENDING = "quiz_pending"
    QUIZ_ACTIVE = "quiz_active"
    PRACTICE_PENDING = "practice_pending"
    PRACTICE_ACTIVE = "practice_active"
    POLL_PENDING = "poll_pending"
    COMPLETED = "completed"


class SequencerEvent(str, Enum):
    """Named outputs of the sequencer's transitions."""
    STAGE_CHANGED = "stage_changed"
    QUIZ_TRIGGERED = "quiz_triggered"
    QUIZ_ALREADY_COMPLETE = "quiz_already_complete"
    PRACTICE_TRIGGERED = "practice_triggered"
    PRACTICE_SKIPPED = "practice_skipped"
    PREFERENCE_POLL = "preference_poll"
    LESSON_COMPLETED = "lesson_completed"
    NOTICE = "notice"


class EngagementEvent(BaseModel):
    """A single scored interaction."""
    model_config = ConfigDict(frozen=True)

    type: EngagementEventType
    points: float
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ThresholdConfig(BaseModel):
    """Thresholds for one tracking session. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    quiz_threshold: float = Field(gt=0)
    practice_threshold: float = Field(gt=0)
    auto_trigger: bool = True

    @model_validator(mode="after")
    def _ordered(self) -> "ThresholdConfig":
        if self.practice_threshold <= self.quiz_threshold:
            raise ValueError("practice_threshold must exceed quiz_threshold")
        return self

    @classmethod
    def from_settings(cls) -> "ThresholdConfig":
        return cls(
            quiz_threshold=settings.quiz_threshold,
            practice_threshold=settings.practice_threshold,
            auto_trigger=settings.auto_trigger,
        )


class EngagementAnalytics(BaseModel):
    """Read-only snapshot of an engagement tracker."""
    score: float
    quiz_threshold: float
    practice_threshold: float
    quiz_threshold_reached: bool
    practice_threshold_reached: bool
    triggered_activity: TriggeredActivity
    next_stage: TriggeredActivity
    is_tracking: bool
    event_count: int
    events_by_type: Dict[str, int] = Field(default_factory=dict)


class ActivityTarget(BaseModel):
    """Concrete quiz or practice item resolved for a lesson."""
    lesson_id: int
    module_id: Optional[int] = None
    quiz_id: Optional[int] = None
    practice_id: Optional[int] = None
    attempt_id: Optional[int] = None
    topic_id: Optional[int] = None
    title: Optional[str] = None


class Notice(BaseModel):
    """A transient user-facing message (the dashboard shows these as toasts)."""
    level: str = "info"  # info | success | error
    message: str
