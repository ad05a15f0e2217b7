"""Engagement accumulator.

Turns discrete interaction events into one score per session. Point values
reflect how significant an action is: a successful code run counts more
than a chat message, which counts far more than a scroll. Filtering out
trivial events (e.g. very short chat messages) is the caller's job; see
:func:`codementor.utils.text.is_substantial_message`.
"""
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Union

from codementor.core.config import settings
from codementor.core.logging import get_logger
from codementor.domain.engagement import (
    EngagementAnalytics,
    EngagementEvent,
    EngagementEventType,
    ThresholdConfig,
    TriggeredActivity,
)

logger = get_logger(__name__)

RESET = "reset"

Listener = Callable[[Union[EngagementEventType, str]], None]


class EngagementTracker:
    """Per-session engagement state.

    The score never decreases while tracking; only :meth:`reset` zeroes it.
    Listeners (the activity sequencer) are notified after every recorded
    event and after a reset.

    Args:
        config: Thresholds for this tracking session
        clock: Time source, overridable in tests
    """

    def __init__(self, config: Optional[ThresholdConfig] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.config = config or ThresholdConfig.from_settings()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.points = {
            EngagementEventType.MESSAGE: settings.message_points,
            EngagementEventType.CODE_EXECUTION: settings.code_execution_points,
            EngagementEventType.SCROLL: settings.scroll_points,
            EngagementEventType.INTERACTION: settings.interaction_points,
            EngagementEventType.TIME: settings.time_points,
            EngagementEventType.QUIZ_COMPLETED: settings.completion_points,
            EngagementEventType.PRACTICE_COMPLETED: settings.completion_points,
        }
        self.score = 0.0
        self.is_tracking = False
        self.quiz_threshold_reached = False
        self.practice_threshold_reached = False
        self.quiz_completed = False
        self.practice_completed = False
        self.triggered_activity = TriggeredActivity.NONE
        self.events: List[EngagementEvent] = []
        self.last_activity = self.clock()
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    # Tracking lifecycle

    def start(self) -> None:
        self.is_tracking = True
        self.triggered_activity = TriggeredActivity.NONE
        self.last_activity = self.clock()
        logger.debug("Engagement tracking started")

    def stop(self) -> None:
        self.is_tracking = False
        logger.debug("Engagement tracking stopped")

    def reset(self) -> None:
        """Zero the score and clear reached flags and the triggered tag."""
        self.score = 0.0
        self.quiz_threshold_reached = False
        self.practice_threshold_reached = False
        self.quiz_completed = False
        self.practice_completed = False
        self.triggered_activity = TriggeredActivity.NONE
        self.events = []
        self.last_activity = self.clock()
        logger.info("Engagement tracking reset")
        self._notify(RESET)

    # Scoring

    def record_message(self) -> None:
        self._record(EngagementEventType.MESSAGE)

    def record_code_execution(self) -> None:
        self._record(EngagementEventType.CODE_EXECUTION)

    def record_scroll(self) -> None:
        self._record(EngagementEventType.SCROLL)

    def record_generic_interaction(self) -> None:
        self._record(EngagementEventType.INTERACTION)

    def record_time_engagement(self) -> bool:
        """Award sustained-activity points after the idle interval.

        Returns:
            True if points were awarded
        """
        idle = (self.clock() - self.last_activity).total_seconds()
        if idle < settings.idle_award_seconds:
            return False
        return self._record(EngagementEventType.TIME)

    def record_quiz_completion(self) -> None:
        self.quiz_completed = True
        if self.triggered_activity == TriggeredActivity.QUIZ:
            self.triggered_activity = TriggeredActivity.NONE
        self._record(EngagementEventType.QUIZ_COMPLETED, always=True)

    def record_practice_completion(self) -> None:
        self.practice_completed = True
        if self.triggered_activity == TriggeredActivity.PRACTICE:
            self.triggered_activity = TriggeredActivity.NONE
        self._record(EngagementEventType.PRACTICE_COMPLETED, always=True)

    # Sequencer hooks

    def mark_threshold_reached(self, activity: TriggeredActivity) -> None:
        if activity == TriggeredActivity.QUIZ:
            self.quiz_threshold_reached = True
        elif activity == TriggeredActivity.PRACTICE:
            self.practice_threshold_reached = True

    def set_triggered(self, activity: TriggeredActivity) -> None:
        self.triggered_activity = activity

    def acknowledge_completion(self, activity: TriggeredActivity) -> None:
        """Mark a stage done without scoring (e.g. quizzes passed earlier)."""
        if activity == TriggeredActivity.QUIZ:
            self.quiz_completed = True
        elif activity == TriggeredActivity.PRACTICE:
            self.practice_completed = True
        if self.triggered_activity == activity:
            self.triggered_activity = TriggeredActivity.NONE

    # Reporting

    def next_stage(self) -> TriggeredActivity:
        if self.triggered_activity != TriggeredActivity.NONE:
            return self.triggered_activity
        if not self.quiz_completed:
            return TriggeredActivity.QUIZ
        if not self.practice_completed:
            return TriggeredActivity.PRACTICE
        return TriggeredActivity.NONE

    def get_analytics(self) -> EngagementAnalytics:
        by_type: Dict[str, int] = {}
        for event in self.events:
            by_type[event.type.value] = by_type.get(event.type.value, 0) + 1

        return EngagementAnalytics(
            score=self.score,
            quiz_threshold=self.config.quiz_threshold,
            practice_threshold=self.config.practice_threshold,
            quiz_threshold_reached=self.quiz_threshold_reached,
            practice_threshold_reached=self.practice_threshold_reached,
            triggered_activity=self.triggered_activity,
            next_stage=self.next_stage(),
            is_tracking=self.is_tracking,
            event_count=len(self.events),
            events_by_type=by_type,
        )

    def _record(self, event_type: EngagementEventType, always: bool = False) -> bool:
        if not self.is_tracking and not always:
            return False

        points = self.points[event_type]
        self.events.append(EngagementEvent(type=event_type, points=points, timestamp=self.clock()))
        self.score += points
        self.last_activity = self.clock()
        logger.debug(f"Engagement {event_type.value} (+{points}) = {self.score}/{self.config.quiz_threshold}")
        self._notify(event_type)
        return True

    def _notify(self, event: Union[EngagementEventType, str]) -> None:
        for listener in list(self._listeners):
            listener(event)
