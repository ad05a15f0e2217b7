"""Threshold gate / activity sequencer.

Drives one lesson cycle from the engagement score::

    idle -> quiz_pending -> quiz_active -> practice_pending
         -> practice_active -> poll_pending -> completed

Stages are strictly sequential: practice is never offered before the quiz
stage is done, however high the score. Each threshold crossing fires at
most once per cycle; the reached flags and the triggered-activity tag on
the tracker are the guard. Only ``reset()`` starts a new cycle.

Transition outputs are named events (:class:`SequencerEvent`) delivered to
subscribers. A failed lookup or network call emits a ``notice`` and falls
back to ``idle`` with the reached flag kept, so nothing is shown and nothing
re-fires until the next reset.

Example:
    >>> sequencer = ActivitySequencer(tracker, resolver, api, session_store=store)
    >>> sequencer.subscribe(SequencerEvent.QUIZ_TRIGGERED, show_quiz)
    >>> tracker.start()
    >>> tracker.record_code_execution()
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from codementor.core.config import settings
from codementor.core.exceptions import ApiError, InvalidSessionIdError
from codementor.core.logging import get_logger
from codementor.domain.engagement import (
    ActivityStage,
    ActivityTarget,
    EngagementEventType,
    Notice,
    SequencerEvent,
    TriggeredActivity,
)
from codementor.infrastructure.api_client import TutorApiClient
from codementor.infrastructure.redis import LocalStorage
from codementor.services.engagement import RESET, EngagementTracker
from codementor.services.lesson_resolver import LessonResolver
from codementor.utils.ids import coerce_numeric_id, parse_numeric_id

logger = get_logger(__name__)

EventHandler = Callable[[Any], None]

# Network failures and malformed server payloads both mean "feature unavailable"
LOOKUP_ERRORS = (ApiError, AttributeError, TypeError, ValueError)


class ActivitySequencer:
    """State machine unlocking quiz, practice, poll and completion prompts.

    Args:
        tracker: Engagement tracker of the current session
        resolver: Lesson/quiz/practice resolver
        api: Tutoring API client
        session_store: Store of the current session (for ids and metadata)
        storage: Local storage for the recent-practice guard
        clock: Time source, overridable in tests
    """

    def __init__(
        self,
        tracker: EngagementTracker,
        resolver: LessonResolver,
        api: TutorApiClient,
        session_store=None,
        storage: Optional[LocalStorage] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.tracker = tracker
        self.config = tracker.config
        self.resolver = resolver
        self.api = api
        self.session_store = session_store
        self.storage = storage
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.practice_guard = timedelta(hours=settings.practice_guard_hours)

        self.stage = ActivityStage.IDLE
        self.lesson_id: Optional[int] = None
        self.current_target: Optional[ActivityTarget] = None
        self.session_id: Union[int, str, None] = None
        self._handlers: Dict[SequencerEvent, List[EventHandler]] = {}
        self._unlisten = tracker.add_listener(self._on_tracker_event)

    # Subscription

    def subscribe(self, event: SequencerEvent, handler: EventHandler) -> Callable[[], None]:
        self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def _emit(self, event: SequencerEvent, payload: Any = None) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(payload)
            except Exception as e:
                logger.error(f"Handler for {event.value} failed: {e}", exc_info=True)

    def _notice(self, message: str, level: str = "info") -> None:
        self._emit(SequencerEvent.NOTICE, Notice(level=level, message=message))

    def _set_stage(self, stage: ActivityStage) -> None:
        previous, self.stage = self.stage, stage
        if previous != stage:
            logger.info(f"Sequencer {previous.value} -> {stage.value}",
                        extra={"stage": stage.value, "lesson_id": self.lesson_id})
            self._emit(SequencerEvent.STAGE_CHANGED, {"previous": previous, "stage": stage})

    # Tracker events

    def _on_tracker_event(self, event: Union[EngagementEventType, str]) -> None:
        if event == RESET:
            self._start_cycle()
            return

        if event == EngagementEventType.QUIZ_COMPLETED:
            self._on_quiz_completed()
        elif event == EngagementEventType.PRACTICE_COMPLETED:
            self._on_practice_completed()

        self.evaluate()

    def evaluate(self) -> None:
        """Fire the gate whose threshold the score has crossed, if any."""
        if not self.config.auto_trigger:
            return

        score = self.tracker.score
        if (self.stage == ActivityStage.IDLE
                and not self.tracker.quiz_threshold_reached
                and score >= self.config.quiz_threshold):
            self._fire_quiz_gate()
        elif (self.stage == ActivityStage.QUIZ_ACTIVE
                and self.tracker.quiz_completed
                and not self.tracker.practice_threshold_reached
                and score >= self.config.practice_threshold):
            self._fire_practice_gate()

    # Quiz stage

    def _fire_quiz_gate(self) -> None:
        self.tracker.mark_threshold_reached(TriggeredActivity.QUIZ)
        self.tracker.set_triggered(TriggeredActivity.QUIZ)
        self._set_stage(ActivityStage.QUIZ_PENDING)

        lesson_id = self.resolver.resolve_lesson_id()
        if not lesson_id:
            self._notice("Pick a lesson to unlock its quiz.")
            self._fall_back()
            return
        self.lesson_id = lesson_id

        try:
            already_passed = self.resolver.lesson_quizzes_passed(lesson_id)
            target = None if already_passed else self.resolver.resolve_quiz(lesson_id)
            attempt = self.api.start_quiz_attempt(target.quiz_id) if target is not None else None
        except LOOKUP_ERRORS as e:
            logger.warning(f"Quiz start failed: {e}",
                           extra={"lesson_id": lesson_id, "error_type": type(e).__name__})
            self._notice("Failed to start quiz", level="error")
            self._fall_back()
            return

        if already_passed:
            self.tracker.acknowledge_completion(TriggeredActivity.QUIZ)
            self._set_stage(ActivityStage.QUIZ_ACTIVE)
            logger.info("Lesson quizzes already passed, skipping quiz",
                        extra={"lesson_id": lesson_id})
            self._emit(SequencerEvent.QUIZ_ALREADY_COMPLETE, {"lesson_id": lesson_id})
            self.evaluate()
            return

        if target is None:
            self._notice("No quiz is available for this lesson yet.")
            self._fall_back()
            return

        attempt_data = attempt.get("attempt") if isinstance(attempt, dict) else None
        if isinstance(attempt_data, dict):
            target = target.model_copy(update={"attempt_id": coerce_numeric_id(attempt_data.get("id"))})

        self.current_target = target
        self._set_stage(ActivityStage.QUIZ_ACTIVE)
        self._notice("Great engagement! Let's test your knowledge with a quiz.", level="success")
        self._emit(SequencerEvent.QUIZ_TRIGGERED, target)

    def _on_quiz_completed(self) -> None:
        if self.stage not in (ActivityStage.QUIZ_PENDING, ActivityStage.QUIZ_ACTIVE):
            return
        if self.lesson_id:
            self.resolver.invalidate(self.lesson_id)
        self.current_target = None
        self._set_stage(ActivityStage.QUIZ_ACTIVE)

    # Practice stage

    def _fire_practice_gate(self) -> None:
        self.tracker.mark_threshold_reached(TriggeredActivity.PRACTICE)
        self.tracker.set_triggered(TriggeredActivity.PRACTICE)
        self._set_stage(ActivityStage.PRACTICE_PENDING)

        lesson_id = self.lesson_id or self.resolver.resolve_lesson_id()
        if not lesson_id:
            self._notice("Pick a lesson to unlock a practice exercise.")
            self._fall_back()
            return
        self.lesson_id = lesson_id

        if self._practice_recently_completed(lesson_id):
            self.tracker.acknowledge_completion(TriggeredActivity.PRACTICE)
            self._set_stage(ActivityStage.COMPLETED)
            logger.info("Practice completed recently, not prompting again",
                        extra={"lesson_id": lesson_id})
            self._emit(SequencerEvent.PRACTICE_SKIPPED, {"lesson_id": lesson_id})
            return

        try:
            target = self.resolver.resolve_practice(lesson_id)
        except LOOKUP_ERRORS as e:
            logger.warning(f"Practice lookup failed: {e}",
                           extra={"lesson_id": lesson_id, "error_type": type(e).__name__})
            self._notice("Failed to load practice", level="error")
            self._fall_back()
            return

        if target is None:
            self._notice("No practice exercise is available for this lesson yet.")
            self._fall_back()
            return

        self.current_target = target
        self._set_stage(ActivityStage.PRACTICE_ACTIVE)
        self._notice("Nice progress! Time to put it into practice.", level="success")
        self._emit(SequencerEvent.PRACTICE_TRIGGERED, target)

    def _guard_key(self, lesson_id: int) -> str:
        user_id = self.session_store.user_id if self.session_store is not None else "anonymous"
        return f"practice_completed_{user_id}_{lesson_id}"

    def _practice_recently_completed(self, lesson_id: int) -> bool:
        if self.storage is None:
            return False
        stamp = self.storage.get_json(self._guard_key(lesson_id))
        if not stamp:
            return False
        try:
            completed_at = datetime.fromisoformat(stamp)
        except (TypeError, ValueError):
            logger.warning(f"Unreadable practice guard for lesson {lesson_id} ignored")
            return False
        if completed_at.tzinfo is None:
            completed_at = completed_at.replace(tzinfo=timezone.utc)
        return self.clock() - completed_at < self.practice_guard

    def _on_practice_completed(self) -> None:
        if self.stage not in (ActivityStage.PRACTICE_PENDING, ActivityStage.PRACTICE_ACTIVE):
            return
        if self.storage is not None and self.lesson_id:
            self.storage.set_json(self._guard_key(self.lesson_id), self.clock().isoformat())
        self.current_target = None
        self._set_stage(ActivityStage.POLL_PENDING)
        self._emit(SequencerEvent.PREFERENCE_POLL, {"lesson_id": self.lesson_id})

    # Poll and completion

    def submit_poll(self, choice: str, reason: Optional[str] = None) -> bool:
        """Record the user's tutor preference and close the cycle.

        Returns:
            False if no poll was pending
        """
        if self.stage != ActivityStage.POLL_PENDING:
            logger.debug(f"Poll answer ignored in stage {self.stage.value}")
            return False

        session_id = self._numeric_session_id()
        if session_id is None:
            logger.warning("No server session id, preference not logged")
        else:
            try:
                self.api.create_preference_log(
                    chosen_ai=choice,
                    interaction_type="practice",
                    session_id=session_id,
                    choice_reason=reason,
                    context_data={"lesson_id": self.lesson_id},
                )
            except ApiError as e:
                logger.warning(f"Preference log failed: {e}")
                self._notice("Failed to record your choice", level="error")

        self._finish_cycle()
        return True

    def skip_poll(self) -> bool:
        if self.stage != ActivityStage.POLL_PENDING:
            return False
        self._finish_cycle()
        return True

    def _numeric_session_id(self) -> Optional[int]:
        raw = self.session_id
        if raw is None and self.session_store is not None and self.session_store.current is not None:
            raw = self.session_store.current.id
        if raw is None:
            return None
        try:
            return parse_numeric_id(raw)
        except InvalidSessionIdError as e:
            logger.error(f"Session id rejected: {e}", extra={"error_type": "invalid_id"})
            return None

    def _finish_cycle(self) -> None:
        self.tracker.set_triggered(TriggeredActivity.NONE)
        self._set_stage(ActivityStage.COMPLETED)

        if not self.lesson_id:
            return
        try:
            progress = self.api.get_lesson_plan_progress(self.lesson_id)
        except ApiError as e:
            logger.warning(f"Lesson progress unavailable: {e}", extra={"lesson_id": self.lesson_id})
            return

        if not isinstance(progress, dict):
            logger.warning(f"Unexpected lesson progress payload: {type(progress).__name__}",
                           extra={"lesson_id": self.lesson_id, "error_type": "bad_payload"})
            return
        try:
            percentage = float(progress.get("overall_percentage") or 0)
        except (TypeError, ValueError):
            logger.warning(f"Unreadable overall_percentage: {progress.get('overall_percentage')!r}",
                           extra={"lesson_id": self.lesson_id, "error_type": "bad_payload"})
            return

        if percentage >= 100:
            self._emit(SequencerEvent.LESSON_COMPLETED,
                       {"lesson_id": self.lesson_id, "percentage": percentage})

    # Reset and teardown

    def reset(self) -> None:
        """Start a new cycle (topic change, session end)."""
        self.tracker.reset()

    def teardown(self) -> None:
        """Detach from the tracker; nothing fires after this."""
        self._unlisten()
        self.tracker.stop()
        self.tracker.set_triggered(TriggeredActivity.NONE)
        self.current_target = None
        self._set_stage(ActivityStage.IDLE)
        self._handlers.clear()

    def _start_cycle(self) -> None:
        self.lesson_id = None
        self.current_target = None
        self._set_stage(ActivityStage.IDLE)

    def _fall_back(self) -> None:
        self.tracker.set_triggered(TriggeredActivity.NONE)
        self.current_target = None
        self._set_stage(ActivityStage.IDLE)
