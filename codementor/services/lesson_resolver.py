"""Resolve the concrete lesson, quiz and practice item for an activity.

The lesson comes from the first source that yields a usable id:

1. the lesson the user selected in the UI
2. the current session's ``lesson_id``
3. the lesson id persisted in session metadata

Whether a lesson's quizzes are all passed is answered by one query per
lesson, memoized until a quiz completion invalidates it.

Server payloads are checked for shape: items that are not objects are
logged and skipped rather than failing the whole lookup.
"""
from typing import Any, Dict, List, Optional, Set

from codementor.core.exceptions import ApiError
from codementor.core.logging import get_logger
from codementor.domain.engagement import ActivityTarget
from codementor.infrastructure.api_client import TutorApiClient
from codementor.utils.ids import coerce_numeric_id

logger = get_logger(__name__)

METADATA_LESSON_KEYS = ("lesson_id", "selected_lesson_id")


def _objects(items: Any, source: str) -> List[Dict[str, Any]]:
    """Keep the dict items of a server list, logging anything else."""
    if not isinstance(items, list):
        if items is not None:
            logger.warning(f"Expected a list from {source}, got {type(items).__name__}",
                           extra={"error_type": "bad_payload"})
        return []

    objects = [item for item in items if isinstance(item, dict)]
    if len(objects) != len(items):
        logger.warning(f"Skipped {len(items) - len(objects)} malformed item(s) from {source}",
                       extra={"error_type": "bad_payload"})
    return objects


class LessonResolver:
    """Lesson/quiz/practice lookups for the activity sequencer.

    Args:
        api: Tutoring API client
        session_store: Store providing the current session and metadata
    """

    def __init__(self, api: TutorApiClient, session_store=None):
        self.api = api
        self.session_store = session_store
        self.selected_lesson_id: Optional[int] = None
        self._passed_cache: Dict[int, bool] = {}

    def select_lesson(self, lesson_id: Any) -> None:
        self.selected_lesson_id = coerce_numeric_id(lesson_id)

    def resolve_lesson_id(self) -> Optional[int]:
        if self.selected_lesson_id:
            return self.selected_lesson_id

        store = self.session_store
        if store is None:
            return None

        if store.current is not None and store.current.lesson_id:
            return store.current.lesson_id

        metadata = store.load_session_metadata()
        for key in METADATA_LESSON_KEYS:
            lesson_id = coerce_numeric_id(metadata.get(key))
            if lesson_id:
                return lesson_id

        lesson_data = metadata.get("lesson_data")
        if isinstance(lesson_data, dict):
            return coerce_numeric_id(lesson_data.get("id"))
        return None

    # Quizzes

    def _module_ids(self, lesson_id: int) -> List[int]:
        lesson = self.api.get_lesson_plan(lesson_id)
        if not isinstance(lesson, dict):
            logger.warning(f"Lesson plan {lesson_id} is not an object", extra={"lesson_id": lesson_id})
            return []
        modules = _objects(lesson.get("modules"), f"lesson plan {lesson_id} modules")
        ids = [coerce_numeric_id(module.get("id")) for module in modules]
        return [module_id for module_id in ids if module_id]

    def _passed_quiz_ids(self) -> Set[int]:
        passed = set()
        for attempt in _objects(self.api.get_user_quiz_attempts(), "quiz attempts"):
            if attempt.get("passed"):
                quiz_id = coerce_numeric_id(attempt.get("quiz_id"))
                if quiz_id:
                    passed.add(quiz_id)
        return passed

    def _lesson_quizzes(self, lesson_id: int) -> List[Dict[str, Any]]:
        quizzes = []
        for module_id in self._module_ids(lesson_id):
            for quiz in _objects(self.api.get_module_quizzes(module_id), f"module {module_id} quizzes"):
                quiz = dict(quiz)
                quiz.setdefault("module_id", module_id)
                quizzes.append(quiz)
        return quizzes

    def lesson_quizzes_passed(self, lesson_id: int) -> bool:
        """Whether the lesson has quizzes and every one is passed.

        Raises:
            ApiError: If the lookup fails (not cached)
        """
        if lesson_id in self._passed_cache:
            return self._passed_cache[lesson_id]

        quizzes = self._lesson_quizzes(lesson_id)
        passed_ids = self._passed_quiz_ids()
        all_passed = bool(quizzes) and all(
            quiz.get("passed") or coerce_numeric_id(quiz.get("id")) in passed_ids
            for quiz in quizzes
        )
        self._passed_cache[lesson_id] = all_passed
        return all_passed

    def invalidate(self, lesson_id: Optional[int] = None) -> None:
        if lesson_id is None:
            self._passed_cache.clear()
        else:
            self._passed_cache.pop(lesson_id, None)

    def resolve_quiz(self, lesson_id: int) -> Optional[ActivityTarget]:
        """First quiz of the lesson not yet passed.

        Raises:
            ApiError: If the lookup fails
        """
        passed_ids = self._passed_quiz_ids()
        for quiz in self._lesson_quizzes(lesson_id):
            quiz_id = coerce_numeric_id(quiz.get("id"))
            if quiz_id and not quiz.get("passed") and quiz_id not in passed_ids:
                return ActivityTarget(
                    lesson_id=lesson_id,
                    module_id=coerce_numeric_id(quiz.get("module_id")),
                    quiz_id=quiz_id,
                    title=quiz.get("title"),
                )
        return None

    # Practice

    def resolve_practice(self, lesson_id: int) -> Optional[ActivityTarget]:
        """First practice problem related to any module of the lesson.

        A module whose practice lookup fails is skipped.

        Raises:
            ApiError: If the lesson lookup fails
        """
        for module_id in self._module_ids(lesson_id):
            try:
                problems = self.api.get_related_practice(module_id)
            except ApiError as e:
                logger.warning(f"Practice lookup for module {module_id} failed, trying next: {e}",
                               extra={"lesson_id": lesson_id})
                continue

            for problem in _objects(problems, f"module {module_id} practice"):
                practice_id = coerce_numeric_id(problem.get("id"))
                if practice_id:
                    return ActivityTarget(
                        lesson_id=lesson_id,
                        module_id=module_id,
                        practice_id=practice_id,
                        topic_id=coerce_numeric_id(problem.get("topic_id")),
                        title=problem.get("title"),
                    )
        return None
