"""Lesson progression state.

Tracks where the learner is inside a lesson plan: which module, which
exercise and which learning phase. Each module is taught in the phases of
:class:`LearningPhase`, in order; finishing the last phase moves on to the
next module.

The state is immutable. Every transition returns a new state and leaves
its input untouched.

Example:
    >>> state = init_lesson_state(7, "Java Collections", total_modules=3, total_exercises=4)
    >>> state = next_phase(state)
    >>> state.phase
    <LearningPhase.CONTENT: 'content'>
"""
import math
from enum import Enum
from typing import Any, Dict, Tuple
from pydantic import BaseModel, ConfigDict, Field

from codementor.utils.ids import parse_numeric_id


class LearningPhase(str, Enum):
    INTRODUCTION = "introduction"
    CONTENT = "content"
    PRACTICE = "practice"
    REVIEW = "review"
    ASSESSMENT = "assessment"


PHASE_ORDER: Tuple[LearningPhase, ...] = tuple(LearningPhase)

NO_EXERCISE = -1


class LessonState(BaseModel):
    """Position of the learner within one lesson plan.

    Attributes:
        plan_id: Lesson plan id
        plan_title: Lesson plan title
        current_module_index: Zero-based module position
        current_exercise_index: Selected exercise, or ``NO_EXERCISE``
        phase: Learning phase within the current module
        completed_sections: Section keys (``module_0``,
            ``module_0_exercise_2``) in completion order
        total_modules: Number of modules in the plan
        total_exercises: Number of exercises in the plan
    """
    model_config = ConfigDict(frozen=True)

    plan_id: int
    plan_title: str
    current_module_index: int = Field(default=0, ge=0)
    current_exercise_index: int = Field(default=NO_EXERCISE, ge=NO_EXERCISE)
    phase: LearningPhase = LearningPhase.INTRODUCTION
    completed_sections: Tuple[str, ...] = ()
    total_modules: int = Field(ge=0)
    total_exercises: int = Field(default=0, ge=0)

    @property
    def is_last_module(self) -> bool:
        return self.current_module_index >= self.total_modules - 1


def init_lesson_state(plan_id: int, plan_title: str, total_modules: int,
                      total_exercises: int = 0) -> LessonState:
    """Fresh state at the introduction of the first module."""
    return LessonState(
        plan_id=plan_id,
        plan_title=plan_title,
        total_modules=total_modules,
        total_exercises=total_exercises,
    )


def lesson_state_from_plan(plan: Dict[str, Any]) -> LessonState:
    """Build the initial state from a lesson-plan payload.

    Exercises are counted across all modules.

    Raises:
        InvalidSessionIdError: If the plan has no usable id
    """
    modules = [m for m in plan.get("modules") or [] if isinstance(m, dict)]
    exercises = sum(len(m.get("exercises") or []) for m in modules)
    return init_lesson_state(
        plan_id=parse_numeric_id(plan.get("id")),
        plan_title=str(plan.get("title") or ""),
        total_modules=len(modules),
        total_exercises=exercises,
    )


def _with_section(state: LessonState, section: str) -> Tuple[str, ...]:
    if section in state.completed_sections:
        return state.completed_sections
    return state.completed_sections + (section,)


def next_module(state: LessonState) -> LessonState:
    """Move to the next module's introduction, recording the current one.

    At the last module the state is returned unchanged.
    """
    if state.is_last_module:
        return state

    return state.model_copy(update={
        "current_module_index": state.current_module_index + 1,
        "current_exercise_index": NO_EXERCISE,
        "phase": LearningPhase.INTRODUCTION,
        "completed_sections": _with_section(state, f"module_{state.current_module_index}"),
    })


def next_phase(state: LessonState) -> LessonState:
    """Advance one phase; after assessment, move to the next module.

    The practice phase is skipped while no exercise is selected.
    """
    position = PHASE_ORDER.index(state.phase)
    if position == len(PHASE_ORDER) - 1:
        return next_module(state)

    phase = PHASE_ORDER[position + 1]
    if phase == LearningPhase.PRACTICE and state.current_exercise_index == NO_EXERCISE:
        phase = LearningPhase.REVIEW
    return state.model_copy(update={"phase": phase})


def select_exercise(state: LessonState, exercise_index: int) -> LessonState:
    """Select an exercise and enter the practice phase."""
    return state.model_copy(update={
        "current_exercise_index": exercise_index,
        "phase": LearningPhase.PRACTICE,
    })


def complete_current_exercise(state: LessonState) -> LessonState:
    if state.current_exercise_index == NO_EXERCISE:
        return state

    section = f"module_{state.current_module_index}_exercise_{state.current_exercise_index}"
    return state.model_copy(update={"completed_sections": _with_section(state, section)})


def get_lesson_progress(state: LessonState) -> int:
    """Percentage through the plan, from module position and phase.

    Completed modules weigh ``(n - 1) / n`` of their share and the current
    module contributes its phase fraction; halves round up.

    >>> get_lesson_progress(init_lesson_state(7, "Java Collections", 4))
    0
    """
    if state.total_modules <= 0:
        return 0

    total = state.total_modules
    module_progress = state.current_module_index / total
    phase_progress = PHASE_ORDER.index(state.phase) / len(PHASE_ORDER)
    progress = module_progress * (total - 1) / total + phase_progress / total
    return min(100, max(0, math.floor(progress * 100 + 0.5)))
