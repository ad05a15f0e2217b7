"""Progress weighting model.

Maps four engagement counters to a single 0-100 completion percentage.
Every category has a ceiling, and each individual increment is clamped so
that one action cannot inflate a category disproportionately.
"""
from enum import Enum
from typing import Dict
from pydantic import BaseModel, ConfigDict, Field


class ProgressCategory(str, Enum):
    INTERACTION = "interaction"
    CODE_EXECUTION = "code_execution"
    TIME_SPENT = "time_spent"
    KNOWLEDGE_CHECK = "knowledge_check"


class ProgressStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


CATEGORY_CAPS: Dict[ProgressCategory, float] = {
    ProgressCategory.INTERACTION: 30,
    ProgressCategory.CODE_EXECUTION: 40,
    ProgressCategory.TIME_SPENT: 5,
    ProgressCategory.KNOWLEDGE_CHECK: 30,
}

INCREMENT_CAPS: Dict[ProgressCategory, float] = {
    ProgressCategory.INTERACTION: 2,
    ProgressCategory.CODE_EXECUTION: 5,
    ProgressCategory.TIME_SPENT: 1,
    ProgressCategory.KNOWLEDGE_CHECK: 10,
}


class ProgressCounters(BaseModel):
    """Per-topic progress counters, in points."""
    model_config = ConfigDict(frozen=True)

    interaction: float = Field(default=0, ge=0)
    code_execution: float = Field(default=0, ge=0)
    time_spent: float = Field(default=0, ge=0)
    knowledge_check: float = Field(default=0, ge=0)

    def capped(self) -> Dict[str, float]:
        """Each counter limited to its category ceiling."""
        return {
            category.value: min(getattr(self, category.value), cap)
            for category, cap in CATEGORY_CAPS.items()
        }


def compute_progress(counters: ProgressCounters) -> int:
    """Completion percentage for a set of counters.

    >>> compute_progress(ProgressCounters(interaction=50, code_execution=12))
    42
    """
    total = sum(counters.capped().values())
    return int(round(min(total, 100)))


def apply_increment(counters: ProgressCounters, category: ProgressCategory,
                    amount: float) -> ProgressCounters:
    """Return new counters with ``amount`` added to ``category``.

    Negative amounts are ignored; the amount is clamped to the per-call cap
    and the result to the category cap.
    """
    category = ProgressCategory(category)
    step = max(0.0, min(float(amount), INCREMENT_CAPS[category]))
    current = getattr(counters, category.value)
    updated = min(current + step, CATEGORY_CAPS[category])
    return counters.model_copy(update={category.value: updated})


def derive_status(percentage: float) -> ProgressStatus:
    if percentage >= 100:
        return ProgressStatus.COMPLETED
    if percentage > 0:
        return ProgressStatus.IN_PROGRESS
    return ProgressStatus.NOT_STARTED
