"""Per-topic progress tracking.

Keeps weighted counters for each topic the user works on, pushes the
derived status to the server and tells other tabs that progress moved so
lesson-plan views can refresh.
"""
from typing import Dict, Optional

from codementor.core.exceptions import ApiError
from codementor.core.logging import get_logger
from codementor.domain.progress import (
    ProgressCategory,
    ProgressCounters,
    apply_increment,
    compute_progress,
    derive_status,
)
from codementor.infrastructure.api_client import TutorApiClient
from codementor.infrastructure.broadcast import BroadcastChannel, Topics
from codementor.utils.ids import parse_numeric_id

logger = get_logger(__name__)


class ProgressTracker:
    """Counters per topic plus server and cross-tab propagation.

    Args:
        api: Tutoring API client
        channel: Broadcast channel for ``progress_updated``
    """

    def __init__(self, api: TutorApiClient, channel: Optional[BroadcastChannel] = None):
        self.api = api
        self.channel = channel
        self.counters: Dict[int, ProgressCounters] = {}

    def get_counters(self, topic_id) -> ProgressCounters:
        return self.counters.get(parse_numeric_id(topic_id), ProgressCounters())

    def get_percentage(self, topic_id) -> int:
        return compute_progress(self.get_counters(topic_id))

    def record(self, topic_id, category: ProgressCategory, amount: float,
               time_spent_minutes: float = 0) -> int:
        """Apply one increment and propagate it.

        Args:
            topic_id: Topic the increment belongs to
            category: Counter to increase
            amount: Requested points (clamped)
            time_spent_minutes: Reported alongside the update

        Returns:
            The topic's new percentage

        Raises:
            InvalidSessionIdError: If ``topic_id`` is not a positive integer
        """
        topic_id = parse_numeric_id(topic_id)
        counters = apply_increment(self.get_counters(topic_id), category, amount)
        self.counters[topic_id] = counters
        percentage = compute_progress(counters)
        status = derive_status(percentage)

        try:
            self.api.update_progress(topic_id, status.value, counters.capped(), time_spent_minutes)
        except ApiError as e:
            logger.warning(f"Progress update for topic {topic_id} failed: {e}",
                           extra={"topic": topic_id, "error_type": "api"})
        else:
            logger.debug(f"Topic {topic_id} progress {percentage}% ({status.value})",
                         extra={"topic": topic_id})

        if self.channel is not None:
            self.channel.publish(Topics.PROGRESS_UPDATED, {
                "topic_id": topic_id,
                "percentage": percentage,
                "status": status.value,
            })
        return percentage

    def reset(self, topic_id=None) -> None:
        if topic_id is None:
            self.counters.clear()
        else:
            self.counters.pop(parse_numeric_id(topic_id), None)
