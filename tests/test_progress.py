"""Unit tests for the progress weighting model and tracker."""
import json
import pytest

from codementor.core.exceptions import ApiError, InvalidSessionIdError
from codementor.domain.progress import (
    ProgressCategory,
    ProgressCounters,
    ProgressStatus,
    apply_increment,
    compute_progress,
    derive_status,
)
from codementor.infrastructure.broadcast import Topics
from codementor.services.progress import ProgressTracker


class TestComputeProgress:
    """Test the weighted percentage."""

    def test_zero_counters(self):
        assert compute_progress(ProgressCounters()) == 0

    def test_categories_are_capped(self):
        counters = ProgressCounters(interaction=50, code_execution=12)
        assert compute_progress(counters) == 42

    def test_all_categories_full(self):
        counters = ProgressCounters(interaction=30, code_execution=40, time_spent=5, knowledge_check=30)
        assert compute_progress(counters) == 100

    def test_total_never_exceeds_100(self):
        counters = ProgressCounters(interaction=500, code_execution=500, time_spent=500, knowledge_check=500)
        assert compute_progress(counters) == 100

    def test_rounds_fractional_points(self):
        counters = ProgressCounters(interaction=1.5, time_spent=0.2)
        assert compute_progress(counters) == 2

    def test_negative_counters_rejected(self):
        with pytest.raises(ValueError):
            ProgressCounters(interaction=-1)


class TestApplyIncrement:
    """Test clamped increments."""

    def test_per_call_cap(self):
        counters = apply_increment(ProgressCounters(), ProgressCategory.CODE_EXECUTION, 25)
        assert counters.code_execution == 5

    def test_category_cap(self):
        counters = ProgressCounters(code_execution=38)
        counters = apply_increment(counters, ProgressCategory.CODE_EXECUTION, 5)
        assert counters.code_execution == 40

    def test_negative_amount_ignored(self):
        counters = apply_increment(ProgressCounters(interaction=4), ProgressCategory.INTERACTION, -10)
        assert counters.interaction == 4

    def test_input_not_mutated(self):
        original = ProgressCounters()
        apply_increment(original, ProgressCategory.KNOWLEDGE_CHECK, 10)
        assert original.knowledge_check == 0

    def test_accepts_category_value(self):
        counters = apply_increment(ProgressCounters(), "time_spent", 3)
        assert counters.time_spent == 1

    def test_repeated_increments_reach_cap(self):
        counters = ProgressCounters()
        for _ in range(20):
            counters = apply_increment(counters, ProgressCategory.INTERACTION, 2)
        assert counters.interaction == 30


class TestDeriveStatus:

    @pytest.mark.parametrize("percentage,expected", [
        (0, ProgressStatus.NOT_STARTED),
        (1, ProgressStatus.IN_PROGRESS),
        (99, ProgressStatus.IN_PROGRESS),
        (100, ProgressStatus.COMPLETED),
    ])
    def test_status(self, percentage, expected):
        assert derive_status(percentage) == expected


class TestProgressTracker:
    """Test the per-topic tracker service."""

    def test_record_pushes_to_server(self, mock_api):
        tracker = ProgressTracker(mock_api)

        percentage = tracker.record("3", ProgressCategory.CODE_EXECUTION, 5, time_spent_minutes=2)

        assert percentage == 5
        mock_api.update_progress.assert_called_once_with(
            3, "in_progress",
            {"interaction": 0, "code_execution": 5, "time_spent": 0, "knowledge_check": 0},
            2,
        )

    def test_topics_are_independent(self, mock_api):
        tracker = ProgressTracker(mock_api)
        tracker.record(3, ProgressCategory.INTERACTION, 2)
        tracker.record(4, ProgressCategory.KNOWLEDGE_CHECK, 10)

        assert tracker.get_percentage(3) == 2
        assert tracker.get_percentage(4) == 10

    def test_server_failure_keeps_local_counters(self, mock_api):
        mock_api.update_progress.side_effect = ApiError("down", status_code=503)
        tracker = ProgressTracker(mock_api)

        assert tracker.record(3, ProgressCategory.INTERACTION, 2) == 2
        assert tracker.get_counters(3).interaction == 2

    def test_broadcasts_progress_updated(self, mock_api, make_channel):
        received = []
        other_tab = make_channel("tab-b")
        other_tab.subscribe(Topics.PROGRESS_UPDATED, received.append)

        tracker = ProgressTracker(mock_api, channel=make_channel("tab-a"))
        tracker.record(3, ProgressCategory.KNOWLEDGE_CHECK, 10)

        assert received == [{"topic_id": 3, "percentage": 10, "status": "in_progress"}]

    def test_invalid_topic_rejected(self, mock_api):
        tracker = ProgressTracker(mock_api)
        with pytest.raises(InvalidSessionIdError):
            tracker.record("abc", ProgressCategory.INTERACTION, 1)
        mock_api.update_progress.assert_not_called()

    def test_reset_topic(self, mock_api):
        tracker = ProgressTracker(mock_api)
        tracker.record(3, ProgressCategory.INTERACTION, 2)
        tracker.reset(3)
        assert tracker.get_percentage(3) == 0


class TestUpdateProgressPayload:
    """The API client serializes progress_data as a JSON string."""

    def test_progress_data_is_json_encoded(self):
        from unittest.mock import Mock
        from codementor.infrastructure.api_client import TutorApiClient

        http = Mock()
        http.headers = {}
        http.request.return_value = Mock(status_code=200, content=b"{}", json=Mock(return_value={}))
        client = TutorApiClient(base_url="http://api.test", token="t", http=http)

        client.update_progress(3, "in_progress", {"interaction": 2})

        payload = http.request.call_args.kwargs["json"]
        assert payload["topic_id"] == 3
        assert json.loads(payload["progress_data"]) == {"interaction": 2}
