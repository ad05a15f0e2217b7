"""Client for the tutoring REST API.

Thin wrapper over ``requests`` covering the endpoints the session core
consumes: preserved sessions, lesson plans, quizzes, practice problems,
AI preference logs and progress. Every failure surfaces as
:class:`ApiError`; callers decide whether to propagate or degrade.
"""
import json
from typing import Any, Dict, List, Optional

import requests

from codementor.core.config import settings
from codementor.core.exceptions import ApiError
from codementor.core.logging import get_logger

logger = get_logger(__name__)


class TutorApiClient:
    """Synchronous client for the tutoring backend.

    Args:
        base_url: API root, e.g. ``http://localhost:8000/api``
        token: Bearer token for the current user
        timeout: Per-request timeout in seconds
        http: Optional ``requests.Session`` (one is created if omitted)

    Example:
        >>> client = TutorApiClient(token=token)
        >>> session = client.get_active_session("42")
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        http: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.token = token
        self.timeout = timeout or settings.api_timeout_seconds
        self.http = http or requests.Session()
        self.http.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })

    def _request(self, method: str, path: str, *, allow_404: bool = False, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        headers = dict(kwargs.pop("headers", {}) or {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = self.http.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning(f"{method} {path} failed: {e}", extra={"error_type": type(e).__name__})
            raise ApiError(f"Request to {path} failed: {e}", endpoint=path) from e

        if allow_404 and response.status_code == 404:
            return None

        if response.status_code >= 400:
            logger.warning(f"{method} {path} returned {response.status_code}")
            raise ApiError(
                f"{method} {path} returned an error",
                status_code=response.status_code,
                endpoint=path,
            )

        if not response.content:
            return None

        try:
            body = response.json()
        except ValueError as e:
            raise ApiError(f"Invalid JSON from {path}", status_code=response.status_code, endpoint=path) from e

        if isinstance(body, dict) and body.get("status") == "error":
            raise ApiError(body.get("message") or f"{path} reported an error",
                           status_code=response.status_code, endpoint=path)
        return body

    @staticmethod
    def _unwrap(body: Any) -> Any:
        """Strip the ``{"status": ..., "data": ...}`` envelope if present."""
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    # Preserved sessions

    def get_active_session(self, user_id: str) -> Optional[Dict[str, Any]]:
        body = self._request("GET", f"/preserved-sessions/active/{user_id}", allow_404=True)
        return self._unwrap(body) or None

    def get_active_session_by_lesson(self, user_id: str, lesson_id: int) -> Optional[Dict[str, Any]]:
        body = self._request("GET", f"/preserved-sessions/active/{user_id}/lesson/{lesson_id}",
                             allow_404=True)
        return self._unwrap(body) or None

    def reactivate_session(self, session_identifier: str) -> Dict[str, Any]:
        body = self._request("POST", f"/preserved-sessions/reactivate/{session_identifier}")
        data = self._unwrap(body)
        if not isinstance(data, dict):
            raise ApiError("Reactivation returned no session",
                           endpoint=f"/preserved-sessions/reactivate/{session_identifier}")
        return data

    def deactivate_session(self, session_identifier: str) -> None:
        self._request("POST", f"/preserved-sessions/deactivate/{session_identifier}")

    def update_conversation(self, session_identifier: str, messages: List[Dict[str, Any]]) -> Any:
        return self._request(
            "PUT", f"/preserved-sessions/{session_identifier}/conversation",
            json={"conversation_history": messages},
        )

    def update_metadata(self, session_identifier: str, metadata: Dict[str, Any]) -> Any:
        return self._request("PUT", f"/preserved-sessions/{session_identifier}/metadata", json=metadata)

    # Lesson plans, quizzes, practice

    def get_lesson_plans(self, topic_id: Optional[int] = None) -> List[Dict[str, Any]]:
        params = {"topic_id": topic_id} if topic_id else None
        body = self._request("GET", "/lesson-plans", params=params)
        return self._unwrap(body) or []

    def get_lesson_plan(self, lesson_id: int) -> Dict[str, Any]:
        body = self._request("GET", f"/lesson-plans/{lesson_id}")
        return self._unwrap(body) or {}

    def get_lesson_plan_progress(self, lesson_id: int) -> Dict[str, Any]:
        body = self._request("GET", f"/lesson-plans/{lesson_id}/progress")
        return self._unwrap(body) or {}

    def get_module_quizzes(self, module_id: int) -> List[Dict[str, Any]]:
        body = self._request("GET", f"/modules/{module_id}/quizzes")
        if isinstance(body, dict):
            return body.get("quizzes") or []
        return body or []

    def get_user_quiz_attempts(self) -> List[Dict[str, Any]]:
        body = self._request("GET", "/users/quizzes")
        if isinstance(body, dict):
            return body.get("attempts") or []
        return body or []

    def start_quiz_attempt(self, quiz_id: int) -> Dict[str, Any]:
        body = self._request("POST", f"/quizzes/{quiz_id}/attempt", json={})
        return body or {}

    def get_related_practice(self, module_id: int) -> List[Dict[str, Any]]:
        body = self._request("GET", f"/lesson-modules/{module_id}/related-practice")
        return self._unwrap(body) or []

    # Preferences and progress

    def create_preference_log(self, chosen_ai: str, interaction_type: str,
                              session_id: Optional[int] = None, **extra: Any) -> Dict[str, Any]:
        payload = {"chosen_ai": chosen_ai, "interaction_type": interaction_type, **extra}
        if session_id is not None:
            payload["session_id"] = session_id
        body = self._request("POST", "/ai-preference-logs", json=payload)
        return body or {}

    def update_progress(self, topic_id: int, status: str, progress_data: Dict[str, float],
                        time_spent_minutes: float = 0) -> Dict[str, Any]:
        payload = {
            "topic_id": int(topic_id),
            "status": status,
            "time_spent_minutes": time_spent_minutes,
            "completed_subtopics": "[]",
            "progress_data": json.dumps(progress_data),
        }
        body = self._request("POST", "/tutor/update-progress", json=payload)
        return self._unwrap(body) or {}
