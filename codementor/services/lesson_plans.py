"""Lesson-plan list loading for the current topic.

Fetches run on the event loop and may overlap: the user switches topics
faster than the server answers, and ``progress_updated`` broadcasts from
other tabs request reloads. Every fetch is tagged with a monotonically
increasing request id and only the latest one may update state.

Topic switches are debounced and progress-driven reloads are throttled so a
burst of broadcasts costs one request.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from codementor.core.config import settings
from codementor.core.exceptions import ApiError
from codementor.core.logging import get_logger
from codementor.infrastructure.api_client import TutorApiClient
from codementor.infrastructure.broadcast import BroadcastChannel, Topics
from codementor.utils.ids import coerce_numeric_id

logger = get_logger(__name__)

Fetcher = Callable[[Optional[int]], Awaitable[List[Dict[str, Any]]]]
Listener = Callable[[List[Dict[str, Any]]], None]


class LessonPlanLoader:
    """Latest-wins loader of the lesson plans for one topic.

    Args:
        api: Tutoring API client (used by the default fetcher)
        channel: Broadcast channel to watch for ``progress_updated``
        fetch: Async fetcher override, mainly for tests
        clock: Monotonic time source in seconds, overridable in tests
    """

    def __init__(
        self,
        api: Optional[TutorApiClient] = None,
        channel: Optional[BroadcastChannel] = None,
        fetch: Optional[Fetcher] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.api = api
        self.channel = channel
        self._fetch = fetch or self._fetch_from_api
        self.clock = clock or time.monotonic
        self.debounce = settings.topic_debounce_ms / 1000
        self.throttle = settings.progress_reload_throttle_ms / 1000

        self.topic_id: Optional[int] = None
        self.lesson_plans: List[Dict[str, Any]] = []
        self.loading = False
        self.error: Optional[str] = None

        self._request_id = 0
        self._last_reload: Optional[float] = None
        self._pending: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._listeners: List[Listener] = []
        self._unsubscribe = (
            channel.subscribe(Topics.PROGRESS_UPDATED, self._on_progress_updated)
            if channel is not None else None
        )

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    async def _fetch_from_api(self, topic_id: Optional[int]) -> List[Dict[str, Any]]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.api.get_lesson_plans, topic_id)

    async def load(self, topic_id: Optional[int] = None) -> Optional[List[Dict[str, Any]]]:
        """Fetch the plans for ``topic_id`` (default: the current topic).

        Returns:
            The plans if this request was still the latest when it finished,
            otherwise None
        """
        self._loop = asyncio.get_running_loop()
        if topic_id is not None:
            self.topic_id = coerce_numeric_id(topic_id)

        self._request_id += 1
        request_id = self._request_id
        requested_topic = self.topic_id
        self.loading = True

        try:
            plans = await self._fetch(requested_topic)
        except ApiError as e:
            if request_id != self._request_id:
                return None
            logger.warning(f"Lesson plans for topic {requested_topic} failed to load: {e}",
                           extra={"topic": requested_topic, "request_id": request_id})
            self.error = str(e)
            self.loading = False
            return None

        if request_id != self._request_id:
            logger.debug(f"Discarding stale lesson plan response {request_id}",
                         extra={"request_id": request_id})
            return None

        self.lesson_plans = list(plans or [])
        self.error = None
        self.loading = False
        for listener in list(self._listeners):
            listener(self.lesson_plans)
        return self.lesson_plans

    def select_topic(self, topic_id: Any) -> asyncio.Task:
        """Switch topic; the fetch starts after the debounce interval.

        Must be called from a running event loop. A newer switch within the
        interval cancels the pending one.
        """
        self.topic_id = coerce_numeric_id(topic_id)
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = asyncio.get_running_loop().create_task(self._debounced_load())
        return self._pending

    async def _debounced_load(self) -> None:
        await asyncio.sleep(self.debounce)
        await self.load()

    def request_reload(self) -> bool:
        """Reload the current topic unless one ran within the throttle window.

        Returns:
            True if a reload was scheduled
        """
        if self._loop is None or self.topic_id is None:
            return False

        now = self.clock()
        if self._last_reload is not None and now - self._last_reload < self.throttle:
            logger.debug("Lesson plan reload throttled")
            return False
        self._last_reload = now

        loop = self._loop
        loop.call_soon_threadsafe(lambda: loop.create_task(self.load()))
        return True

    def _on_progress_updated(self, payload: Dict[str, Any]) -> None:
        self.request_reload()

    def close(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
