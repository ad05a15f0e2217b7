"""Cross-tab broadcast channel.

Fire-and-forget notifications between tabs (clients) of the same profile.
Each message is an envelope with a unique key ``{topic}:{origin}:{counter}``.
The publishing origin never receives its own messages, mirroring browser
storage events, which only fire in the other tabs.

Delivery is at-least-once and unordered across topics; handlers must be
idempotent and treat messages as refresh hints, not as an ordered log.

Example:
    >>> channel = BroadcastChannel()
    >>> unsubscribe = channel.subscribe(Topics.METADATA_UPDATED, on_metadata)
    >>> channel.publish(Topics.METADATA_UPDATED, {"user_id": "42"})
    >>> unsubscribe()
"""
import itertools
import json
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import redis

from codementor.core.config import settings
from codementor.core.logging import get_logger
from codementor.infrastructure.redis import get_redis_client

logger = get_logger(__name__)

Handler = Callable[[Dict[str, Any]], None]
Deliver = Callable[[str], None]


class Topics:
    """Topics published by the session core."""
    SESSION_UPDATED = "session_updated"
    SESSION_ACTIVATED = "session_activated"
    SESSION_DEACTIVATED = "session_deactivated"
    CONVERSATION_UPDATED = "conversation_updated"
    METADATA_UPDATED = "metadata_updated"
    PROGRESS_UPDATED = "progress_updated"
    TAB_FOCUSED = "tab_focused"
    TAB_BLURRED = "tab_blurred"


class Transport(ABC):
    """Moves raw envelopes between channel instances."""

    @abstractmethod
    def attach(self, channel_name: str, deliver: Deliver) -> None:
        """Start delivering envelopes sent on ``channel_name``."""

    @abstractmethod
    def detach(self, channel_name: str, deliver: Deliver) -> None:
        """Stop delivering to ``deliver``."""

    @abstractmethod
    def send(self, channel_name: str, raw: str) -> None:
        """Send an envelope to every attached receiver."""


class InMemoryTransport(Transport):
    """Process-wide hub with synchronous delivery.

    Useful when several "tabs" live in one process (tests, embedded use).
    """

    _default: Optional["InMemoryTransport"] = None

    def __init__(self):
        self._receivers: Dict[str, List[Deliver]] = {}
        self._lock = threading.Lock()

    @classmethod
    def default(cls) -> "InMemoryTransport":
        if cls._default is None:
            cls._default = cls()
        return cls._default

    def attach(self, channel_name: str, deliver: Deliver) -> None:
        with self._lock:
            self._receivers.setdefault(channel_name, []).append(deliver)

    def detach(self, channel_name: str, deliver: Deliver) -> None:
        with self._lock:
            receivers = self._receivers.get(channel_name, [])
            if deliver in receivers:
                receivers.remove(deliver)

    def send(self, channel_name: str, raw: str) -> None:
        with self._lock:
            receivers = list(self._receivers.get(channel_name, []))
        for deliver in receivers:
            deliver(raw)


class RedisTransport(Transport):
    """Redis pub/sub transport; one listener thread per attached receiver."""

    def __init__(self, redis_client: redis.Redis, poll_interval: float = 0.01):
        self.redis = redis_client
        self.poll_interval = poll_interval
        self._listeners: Dict[Deliver, Any] = {}

    def attach(self, channel_name: str, deliver: Deliver) -> None:
        pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(**{channel_name: lambda message: deliver(message.get("data"))})
        thread = pubsub.run_in_thread(sleep_time=self.poll_interval, daemon=True)
        self._listeners[deliver] = (pubsub, thread)
        logger.info(f"Listening for broadcasts on {channel_name}")

    def detach(self, channel_name: str, deliver: Deliver) -> None:
        entry = self._listeners.pop(deliver, None)
        if entry is None:
            return
        pubsub, thread = entry
        thread.stop()
        pubsub.close()

    def send(self, channel_name: str, raw: str) -> None:
        self.redis.publish(channel_name, raw)


def default_transport() -> Transport:
    """Redis transport when Redis is reachable, otherwise the in-process hub."""
    client = get_redis_client()
    if client is None:
        logger.warning("Redis unavailable, broadcasts stay within this process")
        return InMemoryTransport.default()
    return RedisTransport(client)


class BroadcastChannel:
    """Publish/subscribe bus between tabs.

    Args:
        transport: Envelope transport (defaults to :func:`default_transport`)
        channel_name: Shared channel name
        origin: Identifier of this tab (random if omitted)
    """

    def __init__(
        self,
        transport: Optional[Transport] = None,
        channel_name: Optional[str] = None,
        origin: Optional[str] = None,
    ):
        self.transport = transport or default_transport()
        self.channel_name = channel_name or settings.broadcast_channel_name
        self.origin = origin or uuid.uuid4().hex
        self._counter = itertools.count(1)
        self._handlers: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()
        self._closed = False
        self.transport.attach(self.channel_name, self._deliver)

    def publish(self, topic: str, payload: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """Broadcast ``payload`` to the other tabs.

        Returns:
            The envelope key, or None if the channel is closed or the send failed
        """
        if self._closed:
            logger.debug(f"Publish on closed channel ignored: {topic}")
            return None

        key = f"{topic}:{self.origin}:{next(self._counter)}"
        envelope = {
            "key": key,
            "topic": topic,
            "origin": self.origin,
            "payload": payload or {},
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self.transport.send(self.channel_name, json.dumps(envelope, default=str))
        except Exception as e:
            logger.warning(f"Broadcast of {topic} failed: {e}")
            return None
        return key

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``topic``.

        Returns:
            A function that deregisters the handler
        """
        with self._lock:
            self._handlers.setdefault(topic, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(topic)
                if handlers and handler in handlers:
                    handlers.remove(handler)
                    if not handlers:
                        del self._handlers[topic]

        return unsubscribe

    def handler_count(self, topic: str) -> int:
        with self._lock:
            return len(self._handlers.get(topic, []))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.transport.detach(self.channel_name, self._deliver)
        with self._lock:
            self._handlers.clear()

    def _deliver(self, raw: Any) -> None:
        try:
            envelope = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Malformed broadcast dropped: {e}", extra={"error_type": "malformed_broadcast"})
            return

        if not isinstance(envelope, dict):
            logger.warning("Malformed broadcast dropped: envelope is not an object",
                           extra={"error_type": "malformed_broadcast"})
            return

        topic = envelope.get("topic")
        payload = envelope.get("payload", {})
        if not isinstance(topic, str) or not isinstance(payload, dict):
            logger.warning(f"Malformed broadcast dropped: {envelope.get('key')!r}",
                           extra={"error_type": "malformed_broadcast"})
            return

        if envelope.get("origin") == self.origin:
            return

        with self._lock:
            handlers = list(self._handlers.get(topic, []))

        for handler in handlers:
            try:
                handler(payload)
            except Exception as e:
                logger.error(f"Broadcast handler for {topic} failed: {e}", exc_info=True)
