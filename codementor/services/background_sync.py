"""Background session sync.

Periodically pushes the local transcript and metadata of the current
session to the server, and does so immediately when the tab becomes
visible again. Runs as an asyncio task and never blocks the caller; sync
failures are logged and retried on the next cycle.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from codementor.core.config import settings
from codementor.core.logging import get_logger
from codementor.infrastructure.broadcast import Topics

logger = get_logger(__name__)


class SessionSyncWorker:
    """Periodic conversation/metadata sync for one session store.

    Args:
        session_store: Store whose state is pushed
        interval_seconds: Seconds between sync runs
    """

    def __init__(self, session_store, interval_seconds: Optional[float] = None):
        self.session_store = session_store
        self.interval_seconds = interval_seconds or settings.sync_interval_seconds
        self.last_sync: Optional[datetime] = None
        self.sync_count = 0
        self.failure_count = 0
        self.sync_task: Optional[asyncio.Task] = None
        self.running = False

    async def start(self) -> None:
        if self.running:
            logger.warning("Session sync already running")
            return

        self.running = True
        logger.info(f"Starting session sync (interval: {self.interval_seconds}s)")
        self.sync_task = asyncio.create_task(self._sync_loop())

    async def stop(self) -> None:
        """Stop the loop after a final flush of pending changes."""
        self.running = False
        if self.sync_task:
            self.sync_task.cancel()
            try:
                await self.sync_task
            except asyncio.CancelledError:
                pass
            self.sync_task = None
        self.sync_now()
        logger.info("Session sync stopped")

    async def _sync_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.sync_now()
            except Exception as e:
                self.failure_count += 1
                logger.error(f"Error in session sync loop: {e}", exc_info=True)

    def sync_now(self) -> Dict[str, bool]:
        """Run one sync of both conversation and metadata.

        Returns:
            Which of the two pushes happened
        """
        store = self.session_store
        result = {
            "conversation": store.sync_conversation_with_backend(),
            "metadata": store.sync_metadata_with_backend(),
        }
        if store.current is not None:
            self.sync_count += 1
            self.last_sync = datetime.now(timezone.utc)
        return result

    def on_visibility_regained(self) -> Dict[str, bool]:
        """Flush immediately and tell other tabs this one has focus."""
        store = self.session_store
        if store.current is not None:
            store.channel.publish(Topics.TAB_FOCUSED,
                                  {"session_id": store.current.session_identifier})
        return self.sync_now()

    def on_visibility_lost(self) -> None:
        store = self.session_store
        if store.current is not None:
            store.channel.publish(Topics.TAB_BLURRED,
                                  {"session_id": store.current.session_identifier})

    def get_status(self) -> Dict[str, Any]:
        store = self.session_store
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "sync_count": self.sync_count,
            "failure_count": self.failure_count,
            "conversation_synced": store.conversation_synced,
            "metadata_synced": store.metadata_synced,
        }
