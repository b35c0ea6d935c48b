import asyncio
import uuid
from typing import Any, Callable, Dict, Optional, Set

from loguru import logger
from starlette.concurrency import run_in_threadpool

from agrigrow.app.db import notifications as notifications_db


class Notifier:
    """Dispatches notification writes as background tasks. A failed write
    is logged and never reaches the request that triggered it."""

    def __init__(self, sink: Optional[Callable[..., Any]] = None):
        self._sink = sink or notifications_db.create_notification_db
        self._tasks: Set[asyncio.Task] = set()

    async def _deliver(self, user_id: uuid.UUID, notification_type: str, title: str, message: str, data: Dict[str, Any]):
        try:
            await run_in_threadpool(self._sink, user_id, notification_type, title, message, data)
            logger.debug(f"Notifier._deliver: {notification_type} sent to {user_id}")
        except Exception as e:
            logger.error(
                f"Notifier._deliver: failed to create {notification_type} notification for {user_id}: {e}",
                exc_info=True,
            )

    def notify(
        self,
        user_id: uuid.UUID,
        notification_type: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        task = asyncio.get_running_loop().create_task(
            self._deliver(user_id, notification_type, title, message, data or {})
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self):
        if self._tasks:
            await asyncio.gather(*list(self._tasks))
