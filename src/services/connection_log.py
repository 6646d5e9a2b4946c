"""
Connection history: records connection and reconnection state changes
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Deque, List, Optional

from connection.models import ConnectionStateEvent
from connection.reconnection import ReconnectionEvent
from database.models import ConnectionEventRecord

logger = logging.getLogger(__name__)


class ConnectionEventLog:
    """Keeps recent events in memory and mirrors them to PostgreSQL when configured"""

    def __init__(self, db_manager=None, max_events: int = 500):
        self.db = db_manager
        self._recent: Deque[ConnectionEventRecord] = deque(maxlen=max_events)
        self._pending_writes = set()

    def on_connection_event(self, event: ConnectionStateEvent) -> None:
        self._record(ConnectionEventRecord(
            camera_id=event.camera_id,
            ts=datetime.fromtimestamp(event.timestamp, tz=timezone.utc),
            source='connection',
            state=event.state.value,
            previous_state=event.previous.value,
            protocol=event.protocol.value if event.protocol else None,
            outcome=event.outcome.value if event.outcome else None,
            message=event.message
        ))

    def on_reconnection_event(self, event: ReconnectionEvent) -> None:
        self._record(ConnectionEventRecord(
            camera_id=event.camera_id,
            ts=datetime.fromtimestamp(event.timestamp, tz=timezone.utc),
            source='reconnection',
            state=event.state.value,
            message=event.error,
            attempt=event.attempt
        ))

    def _record(self, record: ConnectionEventRecord) -> None:
        self._recent.append(record)
        if self.db is None:
            return
        # Event callbacks are synchronous; the insert runs in the background
        try:
            task = asyncio.get_running_loop().create_task(self.db.record_connection_event(record))
        except RuntimeError:
            logger.debug(f"No event loop, connection event for {record.camera_id} kept in memory only")
            return
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def recent(self, camera_id: Optional[str] = None, limit: int = 100) -> List[ConnectionEventRecord]:
        """Newest first"""
        if self.db is not None:
            return await self.db.get_connection_events(camera_id, limit)
        events = [e for e in reversed(self._recent) if camera_id is None or e.camera_id == camera_id]
        return events[:limit]

    async def flush(self) -> None:
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)
