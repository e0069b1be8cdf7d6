"""
In-process activity feed. The bot thread publishes, SSE clients subscribe.
Each subscriber gets a bounded queue; when a slow client falls behind its oldest events are dropped.
"""
import logging
import queue
import sqlite3
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

import db

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 200
RECENT_EVENTS = 100


class ActivityFeed:
    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE, recent_size: int = RECENT_EVENTS):
        self._queue_size = queue_size
        self._subscribers: List[queue.Queue] = []
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=recent_size)
        self._lock = threading.Lock()

    def publish(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        event = {
            "type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": data or {},
        }
        with self._lock:
            self._recent.append(event)
            subscribers = list(self._subscribers)
        for q in subscribers:
            while True:
                try:
                    q.put_nowait(event)
                    break
                except queue.Full:
                    try:
                        q.get_nowait()
                    except queue.Empty:
                        pass
        return event

    def subscribe(self) -> queue.Queue:
        q: queue.Queue = queue.Queue(maxsize=self._queue_size)
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: queue.Queue) -> None:
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def recent(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            items = list(self._recent)
        return items[-limit:] if limit > 0 else []

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


feed = ActivityFeed()


def log_activity(
    type: str,
    message: str,
    status: str = "completed",
    symbol: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    session_id: Optional[str] = None,
    execution_time: Optional[int] = None,
) -> Optional[Dict[str, Any]]:
    """
    Persist a bot activity row and publish it as an "activity_log" event.
    A database failure is logged and the event is still published; the trading loop carries on.
    """
    try:
        row = db.add_activity(
            type, message, status=status, symbol=symbol, details=details,
            execution_time=execution_time, session_id=session_id,
        )
    except sqlite3.Error as e:
        logger.warning("Failed to persist %s activity: %s", type, e)
        row = {"type": type, "message": message, "status": status, "symbol": symbol,
               "details": details, "session_id": session_id}
    feed.publish("activity_log", row)
    return row
