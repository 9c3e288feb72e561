from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import AsyncIterator, Dict, List

from sqlalchemy import insert
from sqlalchemy.engine import Connection, Engine

from expense_tracker.db import notifications

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = {"budget_alert", "transaction", "system"}


@dataclass(eq=False)
class Subscriber:
    loop: asyncio.AbstractEventLoop
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)


def validate_notification_type(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in NOTIFICATION_TYPES:
        raise ValueError("Invalid notification type.")
    return normalized


def format_event(payload: dict) -> str:
    return f"data: {json.dumps(payload, default=_json_default)}\n\n"


class NotificationHub:
    """Process-local fan-out of notification events to SSE subscribers.

    ``publish`` may be called from worker threads; events are handed to
    each subscriber's event loop with ``call_soon_threadsafe``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[int, List[Subscriber]] = {}

    def subscribe(self, user_id: int) -> Subscriber:
        subscriber = Subscriber(loop=asyncio.get_running_loop())
        with self._lock:
            self._subscribers.setdefault(user_id, []).append(subscriber)
        logger.info("Notification client connected for user %s", user_id)
        return subscriber

    def unsubscribe(self, user_id: int, subscriber: Subscriber) -> None:
        with self._lock:
            subscribers = self._subscribers.get(user_id, [])
            if subscriber in subscribers:
                subscribers.remove(subscriber)
            if not subscribers:
                self._subscribers.pop(user_id, None)
        logger.info("Notification client disconnected for user %s", user_id)

    def subscriber_count(self, user_id: int) -> int:
        with self._lock:
            return len(self._subscribers.get(user_id, []))

    def publish(self, user_id: int, event: dict) -> int:
        with self._lock:
            subscribers = list(self._subscribers.get(user_id, []))
        delivered = 0
        for subscriber in subscribers:
            try:
                subscriber.loop.call_soon_threadsafe(subscriber.queue.put_nowait, event)
            except RuntimeError:
                # Loop already closed; the stream's finally block never ran.
                self.unsubscribe(user_id, subscriber)
                continue
            delivered += 1
        return delivered

    async def stream(self, user_id: int, heartbeat_seconds: float) -> AsyncIterator[str]:
        subscriber = self.subscribe(user_id)
        try:
            yield format_event({"type": "connected"})
            while True:
                try:
                    event = await asyncio.wait_for(subscriber.queue.get(), timeout=heartbeat_seconds)
                except asyncio.TimeoutError:
                    yield format_event({"type": "heartbeat"})
                    continue
                yield format_event(event)
        finally:
            self.unsubscribe(user_id, subscriber)


def create_notification(
    conn: Connection, user_id: int, type_: str, title: str, message: str
) -> dict:
    row = conn.execute(
        insert(notifications)
        .values(
            user_id=user_id,
            type=validate_notification_type(type_),
            title=title,
            message=message,
        )
        .returning(*notifications.c)
    ).mappings().one()
    return dict(row)


def notify(
    engine: Engine,
    user_id: int,
    type_: str,
    title: str,
    message: str,
    notification_hub: "NotificationHub | None" = None,
) -> dict:
    """Persist a notification, then push it to the user's live streams."""
    with engine.begin() as conn:
        row = create_notification(conn, user_id, type_, title, message)
    (notification_hub or hub).publish(user_id, {"type": "notification", "data": row})
    return row


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


hub = NotificationHub()
