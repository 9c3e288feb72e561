import asyncio
import json
import threading
import unittest
from datetime import date
from decimal import Decimal

from expense_tracker.notifications import NotificationHub, format_event, validate_notification_type


def parse_event(raw: str) -> dict:
    return json.loads(raw.removeprefix("data: ").strip())


class FormatEventTests(unittest.TestCase):
    def test_serializes_dates_and_decimals(self) -> None:
        raw = format_event({"amount": Decimal("1.50"), "date": date(2026, 2, 1)})

        self.assertTrue(raw.endswith("\n\n"))
        self.assertEqual(parse_event(raw), {"amount": "1.50", "date": "2026-02-01"})

    def test_validates_type(self) -> None:
        self.assertEqual(validate_notification_type(" Budget_Alert "), "budget_alert")
        with self.assertRaises(ValueError):
            validate_notification_type("marketing")


class NotificationHubTests(unittest.IsolatedAsyncioTestCase):
    async def test_stream_starts_with_connected_event_and_delivers_published(self) -> None:
        hub = NotificationHub()
        stream = hub.stream(1, heartbeat_seconds=5)

        self.assertEqual(parse_event(await stream.__anext__()), {"type": "connected"})
        self.assertEqual(hub.subscriber_count(1), 1)
        self.assertEqual(hub.publish(1, {"type": "notification", "data": {"id": 3}}), 1)
        self.assertEqual(hub.publish(2, {"type": "notification"}), 0)

        event = parse_event(await asyncio.wait_for(stream.__anext__(), timeout=1))
        self.assertEqual(event["data"], {"id": 3})

        await stream.aclose()
        self.assertEqual(hub.subscriber_count(1), 0)

    async def test_heartbeat_when_idle(self) -> None:
        hub = NotificationHub()
        stream = hub.stream(1, heartbeat_seconds=0.01)

        await stream.__anext__()
        self.assertEqual(parse_event(await stream.__anext__()), {"type": "heartbeat"})
        await stream.aclose()

    async def test_publish_from_worker_thread(self) -> None:
        hub = NotificationHub()
        stream = hub.stream(1, heartbeat_seconds=5)
        await stream.__anext__()

        worker = threading.Thread(target=hub.publish, args=(1, {"type": "notification", "n": 1}))
        worker.start()
        worker.join()

        event = parse_event(await asyncio.wait_for(stream.__anext__(), timeout=1))
        self.assertEqual(event["n"], 1)
        await stream.aclose()


if __name__ == "__main__":
    unittest.main()
