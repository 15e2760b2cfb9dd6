#!/usr/bin/env python3
"""Tests for the event bus."""

import unittest

from events import (
    EventBus,
    LogRecorded,
    OperationCompleted,
    OperationStarted,
    PhaseCompleted,
    StreamUpdated,
)


class TestEventBus(unittest.IsolatedAsyncioTestCase):
    async def test_wire_names(self):
        self.assertEqual(OperationStarted(operation="extraction", module="requirements").name, "extraction:start")
        self.assertEqual(OperationCompleted(operation="uml", module="requirements").name, "uml:complete")
        self.assertEqual(StreamUpdated(stream_id="s", operation="file", progress=1).name, "stream:update")
        self.assertEqual(PhaseCompleted(phase="design").name, "phase:complete")

    async def test_type_string_and_wildcard_selectors(self):
        bus = EventBus()
        by_type, by_name, everything = [], [], []
        bus.subscribe(OperationStarted, by_type.append)
        bus.subscribe("extraction:start", by_name.append)
        bus.subscribe("*", everything.append)

        bus.publish(OperationStarted(operation="extraction", module="requirements"))
        bus.publish(OperationStarted(operation="uml", module="requirements"))
        bus.publish(PhaseCompleted(phase="requirements"))

        self.assertEqual(len(by_type), 2)
        self.assertEqual([e.operation for e in by_name], ["extraction"])
        self.assertEqual(len(everything), 3)

    async def test_events_arrive_in_publish_order(self):
        bus = EventBus()
        seen = []
        bus.subscribe(StreamUpdated, lambda event: seen.append(event.progress))
        for progress in (10, 20, 30):
            bus.publish(StreamUpdated(stream_id="s", operation="file", progress=progress))
        self.assertEqual(seen, [10, 20, 30])

    async def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe("*", seen.append)
        unsubscribe()
        bus.publish(PhaseCompleted(phase="design"))
        self.assertEqual(seen, [])

        bus.subscribe(PhaseCompleted, seen.append)
        bus.unsubscribe(PhaseCompleted, seen.append)
        bus.publish(PhaseCompleted(phase="design"))
        self.assertEqual(seen, [])

    async def test_failing_handler_does_not_stop_others(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("handler bug")

        bus.subscribe("*", broken)
        bus.subscribe("*", seen.append)
        with self.assertLogs("events", level="ERROR"):
            bus.publish(LogRecorded(level="info", message="hi", source="test"))
        self.assertEqual(len(seen), 1)

    async def test_async_handlers_are_drained(self):
        bus = EventBus()
        seen = []

        async def handler(event):
            seen.append(event.phase)

        bus.subscribe(PhaseCompleted, handler)
        bus.publish(PhaseCompleted(phase="codegen"))
        self.assertEqual(bus.pending_count, 1)
        await bus.drain()
        self.assertEqual(seen, ["codegen"])
        self.assertEqual(bus.pending_count, 0)

    async def test_async_handler_failure_is_logged(self):
        bus = EventBus()

        async def handler(event):
            raise RuntimeError("async bug")

        bus.subscribe(PhaseCompleted, handler)
        with self.assertLogs("events", level="ERROR"):
            bus.publish(PhaseCompleted(phase="codegen"))
            await bus.drain()

    async def test_payload_excludes_envelope(self):
        event = PhaseCompleted(phase="design", correlation_id="abc")
        self.assertEqual(event.payload(), {"phase": "design"})


if __name__ == "__main__":
    unittest.main()
