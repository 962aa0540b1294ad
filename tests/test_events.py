"""Tests for the engine event bus and the queue event side-channel."""

from autoflow.services.execution import EventBus, QueueEvents


class TestEventBus:
    async def test_sync_and_async_subscribers(self):
        bus = EventBus()
        seen = []

        async def on_async(payload):
            seen.append(("async", payload["executionId"]))

        bus.on("workflow:started", lambda payload: seen.append(("sync", payload["executionId"])))
        bus.on("workflow:started", on_async)
        await bus.emit("workflow:started", {"executionId": "exec-1"})

        assert seen == [("sync", "exec-1"), ("async", "exec-1")]

    async def test_failing_subscriber_is_isolated(self):
        bus = EventBus()
        seen = []

        def explode(payload):
            raise RuntimeError("subscriber bug")

        bus.on("node:failed", explode)
        bus.on("node:failed", seen.append)
        await bus.emit("node:failed", {"nodeId": "n1"})

        assert seen == [{"nodeId": "n1"}]

    async def test_off_removes_subscriber(self):
        bus = EventBus()
        seen = []
        bus.on("node:started", seen.append)
        bus.off("node:started", seen.append)

        await bus.emit("node:started", {})

        assert seen == []
        assert bus.listener_count("node:started") == 0


class TestQueueEvents:
    def test_publish_reaches_listeners(self):
        events = QueueEvents("node-execution")
        seen = []
        events.subscribe(lambda event, job_id, data: seen.append((event, job_id, data)))

        events.publish("waiting", "job-1", {"name": "node-n1"})
        events.publish("failed", "job-1", {"error": "boom"})

        assert seen == [
            ("waiting", "job-1", {"name": "node-n1"}),
            ("failed", "job-1", {"error": "boom"}),
        ]

    def test_failing_listener_does_not_stop_publication(self):
        events = QueueEvents("workflow-execution")
        seen = []

        def explode(event, job_id, data):
            raise ValueError("listener bug")

        events.subscribe(explode)
        events.subscribe(lambda event, job_id, data: seen.append(event))

        events.publish("active", "job-2", {"attempt": 1})

        assert seen == ["active"]

    async def test_closed_channel_drops_events(self):
        events = QueueEvents("workflow-execution")
        seen = []
        events.subscribe(lambda event, job_id, data: seen.append(event))

        await events.close()
        events.publish("completed", "job-3")

        assert events.closed
        assert seen == []
