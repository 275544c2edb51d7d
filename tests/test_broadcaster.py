"""Tests for itemresearch/activity/broadcaster.py."""
from __future__ import annotations

import threading
import uuid

from itemresearch.activity.broadcaster import ActivityBroadcaster


class TestFiltering:
    def test_run_filter(self):
        broadcaster = ActivityBroadcaster()
        run_a, run_b = uuid.uuid4(), uuid.uuid4()

        with broadcaster.subscribe(run_id=run_a) as sub:
            broadcaster.publish("activity", run_a, "org-1", {"sequence": 1})
            broadcaster.publish("activity", run_b, "org-1", {"sequence": 1})
            events = sub.drain()

        assert [e.run_id for e in events] == [str(run_a)]

    def test_organization_filter(self):
        broadcaster = ActivityBroadcaster()

        with broadcaster.subscribe(organization_id="org-1") as sub:
            broadcaster.publish("status", uuid.uuid4(), "org-1", {"status": "running"})
            broadcaster.publish("status", uuid.uuid4(), "org-2", {"status": "running"})
            broadcaster.publish("status", uuid.uuid4(), None, {"status": "running"})
            events = sub.drain()

        assert [e.organization_id for e in events] == ["org-1"]

    def test_unfiltered_subscriber_sees_everything(self):
        broadcaster = ActivityBroadcaster()

        with broadcaster.subscribe() as sub:
            broadcaster.publish("status", uuid.uuid4(), "org-1", {})
            broadcaster.publish("activity", uuid.uuid4(), None, {})
            assert len(sub.drain()) == 2

    def test_to_dict_flattens_payload(self):
        event = ActivityBroadcaster().publish("status", "run-1", None, {"status": "paused"})

        assert event.to_dict() == {"channel": "status", "run_id": "run-1", "organization_id": None, "status": "paused"}


class TestDelivery:
    def test_events_arrive_in_publish_order(self):
        broadcaster = ActivityBroadcaster()
        run_id = uuid.uuid4()

        with broadcaster.subscribe(run_id=run_id) as sub:
            for sequence in range(1, 51):
                broadcaster.publish("activity", run_id, None, {"sequence": sequence})
            received = [e.payload["sequence"] for e in sub.drain()]

        assert received == list(range(1, 51))

    def test_get_waits_for_publisher_thread(self):
        broadcaster = ActivityBroadcaster()
        run_id = uuid.uuid4()

        with broadcaster.subscribe(run_id=run_id) as sub:
            timer = threading.Timer(0.05, broadcaster.publish, args=("status", run_id, None, {"status": "success"}))
            timer.start()
            event = sub.get(timeout=2.0)
            timer.join()

        assert event is not None
        assert event.payload["status"] == "success"

    def test_get_times_out_with_none(self):
        with ActivityBroadcaster().subscribe() as sub:
            assert sub.get(timeout=0.01) is None

    def test_full_queue_drops_and_counts(self):
        broadcaster = ActivityBroadcaster(queue_size=2)

        with broadcaster.subscribe() as sub:
            for sequence in range(5):
                broadcaster.publish("activity", "run-1", None, {"sequence": sequence})

            assert sub.dropped == 3
            assert [e.payload["sequence"] for e in sub.drain()] == [0, 1]

    def test_closed_subscription_stops_receiving(self):
        broadcaster = ActivityBroadcaster()
        sub = broadcaster.subscribe()
        assert broadcaster.subscriber_count == 1

        sub.close()
        broadcaster.publish("status", "run-1", None, {})

        assert broadcaster.subscriber_count == 0
        assert sub.drain() == []
