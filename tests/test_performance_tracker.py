"""Tests for per-node probe timing."""

import threading

from k8s_node_netdiag import PerformanceTracker


class TestPerformanceTracker:
    def test_record_single_timing(self):
        tracker = PerformanceTracker()
        tracker.record("worker-1", 1.5)

        stats = tracker.get_summary()["worker-1"]
        assert stats == {"calls": 1, "total": 1.5, "avg": 1.5, "min": 1.5, "max": 1.5}

    def test_repeated_node_aggregates(self):
        tracker = PerformanceTracker()
        for duration in (1.0, 2.0, 3.0):
            tracker.record("worker-1", duration)

        stats = tracker.get_summary()["worker-1"]
        assert stats["calls"] == 3
        assert stats["avg"] == 2.0
        assert stats["min"] == 1.0
        assert stats["max"] == 3.0

    def test_empty_tracker(self):
        assert PerformanceTracker().get_summary() == {}
        assert PerformanceTracker().get_slowest() == []

    def test_get_slowest_nodes(self):
        tracker = PerformanceTracker()
        tracker.record("worker-1", 1.0)
        tracker.record("worker-2", 10.0)
        tracker.record("worker-3", 5.0)
        tracker.record("worker-4", 8.0)

        assert tracker.get_slowest(limit=3) == [("worker-2", 10.0), ("worker-4", 8.0), ("worker-3", 5.0)]

    def test_thread_safety_concurrent_recording(self):
        tracker = PerformanceTracker()

        def record_timings(thread_id):
            for i in range(100):
                tracker.record(f"worker-{thread_id}", 0.01 * (i + 1))

        threads = [threading.Thread(target=record_timings, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        summary = tracker.get_summary()
        assert len(summary) == 10
        assert sum(s["calls"] for s in summary.values()) == 1000
