#!/usr/bin/env python3
# tests/test_workqueue.py
"""Tests for the rate-limited delaying work queue."""

import threading
import unittest

import emqx_fixtures  # noqa: F401  (puts src on sys.path)

import workqueue
from workqueue import RateLimitingQueue


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestBackoff(unittest.TestCase):
    def test_exponential_with_cap(self):
        for attempt in range(6):
            delay = workqueue.calculate_exponential_backoff(attempt, base_delay=0.5, max_delay=300)
            base = 0.5 * (2 ** attempt)
            self.assertGreaterEqual(delay, base * 1.1)
            self.assertLessEqual(delay, base * 1.3)
        self.assertEqual(workqueue.calculate_exponential_backoff(40, base_delay=0.5, max_delay=300), 300)


class TestRateLimitingQueue(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.queue = RateLimitingQueue(base_delay=0.5, max_delay=300, clock=self.clock)

    def test_deduplicates_queued_keys(self):
        self.queue.add("ns/a")
        self.queue.add("ns/a")
        self.queue.add("ns/b")
        self.assertEqual(len(self.queue), 2)
        self.assertEqual(self.queue.get(timeout=0), "ns/a")
        self.assertEqual(self.queue.get(timeout=0), "ns/b")
        self.assertIsNone(self.queue.get(timeout=0))

    def test_key_never_handed_out_twice_while_processing(self):
        self.queue.add("ns/a")
        key = self.queue.get(timeout=0)
        self.queue.add("ns/a")
        self.assertIsNone(self.queue.get(timeout=0))

        self.queue.done(key)
        self.assertEqual(self.queue.get(timeout=0), "ns/a")

    def test_add_after_waits_for_delay(self):
        self.queue.add_after("ns/a", 20)
        self.assertIsNone(self.queue.get(timeout=0))
        self.clock.now += 20
        self.assertEqual(self.queue.get(timeout=0), "ns/a")

    def test_rate_limited_backoff_grows_and_resets(self):
        first = self.queue.when("ns/a")
        second = self.queue.when("ns/a")
        self.assertGreater(second, first)
        self.assertEqual(self.queue.num_requeues("ns/a"), 2)
        self.queue.forget("ns/a")
        self.assertEqual(self.queue.num_requeues("ns/a"), 0)

    def test_add_rate_limited_delays_key(self):
        delay = self.queue.add_rate_limited("ns/a")
        self.assertIsNone(self.queue.get(timeout=0))
        self.clock.now += delay
        self.assertEqual(self.queue.get(timeout=0), "ns/a")

    def test_shutdown_releases_waiting_workers(self):
        queue = RateLimitingQueue()
        results = []
        worker = threading.Thread(target=lambda: results.append(queue.get()))
        worker.start()
        queue.shut_down()
        worker.join(timeout=5)
        self.assertFalse(worker.is_alive())
        self.assertEqual(results, [None])

        queue.add("ns/a")
        self.assertEqual(len(queue), 0)


if __name__ == "__main__":
    unittest.main()
