#!/usr/bin/env python3
"""
Unit tests for clocks, locks, triggers and notifiers

Redis is always mocked.
"""

import json
import threading
import unittest
from unittest.mock import Mock

import redis

from evpark.domain.errors import TransientInfrastructureError
from evpark.infrastructure.messaging import LoggingNotifier, RedisNotifier
from evpark.infrastructure.runtime import (
    FixedClock, InProcessLock, IntervalTrigger, RedisLock, SystemClock
)

from tests.fixtures import ALICE, at


class TestClocks(unittest.TestCase):

    def test_fixed_clock(self):
        clock = FixedClock(at(9))
        self.assertEqual(clock.now(), at(9))
        self.assertEqual(clock.advance(minutes=5), at(9, 5))
        clock.set(at(12))
        self.assertEqual(clock.now(), at(12))

    def test_system_clock_second_resolution(self):
        self.assertEqual(SystemClock().now().microsecond, 0)


class TestLocks(unittest.TestCase):

    def test_in_process_lock_is_reentrant(self):
        lock = InProcessLock()
        with lock:
            with lock:
                pass

    def test_redis_lock_acquire_and_release(self):
        client = Mock()
        inner = client.lock.return_value
        inner.acquire.return_value = True

        lock = RedisLock(name="evpark:test", timeout=5, blocking_timeout=1, client=client)
        with lock:
            client.lock.assert_called_once_with("evpark:test", timeout=5, blocking_timeout=1)
            inner.acquire.assert_called_once()
        inner.release.assert_called_once()

    def test_redis_lock_timeout_is_transient(self):
        client = Mock()
        client.lock.return_value.acquire.return_value = False
        with self.assertRaises(TransientInfrastructureError):
            with RedisLock(client=client):
                pass

    def test_redis_unavailable_is_transient(self):
        client = Mock()
        client.lock.return_value.acquire.side_effect = redis.ConnectionError("refused")
        with self.assertRaises(TransientInfrastructureError):
            with RedisLock(client=client):
                pass

    def test_expired_lock_release_is_tolerated(self):
        client = Mock()
        inner = client.lock.return_value
        inner.acquire.return_value = True
        inner.release.side_effect = redis.exceptions.LockError("expired")
        with RedisLock(client=client):
            pass


class TestIntervalTrigger(unittest.TestCase):

    def test_interval_must_be_positive(self):
        with self.assertRaises(ValueError):
            IntervalTrigger(0)

    def test_calls_back_until_stopped(self):
        fired = threading.Event()
        trigger = IntervalTrigger(0.01)
        trigger.start(fired.set)
        try:
            self.assertTrue(fired.wait(2.0))
            self.assertTrue(trigger.running)
            with self.assertRaises(RuntimeError):
                trigger.start(fired.set)
        finally:
            trigger.stop()
        self.assertFalse(trigger.running)

    def test_failing_callback_keeps_running(self):
        calls = []
        second_call = threading.Event()

        def callback():
            calls.append(1)
            if len(calls) >= 2:
                second_call.set()
            raise RuntimeError("sweep failed")

        trigger = IntervalTrigger(0.01)
        trigger.start(callback)
        try:
            self.assertTrue(second_call.wait(2.0))
        finally:
            trigger.stop()


class TestNotifiers(unittest.TestCase):

    def test_logging_notifier_records(self):
        notifier = LoggingNotifier()
        notifier.send(ALICE, "Hello", "Body")
        notifier.post_channel("Bob: charger 2 is free")
        self.assertEqual(len(notifier.sent), 2)
        self.assertEqual(notifier.messages_for(ALICE)[0].subject, "Hello")
        self.assertTrue(notifier.sent[1].channel)
        notifier.clear()
        self.assertEqual(notifier.sent, [])

    def test_redis_notifier_publishes_json(self):
        client = Mock()
        notifier = RedisNotifier(client=client)
        notifier.send(ALICE, "5 minutes left", "Your session ends at 9:00 AM.")
        notifier.post_channel("hi")

        topic, payload = client.publish.call_args_list[0][0]
        self.assertEqual(topic, "evpark:notifications")
        message = json.loads(payload)
        self.assertEqual(message["recipient"], ALICE)
        self.assertEqual(message["subject"], "5 minutes left")
        self.assertEqual(client.publish.call_args_list[1][0][0], "evpark:channel")

    def test_redis_notifier_failure_is_transient(self):
        client = Mock()
        client.publish.side_effect = redis.ConnectionError("down")
        with self.assertRaises(TransientInfrastructureError):
            RedisNotifier(client=client).send(ALICE, "s", "b")


if __name__ == '__main__':
    unittest.main()
