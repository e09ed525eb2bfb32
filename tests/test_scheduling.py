import threading
import time
import unittest

from aerosync.poller import Poller
from aerosync.scheduling import ThreadingScheduler
from tests.fakes import ScriptedSource, make_reading

INTERVAL = 0.01
WAIT = 2.0


class _Counter:
    """Counts firings and wakes the test once `target` is reached."""

    def __init__(self, target=1):
        self.target = target
        self.count = 0
        self.lock = threading.Lock()
        self.reached = threading.Event()

    def __call__(self):
        with self.lock:
            self.count += 1
            if self.count >= self.target:
                self.reached.set()


class TestThreadingScheduler(unittest.TestCase):
    def setUp(self):
        self.scheduler = ThreadingScheduler(name="test")
        self.handles = []

    def tearDown(self):
        for handle in self.handles:
            handle.cancel()

    def test_call_later_fires_once(self):
        counter = _Counter()
        self.handles.append(self.scheduler.call_later(INTERVAL, counter))

        self.assertTrue(counter.reached.wait(WAIT))
        time.sleep(INTERVAL * 5)
        self.assertEqual(counter.count, 1)

    def test_call_later_cancelled_before_firing(self):
        counter = _Counter()
        handle = self.scheduler.call_later(0.2, counter)
        handle.cancel()
        handle.cancel()

        self.assertFalse(counter.reached.wait(0.4))
        self.assertEqual(counter.count, 0)

    def test_call_every_rearms_after_each_firing(self):
        counter = _Counter(target=3)
        handle = self.scheduler.call_every(INTERVAL, counter)
        self.handles.append(handle)

        self.assertTrue(counter.reached.wait(WAIT))

        handle.cancel()
        time.sleep(INTERVAL * 3)
        settled = counter.count
        time.sleep(INTERVAL * 10)
        self.assertEqual(counter.count, settled)

    def test_cancel_from_inside_callback_stops_rearming(self):
        counter = _Counter()
        holder = {}
        ready = threading.Event()

        def cancel_self():
            ready.wait(WAIT)
            counter()
            holder["handle"].cancel()

        holder["handle"] = self.scheduler.call_every(INTERVAL, cancel_self)
        self.handles.append(holder["handle"])
        ready.set()

        self.assertTrue(counter.reached.wait(WAIT))
        time.sleep(INTERVAL * 10)
        self.assertEqual(counter.count, 1)

    def test_callback_exception_is_logged_and_timer_keeps_running(self):
        counter = _Counter(target=2)
        raised = []

        def flaky():
            if not raised:
                raised.append(True)
                raise RuntimeError("tick failed")
            counter()

        with self.assertLogs("aerosync.scheduling", level="ERROR") as logs:
            self.handles.append(self.scheduler.call_every(INTERVAL, flaky))
            self.assertTrue(counter.reached.wait(WAIT))

        self.assertTrue(any("Recurring timer callback failed" in line for line in logs.output))

    def test_call_every_rejects_non_positive_interval(self):
        with self.assertRaises(ValueError):
            self.scheduler.call_every(0, lambda: None)


class TestPollerOnRealTimers(unittest.TestCase):
    def test_poller_ticks_until_stopped(self):
        fetched = _Counter(target=3)
        source = ScriptedSource(make_reading(65))

        def fetch_current(latitude, longitude):
            fetched()
            return source.fetch_current(latitude, longitude)

        source_view = source.as_callable()
        source_view.current = fetch_current
        poller = Poller(
            source_view,
            poll_interval_seconds=INTERVAL,
            min_fetch_interval_seconds=0,
            scheduler=ThreadingScheduler(name="test-poller"),
        )

        poller.start(6.9271, 79.8612)
        try:
            self.assertTrue(fetched.reached.wait(WAIT))
        finally:
            poller.stop()

        time.sleep(INTERVAL * 5)
        settled = fetched.count
        time.sleep(INTERVAL * 10)
        self.assertEqual(fetched.count, settled)
        self.assertEqual(poller.current_reading.value, 65)


if __name__ == "__main__":
    unittest.main()
