"""
Tests for the TimerThread
"""
# Standard
from datetime import datetime, timedelta
import threading
import time

# Third Party
import pytest

# Local
from upgr8.scheduler import TimerThread

## Helpers #####################################################################


class Counter:
    def __init__(self, initial_value=0):
        self.value = initial_value
        self.done = threading.Event()

    def increment(self, value=1):
        self.value += value

    def finish(self):
        self.done.set()


def in_seconds(seconds):
    return datetime.now() + timedelta(seconds=seconds)


## Tests #######################################################################


@pytest.mark.timeout(5)
def test_timer_thread_happy_path():
    """Make sure events run with their args and kwargs"""
    timer = TimerThread()
    timer.start_thread()

    value_tracker = Counter()
    timer.put_event(datetime.now(), value_tracker.increment)
    timer.put_event(in_seconds(0.1), value_tracker.increment)
    timer.put_event(in_seconds(0.2), value_tracker.increment, 2)
    timer.put_event(in_seconds(0.3), value_tracker.increment, value=2)
    timer.put_event(in_seconds(0.4), value_tracker.finish)
    assert value_tracker.done.wait(3)
    timer.stop_thread()
    assert value_tracker.value == 6


@pytest.mark.timeout(5)
def test_timer_thread_order():
    """Make sure events run in time order regardless of insertion order"""
    timer = TimerThread()
    order = []
    done = threading.Event()
    timer.put_event(in_seconds(0.3), done.set)
    timer.put_event(in_seconds(0.2), order.append, "second")
    timer.put_event(in_seconds(0.1), order.append, "first")
    timer.start_thread()
    assert done.wait(3)
    timer.stop_thread()
    assert order == ["first", "second"]


@pytest.mark.timeout(5)
def test_timer_thread_canceled():
    """Make sure a cancelled event never runs"""
    timer = TimerThread()

    value_tracker = Counter()
    timer.put_event(datetime.now(), value_tracker.increment)
    canceled_event = timer.put_event(in_seconds(0.1), value_tracker.increment)
    canceled_event.cancel()
    timer.put_event(in_seconds(0.2), value_tracker.finish)

    timer.start_thread()
    assert value_tracker.done.wait(3)
    timer.stop_thread()
    assert value_tracker.value == 1


@pytest.mark.timeout(5)
def test_timer_thread_action_error():
    """Make sure a failing action does not stop the timer"""
    timer = TimerThread()
    timer.start_thread()

    def fail():
        raise RuntimeError("boom")

    value_tracker = Counter()
    timer.put_event(datetime.now(), fail)
    timer.put_event(in_seconds(0.1), value_tracker.finish)
    assert value_tracker.done.wait(3)
    timer.stop_thread()


@pytest.mark.timeout(5)
def test_timer_thread_stopped():
    """Make sure a stopped timer accepts no events and its thread exits"""
    timer = TimerThread()
    timer.start_thread()
    timer.stop_thread()
    timer.join(2)
    assert not timer.is_alive()
    assert timer.put_event(datetime.now(), time.sleep, 0) is None


def test_timer_thread_start_twice():
    """Make sure starting a running timer is a no-op"""
    timer = TimerThread()
    timer.start_thread()
    timer.start_thread()
    timer.stop_thread()
