"""
The TimerThread runs scheduled actions for the scheduler. It is very similar to
the threading.Timer stdlib class except that it uses one shared thread for all
events instead of a thread per event.
"""

# Standard
from dataclasses import dataclass, field
from datetime import datetime
from heapq import heappop, heappush
from typing import Any, Callable, Dict, List, Optional
import threading

# First Party
import alog

log = alog.use_channel("TIMER")

# Lower bound on a wait so that the loop never spins
MIN_SLEEP_TIME = 0.01


@dataclass(order=True)
class TimerEvent:
    """An item in the timer heap. Time is the only comparable field."""

    time: datetime
    action: Callable = field(compare=False)
    args: tuple = field(default_factory=tuple, compare=False)
    kwargs: dict = field(default_factory=dict, compare=False)
    stale: bool = field(default=False, compare=False)

    def cancel(self):
        """Cancel this event. It will not be executed when read from the
        heap"""
        self.stale = True


class TimerThread(threading.Thread):
    """Single daemon thread executing TimerEvents at their scheduled time.
    Actions run on the timer thread, so they must be quick (e.g. submitting
    work to a pool).
    """

    def __init__(self, name: Optional[str] = None):
        super().__init__(name=name or "timer_thread", daemon=True)
        self.shutdown = threading.Event()
        self.timer_heap = []
        self.notify_condition = threading.Condition()

    def run(self):
        """Sleep until the next event (or a new event is pushed) and execute
        all events that are due
        """
        while not self.should_stop():
            with self.notify_condition:
                time_to_sleep = self._get_time_to_sleep()
                if time_to_sleep is None:
                    log.debug3("Timer waiting until event queued")
                else:
                    log.debug3("Timer waiting %ss until next event", time_to_sleep)
                self.notify_condition.wait(timeout=time_to_sleep)

            if self.should_stop():
                return

            for event in self._get_all_current_events():
                log.debug2("Timer executing action for event: %s", event)
                try:
                    event.action(*event.args, **event.kwargs)
                except Exception as err:  # pylint: disable=broad-except
                    log.error("Timer action failed: %s", err, exc_info=True)

    ## Thread Interface ########################################################

    def start_thread(self):
        """If the thread is not already alive start it"""
        if not self.is_alive():
            log.info("Starting %s: %s", self.__class__.__name__, self.name)
            self.start()

    def stop_thread(self):
        """Set the shutdown event and wake the control loop"""
        log.info("Stopping %s: %s", self.__class__.__name__, self.name)
        self.shutdown.set()
        with self.notify_condition:
            self.notify_condition.notify_all()

    def should_stop(self) -> bool:
        return self.shutdown.is_set()

    ## Public Interface ########################################################

    def put_event(
        self, time: datetime, action: Callable, *args: Any, **kwargs: Dict
    ) -> Optional[TimerEvent]:
        """Push an event to the timer

        Args:
            time: datetime
                The datetime to execute the event at
            action: Callable
                The action to execute
            *args: Any
                Args to pass to the action
            **kwargs: Dict
                Kwargs to pass to the action

        Returns:
            event: Optional[TimerEvent]
                TimerEvent describing the event which can be cancelled, or None
                if the timer is stopped
        """
        if self.should_stop():
            return None

        event = TimerEvent(time=time, action=action, args=args, kwargs=kwargs)
        with self.notify_condition:
            heappush(self.timer_heap, event)
            self.notify_condition.notify_all()
        return event

    ## Implementation Details ##################################################

    def _get_time_to_sleep(self) -> Optional[float]:
        """The time until the next event, or None if the heap is empty"""
        with self.notify_condition:
            if not self.timer_heap:
                return None
            time_to_sleep = (self.timer_heap[0].time - datetime.now()).total_seconds()
            return max(time_to_sleep, MIN_SLEEP_TIME)

    def _get_all_current_events(self) -> List[TimerEvent]:
        """Pop every event that is due, skipping cancelled ones"""
        event_list = []
        with self.notify_condition:
            while self.timer_heap and self.timer_heap[0].time <= datetime.now():
                event = heappop(self.timer_heap)
                if event.stale:
                    log.debug3("Skipping cancelled timer event %s", event)
                    continue
                event_list.append(event)
        return event_list
