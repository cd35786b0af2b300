"""
evtm.py holds the event manager used to schedule every piece of work in a run.

Work is described by an event handler with the signature

    handler(evt_mgr, context, data)

where context is the object the handler acts on and data is whatever
accompanies the event. A call to EventManager.schedule packages the three into
a ScheduledEvent, which doubles as the handle used to cancel it.

Virtual time is kept by a simpy Environment. Events run in non-decreasing time
order and events given the same time run in the order they were scheduled.
The one exception is urgency: an urgent event runs ahead of every normal event
with the same time stamp, even one scheduled before it. Urgent events among
themselves keep scheduling order. Generator stops and link transitions are
urgent so that a send pending at the same instant sees their effect.
"""
import logging
from typing import Any, Callable, Optional

import simpy
from simpy.core import Infinity
from simpy.events import NORMAL, URGENT, Event

logger = logging.getLogger(__name__)

# _CLOCK sorts ahead of URGENT among events sharing a time stamp
_CLOCK = URGENT - 1

# EventHandlerFunction is the signature every scheduled handler satisfies
EventHandlerFunction = Callable[["EventManager", Any, Any], Any]


class ScheduledEvent:
    """A unit of deferred work: the handler, the state it mutates, and its argument."""

    def __init__(self, context: Any, data: Any, handler: EventHandlerFunction,
                 time: float, urgent: bool):
        self.context = context
        self.data = data
        self.handler = handler
        self.time = time
        self.urgent = urgent
        self.cancelled = False
        self.fired = False

    @property
    def pending(self) -> bool:
        return not (self.cancelled or self.fired)

    def cancel(self) -> bool:
        """Keep the event from firing. Returns False if it already fired or was cancelled."""
        if not self.pending:
            return False
        self.cancelled = True
        return True

    def __repr__(self):
        name = getattr(self.handler, "__name__", repr(self.handler))
        state = "pending" if self.pending else ("cancelled" if self.cancelled else "fired")
        return f"<ScheduledEvent {name} t={self.time:.6f} {state}>"


class _Dispatch(Event):
    # an already-triggered simpy event, queued after delay at the given priority;
    # one without callbacks only advances the clock
    def __init__(self, env: simpy.Environment, delay: float, priority: int, value: Optional[ScheduledEvent]):
        super().__init__(env)
        self._ok = True
        self._value = value
        env.schedule(self, priority, delay)


class EventManager:
    def __init__(self, initial_time: float = 0.0):
        self.env = simpy.Environment(initial_time=initial_time)
        self.scheduled = 0  # number of events ever scheduled
        self.dispatched = 0  # number of events whose handler ran
        self.cancelled = 0  # number of events skipped because they were cancelled
        self._stop_requested = False

    def current_seconds(self) -> float:
        return self.env.now

    # schedule arranges for handler(self, context, data) to be called delay seconds from now
    def schedule(self, context: Any, data: Any, handler: EventHandlerFunction,
                 delay: float, urgent: bool = False) -> ScheduledEvent:
        if delay < 0:
            raise ValueError(f"negative delay {delay} scheduling {handler.__name__}")

        sev = ScheduledEvent(context, data, handler, self.env.now + delay, urgent)
        evt = _Dispatch(self.env, delay, URGENT if urgent else NORMAL, sev)
        evt.callbacks.append(self._fire)
        self.scheduled += 1
        return sev

    # schedule_at is schedule with an absolute time; times in the past are clamped to now
    def schedule_at(self, context: Any, data: Any, handler: EventHandlerFunction,
                    time: float, urgent: bool = False) -> ScheduledEvent:
        return self.schedule(context, data, handler, max(0.0, time - self.env.now), urgent)

    def _fire(self, evt: Event):
        sev = evt.value
        if sev.cancelled:
            self.cancelled += 1
            return
        sev.fired = True
        self.dispatched += 1
        sev.handler(self, sev.context, sev.data)

    def run(self, until: Optional[float] = None):
        """Process events until the queue drains, stop is called, or virtual time reaches until.

        Events stamped exactly at until are left queued for a later run.
        """
        if until is not None and until <= self.env.now:
            return
        logger.debug("running event manager from t=%.6f until %s", self.env.now, until)
        self._stop_requested = False
        horizon = Infinity if until is None else until
        while self.env.peek() < horizon:
            self.env.step()
            if self._stop_requested:
                self._stop_requested = False
                return
        if until is not None:
            # the clock moves to until ahead of anything already stamped there
            _Dispatch(self.env, until - self.env.now, _CLOCK, None)
            self.env.step()

    def peek(self) -> float:
        """Time of the next queued event, or infinity when nothing is queued."""
        return self.env.peek()

    def stop(self):
        """stop ends the current run once the handler now executing returns."""
        self._stop_requested = True
