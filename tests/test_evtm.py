import pytest

from wanqos.evtm import EventManager


def record(evt_mgr, context, data):
    context.append((evt_mgr.current_seconds(), data))


class TestOrdering:
    def test_time_order(self, evt_mgr):
        seen = []
        evt_mgr.schedule(seen, "c", record, 3.0)
        evt_mgr.schedule(seen, "a", record, 1.0)
        evt_mgr.schedule(seen, "b", record, 2.0)
        evt_mgr.run()
        assert seen == [(1.0, "a"), (2.0, "b"), (3.0, "c")]

    def test_same_time_runs_in_scheduling_order(self, evt_mgr):
        seen = []
        for tag in "abcde":
            evt_mgr.schedule(seen, tag, record, 1.0)
        evt_mgr.run()
        assert [tag for _, tag in seen] == list("abcde")

    def test_urgent_runs_ahead_at_same_time(self, evt_mgr):
        seen = []
        evt_mgr.schedule(seen, "normal", record, 1.0)
        evt_mgr.schedule(seen, "urgent", record, 1.0, urgent=True)
        evt_mgr.run()
        assert [tag for _, tag in seen] == ["urgent", "normal"]

    def test_urgent_events_keep_scheduling_order(self, evt_mgr):
        seen = []
        evt_mgr.schedule(seen, "normal", record, 1.0)
        evt_mgr.schedule(seen, "first", record, 1.0, urgent=True)
        evt_mgr.schedule(seen, "second", record, 1.0, urgent=True)
        evt_mgr.run()
        assert [tag for _, tag in seen] == ["first", "second", "normal"]

    def test_handler_can_schedule_more(self, evt_mgr):
        seen = []

        def chain(mgr, context, data):
            context.append(mgr.current_seconds())
            if data > 0:
                mgr.schedule(context, data - 1, chain, 0.5)

        evt_mgr.schedule(seen, 3, chain, 0.0)
        evt_mgr.run()
        assert seen == [0.0, 0.5, 1.0, 1.5]


class TestScheduling:
    def test_negative_delay_rejected(self, evt_mgr):
        with pytest.raises(ValueError):
            evt_mgr.schedule(None, None, record, -0.1)

    def test_schedule_at_clamps_past_times(self):
        mgr = EventManager(initial_time=5.0)
        seen = []
        sev = mgr.schedule_at(seen, "late", record, 2.0)
        assert sev.time == 5.0
        mgr.run()
        assert seen == [(5.0, "late")]

    def test_run_until_leaves_later_events(self, evt_mgr):
        seen = []
        evt_mgr.schedule(seen, "early", record, 1.0)
        evt_mgr.schedule(seen, "late", record, 5.0)
        evt_mgr.run(until=2.0)
        assert seen == [(1.0, "early")]
        assert evt_mgr.current_seconds() == 2.0
        assert evt_mgr.peek() == 5.0

    def test_counters(self, evt_mgr):
        seen = []
        evt_mgr.schedule(seen, 1, record, 1.0)
        sev = evt_mgr.schedule(seen, 2, record, 1.0)
        sev.cancel()
        evt_mgr.run()
        assert (evt_mgr.scheduled, evt_mgr.dispatched, evt_mgr.cancelled) == (2, 1, 1)


class TestCancel:
    def test_cancelled_event_never_fires(self, evt_mgr):
        seen = []
        sev = evt_mgr.schedule(seen, "x", record, 1.0)
        assert sev.pending
        assert sev.cancel()
        evt_mgr.run()
        assert seen == []
        assert not sev.pending

    def test_cancel_after_fire_is_refused(self, evt_mgr):
        seen = []
        sev = evt_mgr.schedule(seen, "x", record, 1.0)
        evt_mgr.run()
        assert sev.fired
        assert not sev.cancel()

    def test_stop_ends_run_after_current_handler(self, evt_mgr):
        seen = []

        def stopper(mgr, context, data):
            context.append("stop")
            mgr.stop()

        evt_mgr.schedule(seen, None, stopper, 1.0)
        evt_mgr.schedule(seen, "after", record, 2.0)
        evt_mgr.run(until=10.0)
        assert seen == ["stop"]
        assert evt_mgr.current_seconds() == 1.0

    def test_run_resumes_after_stop(self, evt_mgr):
        seen = []

        def halt(mgr, context, data):
            context.append(mgr.current_seconds())
            mgr.stop()

        evt_mgr.schedule(seen, None, halt, 1.0)
        evt_mgr.schedule(seen, "tick", record, 15.0)
        evt_mgr.run(until=10.0)
        assert seen == [1.0]
        assert evt_mgr.peek() == 15.0
        evt_mgr.run(until=20.0)
        assert seen == [1.0, (15.0, "tick")]
        assert evt_mgr.current_seconds() == 20.0

    def test_consecutive_runs_advance_the_clock(self, evt_mgr):
        seen = []
        evt_mgr.schedule(seen, "a", record, 3.0)
        evt_mgr.run(until=1.0)
        assert evt_mgr.current_seconds() == 1.0
        assert evt_mgr.peek() == 3.0
        evt_mgr.run(until=2.0)
        assert evt_mgr.current_seconds() == 2.0
        assert evt_mgr.peek() == 3.0
        evt_mgr.run()
        assert seen == [(3.0, "a")]
        assert evt_mgr.peek() == float("inf")

    def test_events_at_until_wait_for_next_run(self, evt_mgr):
        seen = []
        evt_mgr.schedule(seen, "urgent", record, 2.0, urgent=True)
        evt_mgr.schedule(seen, "normal", record, 2.0)
        evt_mgr.run(until=2.0)
        assert seen == []
        assert evt_mgr.current_seconds() == 2.0
        evt_mgr.run(until=3.0)
        assert [tag for _, tag in seen] == ["urgent", "normal"]

    def test_stop_before_run_is_not_carried_over(self, evt_mgr):
        seen = []
        evt_mgr.stop()
        evt_mgr.schedule(seen, "a", record, 1.0)
        evt_mgr.schedule(seen, "b", record, 2.0)
        evt_mgr.run()
        assert [tag for _, tag in seen] == ["a", "b"]
