import datetime as dt
import unittest

import attendance_gate as ag

NOW = dt.datetime(2024, 5, 1, 15, 0, 0)


def _ev(action, hour, minute=0, employee="EMP-1", day=NOW.date()):
    return ag.AttendanceEvent(employee, action, dt.datetime.combine(day, dt.time(hour, minute)))


class CurrentStatusTest(unittest.TestCase):
    def test_no_events_is_absent(self):
        self.assertEqual(ag.current_status("EMP-1", [], NOW), ag.ABSENT)

    def test_each_action_maps_to_its_status(self):
        cases = [
            (ag.CHECK_IN, ag.PRESENT),
            (ag.BREAK_START, ag.ON_BREAK),
            (ag.BREAK_END, ag.PRESENT),
            (ag.PERMISSION_START, ag.ON_PERMISSION),
            (ag.PERMISSION_END, ag.PRESENT),
            (ag.CHECK_OUT, ag.CHECKED_OUT),
        ]
        for action, status in cases:
            with self.subTest(action=action):
                events = [_ev(ag.CHECK_IN, 8), _ev(action, 12)]
                self.assertEqual(ag.current_status("EMP-1", events, NOW), status)

    def test_latest_timestamp_wins_regardless_of_log_order(self):
        events = [_ev(ag.BREAK_START, 13), _ev(ag.CHECK_IN, 8)]
        self.assertEqual(ag.current_status("EMP-1", events, NOW), ag.ON_BREAK)

    def test_tie_goes_to_later_log_entry(self):
        events = [_ev(ag.BREAK_START, 12), _ev(ag.BREAK_END, 12)]
        self.assertEqual(ag.current_status("EMP-1", events, NOW), ag.PRESENT)

    def test_yesterdays_events_are_ignored(self):
        yesterday = NOW.date() - dt.timedelta(days=1)
        events = [_ev(ag.CHECK_IN, 9, day=yesterday)]
        self.assertEqual(ag.current_status("EMP-1", events, NOW), ag.ABSENT)

    def test_other_employees_are_ignored(self):
        events = [_ev(ag.CHECK_IN, 9, employee="EMP-2")]
        self.assertEqual(ag.current_status("EMP-1", events, NOW), ag.ABSENT)


class AccessTest(unittest.TestCase):
    def test_only_present_is_accessible(self):
        for status in ag.STATUSES:
            with self.subTest(status=status):
                self.assertEqual(ag.is_system_accessible(status), status == ag.PRESENT)

    def test_attendance_capability_is_always_granted(self):
        for status in ag.STATUSES:
            self.assertIn(ag.Capability.ATTENDANCE, ag.capabilities_for(status))
        self.assertNotIn(ag.Capability.CHECKOUT, ag.capabilities_for(ag.ON_BREAK))
        self.assertIn(ag.Capability.CHECKOUT, ag.capabilities_for(ag.PRESENT))

    def test_gate_require(self):
        log = {"EMP-1": [_ev(ag.CHECK_IN, 8)], "EMP-2": [_ev(ag.CHECK_IN, 8, employee="EMP-2"),
                                                       _ev(ag.PERMISSION_START, 10, employee="EMP-2")]}
        gate = ag.AttendanceGate(lambda emp: log.get(emp, []), clock=lambda: NOW)
        self.assertEqual(gate.require("EMP-1", ag.Capability.CHECKOUT), ag.PRESENT)
        with self.assertRaises(ag.AccessDenied) as ctx:
            gate.require("EMP-2", ag.Capability.CHECKOUT)
        self.assertEqual(ctx.exception.status, ag.ON_PERMISSION)
        self.assertTrue(gate.allows("EMP-2", ag.Capability.ATTENDANCE))
        self.assertFalse(gate.allows("", ag.Capability.POS))


class TransitionTest(unittest.TestCase):
    def test_valid_transitions(self):
        self.assertEqual(ag.validate_transition(ag.ABSENT, ag.CHECK_IN), ag.PRESENT)
        self.assertEqual(ag.validate_transition(ag.PRESENT, ag.BREAK_START), ag.ON_BREAK)
        self.assertEqual(ag.validate_transition(ag.ON_BREAK, ag.BREAK_END), ag.PRESENT)

    def test_invalid_transitions(self):
        for status, action in [(ag.ABSENT, ag.BREAK_START), (ag.ON_BREAK, ag.PERMISSION_START),
                               (ag.PRESENT, ag.BREAK_END), (ag.CHECKED_OUT, ag.CHECK_OUT)]:
            with self.subTest(status=status, action=action):
                with self.assertRaises(ag.InvalidTransition):
                    ag.validate_transition(status, action)

    def test_parse_event_accepts_zulu_timestamps(self):
        event = ag.parse_event({"employee_id": "EMP-1", "action": "CHECK_IN", "timestamp": "2024-05-01T08:00:00Z"})
        self.assertEqual(event.action, ag.CHECK_IN)
        self.assertEqual(event.timestamp.tzinfo, dt.timezone.utc)

    def test_unknown_action_rejected(self):
        with self.assertRaises(ValueError):
            ag.AttendanceEvent("EMP-1", "lunch", NOW)


class EventTimeTest(unittest.TestCase):
    def test_event_from_another_day_is_refused(self):
        yesterday = NOW.date() - dt.timedelta(days=1)
        with self.assertRaises(ag.OutOfOrderEvent) as ctx:
            ag.check_event_time(_ev(ag.CHECK_IN, 9, day=yesterday), [], NOW)
        self.assertEqual(ctx.exception.event.action, ag.CHECK_IN)

    def test_event_before_the_latest_is_refused(self):
        events = [_ev(ag.CHECK_IN, 8), _ev(ag.CHECK_OUT, 14)]
        with self.assertRaises(ag.OutOfOrderEvent):
            ag.check_event_time(_ev(ag.CHECK_IN, 10), events, NOW)

    def test_same_timestamp_is_accepted(self):
        events = [_ev(ag.CHECK_IN, 8)]
        ag.check_event_time(_ev(ag.BREAK_START, 8), events, NOW)
        ag.check_event_time(_ev(ag.BREAK_START, 9), events, NOW)

    def test_admit_returns_the_status_the_event_leads_to(self):
        log = [_ev(ag.CHECK_IN, 8), _ev(ag.CHECK_OUT, 14)]
        gate = ag.AttendanceGate(lambda emp: log, clock=lambda: NOW)
        with self.assertRaises(ag.OutOfOrderEvent):
            gate.admit(_ev(ag.CHECK_IN, 9, day=NOW.date() - dt.timedelta(days=1)))
        with self.assertRaises(ag.OutOfOrderEvent):
            gate.admit(_ev(ag.CHECK_IN, 13))
        with self.assertRaises(ag.InvalidTransition):
            gate.admit(_ev(ag.BREAK_START, 15))
        self.assertEqual(gate.admit(_ev(ag.CHECK_IN, 15)), ag.PRESENT)


if __name__ == "__main__":
    unittest.main()
