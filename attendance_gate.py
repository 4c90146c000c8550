"""
Attendance-gated access.

An employee's status is derived from the latest same-day event in the
append-only attendance log. Only ``present`` opens the rest of the system;
the attendance workspace itself stays reachable in every state.
"""
from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

ABSENT = 'absent'
PRESENT = 'present'
ON_BREAK = 'on_break'
ON_PERMISSION = 'on_permission'
CHECKED_OUT = 'checked_out'
STATUSES = (ABSENT, PRESENT, ON_BREAK, ON_PERMISSION, CHECKED_OUT)

CHECK_IN = 'check_in'
CHECK_OUT = 'check_out'
BREAK_START = 'break_start'
BREAK_END = 'break_end'
PERMISSION_START = 'permission_start'
PERMISSION_END = 'permission_end'

ACTION_STATUS = {
    CHECK_IN: PRESENT,
    BREAK_START: ON_BREAK,
    BREAK_END: PRESENT,
    PERMISSION_START: ON_PERMISSION,
    PERMISSION_END: PRESENT,
    CHECK_OUT: CHECKED_OUT,
}
ACTIONS = tuple(ACTION_STATUS)

# Which actions a cashier may record next from each status.
_ALLOWED_FROM = {
    ABSENT: (CHECK_IN,),
    PRESENT: (CHECK_IN, BREAK_START, PERMISSION_START, CHECK_OUT),
    ON_BREAK: (CHECK_IN, BREAK_END, CHECK_OUT),
    ON_PERMISSION: (CHECK_IN, PERMISSION_END, CHECK_OUT),
    CHECKED_OUT: (CHECK_IN,),
}


class Capability(enum.Flag):
    ATTENDANCE = enum.auto()
    POS = enum.auto()
    CHECKOUT = enum.auto()
    SHIFT = enum.auto()
    CATALOG = enum.auto()
    REPORTS = enum.auto()


ALL_CAPABILITIES = (Capability.ATTENDANCE | Capability.POS | Capability.CHECKOUT
                    | Capability.SHIFT | Capability.CATALOG | Capability.REPORTS)


class InvalidTransition(ValueError):
    def __init__(self, status: str, action: str):
        super().__init__(f"Cannot record {action} while {status}")
        self.status = status
        self.action = action


class OutOfOrderEvent(ValueError):
    def __init__(self, event: AttendanceEvent, message: str):
        super().__init__(message)
        self.event = event


class AccessDenied(PermissionError):
    def __init__(self, employee_id: str, status: str, capability: Capability):
        super().__init__(f"Employee {employee_id} is {status}; check in to continue")
        self.employee_id = employee_id
        self.status = status
        self.capability = capability


@dataclass(frozen=True)
class AttendanceEvent:
    employee_id: str
    action: str
    timestamp: dt.datetime

    def __post_init__(self):
        if not self.employee_id:
            raise ValueError("employee_id is required")
        if self.action not in ACTION_STATUS:
            raise ValueError(f"Unknown attendance action {self.action!r}")
        if not isinstance(self.timestamp, dt.datetime):
            raise ValueError("timestamp must be a datetime")


def parse_timestamp(value: Any) -> dt.datetime:
    if isinstance(value, dt.datetime):
        return value
    text = str(value or '').strip()
    if not text:
        raise ValueError("timestamp is required")
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    return dt.datetime.fromisoformat(text)


def parse_event(row: Dict[str, Any]) -> AttendanceEvent:
    return AttendanceEvent(
        employee_id=str(row.get('employee_id') or '').strip(),
        action=str(row.get('action') or '').strip().lower(),
        timestamp=parse_timestamp(row.get('timestamp')),
    )


def _same_day(ts: dt.datetime, now: dt.datetime) -> bool:
    if ts.tzinfo is not None and now.tzinfo is not None:
        ts = ts.astimezone(now.tzinfo)
    elif ts.tzinfo is not None:
        ts = ts.astimezone().replace(tzinfo=None)
    elif now.tzinfo is not None:
        ts = ts.replace(tzinfo=now.tzinfo)
    return ts.date() == now.date()


def _sort_key(ts: dt.datetime) -> dt.datetime:
    if ts.tzinfo is None:
        return ts.astimezone(dt.timezone.utc)
    return ts


def latest_event(employee_id: str, events: Iterable[AttendanceEvent],
                 now: dt.datetime) -> Optional[AttendanceEvent]:
    """The event that decides today's status, or None."""
    latest: Optional[Tuple[dt.datetime, AttendanceEvent]] = None
    for ev in events:
        if ev.employee_id != employee_id or not _same_day(ev.timestamp, now):
            continue
        key = _sort_key(ev.timestamp)
        # >= keeps the later log entry when timestamps tie
        if latest is None or key >= latest[0]:
            latest = (key, ev)
    return latest[1] if latest else None


def current_status(employee_id: str, events: Iterable[AttendanceEvent], now: dt.datetime) -> str:
    latest = latest_event(employee_id, events, now)
    if latest is None:
        return ABSENT
    return ACTION_STATUS[latest.action]


def check_event_time(event: AttendanceEvent, events: Iterable[AttendanceEvent], now: dt.datetime) -> None:
    """A new event must be dated today and not before the latest one already logged."""
    if not _same_day(event.timestamp, now):
        raise OutOfOrderEvent(event, f"{event.action} at {event.timestamp.isoformat()} is not dated today")
    latest = latest_event(event.employee_id, events, now)
    if latest is not None and _sort_key(event.timestamp) < _sort_key(latest.timestamp):
        raise OutOfOrderEvent(
            event, f"{event.action} at {event.timestamp.isoformat()} is earlier than "
                   f"{latest.action} at {latest.timestamp.isoformat()}")


def is_system_accessible(status: str) -> bool:
    return status == PRESENT


def capabilities_for(status: str) -> Capability:
    if is_system_accessible(status):
        return ALL_CAPABILITIES
    return Capability.ATTENDANCE


def allowed_actions(status: str) -> Tuple[str, ...]:
    return _ALLOWED_FROM.get(status, (CHECK_IN,))


def validate_transition(status: str, action: str) -> str:
    """Return the status ``action`` leads to, or raise InvalidTransition."""
    if action not in ACTION_STATUS:
        raise InvalidTransition(status, action)
    if action not in allowed_actions(status):
        raise InvalidTransition(status, action)
    return ACTION_STATUS[action]


class AttendanceGate:
    """Single access check consulted by every view except attendance."""

    def __init__(self, load_events: Callable[[str], Iterable[AttendanceEvent]],
                 clock: Callable[[], dt.datetime] = dt.datetime.now):
        self._load_events = load_events
        self._clock = clock

    def status(self, employee_id: str) -> str:
        if not employee_id:
            return ABSENT
        return current_status(employee_id, self._load_events(employee_id), self._clock())

    def allows(self, employee_id: str, capability: Capability) -> bool:
        return capability in capabilities_for(self.status(employee_id))

    def require(self, employee_id: str, capability: Capability = Capability.POS) -> str:
        status = self.status(employee_id)
        if capability not in capabilities_for(status):
            raise AccessDenied(employee_id, status, capability)
        return status

    def admit(self, event: AttendanceEvent) -> str:
        """Check a new event against the log and return the status it leads to.

        Raises OutOfOrderEvent for an event that would not become the latest
        one today, and InvalidTransition for an illegal next step.
        """
        events = list(self._load_events(event.employee_id))
        now = self._clock()
        check_event_time(event, events, now)
        return validate_transition(current_status(event.employee_id, events, now), event.action)
