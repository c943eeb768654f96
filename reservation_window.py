"""
Timeslot window evaluation and availability scanning for pavilion reservations
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, List, Mapping, Optional
from zoneinfo import ZoneInfo

# Disqualifying codes observed in the event_schedules payload
TIME_STATUS_CLOSED = 2
UNAVAILABLE_REASON_SOLD_OUT = 1


class FormatError(ValueError):
    """Raised when a timeslot label is not a valid HHMM code"""


class SnapshotFormatError(ValueError):
    """Raised when a schedule snapshot cannot be scanned"""


def minutes_of(timeslot: str) -> int:
    """Convert a timeslot label (e.g. "1330") to minutes since midnight"""
    if not isinstance(timeslot, str) or len(timeslot) != 4 or not timeslot.isascii() or not timeslot.isdigit():
        raise FormatError(f"Timeslot label must be exactly 4 digits, got {timeslot!r}")

    hours = int(timeslot[:2])
    minutes = int(timeslot[2:])
    if hours >= 24 or minutes >= 60:
        raise FormatError(f"Timeslot label out of range: {timeslot!r}")
    return hours * 60 + minutes


def current_minutes(timezone: str, entrance_date: Optional[str] = None,
                    now: Optional[datetime] = None) -> int:
    """
    Current time in minutes, measured from midnight of the entrance date.

    Without an entrance date this is plain minutes since midnight in the given
    timezone. With one, each day between today and the entrance date shifts
    the result by 1440, so a window opened late in the evening still reaches
    the first slots of a next-day entrance date.
    """
    now = (now or datetime.now(ZoneInfo(timezone))).astimezone(ZoneInfo(timezone))
    minutes = now.hour * 60 + now.minute

    if entrance_date:
        target = datetime.strptime(entrance_date, "%Y%m%d").date()
        minutes += (now.date() - target).days * 24 * 60
    return minutes


def today_in(timezone: str, now: Optional[datetime] = None) -> str:
    """Today's date in YYYYMMDD format for the given timezone"""
    today: date = (now or datetime.now(ZoneInfo(timezone))).astimezone(ZoneInfo(timezone)).date()
    return today.strftime("%Y%m%d")


def in_window(candidate_minutes: int, now_minutes: int, window_hours: float) -> bool:
    return now_minutes <= candidate_minutes <= now_minutes + window_hours * 60


@dataclass(frozen=True)
class TimeWindow:
    """Look-ahead window, recomputed on every scan"""
    start_minutes: int
    end_minutes: float

    @classmethod
    def from_now(cls, now_minutes: int, window_hours: float) -> "TimeWindow":
        if window_hours <= 0:
            raise ValueError(f"window_hours must be positive, got {window_hours}")
        return cls(start_minutes=now_minutes, end_minutes=now_minutes + window_hours * 60)

    def contains(self, candidate_minutes: int) -> bool:
        return self.start_minutes <= candidate_minutes <= self.end_minutes


@dataclass
class ScanResult:
    """Qualifying timeslots partitioned by the look-ahead window"""
    in_window: List[str] = field(default_factory=list)
    out_of_window: List[str] = field(default_factory=list)
    # Labels skipped because the label or its status could not be read
    malformed: List[str] = field(default_factory=list)

    @property
    def earliest(self) -> Optional[str]:
        """Earliest in-window timeslot, the one an attempt should target"""
        if not self.in_window:
            return None
        return min(self.in_window, key=minutes_of)


def is_bookable(status: Mapping[str, Any]) -> bool:
    """A timeslot qualifies unless it is closed for booking or sold out"""
    return (status.get("time_status") != TIME_STATUS_CLOSED
            and status.get("unavailable_reason") != UNAVAILABLE_REASON_SOLD_OUT)


def scan(snapshot: Any, window: TimeWindow) -> ScanResult:
    """Partition the bookable timeslots of a schedule snapshot by window"""
    if not isinstance(snapshot, Mapping):
        raise SnapshotFormatError(f"event_schedules must be a mapping, got {type(snapshot).__name__}")

    result = ScanResult()

    # Lexical order of HHMM labels is chronological order
    for timeslot in sorted(snapshot, key=str):
        status = snapshot[timeslot]
        try:
            timeslot_minutes = minutes_of(timeslot)
        except FormatError:
            result.malformed.append(str(timeslot))
            continue
        if not isinstance(status, Mapping):
            result.malformed.append(timeslot)
            continue

        if not is_bookable(status):
            continue

        if window.contains(timeslot_minutes):
            result.in_window.append(timeslot)
        else:
            result.out_of_window.append(timeslot)

    return result
