# File: evpark/domain/models.py
"""
Domain Models for the shared charger policy engine

This module contains:
1. Value Objects: SlotTime, TimeWindow, Actor
2. Enums: record statuses, walk-up tiers, board status keys
3. Records: Charger, ChargingSession, Reservation, Strike, Suspension
4. Time helpers shared by the eligibility rules and the sweep

All timestamps are naive local wall-clock datetimes. Aware values coming in
from the boundary are converted to local time by parse_timestamp().
"""

from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Union
from datetime import datetime, date, timedelta
from enum import Enum
import re
import uuid


MONTH_KEY_FORMAT = "%Y-%m"


# ============================================================================
# ENUMS
# ============================================================================

class SessionStatus(str, Enum):
    """Authoritative lifecycle state of a charging session"""
    ACTIVE = "active"
    COMPLETE = "complete"


class ReservationStatus(str, Enum):
    """Lifecycle state of a reservation"""
    ACTIVE = "active"
    CHECKED_IN = "checked_in"
    COMPLETE = "complete"
    CANCELED = "canceled"
    NO_SHOW = "no_show"

    @property
    def holds_slot(self) -> bool:
        """Whether a reservation in this state still occupies its slot"""
        return self in (ReservationStatus.ACTIVE, ReservationStatus.CHECKED_IN)

    @property
    def counts_toward_daily_limit(self) -> bool:
        """Completed reservations still count; canceled and no-show do not"""
        return self not in (ReservationStatus.CANCELED, ReservationStatus.NO_SHOW)


class StrikeType(str, Enum):
    NO_SHOW = "no_show"
    LATE_END = "late_end"


class StrikeSource(str, Enum):
    RESERVATION = "reservation"
    SESSION = "session"


class WalkUpClass(str, Enum):
    """Priority class of a walk-up user for one charger slot"""
    NET_NEW = "net_new"
    RETURNING = "returning"


class WalkUpTier(str, Enum):
    """Walk-up priority tier, widening as a slot ages"""
    CLOSED = "closed"
    NET_NEW = "tier1_net_new"
    RETURNING = "tier2_returning"
    ALL = "tier3_all"

    def admits(self, user_class: WalkUpClass) -> bool:
        if self == WalkUpTier.ALL:
            return True
        if self == WalkUpTier.RETURNING:
            return user_class in (WalkUpClass.NET_NEW, WalkUpClass.RETURNING)
        if self == WalkUpTier.NET_NEW:
            return user_class == WalkUpClass.NET_NEW
        return False


class ChargerStatusKey(str, Enum):
    FREE = "free"
    RESERVED = "reserved"
    IN_USE = "in_use"
    OVERDUE = "overdue"

    @property
    def label(self) -> str:
        return {
            ChargerStatusKey.FREE: "Free",
            ChargerStatusKey.RESERVED: "Reserved",
            ChargerStatusKey.IN_USE: "In use",
            ChargerStatusKey.OVERDUE: "Overdue",
        }[self]


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class SlotTime:
    """
    Value Object: daily slot start as hour and minute
    Parsed from the "HH:MM" form used in the chargers table
    """
    hour: int
    minute: int = 0

    def __post_init__(self):
        if not 0 <= self.hour <= 23:
            raise ValueError(f"Slot hour must be between 0 and 23: {self.hour}")
        if not 0 <= self.minute <= 59:
            raise ValueError(f"Slot minute must be between 0 and 59: {self.minute}")

    @classmethod
    def parse(cls, text: str) -> 'SlotTime':
        match = re.match(r'^\s*(\d{1,2}):(\d{2})\s*$', str(text))
        if not match:
            raise ValueError(f"Slot time must look like HH:MM, got: {text!r}")
        return cls(int(match.group(1)), int(match.group(2)))

    def on(self, day: date) -> datetime:
        """Anchor this slot start on a calendar day"""
        return datetime(day.year, day.month, day.day, self.hour, self.minute)

    def __str__(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class TimeWindow:
    """Value Object: half-open interval [start, end)"""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(f"Window end {self.end} is before start {self.start}")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def midpoint(self) -> datetime:
        return self.start + (self.end - self.start) / 2

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def overlaps(self, other: 'TimeWindow') -> bool:
        return self.start < other.end and other.start < self.end

    def minutes_since_start(self, moment: datetime) -> float:
        return (moment - self.start).total_seconds() / 60.0

    def __str__(self) -> str:
        return f"{format_clock(self.start)} - {format_clock(self.end)}"


@dataclass(frozen=True)
class Actor:
    """
    Value Object: the already-resolved acting user of one invocation
    Identity is never stored; the caller supplies it every time.
    """
    email: str
    name: str = ""
    is_admin: bool = False

    def __post_init__(self):
        email = (self.email or "").strip().lower()
        if not email:
            raise ValueError("Acting user email cannot be empty")
        object.__setattr__(self, 'email', email)
        if not (self.name or "").strip():
            object.__setattr__(self, 'name', derive_name(email))

    @property
    def domain(self) -> str:
        return self.email.rsplit('@', 1)[-1] if '@' in self.email else ""


# ============================================================================
# RECORDS
# ============================================================================

@dataclass
class Charger:
    """A shared charger with fixed daily slot starts"""
    id: str
    name: str
    max_minutes: int
    slot_starts: List[SlotTime] = field(default_factory=list)
    active_session_id: Optional[str] = None

    def __post_init__(self):
        if self.max_minutes <= 0:
            raise ValueError(f"Charger {self.id} max minutes must be positive")
        self.slot_starts = sorted(self.slot_starts, key=lambda s: (s.hour, s.minute))

    @staticmethod
    def parse_slot_starts(text: str) -> List[SlotTime]:
        return [SlotTime.parse(part) for part in str(text or "").split(',') if part.strip()]

    @property
    def slot_starts_text(self) -> str:
        return ",".join(str(slot) for slot in self.slot_starts)

    def slot_windows_on(self, day: date) -> List[TimeWindow]:
        """All slot windows for one calendar day, ordered by start"""
        length = timedelta(minutes=self.max_minutes)
        return [TimeWindow(slot.on(day), slot.on(day) + length) for slot in self.slot_starts]

    def slot_at(self, moment: datetime) -> Optional[TimeWindow]:
        """The latest-starting slot window containing the moment, if any"""
        candidates = []
        # A long slot started yesterday can still be running after midnight
        for day in (moment.date() - timedelta(days=1), moment.date()):
            candidates.extend(w for w in self.slot_windows_on(day) if w.contains(moment))
        if not candidates:
            return None
        return max(candidates, key=lambda w: w.start)

    def window_for_start(self, start: datetime) -> Optional[TimeWindow]:
        """The slot window beginning exactly at start, or None"""
        for window in self.slot_windows_on(start.date()):
            if window.start == start:
                return window
        return None


@dataclass
class ChargingSession:
    """A charging session; status is the single source of truth"""
    id: str
    charger_id: str
    user_id: str
    user_name: str
    start_time: datetime
    end_time: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    reminder_10_sent: bool = False
    reminder_5_sent: bool = False
    reminder_0_sent: bool = False
    overdue_last_sent_at: Optional[datetime] = None
    grace_notified_at: Optional[datetime] = None
    late_strike_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def is_complete(self) -> bool:
        return self.status == SessionStatus.COMPLETE

    @property
    def planned_window(self) -> TimeWindow:
        return TimeWindow(self.start_time, max(self.end_time, self.start_time))

    @property
    def window(self) -> TimeWindow:
        end = self.ended_at if self.ended_at and self.ended_at > self.start_time else self.end_time
        return TimeWindow(self.start_time, max(end, self.start_time))

    def overdue_at(self, grace_minutes: int) -> datetime:
        return self.end_time + timedelta(minutes=grace_minutes)

    def is_overdue(self, now: datetime, grace_minutes: int) -> bool:
        """Computed view: active and at least grace minutes past expected end"""
        return self.is_active and now >= self.overdue_at(grace_minutes)

    def complete(self, now: datetime) -> None:
        self.status = SessionStatus.COMPLETE
        self.ended_at = now

    def legacy_flags(self, now: datetime, grace_minutes: int) -> Dict[str, bool]:
        """Boolean flags kept for older consumers of the sessions table"""
        return {
            "active": self.is_active,
            "overdue": self.is_overdue(now, grace_minutes),
            "complete": self.is_complete,
        }


@dataclass
class Reservation:
    """A same-day reservation of one charger slot"""
    id: str
    charger_id: str
    user_id: str
    user_name: str
    start_time: datetime
    end_time: datetime
    status: ReservationStatus = ReservationStatus.ACTIVE
    checked_in_at: Optional[datetime] = None
    no_show_at: Optional[datetime] = None
    no_show_strike_at: Optional[datetime] = None
    reminder_5_before_sent: bool = False
    reminder_5_after_sent: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(self.start_time, self.end_time)

    @property
    def midpoint(self) -> datetime:
        return self.window.midpoint

    @property
    def holds_slot(self) -> bool:
        return self.status.holds_slot

    def is_on(self, day: date) -> bool:
        return self.start_time.date() == day

    def grace_ends_at(self, grace_minutes: int) -> datetime:
        return self.start_time + timedelta(minutes=grace_minutes)

    def canceled_late(self) -> bool:
        """Canceled at or after the slot midpoint"""
        return (
            self.status == ReservationStatus.CANCELED
            and self.canceled_at is not None
            and self.canceled_at >= self.midpoint
        )


@dataclass
class Strike:
    """A recorded policy violation attributable to a user"""
    id: str
    user_id: str
    user_name: str
    type: StrikeType
    source_type: StrikeSource
    source_id: str
    reason: str
    occurred_at: datetime
    month_key: str = ""

    def __post_init__(self):
        if not self.month_key:
            self.month_key = month_key(self.occurred_at)

    @classmethod
    def issue(
        cls,
        user_id: str,
        user_name: str,
        strike_type: StrikeType,
        source_type: StrikeSource,
        source_id: str,
        reason: str,
        now: datetime
    ) -> 'Strike':
        return cls(
            id=new_id(),
            user_id=user_id,
            user_name=user_name,
            type=strike_type,
            source_type=source_type,
            source_id=source_id,
            reason=reason,
            occurred_at=now,
        )


@dataclass
class Suspension:
    """A time-bounded block on reserving and walking up"""
    id: str
    user_id: str
    user_name: str
    start_at: datetime
    end_at: datetime
    reason: str
    active: bool = True
    created_at: Optional[datetime] = None

    def covers(self, moment: datetime) -> bool:
        return self.start_at <= moment < self.end_at


# ============================================================================
# HELPERS
# ============================================================================

def new_id() -> str:
    return str(uuid.uuid4())


def month_key(moment: datetime) -> str:
    return moment.strftime(MONTH_KEY_FORMAT)


def derive_name(email: str) -> str:
    """Best-effort display name from the local part of an email"""
    local = str(email or "").split('@')[0]
    parts = [part for part in re.split(r'[._-]+', local) if part]
    return " ".join(part[:1].upper() + part[1:] for part in parts)


def format_clock(moment: datetime) -> str:
    """Render a time like 6:00 AM"""
    hour = moment.hour % 12 or 12
    suffix = "AM" if moment.hour < 12 else "PM"
    return f"{hour}:{moment.minute:02d} {suffix}"


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into a naive local datetime
    Returns None for empty input; raises ValueError for garbage.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        moment = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        moment = datetime.fromisoformat(text)
    if moment.tzinfo is not None:
        moment = moment.astimezone().replace(tzinfo=None)
    return moment


def add_business_days(start: datetime, days: int) -> datetime:
    """
    End of the days-th business day after start (Saturday and Sunday skipped)
    Returned as midnight following that day.
    """
    day = start.date()
    added = 0
    while added < days:
        day += timedelta(days=1)
        if day.weekday() < 5:
            added += 1
    following = day + timedelta(days=1)
    return datetime(following.year, following.month, following.day)
