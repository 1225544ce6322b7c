# File: evpark/domain/eligibility.py
"""
Eligibility rules for reserving and walking up to a charger

Pure functions over already-loaded records. Nothing here touches the store
or the clock; callers pass `now` and the resolved PolicyConfig.

Key rules:
1. can_reserve - same-day booking after the daily open time, one slot start,
   daily limit, no double booking
2. walk_up_tier / classify_walk_up_user - tiered walk-up priority inside a
   slot window (net-new first, then returning users, then everyone)
3. can_start_session - check-in path for the slot holder, walk-up path for
   everyone else
"""

from dataclasses import dataclass
from typing import Optional, List, Iterable, Dict, Tuple
from datetime import datetime, timedelta

from .config import PolicyConfig
from .errors import (
    UserSuspended, OnlyTodayAllowed, BookingNotOpenYet, InvalidSlot,
    SlotUnavailable, DuplicateDailyReservation, SlotTaken, ChargerInUse,
    AlreadyCharging, WalkUpNotOpen, ChargerReservedByOther, AlreadyReserved,
    CheckInWindowClosed
)
from .models import (
    Charger, ChargingSession, Reservation, Suspension, TimeWindow,
    ReservationStatus, WalkUpTier, WalkUpClass, format_clock
)


MODE_WALK_UP = "walk_up"
MODE_CHECK_IN = "check_in"


@dataclass
class EligibilityDecision:
    """Outcome of a successful can_start_session check"""
    mode: str
    slot: Optional[TimeWindow]
    session_end: datetime
    tier: Optional[WalkUpTier] = None
    user_class: Optional[WalkUpClass] = None
    reservation: Optional[Reservation] = None

    @property
    def is_check_in(self) -> bool:
        return self.mode == MODE_CHECK_IN


# ============================================================================
# SUSPENSIONS
# ============================================================================

def active_suspension(
    user_id: str,
    suspensions: Iterable[Suspension],
    now: datetime
) -> Optional[Suspension]:
    for suspension in suspensions:
        if suspension.user_id == user_id and suspension.active and suspension.covers(now):
            return suspension
    return None


def _ensure_not_suspended(user_id: str, suspensions: Iterable[Suspension], now: datetime) -> None:
    suspension = active_suspension(user_id, suspensions, now)
    if suspension:
        raise UserSuspended(
            f"Your account is suspended until {suspension.end_at:%a %b %d} "
            f"{format_clock(suspension.end_at)}."
        )


# ============================================================================
# RESERVATIONS
# ============================================================================

def can_reserve(
    user_id: str,
    charger: Charger,
    start_time: datetime,
    now: datetime,
    config: PolicyConfig,
    reservations: List[Reservation],
    suspensions: List[Suspension],
    ignore_reservation_id: Optional[str] = None
) -> TimeWindow:
    """
    Check a reservation request and return the slot window it would hold
    Raises the first PolicyViolation that applies.
    """
    _ensure_not_suspended(user_id, suspensions, now)

    if start_time.date() != now.date():
        raise OnlyTodayAllowed("Reservations can only be made for today.")

    opens_at = config.booking_opens_at(now.date())
    if now < opens_at:
        raise BookingNotOpenYet(f"Booking opens at {format_clock(opens_at)}.")

    window = charger.window_for_start(start_time)
    if window is None:
        raise InvalidSlot(
            f"{format_clock(start_time)} is not a slot start for {charger.name}."
        )

    if now > window.start + timedelta(minutes=config.reservation_late_grace_minutes):
        raise SlotUnavailable("That slot is no longer available.")

    others = [r for r in reservations if r.id != ignore_reservation_id]

    held_today = [
        r for r in others
        if r.user_id == user_id
        and r.is_on(start_time.date())
        and r.status.counts_toward_daily_limit
    ]
    if len(held_today) >= config.reservation_max_per_day:
        raise DuplicateDailyReservation("You already have a reservation for today.")

    for reservation in others:
        if (
            reservation.charger_id == charger.id
            and reservation.holds_slot
            and reservation.window.overlaps(window)
        ):
            raise SlotTaken("That slot is already reserved.")

    return window


def check_in_window(reservation: Reservation, config: PolicyConfig) -> Tuple[datetime, datetime]:
    """Inclusive [opens, closes] bounds for checking in"""
    opens = reservation.start_time - timedelta(minutes=config.check_in_early_minutes)
    closes = reservation.grace_ends_at(config.reservation_late_grace_minutes)
    return opens, closes


def ensure_check_in_open(reservation: Reservation, now: datetime, config: PolicyConfig) -> None:
    opens, closes = check_in_window(reservation, config)
    if now < opens:
        raise CheckInWindowClosed(f"Check-in opens at {format_clock(opens)}.")
    if now > closes:
        raise CheckInWindowClosed(f"Check-in closed at {format_clock(closes)}.")


def slot_reservation(
    charger: Charger,
    slot: TimeWindow,
    reservations: Iterable[Reservation]
) -> Optional[Reservation]:
    """The reservation currently holding this charger slot, if any"""
    for reservation in reservations:
        if (
            reservation.charger_id == charger.id
            and reservation.holds_slot
            and reservation.start_time == slot.start
        ):
            return reservation
    return None


def is_slot_held(reservation: Reservation, now: datetime, config: PolicyConfig) -> bool:
    """Checked in, or still inside the late grace after slot start"""
    if reservation.status == ReservationStatus.CHECKED_IN:
        return True
    return (
        reservation.status == ReservationStatus.ACTIVE
        and now <= reservation.grace_ends_at(config.reservation_late_grace_minutes)
    )


# ============================================================================
# WALK-UP TIERS
# ============================================================================

def tier_open_times(slot: TimeWindow, config: PolicyConfig) -> Dict[WalkUpTier, datetime]:
    returning_at = slot.start + timedelta(minutes=config.walkup_net_new_window_minutes)
    return {
        WalkUpTier.NET_NEW: slot.start,
        WalkUpTier.RETURNING: returning_at,
        WalkUpTier.ALL: returning_at + timedelta(minutes=config.walkup_returning_window_minutes),
    }


def walk_up_tier(slot: Optional[TimeWindow], now: datetime, config: PolicyConfig) -> WalkUpTier:
    if slot is None or not slot.contains(now):
        return WalkUpTier.CLOSED
    opens = tier_open_times(slot, config)
    if now < opens[WalkUpTier.RETURNING]:
        return WalkUpTier.NET_NEW
    if now < opens[WalkUpTier.ALL]:
        return WalkUpTier.RETURNING
    return WalkUpTier.ALL


def classify_walk_up_user(
    user_id: str,
    charger: Charger,
    slot: TimeWindow,
    now: datetime,
    config: PolicyConfig,
    reservations: Iterable[Reservation],
    sessions: Iterable[ChargingSession]
) -> WalkUpClass:
    """
    Returning users already had a shot at this charger slot today:
    a no-show, a completed reservation or session, a late cancel, or a
    reservation that lapsed past its grace.
    """
    for reservation in reservations:
        if (
            reservation.user_id != user_id
            or reservation.charger_id != charger.id
            or reservation.start_time != slot.start
        ):
            continue
        if reservation.status in (ReservationStatus.NO_SHOW, ReservationStatus.COMPLETE):
            return WalkUpClass.RETURNING
        if reservation.canceled_late():
            return WalkUpClass.RETURNING
        if (
            reservation.status == ReservationStatus.ACTIVE
            and now > reservation.grace_ends_at(config.reservation_late_grace_minutes)
        ):
            return WalkUpClass.RETURNING

    for session in sessions:
        if (
            session.user_id == user_id
            and session.charger_id == charger.id
            and session.is_complete
            and session.window.overlaps(slot)
        ):
            return WalkUpClass.RETURNING

    return WalkUpClass.NET_NEW


# ============================================================================
# STARTING A SESSION
# ============================================================================

def _own_check_in_reservation(
    user_id: str,
    charger: Charger,
    now: datetime,
    config: PolicyConfig,
    reservations: Iterable[Reservation]
) -> Optional[Reservation]:
    for reservation in reservations:
        if (
            reservation.user_id == user_id
            and reservation.charger_id == charger.id
            and reservation.holds_slot
        ):
            opens, closes = check_in_window(reservation, config)
            if opens <= now <= closes:
                return reservation
    return None


def can_start_session(
    user_id: str,
    charger: Charger,
    now: datetime,
    config: PolicyConfig,
    reservations: List[Reservation],
    sessions: List[ChargingSession],
    suspensions: List[Suspension]
) -> EligibilityDecision:
    """Decide whether the user may start charging on this charger now"""
    _ensure_not_suspended(user_id, suspensions, now)

    if charger.active_session_id or any(
        s.charger_id == charger.id and s.is_active for s in sessions
    ):
        raise ChargerInUse(f"{charger.name} is already in use.")

    if any(s.user_id == user_id and s.is_active for s in sessions):
        raise AlreadyCharging("You already have an active charging session.")

    max_end = now + timedelta(minutes=charger.max_minutes)
    slot = charger.slot_at(now)

    own = _own_check_in_reservation(user_id, charger, now, config, reservations)
    if own is not None:
        return EligibilityDecision(
            mode=MODE_CHECK_IN,
            slot=slot,
            session_end=min(max_end, own.end_time),
            reservation=own,
        )

    if slot is None:
        raise WalkUpNotOpen(f"No charging slot is open on {charger.name} right now.")

    holder = slot_reservation(charger, slot, reservations)
    if holder is not None and holder.user_id != user_id and is_slot_held(holder, now, config):
        raise ChargerReservedByOther(
            f"{charger.name} is reserved by {holder.user_name or holder.user_id} until "
            f"{format_clock(holder.grace_ends_at(config.reservation_late_grace_minutes))}."
        )

    for reservation in reservations:
        if (
            reservation.user_id == user_id
            and reservation.status == ReservationStatus.ACTIVE
            and reservation.is_on(now.date())
            and now <= reservation.grace_ends_at(config.reservation_late_grace_minutes)
        ):
            raise AlreadyReserved(
                "You already have a reservation today. Use it instead of walking up."
            )

    tier = walk_up_tier(slot, now, config)
    user_class = classify_walk_up_user(user_id, charger, slot, now, config, reservations, sessions)
    if not tier.admits(user_class):
        opens = tier_open_times(slot, config)[WalkUpTier.RETURNING]
        raise WalkUpNotOpen(
            f"Walk-up for returning users on {charger.name} opens at {format_clock(opens)}."
        )

    return EligibilityDecision(
        mode=MODE_WALK_UP,
        slot=slot,
        session_end=min(max_end, slot.end),
        tier=tier,
        user_class=user_class,
    )
