# File: evpark/application/projection.py
"""
Board Projection: read-only views over one snapshot of the tables

BoardProjector turns chargers, sessions, reservations and suspensions into
the board every mutating command answers with, and into the read-side
availability queries (next slot, summary, timeline, calendar).
"""

from dataclasses import dataclass, field
from typing import List, Optional
from datetime import datetime, date, timedelta
import logging

from ..domain.config import PolicyConfig
from ..domain.errors import PolicyViolation
from ..domain.eligibility import (
    active_suspension, can_start_session, check_in_window, classify_walk_up_user,
    is_slot_held, slot_reservation, tier_open_times, walk_up_tier
)
from ..domain.models import (
    Actor, Charger, ChargingSession, Reservation, Suspension, TimeWindow,
    ChargerStatusKey, WalkUpTier
)
from .dtos import (
    ActingUserDTO, AvailabilitySummaryDTO, BoardDTO, CalendarDayDTO, CalendarDTO,
    ChargerAvailabilityDTO, ChargerDTO, NextSlotDTO, ReservationDTO, SessionDTO,
    SlotDTO, TimelineDTO, WalkUpDTO
)


class SlotState:
    PAST = "past"
    IN_USE = "in_use"
    RESERVED = "reserved"
    WALK_UP = "walk_up"
    AVAILABLE = "available"


@dataclass
class Snapshot:
    """Everything a projection reads, loaded once"""
    now: datetime
    config: PolicyConfig
    chargers: List[Charger] = field(default_factory=list)
    sessions: List[ChargingSession] = field(default_factory=list)
    reservations: List[Reservation] = field(default_factory=list)
    suspensions: List[Suspension] = field(default_factory=list)

    def charger_by_id(self, charger_id: str) -> Optional[Charger]:
        for charger in self.chargers:
            if charger.id == charger_id:
                return charger
        return None


class BoardProjector:
    """Builds board and availability DTOs from a Snapshot"""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    # ------------------------------------------------------------------
    # Board
    # ------------------------------------------------------------------

    def board(self, snapshot: Snapshot, actor: Actor, is_admin: bool) -> BoardDTO:
        suspension = active_suspension(actor.email, snapshot.suspensions, snapshot.now)
        user = ActingUserDTO(
            email=actor.email,
            name=actor.name,
            is_admin=is_admin,
            is_suspended=suspension is not None,
            suspended_until=suspension.end_at if suspension else None,
        )
        reservations = sorted(snapshot.reservations, key=lambda r: (r.start_time, r.charger_id))
        return BoardDTO(
            server_time=snapshot.now,
            user=user,
            config=snapshot.config.to_dict(),
            reservations=[self.reservation_dto(snapshot, r, actor) for r in reservations],
            chargers=[self.charger_dto(snapshot, c, actor) for c in snapshot.chargers],
        )

    def status_key(self, snapshot: Snapshot, charger: Charger) -> ChargerStatusKey:
        session = self._active_session(snapshot, charger)
        if session is not None:
            if session.is_overdue(snapshot.now, snapshot.config.session_move_grace_minutes):
                return ChargerStatusKey.OVERDUE
            return ChargerStatusKey.IN_USE
        slot = charger.slot_at(snapshot.now)
        if slot is not None:
            holder = slot_reservation(charger, slot, snapshot.reservations)
            if holder is not None and is_slot_held(holder, snapshot.now, snapshot.config):
                return ChargerStatusKey.RESERVED
        return ChargerStatusKey.FREE

    def charger_dto(self, snapshot: Snapshot, charger: Charger, actor: Actor) -> ChargerDTO:
        status = self.status_key(snapshot, charger)
        session = self._active_session(snapshot, charger)
        slot = charger.slot_at(snapshot.now)
        holder = slot_reservation(charger, slot, snapshot.reservations) if slot else None
        return ChargerDTO(
            id=charger.id,
            name=charger.name,
            max_minutes=charger.max_minutes,
            slot_starts=[str(s) for s in charger.slot_starts],
            status_key=status.value,
            status_label=status.label,
            active_session=self.session_dto(snapshot, session) if session else None,
            active_reservation=self.reservation_dto(snapshot, holder, actor) if holder else None,
            walkup=self.walkup_dto(snapshot, charger, slot, actor) if slot else None,
        )

    def session_dto(self, snapshot: Snapshot, session: ChargingSession) -> SessionDTO:
        grace = snapshot.config.session_move_grace_minutes
        flags = session.legacy_flags(snapshot.now, grace)
        return SessionDTO(
            id=session.id,
            charger_id=session.charger_id,
            user_id=session.user_id,
            user_name=session.user_name,
            start_time=session.start_time,
            end_time=session.end_time,
            status=session.status.value,
            active=flags["active"],
            overdue=flags["overdue"],
            complete=flags["complete"],
            overdue_at=session.overdue_at(grace),
            ended_at=session.ended_at,
        )

    def reservation_dto(self, snapshot: Snapshot, reservation: Reservation, actor: Actor) -> ReservationDTO:
        charger = snapshot.charger_by_id(reservation.charger_id)
        opens, closes = check_in_window(reservation, snapshot.config)
        matched = self.matched_session(snapshot, reservation)
        return ReservationDTO(
            id=reservation.id,
            charger_id=reservation.charger_id,
            charger_name=charger.name if charger else None,
            user_id=reservation.user_id,
            user_name=reservation.user_name,
            start_time=reservation.start_time,
            end_time=reservation.end_time,
            status=reservation.status.value,
            is_mine=reservation.user_id == actor.email,
            check_in_opens_at=opens,
            check_in_closes_at=closes,
            checked_in_at=reservation.checked_in_at,
            canceled_at=reservation.canceled_at,
            no_show_at=reservation.no_show_at,
            session_id=matched.id if matched else None,
        )

    def walkup_dto(self, snapshot: Snapshot, charger: Charger, slot: TimeWindow, actor: Actor) -> WalkUpDTO:
        config = snapshot.config
        tier = walk_up_tier(slot, snapshot.now, config)
        opens = tier_open_times(slot, config)
        user_class = classify_walk_up_user(
            actor.email, charger, slot, snapshot.now, config,
            snapshot.reservations, snapshot.sessions
        )
        can_start, reason = True, None
        try:
            can_start_session(
                actor.email, charger, snapshot.now, config,
                snapshot.reservations, snapshot.sessions, snapshot.suspensions
            )
        except PolicyViolation as e:
            can_start, reason = False, e.message
        return WalkUpDTO(
            slot_start=slot.start,
            slot_end=slot.end,
            tier=tier.value,
            net_new_opens_at=opens[WalkUpTier.NET_NEW],
            returning_opens_at=opens[WalkUpTier.RETURNING],
            all_opens_at=opens[WalkUpTier.ALL],
            is_open=tier != WalkUpTier.CLOSED,
            is_open_to_returning=tier in (WalkUpTier.RETURNING, WalkUpTier.ALL),
            is_open_to_all=tier == WalkUpTier.ALL,
            user_class=user_class.value,
            can_start=can_start,
            reason=reason,
        )

    def matched_session(self, snapshot: Snapshot, reservation: Reservation) -> Optional[ChargingSession]:
        """Session by the holder on the reserved charger overlapping the reservation"""
        for session in snapshot.sessions:
            if (
                session.charger_id == reservation.charger_id
                and session.user_id == reservation.user_id
                and session.planned_window.overlaps(reservation.window)
            ):
                return session
        return None

    # ------------------------------------------------------------------
    # Availability queries
    # ------------------------------------------------------------------

    def slot_state(self, snapshot: Snapshot, charger: Charger, window: TimeWindow) -> str:
        now = snapshot.now
        if window.end <= now:
            return SlotState.PAST
        if window.contains(now) and self._active_session(snapshot, charger) is not None:
            return SlotState.IN_USE
        holder = slot_reservation(charger, window, snapshot.reservations)
        if holder is not None and (now < window.start or is_slot_held(holder, now, snapshot.config)):
            return SlotState.RESERVED
        if now > window.start + timedelta(minutes=snapshot.config.reservation_late_grace_minutes):
            return SlotState.WALK_UP
        return SlotState.AVAILABLE

    def slot_dto(self, snapshot: Snapshot, charger: Charger, window: TimeWindow) -> SlotDTO:
        holder = slot_reservation(charger, window, snapshot.reservations)
        return SlotDTO(
            charger_id=charger.id,
            charger_name=charger.name,
            start_time=window.start,
            end_time=window.end,
            state=self.slot_state(snapshot, charger, window),
            user_name=holder.user_name if holder else None,
            reservation_id=holder.id if holder else None,
        )

    def open_slots(self, snapshot: Snapshot, charger: Charger, day: date) -> List[SlotDTO]:
        slots = [self.slot_dto(snapshot, charger, w) for w in charger.slot_windows_on(day)]
        return [s for s in slots if s.state == SlotState.AVAILABLE]

    def next_available_slot(self, snapshot: Snapshot) -> NextSlotDTO:
        today = snapshot.now.date()
        candidates = []
        for charger in snapshot.chargers:
            candidates.extend(self.open_slots(snapshot, charger, today))
        if not candidates:
            return NextSlotDTO(found=False)
        best = min(candidates, key=lambda s: (s.start_time, s.charger_id))
        return NextSlotDTO(found=True, slot=best)

    def availability_summary(self, snapshot: Snapshot) -> AvailabilitySummaryDTO:
        today = snapshot.now.date()
        rows = []
        for charger in snapshot.chargers:
            open_today = self.open_slots(snapshot, charger, today)
            rows.append(ChargerAvailabilityDTO(
                charger_id=charger.id,
                charger_name=charger.name,
                status_key=self.status_key(snapshot, charger).value,
                open_slots_today=len(open_today),
                next_open_slot=open_today[0] if open_today else None,
            ))
        return AvailabilitySummaryDTO(
            server_time=snapshot.now,
            total_chargers=len(rows),
            free_now=sum(1 for row in rows if row.status_key == ChargerStatusKey.FREE.value),
            chargers=rows,
        )

    def timeline(self, snapshot: Snapshot, charger: Charger, day: date) -> TimelineDTO:
        return TimelineDTO(
            charger_id=charger.id,
            charger_name=charger.name,
            day=day,
            slots=[self.slot_dto(snapshot, charger, w) for w in charger.slot_windows_on(day)],
        )

    def calendar(self, snapshot: Snapshot, start: date, days: int) -> CalendarDTO:
        result = []
        for offset in range(days):
            day = start + timedelta(days=offset)
            states = [
                self.slot_state(snapshot, charger, window)
                for charger in snapshot.chargers
                for window in charger.slot_windows_on(day)
            ]
            result.append(CalendarDayDTO(
                day=day,
                total_slots=len(states),
                open_slots=states.count(SlotState.AVAILABLE),
                reserved_slots=states.count(SlotState.RESERVED),
            ))
        return CalendarDTO(start_date=start, days=result)

    def _active_session(self, snapshot: Snapshot, charger: Charger) -> Optional[ChargingSession]:
        for session in snapshot.sessions:
            if session.charger_id == charger.id and session.is_active:
                return session
        return None
