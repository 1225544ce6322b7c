# File: evpark/application/charging_service.py
"""
Charger Reservation & Session Application Service

This module implements the state transition engine: it applies user and
admin commands to the tables, consulting the eligibility rules and the
resolved policy config.

Responsibilities:
1. Reservation lifecycle: create, update, cancel, check in
2. Session lifecycle: start (walk-up or check-in), end, end via reservation
3. Admin recovery: force end, reset a stuck charger
4. Read-side queries: board, next slot, availability, timeline, calendar
5. Host setup: tables, demo data, config and raw properties

Key Principles:
- The clock is read once and the config resolved once per operation
- Every operation re-reads the rows it needs and writes them back
- Every mutating operation answers with a fresh board
"""

from typing import Optional, List, Union
from datetime import datetime, date, timedelta
import logging

from ..domain.config import PolicyConfig
from ..domain.eligibility import (
    can_reserve, can_start_session, ensure_check_in_open, active_suspension
)
from ..domain.errors import (
    AdminRequired, DomainNotAllowed, ChargerNotFound, ReservationNotFound,
    SessionNotFound, SessionChargerMismatch, InvalidSlot, InvalidTransition,
    InvalidRequest, UserSuspended, TransientInfrastructureError
)
from ..domain.models import (
    Actor, Charger, ChargingSession, Reservation, ReservationStatus,
    new_id, parse_timestamp, format_clock
)
from ..infrastructure.factories import DemoSeeder
from ..infrastructure.messaging import Notifier, LoggingNotifier
from ..infrastructure.repositories import TableStore
from ..infrastructure.runtime import Clock
from .dtos import (
    BoardDTO, ResultDTO, NextSlotDTO, AvailabilitySummaryDTO, TimelineDTO, CalendarDTO
)
from .projection import BoardProjector, Snapshot


DEFAULT_CALENDAR_DAYS = 7
MAX_CALENDAR_DAYS = 14


class ChargingService:
    """
    Main application service for shared charger use

    The acting user is resolved by the host and passed in on every call.
    """

    def __init__(
        self,
        store: TableStore,
        clock: Clock,
        notifier: Optional[Notifier] = None,
        projector: Optional[BoardProjector] = None
    ):
        self.store = store
        self.clock = clock
        self.notifier = notifier or LoggingNotifier()
        self.projector = projector or BoardProjector()
        self.logger = logging.getLogger(self.__class__.__name__)

    # ========================================================================
    # HELPERS
    # ========================================================================

    def resolve_config(self) -> PolicyConfig:
        return PolicyConfig.from_mapping(self.store.get_config())

    def is_admin(self, actor: Actor, config: PolicyConfig) -> bool:
        return actor.is_admin or config.is_admin_email(actor.email)

    def _require_admin(self, actor: Actor, config: PolicyConfig) -> None:
        if not self.is_admin(actor, config):
            raise AdminRequired()

    def _require_domain(self, actor: Actor, config: PolicyConfig) -> None:
        if not config.allows_email(actor.email):
            raise DomainNotAllowed(
                f"Only @{config.allowed_domain} accounts can use the chargers."
            )

    def _require_owner_or_admin(self, actor: Actor, owner_id: str, config: PolicyConfig) -> None:
        if owner_id != actor.email:
            self._require_admin(actor, config)

    def _load(self, now: datetime, config: PolicyConfig) -> Snapshot:
        return Snapshot(
            now=now,
            config=config,
            chargers=self.store.chargers.list(),
            sessions=self.store.sessions.list(),
            reservations=self.store.reservations.list(),
            suspensions=self.store.suspensions.list(),
        )

    def _board(self, actor: Actor, now: datetime, config: PolicyConfig) -> BoardDTO:
        return self.projector.board(self._load(now, config), actor, self.is_admin(actor, config))

    def _charger(self, charger_id: str) -> Charger:
        charger = self.store.chargers.get(str(charger_id))
        if charger is None:
            raise ChargerNotFound(charger_id)
        return charger

    def _reservation(self, reservation_id: str) -> Reservation:
        reservation = self.store.reservations.get(str(reservation_id))
        if reservation is None:
            raise ReservationNotFound(reservation_id)
        return reservation

    def _parse_start(self, start_time: Union[str, datetime]) -> datetime:
        try:
            parsed = parse_timestamp(start_time)
        except ValueError:
            parsed = None
        if parsed is None:
            raise InvalidSlot(f"Invalid start time: {start_time!r}")
        return parsed

    def _open_session(
        self,
        actor: Actor,
        charger: Charger,
        now: datetime,
        end_time: datetime
    ) -> ChargingSession:
        session = ChargingSession(
            id=new_id(),
            charger_id=charger.id,
            user_id=actor.email,
            user_name=actor.name,
            start_time=now,
            end_time=end_time,
        )
        self.store.sessions.add(session)
        charger.active_session_id = session.id
        self.store.chargers.update(charger)
        return session

    def _close_session(self, session: ChargingSession, now: datetime) -> None:
        """Complete a session, clear the charger pointer, finish its reservation"""
        session.complete(now)
        self.store.sessions.update(session)

        charger = self.store.chargers.get(session.charger_id)
        if charger is not None and charger.active_session_id == session.id:
            charger.active_session_id = None
            self.store.chargers.update(charger)

        for reservation in self.store.reservations.list():
            if (
                reservation.status == ReservationStatus.CHECKED_IN
                and reservation.user_id == session.user_id
                and reservation.charger_id == session.charger_id
                and reservation.window.overlaps(session.planned_window)
            ):
                reservation.status = ReservationStatus.COMPLETE
                reservation.updated_at = now
                self.store.reservations.update(reservation)
                self.logger.info(f"Reservation {reservation.id} completed")

        self.logger.info(f"Session {session.id} on charger {session.charger_id} ended")

    def _active_session_on(self, charger: Charger, sessions: List[ChargingSession]) -> Optional[ChargingSession]:
        for session in sessions:
            if session.charger_id == charger.id and session.is_active:
                return session
        return None

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_board(self, actor: Actor) -> BoardDTO:
        """Board snapshot for the acting user"""
        return self._board(actor, self.clock.now(), self.resolve_config())

    def get_next_available_slot(self) -> NextSlotDTO:
        return self.projector.next_available_slot(self._load(self.clock.now(), self.resolve_config()))

    def get_availability_summary(self) -> AvailabilitySummaryDTO:
        return self.projector.availability_summary(self._load(self.clock.now(), self.resolve_config()))

    def get_charger_timeline(self, charger_id: str, day: Optional[Union[str, date]] = None) -> TimelineDTO:
        now = self.clock.now()
        charger = self._charger(charger_id)
        return self.projector.timeline(
            self._load(now, self.resolve_config()), charger, self._parse_day(day, now)
        )

    def get_calendar_availability(
        self,
        start: Optional[Union[str, date]] = None,
        days: Optional[Union[str, int]] = None
    ) -> CalendarDTO:
        now = self.clock.now()
        try:
            count = int(days) if days not in (None, "") else DEFAULT_CALENDAR_DAYS
        except (TypeError, ValueError):
            raise InvalidRequest(f"Invalid number of days: {days!r}")
        count = max(1, min(MAX_CALENDAR_DAYS, count))
        return self.projector.calendar(
            self._load(now, self.resolve_config()), self._parse_day(start, now), count
        )

    def _parse_day(self, value: Optional[Union[str, date]], now: datetime) -> date:
        if value is None or value == "":
            return now.date()
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        try:
            return parse_timestamp(value).date()
        except ValueError:
            raise InvalidRequest(f"Invalid date: {value!r}")

    # ========================================================================
    # SESSIONS
    # ========================================================================

    def start_session(self, actor: Actor, charger_id: str) -> BoardDTO:
        """
        Start charging on a charger

        Use Case: Walk-up or reserved start
        1. Check the eligibility rules (check-in path for the slot holder)
        2. Create an active session, capped at the slot or reservation end
        3. Point the charger at the new session
        4. Mark a matched reservation checked in
        """
        now = self.clock.now()
        config = self.resolve_config()
        self._require_domain(actor, config)

        charger = self._charger(charger_id)
        decision = can_start_session(
            actor.email, charger, now, config,
            self.store.reservations.list(),
            self.store.sessions.list(),
            self.store.suspensions.list(),
        )

        session = self._open_session(actor, charger, now, decision.session_end)

        if decision.is_check_in:
            reservation = decision.reservation
            if reservation.status == ReservationStatus.ACTIVE:
                reservation.status = ReservationStatus.CHECKED_IN
                reservation.checked_in_at = now
            reservation.updated_at = now
            self.store.reservations.update(reservation)

        self.logger.info(
            f"{actor.email} started session {session.id} on charger {charger.id} "
            f"({decision.mode}) until {session.end_time:%H:%M}"
        )
        return self._board(actor, now, config)

    def end_session(self, actor: Actor, session_id: str) -> BoardDTO:
        now = self.clock.now()
        config = self.resolve_config()
        self._require_domain(actor, config)

        session = self.store.sessions.get(str(session_id))
        if session is None:
            raise SessionNotFound(f"Session not found: {session_id}")
        self._require_owner_or_admin(actor, session.user_id, config)
        if not session.is_active:
            raise InvalidTransition("This session has already ended.")

        self._close_session(session, now)
        return self._board(actor, now, config)

    def end_session_for_reservation(self, actor: Actor, reservation_id: str) -> BoardDTO:
        """
        End the session that belongs to a reservation

        Use Case: Done charging on a reserved slot
        1. Find the holder's active session on the reserved charger overlapping
           the reservation window
        2. End it and complete the reservation
        """
        now = self.clock.now()
        config = self.resolve_config()
        self._require_domain(actor, config)

        reservation = self._reservation(reservation_id)
        self._require_owner_or_admin(actor, reservation.user_id, config)
        if not reservation.holds_slot:
            raise InvalidTransition(
                f"This reservation is {reservation.status.value.replace('_', '-')}; there is no session to end."
            )

        sessions = self.store.sessions.list()
        match = None
        for session in sessions:
            if (
                session.is_active
                and session.user_id == reservation.user_id
                and session.charger_id == reservation.charger_id
                and session.window.overlaps(reservation.window)
            ):
                match = session
                break

        if match is None:
            elsewhere = [
                s for s in sessions
                if s.is_active and s.user_id == reservation.user_id
                and s.charger_id != reservation.charger_id
            ]
            if elsewhere:
                raise SessionChargerMismatch("Session does not match this reservation.")
            raise SessionNotFound("Session not found for this reservation.")

        self._close_session(match, now)

        reservation = self._reservation(reservation_id)
        if reservation.holds_slot:
            reservation.status = ReservationStatus.COMPLETE
            reservation.updated_at = now
            self.store.reservations.update(reservation)
        return self._board(actor, now, config)

    def force_end(self, actor: Actor, charger_id: str) -> BoardDTO:
        """Admin: end whatever session is running on a charger"""
        now = self.clock.now()
        config = self.resolve_config()
        self._require_admin(actor, config)

        charger = self._charger(charger_id)
        session = self._active_session_on(charger, self.store.sessions.list())
        if session is None:
            raise SessionNotFound(f"No active session on {charger.name}.")

        self._close_session(session, now)
        try:
            self.notifier.send(
                session.user_id,
                f"Your session on {charger.name} was ended",
                f"An admin ended your charging session on {charger.name} at {format_clock(now)}.",
            )
        except TransientInfrastructureError as e:
            # The session is already closed; the notice is best effort
            self.logger.warning(f"Could not notify {session.user_id} about force end: {e}")
        self.logger.info(f"{actor.email} force-ended session {session.id}")
        return self._board(actor, now, config)

    def reset_charger(self, actor: Actor, charger_id: str) -> BoardDTO:
        """Admin: clear a stuck charger, closing any orphaned active session"""
        now = self.clock.now()
        config = self.resolve_config()
        self._require_admin(actor, config)

        charger = self._charger(charger_id)
        orphans = [
            s for s in self.store.sessions.list()
            if s.charger_id == charger.id and s.is_active
        ]
        for session in orphans:
            self._close_session(session, now)

        charger = self._charger(charger_id)
        if charger.active_session_id:
            charger.active_session_id = None
            self.store.chargers.update(charger)

        self.logger.info(
            f"{actor.email} reset charger {charger.id}; closed {len(orphans)} session(s)"
        )
        return self._board(actor, now, config)

    # ========================================================================
    # RESERVATIONS
    # ========================================================================

    def create_reservation(
        self,
        actor: Actor,
        charger_id: str,
        start_time: Union[str, datetime]
    ) -> BoardDTO:
        """
        Reserve a slot on a charger for today

        Use Case: Reservation
        1. Resolve the slot window from the requested start
        2. Apply booking rules (open time, today only, daily limit, conflicts)
        3. Store the reservation
        """
        now = self.clock.now()
        config = self.resolve_config()
        self._require_domain(actor, config)

        charger = self._charger(charger_id)
        start = self._parse_start(start_time)
        window = can_reserve(
            actor.email, charger, start, now, config,
            self.store.reservations.list(),
            self.store.suspensions.list(),
        )

        reservation = Reservation(
            id=new_id(),
            charger_id=charger.id,
            user_id=actor.email,
            user_name=actor.name,
            start_time=window.start,
            end_time=window.end,
            created_at=now,
            updated_at=now,
        )
        self.store.reservations.add(reservation)
        self.logger.info(
            f"{actor.email} reserved charger {charger.id} at {window.start:%H:%M} ({reservation.id})"
        )
        return self._board(actor, now, config)

    def update_reservation(
        self,
        actor: Actor,
        reservation_id: str,
        charger_id: str,
        start_time: Union[str, datetime]
    ) -> BoardDTO:
        now = self.clock.now()
        config = self.resolve_config()
        self._require_domain(actor, config)

        reservation = self._reservation(reservation_id)
        self._require_owner_or_admin(actor, reservation.user_id, config)
        if reservation.status != ReservationStatus.ACTIVE:
            raise InvalidTransition("Only upcoming reservations can be changed.")

        charger = self._charger(charger_id)
        start = self._parse_start(start_time)
        window = can_reserve(
            reservation.user_id, charger, start, now, config,
            self.store.reservations.list(),
            self.store.suspensions.list(),
            ignore_reservation_id=reservation.id,
        )

        reservation.charger_id = charger.id
        reservation.start_time = window.start
        reservation.end_time = window.end
        reservation.reminder_5_before_sent = False
        reservation.reminder_5_after_sent = False
        reservation.updated_at = now
        self.store.reservations.update(reservation)
        self.logger.info(f"Reservation {reservation.id} moved to charger {charger.id} at {window.start:%H:%M}")
        return self._board(actor, now, config)

    def cancel_reservation(self, actor: Actor, reservation_id: str) -> BoardDTO:
        now = self.clock.now()
        config = self.resolve_config()
        self._require_domain(actor, config)

        reservation = self._reservation(reservation_id)
        self._require_owner_or_admin(actor, reservation.user_id, config)
        if not reservation.holds_slot:
            raise InvalidTransition("Only active or checked-in reservations can be canceled.")

        reservation.status = ReservationStatus.CANCELED
        reservation.canceled_at = now
        reservation.updated_at = now
        self.store.reservations.update(reservation)
        self.logger.info(f"Reservation {reservation.id} canceled by {actor.email}")
        return self._board(actor, now, config)

    def check_in(self, actor: Actor, reservation_id: str) -> BoardDTO:
        """
        Check in to a reservation

        The reservation is marked checked in; charging starts right away when
        the charger is free and the holder is not charging elsewhere.
        """
        now = self.clock.now()
        config = self.resolve_config()
        self._require_domain(actor, config)

        reservation = self._reservation(reservation_id)
        self._require_owner_or_admin(actor, reservation.user_id, config)
        if reservation.status != ReservationStatus.ACTIVE:
            raise InvalidTransition("Only active reservations can be checked in.")

        suspension = active_suspension(reservation.user_id, self.store.suspensions.list(), now)
        if suspension is not None:
            raise UserSuspended(f"Account is suspended until {suspension.end_at:%a %b %d}.")
        ensure_check_in_open(reservation, now, config)

        charger = self._charger(reservation.charger_id)
        sessions = self.store.sessions.list()

        reservation.status = ReservationStatus.CHECKED_IN
        reservation.checked_in_at = now
        reservation.updated_at = now
        self.store.reservations.update(reservation)

        charger_busy = charger.active_session_id or self._active_session_on(charger, sessions)
        holder_busy = any(s.is_active and s.user_id == reservation.user_id for s in sessions)
        if not charger_busy and not holder_busy:
            holder = Actor(email=reservation.user_id, name=reservation.user_name)
            end = min(now + timedelta(minutes=charger.max_minutes), reservation.end_time)
            session = self._open_session(holder, charger, now, end)
            self.logger.info(f"Checked in {reservation.id}; session {session.id} started")
        else:
            self.logger.info(f"Checked in {reservation.id}; charger not free yet")
        return self._board(actor, now, config)

    # ========================================================================
    # MESSAGING
    # ========================================================================

    def notify_owner(self, actor: Actor, charger_id: str) -> ResultDTO:
        """Tell the person charging that someone is waiting"""
        config = self.resolve_config()
        self._require_domain(actor, config)

        charger = self._charger(charger_id)
        session = self._active_session_on(charger, self.store.sessions.list())
        if session is None:
            raise SessionNotFound(f"No one is charging on {charger.name}.")
        if session.user_id == actor.email:
            raise InvalidTransition("You are the one charging on this charger.")

        self.notifier.send(
            session.user_id,
            f"Someone is waiting for {charger.name}",
            f"{actor.name} is waiting for {charger.name}. "
            f"Your session is due to end at {format_clock(session.end_time)}.",
        )
        self.logger.info(f"{actor.email} notified {session.user_id} about charger {charger.id}")
        return ResultDTO(ok=True, message=f"Notified {session.user_name or session.user_id}.")

    def post_channel_message(self, actor: Actor, text: str) -> ResultDTO:
        config = self.resolve_config()
        self._require_domain(actor, config)
        text = (text or "").strip()
        if not text:
            raise InvalidRequest("Message cannot be empty.")
        self.notifier.post_channel(f"{actor.name}: {text}")
        return ResultDTO(ok=True, message="Message posted.")

    # ========================================================================
    # SETUP AND CONFIG
    # ========================================================================

    def initialize_tables(self) -> ResultDTO:
        self.store.initialize()
        return ResultDTO(ok=True, message="Tables ready.")

    def seed_demo_data(self, actor: Actor) -> ResultDTO:
        """
        Add the demo fleet and starter config

        Anyone may seed a brand-new store (no chargers, no admins) and becomes
        its admin; after that only an admin may seed.
        """
        self.store.initialize()
        config = self.resolve_config()
        if self.store.chargers.list() or config.admin_emails:
            self._require_admin(actor, config)
        details = DemoSeeder(self.store).seed(admin_email=actor.email)
        self.logger.info(f"{actor.email} seeded demo data: {details}")
        return ResultDTO(ok=True, message="Demo data seeded.", details=details)

    def set_config(self, actor: Actor, key: str, value: str) -> ResultDTO:
        config = self.resolve_config()
        self._require_admin(actor, config)
        candidate = self.store.get_config()
        candidate[key] = str(value)
        PolicyConfig.from_mapping(candidate)
        self.store.set_config(key, str(value))
        self.logger.info(f"{actor.email} set config {key}={value}")
        return ResultDTO(ok=True, message=f"Config {key} updated.")

    def set_property(self, actor: Actor, key: str, value: str) -> ResultDTO:
        config = self.resolve_config()
        self._require_admin(actor, config)
        self.store.set_property(key, str(value))
        self.logger.info(f"{actor.email} set property {key}")
        return ResultDTO(ok=True, message=f"Property {key} updated.")
