# File: evpark/application/sweep.py
"""
Reminder and escalation sweep

One maintenance pass over the tables, meant to be invoked by a periodic
trigger. Each pass:

1. Sends staged end-of-session reminders (10, 5, 0 minutes) and the grace notice
2. Repeats overdue notices and records late-end strikes
3. Marks lapsed reservations as no-shows and records no-show strikes
4. Sends pre-start and post-start reservation reminders
5. Recomputes suspensions and suspends users who reached the strike threshold

Every notice is guarded by a flag or timestamp on its row, and the row is
stored before the notice goes out, so re-running a pass (or retrying a failed
one) never repeats a message. Strikes are keyed by their source row. The
whole pass runs in a bounded retry loop that only retries transient
infrastructure errors.
"""

from dataclasses import dataclass, asdict
from typing import Callable, Dict, List, NamedTuple, Optional, TypeVar
from datetime import datetime, timedelta
import logging
import re
import time

from ..domain.config import PolicyConfig
from ..domain.errors import EVParkError, TransientInfrastructureError
from ..domain.models import (
    Charger, ChargingSession, Reservation, Strike, Suspension,
    ReservationStatus, StrikeType, StrikeSource,
    add_business_days, format_clock, month_key, new_id
)
from ..infrastructure.messaging import Notifier
from ..infrastructure.repositories import TableStore
from ..infrastructure.runtime import Clock

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 1.0

TRANSIENT_PATTERNS = [
    re.compile(r"server error occurred", re.IGNORECASE),
    re.compile(r"service \S+ failed", re.IGNORECASE),
    re.compile(r"timed out", re.IGNORECASE),
    re.compile(r"temporarily unavailable", re.IGNORECASE),
    re.compile(r"try again", re.IGNORECASE),
    re.compile(r"rate limit exceeded", re.IGNORECASE),
    re.compile(r"internal error", re.IGNORECASE),
]


# ============================================================================
# RETRY POLICY
# ============================================================================

def is_transient_error(error: Exception) -> bool:
    """
    Determine if an error should be retried.

    Retries on:
    - TransientInfrastructureError
    - Errors from the storage or network layer whose message matches a known
      transient pattern

    Does NOT retry on any other engine error (policy, authorization,
    not-found, data integrity).
    """
    if isinstance(error, TransientInfrastructureError):
        return True
    if isinstance(error, EVParkError):
        return False
    message = str(error)
    return any(pattern.search(message) for pattern in TRANSIENT_PATTERNS)


def run_with_retries(
    func: Callable[[], T],
    attempts: int = DEFAULT_ATTEMPTS,
    delay: float = DEFAULT_RETRY_DELAY,
    sleep: Callable[[float], None] = time.sleep
) -> T:
    """
    Call func, retrying transient failures a bounded number of times

    Raises:
        The first non-transient error immediately; after the last attempt,
        the final transient error as TransientInfrastructureError.
    """
    last_error: Optional[Exception] = None

    for attempt in range(1, attempts + 1):
        try:
            return func()
        except Exception as e:
            if not is_transient_error(e):
                raise
            last_error = e
            if attempt >= attempts:
                logger.error(f"Giving up after {attempts} attempts: {e}")
                break
            logger.warning(f"Attempt {attempt}/{attempts} failed: {e}. Retrying in {delay:.1f}s")
            sleep(delay)

    if isinstance(last_error, TransientInfrastructureError):
        raise last_error
    raise TransientInfrastructureError(str(last_error)) from last_error


# ============================================================================
# SWEEP
# ============================================================================

class Notice(NamedTuple):
    """A message held back until the row guarding it is stored"""
    recipient: str
    subject: str
    body: str


@dataclass
class SweepReport:
    """What one successful pass did"""
    ran_at: Optional[datetime] = None
    reminders_sent: int = 0
    grace_notices: int = 0
    overdue_notices: int = 0
    no_shows: int = 0
    strikes: int = 0
    suspensions_created: int = 0
    suspensions_changed: int = 0

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data['ran_at'] = self.ran_at.isoformat() if self.ran_at else None
        return data


class ReminderSweep:
    """Reminders, overdue detection, no-shows, strikes and suspensions"""

    STAGED_REMINDERS = (10, 5, 0)
    OVERDUE_REPEAT_MINUTES = 15
    RESERVATION_REMINDER_MINUTES = 5

    def __init__(
        self,
        store: TableStore,
        clock: Clock,
        notifier: Notifier,
        attempts: int = DEFAULT_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.store = store
        self.clock = clock
        self.notifier = notifier
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.logger = logging.getLogger(self.__class__.__name__)

    def run(self) -> SweepReport:
        """Run one pass inside the retry loop"""
        return run_with_retries(
            self.run_once, attempts=self.attempts, delay=self.retry_delay, sleep=self.sleep
        )

    def run_once(self) -> SweepReport:
        now = self.clock.now()
        config = PolicyConfig.from_mapping(self.store.get_config())
        report = SweepReport(ran_at=now)

        chargers = {charger.id: charger for charger in self.store.chargers.list()}

        for session in self.store.sessions.list():
            if session.is_active:
                self._sweep_session(session, chargers.get(session.charger_id), now, config, report)

        for reservation in self.store.reservations.list():
            if reservation.status == ReservationStatus.ACTIVE:
                self._sweep_reservation(reservation, chargers.get(reservation.charger_id), now, config, report)

        self._sweep_suspensions(now, config, report)

        self.logger.info(f"Sweep at {now:%H:%M}: {report.to_dict()}")
        return report

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _sweep_session(
        self,
        session: ChargingSession,
        charger: Optional[Charger],
        now: datetime,
        config: PolicyConfig,
        report: SweepReport
    ) -> None:
        name = charger.name if charger else f"Charger {session.charger_id}"
        grace = config.session_move_grace_minutes
        overdue_at = session.overdue_at(grace)
        outbox: List[Notice] = []
        changed = False

        due = [m for m in self.STAGED_REMINDERS if now >= session.end_time - timedelta(minutes=m)]
        if due:
            most_specific = min(due)
            if not self._reminder_flag(session, most_specific) and now < overdue_at:
                outbox.append(self._staged_reminder(session, name, most_specific, overdue_at))
                report.reminders_sent += 1
                if most_specific == 0 and session.grace_notified_at is None:
                    session.grace_notified_at = now
                    report.grace_notices += 1
            for minutes in due:
                if not self._reminder_flag(session, minutes):
                    self._set_reminder_flag(session, minutes)
                    changed = True

        if session.end_time <= now < overdue_at and session.grace_notified_at is None:
            outbox.append(Notice(
                session.user_id,
                f"Please move from {name}",
                f"Your charging time has ended. Please move by {format_clock(overdue_at)}.",
            ))
            session.grace_notified_at = now
            report.grace_notices += 1
            changed = True

        if now >= overdue_at:
            repeat = timedelta(minutes=self.OVERDUE_REPEAT_MINUTES)
            if session.overdue_last_sent_at is None or now - session.overdue_last_sent_at >= repeat:
                minutes_over = int((now - session.end_time).total_seconds() // 60)
                outbox.append(Notice(
                    session.user_id,
                    f"You are overdue on {name}",
                    f"Your session ended {minutes_over} minutes ago. Please move your car now.",
                ))
                session.overdue_last_sent_at = now
                report.overdue_notices += 1
                changed = True

            strike_due = overdue_at + timedelta(minutes=config.late_strike_minutes)
            if session.late_strike_at is None and now >= strike_due:
                if self._record_strike(
                    session.user_id, session.user_name, StrikeType.LATE_END,
                    StrikeSource.SESSION, session.id,
                    f"Stayed on {name} more than {config.late_strike_minutes} minutes past the grace period.",
                    now, outbox,
                ):
                    report.strikes += 1
                session.late_strike_at = now
                changed = True

        if changed:
            self.store.sessions.update(session)
        self._deliver(outbox)

    def _staged_reminder(
        self,
        session: ChargingSession,
        name: str,
        minutes: int,
        overdue_at: datetime
    ) -> Notice:
        if minutes == 0:
            subject = f"Time is up on {name}"
            body = f"Your charging time has ended. Please move by {format_clock(overdue_at)}."
        else:
            subject = f"{minutes} minutes left on {name}"
            body = f"Your session ends at {format_clock(session.end_time)}."
        return Notice(session.user_id, subject, body)

    @staticmethod
    def _reminder_flag(session: ChargingSession, minutes: int) -> bool:
        return getattr(session, f"reminder_{minutes}_sent")

    @staticmethod
    def _set_reminder_flag(session: ChargingSession, minutes: int) -> None:
        setattr(session, f"reminder_{minutes}_sent", True)

    def _deliver(self, outbox: List[Notice]) -> None:
        """Send notices whose guarding flags are already stored"""
        for notice in outbox:
            self.notifier.send(notice.recipient, notice.subject, notice.body)

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    def _sweep_reservation(
        self,
        reservation: Reservation,
        charger: Optional[Charger],
        now: datetime,
        config: PolicyConfig,
        report: SweepReport
    ) -> None:
        name = charger.name if charger else f"Charger {reservation.charger_id}"
        lead = timedelta(minutes=self.RESERVATION_REMINDER_MINUTES)
        outbox: List[Notice] = []

        if now >= reservation.end_time:
            reservation.status = ReservationStatus.NO_SHOW
            reservation.no_show_at = now
            reservation.updated_at = now
            report.no_shows += 1
            if reservation.no_show_strike_at is None:
                if self._record_strike(
                    reservation.user_id, reservation.user_name, StrikeType.NO_SHOW,
                    StrikeSource.RESERVATION, reservation.id,
                    f"Did not check in for {name} at {format_clock(reservation.start_time)}.",
                    now, outbox,
                ):
                    report.strikes += 1
                reservation.no_show_strike_at = now
            self.store.reservations.update(reservation)
            self._deliver(outbox)
            self.logger.info(f"Reservation {reservation.id} marked no-show")
            return

        changed = False
        if not reservation.reminder_5_before_sent and now >= reservation.start_time - lead:
            if now < reservation.start_time:
                outbox.append(Notice(
                    reservation.user_id,
                    f"Your reservation on {name} starts soon",
                    f"Your slot starts at {format_clock(reservation.start_time)}.",
                ))
                report.reminders_sent += 1
            reservation.reminder_5_before_sent = True
            changed = True

        if not reservation.reminder_5_after_sent and now >= reservation.start_time + lead:
            closes = reservation.grace_ends_at(config.reservation_late_grace_minutes)
            outbox.append(Notice(
                reservation.user_id,
                f"Check in to {name}",
                f"Your slot started at {format_clock(reservation.start_time)}. "
                f"Check in by {format_clock(closes)} or the slot opens to others.",
            ))
            reservation.reminder_5_after_sent = True
            report.reminders_sent += 1
            changed = True

        if changed:
            self.store.reservations.update(reservation)
        self._deliver(outbox)

    # ------------------------------------------------------------------
    # Strikes and suspensions
    # ------------------------------------------------------------------

    def _record_strike(
        self,
        user_id: str,
        user_name: str,
        strike_type: StrikeType,
        source_type: StrikeSource,
        source_id: str,
        reason: str,
        now: datetime,
        outbox: List[Notice]
    ) -> Optional[Strike]:
        """
        Store a strike and queue its notice

        Returns None when an earlier, interrupted pass already stored it. Its
        source row was not saved then, so the notice is still owed.
        """
        outbox.append(Notice(user_id, "You received a strike", reason))
        for existing in self.store.strikes.list():
            if existing.type == strike_type and existing.source_id == source_id:
                self.logger.info(f"Strike {strike_type.value} for {source_id} already recorded")
                return None
        strike = Strike.issue(user_id, user_name, strike_type, source_type, source_id, reason, now)
        self.store.strikes.add(strike)
        self.logger.info(f"Strike {strike_type.value} for {user_id}: {reason}")
        return strike

    def _sweep_suspensions(self, now: datetime, config: PolicyConfig, report: SweepReport) -> None:
        suspensions = self.store.suspensions.list()
        for suspension in suspensions:
            active = suspension.covers(now)
            if suspension.active != active:
                suspension.active = active
                self.store.suspensions.update(suspension)
                report.suspensions_changed += 1

        current_month = month_key(now)
        by_user: Dict[str, List[Strike]] = {}
        for strike in self.store.strikes.list():
            if strike.month_key == current_month:
                by_user.setdefault(strike.user_id, []).append(strike)

        for user_id, strikes in by_user.items():
            mine = [s for s in suspensions if s.user_id == user_id]
            if any(s.active for s in mine):
                continue
            latest = max((s.created_at or s.start_at for s in mine), default=None)
            counted = [s for s in strikes if latest is None or s.occurred_at > latest]
            if len(counted) < config.strike_threshold:
                continue

            suspension = Suspension(
                id=new_id(),
                user_id=user_id,
                user_name=counted[-1].user_name,
                start_at=now,
                end_at=add_business_days(now, config.suspension_business_days),
                reason=f"{len(counted)} strikes in {current_month}",
                active=True,
                created_at=now,
            )
            self.store.suspensions.add(suspension)
            report.suspensions_created += 1
            self.notifier.send(
                user_id,
                "Your charger access is suspended",
                f"After {len(counted)} strikes this month you cannot reserve or walk up "
                f"until {suspension.end_at:%a %b %d}.",
            )
            self.logger.info(f"Suspended {user_id} until {suspension.end_at:%Y-%m-%d}")
