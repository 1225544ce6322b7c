# File: tests/fixtures.py
"""
Shared fixtures for the charger engine tests

Four chargers on a weekday:
- Chargers 1-3: 180 minute slots at 06:00, 09:00, 12:00, 15:00, 18:00, 21:00
- Charger 4: 120 minute slots every two hours from 06:00 to 18:00
"""

import unittest
from datetime import datetime
from typing import Optional
from unittest.mock import Mock

from evpark.application.charging_service import ChargingService
from evpark.application.sweep import ReminderSweep
from evpark.domain.config import PolicyConfig
from evpark.domain.models import (
    Actor, Charger, ChargingSession, Reservation, ReservationStatus, SessionStatus, new_id
)
from evpark.infrastructure.factories import ChargerFactory
from evpark.infrastructure.messaging import LoggingNotifier
from evpark.infrastructure.repositories import InMemoryTableStore
from evpark.infrastructure.runtime import FixedClock


# Tuesday
DAY = datetime(2026, 2, 10)

THREE_HOUR_SLOTS = "06:00,09:00,12:00,15:00,18:00,21:00"
TWO_HOUR_SLOTS = "06:00,08:00,10:00,12:00,14:00,16:00,18:00"

ADMIN = "admin@example.com"
ALICE = "alice@example.com"
BOB = "bob@example.com"


def at(hour: int, minute: int = 0, day: datetime = DAY) -> datetime:
    return day.replace(hour=hour, minute=minute)


def build_chargers():
    factory = ChargerFactory()
    chargers = [
        factory.create(str(number), f"Charger {number}", 180, THREE_HOUR_SLOTS)
        for number in (1, 2, 3)
    ]
    chargers.append(factory.create("4", "Charger 4", 120, TWO_HOUR_SLOTS))
    return chargers


def make_reservation(
    user_id: str,
    charger_id: str,
    start: datetime,
    end: datetime,
    status: ReservationStatus = ReservationStatus.ACTIVE,
    reservation_id: Optional[str] = None,
    **kwargs
) -> Reservation:
    return Reservation(
        id=reservation_id or new_id(),
        charger_id=charger_id,
        user_id=user_id,
        user_name=user_id.split('@')[0].title(),
        start_time=start,
        end_time=end,
        status=status,
        created_at=kwargs.pop('created_at', start),
        **kwargs
    )


def make_session(
    user_id: str,
    charger_id: str,
    start: datetime,
    end: datetime,
    status: SessionStatus = SessionStatus.ACTIVE,
    session_id: Optional[str] = None,
    **kwargs
) -> ChargingSession:
    return ChargingSession(
        id=session_id or new_id(),
        charger_id=charger_id,
        user_id=user_id,
        user_name=user_id.split('@')[0].title(),
        start_time=start,
        end_time=end,
        status=status,
        **kwargs
    )


class EngineTestBase(unittest.TestCase):
    """Base class wiring an in-memory store, fixed clock and recording notifier"""

    start_at = at(6, 1)

    def setUp(self):
        self.store = InMemoryTableStore()
        for charger in build_chargers():
            self.store.chargers.add(charger)
        self.store.set_config("allowed_domain", "example.com")
        self.store.set_config("admin_emails", ADMIN)

        self.clock = FixedClock(self.start_at)
        self.notifier = LoggingNotifier()
        self.sleep = Mock()
        self.service = ChargingService(self.store, self.clock, self.notifier)
        self.sweep = ReminderSweep(self.store, self.clock, self.notifier, retry_delay=0.5, sleep=self.sleep)

        self.admin = Actor(ADMIN)
        self.alice = Actor(ALICE)
        self.bob = Actor(BOB)

    @property
    def config(self) -> PolicyConfig:
        return PolicyConfig.from_mapping(self.store.get_config())

    def charger(self, charger_id: str) -> Charger:
        return self.store.chargers.get(charger_id)

    def only_reservation(self, user_id: str) -> Reservation:
        mine = [r for r in self.store.reservations.list() if r.user_id == user_id]
        self.assertEqual(len(mine), 1)
        return mine[0]

    def only_session(self, user_id: str) -> ChargingSession:
        mine = [s for s in self.store.sessions.list() if s.user_id == user_id]
        self.assertEqual(len(mine), 1)
        return mine[0]
