#!/usr/bin/env python3
"""
Integration tests for the SQLAlchemy table store

Runs against an in-memory SQLite database shared through a StaticPool, and
once end to end through the service on the same store.
"""

import os
import tempfile
import unittest

from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from evpark.application.charging_service import ChargingService
from evpark.application.sweep import ReminderSweep
from evpark.domain.errors import DataIntegrityError, TransientInfrastructureError
from evpark.domain.models import (
    Actor, ReservationStatus, SessionStatus, Strike, StrikeSource, StrikeType, Suspension
)
from evpark.infrastructure.factories import MEMORY_STORE_URL, create_store
from evpark.infrastructure.messaging import LoggingNotifier
from evpark.infrastructure.repositories import InMemoryTableStore, SQLAlchemyTableStore
from evpark.infrastructure.runtime import FixedClock

from tests.fixtures import ADMIN, ALICE, BOB, at, build_chargers, make_reservation, make_session


def memory_engine():
    return create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


class SQLStoreTestBase(unittest.TestCase):

    def setUp(self):
        self.store = SQLAlchemyTableStore("sqlite://", engine=memory_engine())
        self.store.initialize()
        for charger in build_chargers():
            self.store.chargers.add(charger)


class TestSQLRepositories(SQLStoreTestBase):

    def test_charger_round_trip(self):
        charger = self.store.chargers.get("4")
        self.assertEqual(charger.name, "Charger 4")
        self.assertEqual(charger.max_minutes, 120)
        self.assertEqual(charger.slot_starts_text, "06:00,08:00,10:00,12:00,14:00,16:00,18:00")
        self.assertIsNone(charger.active_session_id)
        self.assertIsNone(self.store.chargers.get("99"))

    def test_update_and_save(self):
        charger = self.store.chargers.get("1")
        charger.active_session_id = "s-1"
        self.store.chargers.update(charger)
        self.assertEqual(self.store.chargers.get("1").active_session_id, "s-1")

        charger.name = "Front Lot"
        self.store.chargers.save(charger)
        self.assertEqual(self.store.chargers.get("1").name, "Front Lot")
        self.assertEqual(len(self.store.chargers.list()), 4)

    def test_list_keeps_insertion_order(self):
        for hour in (12, 6, 9):
            self.store.reservations.add(
                make_reservation(ALICE, "1", at(hour), at(hour + 3), reservation_id=f"r-{hour}")
            )
        self.assertEqual([r.id for r in self.store.reservations.list()], ["r-12", "r-6", "r-9"])

    def test_session_status_and_legacy_columns(self):
        session = make_session(ALICE, "1", at(6), at(9), session_id="s-1")
        self.store.sessions.add(session)

        session.overdue_last_sent_at = at(9, 10)
        self.store.sessions.update(session)
        with self.store.engine.connect() as connection:
            row = connection.execute(
                text("SELECT status, active, overdue, complete FROM sessions WHERE session_id = 's-1'")
            ).one()
        self.assertEqual(row.status, "active")
        self.assertTrue(row.active)
        self.assertTrue(row.overdue)
        self.assertFalse(row.complete)

        session.complete(at(9, 15))
        self.store.sessions.update(session)
        stored = self.store.sessions.get("s-1")
        self.assertEqual(stored.status, SessionStatus.COMPLETE)
        self.assertEqual(stored.ended_at, at(9, 15))
        self.assertEqual(stored.overdue_last_sent_at, at(9, 10))

    def test_rows_without_status_use_complete_flag(self):
        with self.store.engine.begin() as connection:
            connection.execute(text(
                "INSERT INTO sessions (session_id, charger_id, user_id, user_name, start_time, end_time, "
                "status, active, overdue, complete) VALUES "
                "('old', '2', :user, 'Alice', :start, :end, '', 0, 0, 1)"
            ), {"user": ALICE, "start": "2026-02-10 06:00:00.000000", "end": "2026-02-10 09:00:00.000000"})
        self.assertEqual(self.store.sessions.get("old").status, SessionStatus.COMPLETE)

    def test_unknown_status_is_integrity_error(self):
        self.store.reservations.add(make_reservation(ALICE, "1", at(9), at(12), reservation_id="r-1"))
        with self.store.engine.begin() as connection:
            connection.execute(text("UPDATE reservations SET status = 'lost' WHERE reservation_id = 'r-1'"))
        with self.assertRaises(DataIntegrityError):
            self.store.reservations.get("r-1")

    def test_duplicate_id_is_integrity_error(self):
        self.store.reservations.add(make_reservation(ALICE, "1", at(9), at(12), reservation_id="r-1"))
        with self.assertRaises(DataIntegrityError):
            self.store.reservations.add(make_reservation(BOB, "2", at(9), at(12), reservation_id="r-1"))

    def test_update_missing_row(self):
        with self.assertRaises(DataIntegrityError):
            self.store.reservations.update(make_reservation(ALICE, "1", at(9), at(12), reservation_id="nope"))

    def test_strikes_and_suspensions(self):
        strike = Strike.issue(ALICE, "Alice", StrikeType.NO_SHOW, StrikeSource.RESERVATION, "r-1", "missed", at(12))
        self.store.strikes.add(strike)
        suspension = Suspension("s-1", ALICE, "Alice", at(12), at(23), "2 strikes", created_at=at(12))
        self.store.suspensions.add(suspension)

        stored = self.store.strikes.list()[0]
        self.assertEqual(stored.type, StrikeType.NO_SHOW)
        self.assertEqual(stored.month_key, "2026-02")
        self.assertTrue(self.store.suspensions.get("s-1").active)

    def test_config_and_properties(self):
        self.store.set_config("strike_threshold", "3")
        self.store.set_config("strike_threshold", "4")
        self.store.set_property("sheet_id", 42)
        self.assertEqual(self.store.get_config(), {"strike_threshold": "4"})
        self.assertEqual(self.store.get_properties(), {"sheet_id": "42"})


class TestSQLFailures(unittest.TestCase):

    def test_missing_tables_are_transient(self):
        store = SQLAlchemyTableStore("sqlite://", engine=memory_engine())
        with self.assertRaises(TransientInfrastructureError):
            store.chargers.list()

    def test_file_database_directory_created(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "nested", "evpark.db")
            store = SQLAlchemyTableStore(f"sqlite:///{path}")
            store.initialize()
            store.set_config("allowed_domain", "example.com")
            self.assertTrue(os.path.exists(path))
            store.engine.dispose()

    def test_create_store(self):
        self.assertIsInstance(create_store(MEMORY_STORE_URL), InMemoryTableStore)


class TestServiceOnSQLStore(SQLStoreTestBase):

    def test_reservation_and_no_show_sweep(self):
        self.store.set_config("allowed_domain", "example.com")
        self.store.set_config("admin_emails", ADMIN)
        clock = FixedClock(at(6, 1))
        notifier = LoggingNotifier()
        service = ChargingService(self.store, clock, notifier)
        sweep = ReminderSweep(self.store, clock, notifier)
        alice = Actor(ALICE)

        service.create_reservation(alice, "1", at(9).isoformat())
        clock.set(at(12, 1))
        report = sweep.run()

        self.assertEqual(report.no_shows, 1)
        reservation = self.store.reservations.list()[0]
        self.assertEqual(reservation.status, ReservationStatus.NO_SHOW)
        self.assertEqual(len(self.store.strikes.list()), 1)

        clock.set(at(12, 5))
        service.start_session(alice, "2")
        self.assertEqual(self.store.chargers.get("2").active_session_id, self.store.sessions.list()[0].id)


if __name__ == '__main__':
    unittest.main()
