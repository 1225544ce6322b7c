#!/usr/bin/env python3
"""
Unit tests for the reminder sweep and its retry policy
"""

import unittest
from datetime import datetime, timedelta
from unittest.mock import Mock

from evpark.application.sweep import SweepReport, is_transient_error, run_with_retries
from evpark.domain.errors import AdminRequired, TransientInfrastructureError
from evpark.domain.models import ReservationStatus, StrikeType

from tests.fixtures import ALICE, BOB, EngineTestBase, at, make_reservation, make_session


SPREADSHEET_ERROR = "Service Spreadsheets failed while accessing document with id 1AbC."
SERVER_ERROR = "We're sorry, a server error occurred. Please wait a bit and try again."


# ============================================================================
# RETRY POLICY
# ============================================================================

class TestRetryPolicy(unittest.TestCase):

    def test_transient_messages_recognized(self):
        self.assertTrue(is_transient_error(Exception(SPREADSHEET_ERROR)))
        self.assertTrue(is_transient_error(Exception(SERVER_ERROR)))
        self.assertTrue(is_transient_error(TransientInfrastructureError("lock busy")))
        self.assertFalse(is_transient_error(ValueError("bad input")))
        self.assertFalse(is_transient_error(AdminRequired()))

    def test_retries_then_succeeds(self):
        func = Mock(side_effect=[Exception(SPREADSHEET_ERROR), "done"])
        sleep = Mock()
        self.assertEqual(run_with_retries(func, attempts=3, delay=2.0, sleep=sleep), "done")
        self.assertEqual(func.call_count, 2)
        sleep.assert_called_once_with(2.0)

    def test_gives_up_after_attempts(self):
        func = Mock(side_effect=Exception(SERVER_ERROR))
        sleep = Mock()
        with self.assertRaises(TransientInfrastructureError) as ctx:
            run_with_retries(func, attempts=3, delay=1.0, sleep=sleep)
        self.assertIn("server error occurred", str(ctx.exception))
        self.assertEqual(func.call_count, 3)
        self.assertEqual(sleep.call_count, 2)

    def test_non_transient_error_surfaces_immediately(self):
        func = Mock(side_effect=KeyError("sessions"))
        sleep = Mock()
        with self.assertRaises(KeyError):
            run_with_retries(func, attempts=3, sleep=sleep)
        self.assertEqual(func.call_count, 1)
        sleep.assert_not_called()


# ============================================================================
# SESSION REMINDERS
# ============================================================================

class TestSessionReminders(EngineTestBase):

    def setUp(self):
        super().setUp()
        self.session = make_session(ALICE, "1", at(6), at(9), session_id="s-1")
        self.store.sessions.add(self.session)

    def sweep_at(self, hour, minute=0) -> SweepReport:
        self.clock.set(at(hour, minute))
        return self.sweep.run()

    def subjects(self):
        return [n.subject for n in self.notifier.messages_for(ALICE)]

    def test_staged_reminders_sent_once_each(self):
        self.assertEqual(self.sweep_at(8, 50).reminders_sent, 1)
        self.assertEqual(self.sweep_at(8, 52).reminders_sent, 0)
        self.assertEqual(self.sweep_at(8, 56).reminders_sent, 1)
        report = self.sweep_at(9, 0)
        self.assertEqual(report.reminders_sent, 1)
        self.assertEqual(report.grace_notices, 1)

        self.assertEqual(self.subjects(), [
            "10 minutes left on Charger 1",
            "5 minutes left on Charger 1",
            "Time is up on Charger 1",
        ])
        stored = self.store.sessions.get("s-1")
        self.assertTrue(stored.reminder_10_sent and stored.reminder_5_sent and stored.reminder_0_sent)
        self.assertEqual(stored.grace_notified_at, at(9))

    def test_late_first_sweep_sends_only_most_specific(self):
        report = self.sweep_at(9, 5)
        self.assertEqual(report.reminders_sent, 1)
        self.assertEqual(self.subjects(), ["Time is up on Charger 1"])
        stored = self.store.sessions.get("s-1")
        self.assertTrue(stored.reminder_10_sent and stored.reminder_5_sent)

    def test_overdue_notice_repeats_every_fifteen_minutes(self):
        self.sweep_at(9, 0)
        self.notifier.clear()

        self.assertEqual(self.sweep_at(9, 10).overdue_notices, 1)
        self.assertEqual(self.sweep_at(9, 20).overdue_notices, 0)
        self.assertEqual(self.sweep_at(9, 25).overdue_notices, 1)
        self.assertEqual(self.subjects(), ["You are overdue on Charger 1"] * 2)

    def test_late_end_strike_once(self):
        self.sweep_at(9, 10)
        self.assertEqual(self.store.strikes.list(), [])

        self.assertEqual(self.sweep_at(9, 40).strikes, 1)
        self.assertEqual(self.sweep_at(9, 55).strikes, 0)

        strikes = self.store.strikes.list()
        self.assertEqual(len(strikes), 1)
        self.assertEqual(strikes[0].type, StrikeType.LATE_END)
        self.assertEqual(strikes[0].source_id, "s-1")
        self.assertEqual(self.store.sessions.get("s-1").late_strike_at, at(9, 40))

    def test_completed_sessions_ignored(self):
        session = self.store.sessions.get("s-1")
        session.complete(at(8))
        self.store.sessions.update(session)
        report = self.sweep_at(9, 30)
        self.assertEqual(report.overdue_notices, 0)
        self.assertEqual(self.notifier.sent, [])


# ============================================================================
# RESERVATIONS, STRIKES AND SUSPENSIONS
# ============================================================================

class TestReservationSweep(EngineTestBase):

    def test_pre_and_post_start_reminders(self):
        self.store.reservations.add(make_reservation(ALICE, "1", at(9), at(12), reservation_id="r-1"))

        self.clock.set(at(8, 55))
        self.assertEqual(self.sweep.run().reminders_sent, 1)
        self.clock.set(at(9, 5))
        self.assertEqual(self.sweep.run().reminders_sent, 1)
        self.clock.set(at(9, 6))
        self.assertEqual(self.sweep.run().reminders_sent, 0)

        subjects = [n.subject for n in self.notifier.messages_for(ALICE)]
        self.assertEqual(subjects, [
            "Your reservation on Charger 1 starts soon",
            "Check in to Charger 1",
        ])

    def test_pre_start_reminder_skipped_when_too_late(self):
        self.store.reservations.add(make_reservation(ALICE, "1", at(9), at(12), reservation_id="r-1"))
        self.clock.set(at(9, 2))
        self.assertEqual(self.sweep.run().reminders_sent, 0)
        self.assertTrue(self.store.reservations.get("r-1").reminder_5_before_sent)

    def test_two_no_shows_suspend_once(self):
        self.store.reservations.add(make_reservation(ALICE, "1", at(6), at(9), reservation_id="res-1"))
        self.store.reservations.add(make_reservation(ALICE, "2", at(9), at(12), reservation_id="res-2"))

        self.clock.set(at(12, 45))
        report = self.sweep.run()

        self.assertEqual(report.no_shows, 2)
        self.assertEqual(report.strikes, 2)
        self.assertEqual(report.suspensions_created, 1)
        for reservation_id in ("res-1", "res-2"):
            reservation = self.store.reservations.get(reservation_id)
            self.assertEqual(reservation.status, ReservationStatus.NO_SHOW)
            self.assertEqual(reservation.no_show_at, at(12, 45))

        suspensions = self.store.suspensions.list()
        self.assertEqual(len(suspensions), 1)
        self.assertEqual(suspensions[0].user_id, ALICE)
        self.assertEqual(suspensions[0].end_at, datetime(2026, 2, 13))
        self.assertIn("Your charger access is suspended",
                      [n.subject for n in self.notifier.messages_for(ALICE)])

        # A second pass changes nothing
        report = self.sweep.run()
        self.assertEqual((report.strikes, report.suspensions_created), (0, 0))
        self.assertEqual(len(self.store.suspensions.list()), 1)

    def test_single_strike_does_not_suspend(self):
        self.store.reservations.add(make_reservation(BOB, "1", at(6), at(9)))
        self.clock.set(at(9, 1))
        report = self.sweep.run()
        self.assertEqual(report.strikes, 1)
        self.assertEqual(report.suspensions_created, 0)

    def test_strikes_while_suspended_do_not_stack(self):
        self.store.reservations.add(make_reservation(ALICE, "1", at(6), at(9)))
        self.store.reservations.add(make_reservation(ALICE, "2", at(9), at(12)))
        self.clock.set(at(12, 45))
        self.sweep.run()

        self.store.reservations.add(make_reservation(ALICE, "3", at(15), at(18)))
        self.clock.set(at(18, 5))
        report = self.sweep.run()
        self.assertEqual(report.strikes, 1)
        self.assertEqual(report.suspensions_created, 0)
        self.assertEqual(len(self.store.suspensions.list()), 1)

    def test_expired_suspension_deactivated_and_old_strikes_not_recounted(self):
        self.store.reservations.add(make_reservation(ALICE, "1", at(6), at(9)))
        self.store.reservations.add(make_reservation(ALICE, "2", at(9), at(12)))
        self.clock.set(at(12, 45))
        self.sweep.run()

        monday = datetime(2026, 2, 16)
        self.store.reservations.add(make_reservation(ALICE, "1", at(6, day=monday), at(9, day=monday)))
        self.clock.set(at(9, 1, day=monday))
        report = self.sweep.run()

        self.assertEqual(report.suspensions_changed, 1)
        self.assertEqual(report.strikes, 1)
        self.assertEqual(report.suspensions_created, 0)
        self.assertFalse(self.store.suspensions.list()[0].active)


# ============================================================================
# RETRY AROUND A PASS
# ============================================================================

class TestSweepRetry(EngineTestBase):

    def test_transient_failure_is_retried(self):
        report = SweepReport(ran_at=at(9))
        self.sweep.run_once = Mock(side_effect=[Exception(SPREADSHEET_ERROR), report])
        self.assertIs(self.sweep.run(), report)
        self.sleep.assert_called_once_with(0.5)

    def test_policy_error_is_not_retried(self):
        self.sweep.run_once = Mock(side_effect=AdminRequired())
        with self.assertRaises(AdminRequired):
            self.sweep.run()
        self.sleep.assert_not_called()

    def fail_first_call(self, repository):
        """Make the first update on a repository raise a transient error"""
        original = repository.update
        calls = []

        def update(entity):
            calls.append(entity.id)
            if len(calls) == 1:
                raise Exception(SERVER_ERROR)
            return original(entity)

        repository.update = Mock(side_effect=update)
        return calls

    def test_retried_pass_does_not_repeat_reminder(self):
        self.store.sessions.add(make_session(ALICE, "1", at(6), at(9), session_id="s-1"))
        calls = self.fail_first_call(self.store.sessions)
        self.clock.set(at(8, 50))

        report = self.sweep.run()

        self.assertEqual(calls, ["s-1", "s-1"])
        self.assertEqual(report.reminders_sent, 1)
        self.assertEqual(
            [n.subject for n in self.notifier.messages_for(ALICE)],
            ["10 minutes left on Charger 1"],
        )
        self.assertTrue(self.store.sessions.get("s-1").reminder_10_sent)
        self.sleep.assert_called_once_with(0.5)

    def test_retried_pass_records_no_show_strike_once(self):
        self.store.reservations.add(
            make_reservation(ALICE, "1", at(9), at(12), reservation_id="r-1")
        )
        self.fail_first_call(self.store.reservations)
        self.clock.set(at(12, 1))

        self.sweep.run()

        strikes = self.store.strikes.list()
        self.assertEqual(len(strikes), 1)
        self.assertEqual(strikes[0].source_id, "r-1")
        self.assertEqual(
            [n.subject for n in self.notifier.messages_for(ALICE)],
            ["You received a strike"],
        )
        stored = self.store.reservations.get("r-1")
        self.assertEqual(stored.status, ReservationStatus.NO_SHOW)
        self.assertIsNotNone(stored.no_show_strike_at)

    def test_report_serializes(self):
        data = SweepReport(ran_at=at(9), strikes=2).to_dict()
        self.assertEqual(data["ran_at"], "2026-02-10T09:00:00")
        self.assertEqual(data["strikes"], 2)


if __name__ == '__main__':
    unittest.main()
