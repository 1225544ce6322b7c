#!/usr/bin/env python3
"""
Unit tests for the command objects, factory and processor

The service and sweep are mocked; these tests cover argument validation,
locking and history.
"""

import unittest
from unittest.mock import MagicMock, Mock

from evpark.application.charging_service import ChargingService
from evpark.application.commands import (
    BoardCommand, CommandContext, CommandFactory, CommandProcessor, ReserveCommand,
    SendRemindersCommand, StartSessionCommand
)
from evpark.application.dtos import ResultDTO
from evpark.application.sweep import ReminderSweep, SweepReport
from evpark.domain.errors import AdminRequired, InvalidRequest
from evpark.domain.models import Actor

from tests.fixtures import ALICE, at


class CommandTestBase(unittest.TestCase):
    """Base class with mocked collaborators"""

    def setUp(self):
        self.actor = Actor(ALICE)
        self.service = Mock(spec=ChargingService)
        self.sweep = Mock(spec=ReminderSweep)
        self.lock = MagicMock()
        self.lock.__exit__.return_value = False
        self.processor = CommandProcessor(self.service, self.sweep, self.lock)


class TestCommandFactory(CommandTestBase):

    def test_every_cli_command_is_registered(self):
        expected = {
            "init", "seed", "board", "start-session", "end-session", "end-reservation-session",
            "reserve", "update-reservation", "cancel-reservation", "check-in", "next-slot",
            "availability", "timeline", "calendar", "send-reminders", "notify-owner",
            "post-message", "force-end", "reset-charger", "config-set", "prop-set",
        }
        self.assertEqual(set(CommandFactory.command_names()), expected)

    def test_create_command(self):
        command = CommandFactory.create_command(
            "reserve", self.actor, {"charger_id": "1", "start_time": "2026-02-10T09:00:00"}
        )
        self.assertIsInstance(command, ReserveCommand)
        self.assertEqual(command.charger_id, "1")
        self.assertEqual(command.actor, self.actor)

    def test_unknown_command(self):
        with self.assertRaises(InvalidRequest) as ctx:
            CommandFactory.create_command("fly", self.actor, {})
        self.assertEqual(str(ctx.exception), "Unknown command: fly")

    def test_unexpected_arguments(self):
        with self.assertRaises(InvalidRequest):
            CommandFactory.create_command("board", self.actor, {"charger_id": "1"})


class TestCommandValidation(CommandTestBase):

    def test_missing_argument_reported(self):
        command = ReserveCommand(self.actor, "1", None)
        is_valid, errors = command.validate()
        self.assertFalse(is_valid)
        self.assertEqual(errors, ["Missing start_time."])

    def test_processor_rejects_invalid_command(self):
        with self.assertRaises(InvalidRequest) as ctx:
            self.processor.process(StartSessionCommand(self.actor, ""))
        self.assertEqual(str(ctx.exception), "Missing charger_id.")
        self.service.start_session.assert_not_called()

    def test_to_dict(self):
        command = BoardCommand(self.actor)
        data = command.to_dict()
        self.assertEqual(data["command_type"], "BoardCommand")
        self.assertEqual(data["actor"], ALICE)
        self.assertIsNone(data["executed_at"])


class TestCommandProcessor(CommandTestBase):

    def test_mutating_command_runs_under_lock(self):
        self.service.create_reservation.return_value = "board"
        result = self.processor.process(ReserveCommand(self.actor, "1", "2026-02-10T09:00:00"))

        self.assertEqual(result, "board")
        self.service.create_reservation.assert_called_once_with(self.actor, "1", "2026-02-10T09:00:00")
        self.lock.__enter__.assert_called_once()
        self.lock.__exit__.assert_called_once()

    def test_query_runs_without_lock(self):
        self.service.get_board.return_value = "board"
        self.assertEqual(self.processor.process(BoardCommand(self.actor)), "board")
        self.lock.__enter__.assert_not_called()

    def test_history_recorded(self):
        self.processor.process(BoardCommand(self.actor))
        self.processor.process(BoardCommand(self.actor))
        history = self.processor.get_history()
        self.assertEqual(len(history), 2)
        self.assertIsNotNone(history[0]["executed_at"])
        self.assertEqual(len(self.processor.get_history(limit=1)), 1)

    def test_history_is_bounded(self):
        self.processor.max_history_size = 3
        for _ in range(5):
            self.processor.process(BoardCommand(self.actor))
        self.assertEqual(len(self.processor.command_history), 3)

    def test_failure_propagates_and_is_not_recorded(self):
        self.service.force_end.side_effect = AdminRequired()
        command = CommandFactory.create_command("force-end", self.actor, {"charger_id": "1"})
        with self.assertRaises(AdminRequired):
            self.processor.process(command)
        self.assertEqual(self.processor.get_history(), [])
        self.lock.__exit__.assert_called_once()

    def test_send_reminders_wraps_report(self):
        self.sweep.run.return_value = SweepReport(ran_at=at(9), reminders_sent=2)
        result = self.processor.process(SendRemindersCommand())
        self.assertIsInstance(result, ResultDTO)
        self.assertEqual(result.details["reminders_sent"], 2)
        self.lock.__enter__.assert_called_once()

    def test_start_sweeps_registers_callback(self):
        self.sweep.run.return_value = SweepReport(ran_at=at(9))
        trigger = Mock()
        self.processor.start_sweeps(trigger)

        callback = trigger.start.call_args[0][0]
        callback()
        self.sweep.run.assert_called_once()

    def test_context_exposes_collaborators(self):
        self.assertIsInstance(self.processor.context, CommandContext)
        self.assertIs(self.processor.context.service, self.service)
        self.assertIs(self.processor.context.sweep, self.sweep)


if __name__ == '__main__':
    unittest.main()
