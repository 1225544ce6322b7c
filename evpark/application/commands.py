# File: evpark/application/commands.py
"""
Command Pattern Implementation for the charger engine

Each user or admin action is a command object that can be validated,
executed against the service, and recorded in the processor history.

Command Types:
1. Session Commands - start, end, end via reservation
2. Reservation Commands - reserve, update, cancel, check in
3. Query Commands - board, next slot, availability, timeline, calendar
4. Messaging Commands - notify the owner, post to the channel
5. Admin Commands - force end, reset charger, config, properties, setup
6. Maintenance Commands - the reminder sweep

The CommandProcessor holds the host lock around every mutating command and
the sweep; read-only commands run without it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Tuple, Type, Callable
from datetime import datetime
import logging
import uuid

from ..domain.errors import InvalidRequest
from ..domain.models import Actor
from ..infrastructure.runtime import Lock, InProcessLock, PeriodicTrigger
from .charging_service import ChargingService
from .dtos import BaseDTO, ResultDTO
from .sweep import ReminderSweep


@dataclass
class CommandContext:
    """Collaborators a command may use"""
    service: ChargingService
    sweep: ReminderSweep


# ============================================================================
# COMMAND INTERFACES AND BASE CLASSES
# ============================================================================

class Command(ABC):
    """
    Abstract base class for all commands

    A command represents an intent by the acting user. Commands that change
    state are `mutating` and run under the host lock.
    """

    name = ""
    mutating = True
    required: Tuple[str, ...] = ()

    def __init__(self, actor: Optional[Actor] = None, command_id: Optional[str] = None):
        self.actor = actor
        self.command_id = command_id or str(uuid.uuid4())
        self.executed_at: Optional[datetime] = None
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def execute(self, context: CommandContext) -> BaseDTO:
        """Execute the command and return its result DTO"""
        pass

    def validate(self) -> Tuple[bool, List[str]]:
        """
        Validate command parameters before execution

        Returns: (is_valid, error_messages)
        """
        errors = [
            f"Missing {label}."
            for label in self.required
            if getattr(self, label, None) in (None, "")
        ]
        return len(errors) == 0, errors

    def get_description(self) -> str:
        return self.__class__.__name__.replace("Command", "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command_id": self.command_id,
            "command_type": self.__class__.__name__,
            "actor": self.actor.email if self.actor else None,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
        }


# ============================================================================
# SESSION COMMANDS
# ============================================================================

class StartSessionCommand(Command):
    name = "start-session"
    required = ("charger_id",)

    def __init__(self, actor: Actor, charger_id: str):
        super().__init__(actor)
        self.charger_id = charger_id

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.start_session(self.actor, self.charger_id)


class EndSessionCommand(Command):
    name = "end-session"
    required = ("session_id",)

    def __init__(self, actor: Actor, session_id: str):
        super().__init__(actor)
        self.session_id = session_id

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.end_session(self.actor, self.session_id)


class EndReservationSessionCommand(Command):
    name = "end-reservation-session"
    required = ("reservation_id",)

    def __init__(self, actor: Actor, reservation_id: str):
        super().__init__(actor)
        self.reservation_id = reservation_id

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.end_session_for_reservation(self.actor, self.reservation_id)


# ============================================================================
# RESERVATION COMMANDS
# ============================================================================

class ReserveCommand(Command):
    name = "reserve"
    required = ("charger_id", "start_time")

    def __init__(self, actor: Actor, charger_id: str, start_time: str):
        super().__init__(actor)
        self.charger_id = charger_id
        self.start_time = start_time

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.create_reservation(self.actor, self.charger_id, self.start_time)


class UpdateReservationCommand(Command):
    name = "update-reservation"
    required = ("reservation_id", "charger_id", "start_time")

    def __init__(self, actor: Actor, reservation_id: str, charger_id: str, start_time: str):
        super().__init__(actor)
        self.reservation_id = reservation_id
        self.charger_id = charger_id
        self.start_time = start_time

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.update_reservation(
            self.actor, self.reservation_id, self.charger_id, self.start_time
        )


class CancelReservationCommand(Command):
    name = "cancel-reservation"
    required = ("reservation_id",)

    def __init__(self, actor: Actor, reservation_id: str):
        super().__init__(actor)
        self.reservation_id = reservation_id

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.cancel_reservation(self.actor, self.reservation_id)


class CheckInCommand(Command):
    name = "check-in"
    required = ("reservation_id",)

    def __init__(self, actor: Actor, reservation_id: str):
        super().__init__(actor)
        self.reservation_id = reservation_id

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.check_in(self.actor, self.reservation_id)


# ============================================================================
# QUERY COMMANDS
# ============================================================================

class BoardCommand(Command):
    name = "board"
    mutating = False

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.get_board(self.actor)


class NextSlotCommand(Command):
    name = "next-slot"
    mutating = False

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.get_next_available_slot()


class AvailabilityCommand(Command):
    name = "availability"
    mutating = False

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.get_availability_summary()


class TimelineCommand(Command):
    name = "timeline"
    mutating = False
    required = ("charger_id",)

    def __init__(self, actor: Actor, charger_id: str, day: Optional[str] = None):
        super().__init__(actor)
        self.charger_id = charger_id
        self.day = day

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.get_charger_timeline(self.charger_id, self.day)


class CalendarCommand(Command):
    name = "calendar"
    mutating = False

    def __init__(self, actor: Actor, start: Optional[str] = None, days: Optional[str] = None):
        super().__init__(actor)
        self.start = start
        self.days = days

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.get_calendar_availability(self.start, self.days)


# ============================================================================
# MESSAGING COMMANDS
# ============================================================================

class NotifyOwnerCommand(Command):
    name = "notify-owner"
    required = ("charger_id",)

    def __init__(self, actor: Actor, charger_id: str):
        super().__init__(actor)
        self.charger_id = charger_id

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.notify_owner(self.actor, self.charger_id)


class PostMessageCommand(Command):
    name = "post-message"
    mutating = False
    required = ("message",)

    def __init__(self, actor: Actor, message: str):
        super().__init__(actor)
        self.message = message

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.post_channel_message(self.actor, self.message)


# ============================================================================
# ADMIN AND SETUP COMMANDS
# ============================================================================

class ForceEndCommand(Command):
    name = "force-end"
    required = ("charger_id",)

    def __init__(self, actor: Actor, charger_id: str):
        super().__init__(actor)
        self.charger_id = charger_id

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.force_end(self.actor, self.charger_id)


class ResetChargerCommand(Command):
    name = "reset-charger"
    required = ("charger_id",)

    def __init__(self, actor: Actor, charger_id: str):
        super().__init__(actor)
        self.charger_id = charger_id

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.reset_charger(self.actor, self.charger_id)


class ConfigSetCommand(Command):
    name = "config-set"
    required = ("key", "value")

    def __init__(self, actor: Actor, key: str, value: str):
        super().__init__(actor)
        self.key = key
        self.value = value

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.set_config(self.actor, self.key, self.value)


class PropSetCommand(Command):
    name = "prop-set"
    required = ("key", "value")

    def __init__(self, actor: Actor, key: str, value: str):
        super().__init__(actor)
        self.key = key
        self.value = value

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.set_property(self.actor, self.key, self.value)


class InitCommand(Command):
    name = "init"

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.initialize_tables()


class SeedCommand(Command):
    name = "seed"

    def execute(self, context: CommandContext) -> BaseDTO:
        return context.service.seed_demo_data(self.actor)


class SendRemindersCommand(Command):
    name = "send-reminders"

    def execute(self, context: CommandContext) -> BaseDTO:
        report = context.sweep.run()
        return ResultDTO(ok=True, message="Reminders sent.", details=report.to_dict())


# ============================================================================
# COMMAND FACTORY
# ============================================================================

COMMAND_CLASSES: Dict[str, Type[Command]] = {
    command_class.name: command_class
    for command_class in (
        InitCommand, SeedCommand, BoardCommand,
        StartSessionCommand, EndSessionCommand, EndReservationSessionCommand,
        ReserveCommand, UpdateReservationCommand, CancelReservationCommand, CheckInCommand,
        NextSlotCommand, AvailabilityCommand, TimelineCommand, CalendarCommand,
        SendRemindersCommand, NotifyOwnerCommand, PostMessageCommand,
        ForceEndCommand, ResetChargerCommand, ConfigSetCommand, PropSetCommand,
    )
}


class CommandFactory:
    """Factory for creating commands from a name and keyword data"""

    @staticmethod
    def command_names() -> List[str]:
        return list(COMMAND_CLASSES)

    @staticmethod
    def create_command(command_name: str, actor: Optional[Actor], data: Optional[Dict[str, Any]] = None) -> Command:
        """
        Create a command instance from its name and parameters

        Raises: InvalidRequest for unknown names or unexpected parameters
        """
        command_class = COMMAND_CLASSES.get(command_name)
        if command_class is None:
            raise InvalidRequest(f"Unknown command: {command_name}")
        try:
            return command_class(actor, **(data or {}))
        except TypeError as e:
            raise InvalidRequest(f"Bad arguments for {command_name}: {e}")


# ============================================================================
# COMMAND PROCESSOR
# ============================================================================

class CommandProcessor:
    """
    Processes commands with:
    - Argument validation
    - The host lock around mutating commands
    - Command history
    """

    def __init__(
        self,
        service: ChargingService,
        sweep: ReminderSweep,
        lock: Optional[Lock] = None
    ):
        self.context = CommandContext(service=service, sweep=sweep)
        self.lock = lock or InProcessLock()
        self.logger = logging.getLogger(self.__class__.__name__)
        self.command_history: List[Command] = []
        self.max_history_size = 1000

    def process(self, command: Command) -> BaseDTO:
        """
        Process a command

        Returns: the command's result DTO
        Raises: whatever the command raised, after logging it
        """
        is_valid, errors = command.validate()
        if not is_valid:
            raise InvalidRequest(" ".join(errors))

        self.logger.info(f"Processing command: {command.get_description()}")
        try:
            if command.mutating:
                with self.lock:
                    result = command.execute(self.context)
            else:
                result = command.execute(self.context)
        except Exception as e:
            self.logger.warning(f"{command.get_description()} failed: {e}")
            raise

        command.executed_at = datetime.now()
        self._add_to_history(command)
        return result

    def start_sweeps(self, trigger: PeriodicTrigger) -> None:
        """Run the reminder sweep on every trigger tick"""
        trigger.start(lambda: self.process(SendRemindersCommand()))

    def get_history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        history = self.command_history.copy()
        if limit:
            history = history[-limit:]
        return [cmd.to_dict() for cmd in history]

    def _add_to_history(self, command: Command):
        self.command_history.append(command)
        if len(self.command_history) > self.max_history_size:
            self.command_history = self.command_history[-self.max_history_size:]
