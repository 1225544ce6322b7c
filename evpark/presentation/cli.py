# File: evpark/presentation/cli.py
"""
Command-line host for the charger engine

The CLI plays the host role: it resolves the acting user from flags or the
environment, wires the store, clock, notifier and lock, turns the command
line into a Command, and prints the result as JSON.

Usage:
    evpark <command> [args] [--store URL] [--user EMAIL] [--name NAME] [--admin] [--raw]

Environment:
    EVPARK_STORE      store URL (sqlite:///data/evpark.db, or memory://)
    EVPARK_USER       acting user email
    EVPARK_NAME       acting user display name
    EVPARK_ADMIN      "1" to act as admin
    EVPARK_REDIS_URL  use Redis for the lock and notifications
    EVPARK_LOG_DIR    directory for the log file ("" disables the file)
"""

from typing import Dict, List, Optional, Any, Sequence, Tuple
import argparse
import logging
import os
import sys

from ..domain.errors import EVParkError
from ..domain.models import Actor
from ..infrastructure.factories import create_store
from ..infrastructure.messaging import LoggingNotifier, RedisNotifier
from ..infrastructure.runtime import SystemClock, InProcessLock, RedisLock, IntervalTrigger
from ..application.charging_service import ChargingService
from ..application.commands import CommandFactory, CommandProcessor
from ..application.dtos import BaseDTO
from ..application.sweep import ReminderSweep


class AppConfig:
    """Application configuration"""
    APP_NAME = "EV Charging CLI"
    DEFAULT_STORE = "sqlite:///data/evpark.db"
    DEFAULT_USER = "user@example.com"
    DEFAULT_LOG_DIR = "logs"
    LOG_FILE = "evpark.log"
    LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


# Positional arguments per command, in order: (attribute, metavar)
COMMAND_ARGUMENTS: Dict[str, List[Tuple[str, str]]] = {
    "init": [],
    "seed": [],
    "board": [],
    "start-session": [("charger_id", "chargerId")],
    "end-session": [("session_id", "sessionId")],
    "end-reservation-session": [("reservation_id", "reservationId")],
    "reserve": [("charger_id", "chargerId"), ("start_time", "startTimeIso")],
    "update-reservation": [
        ("reservation_id", "reservationId"), ("charger_id", "chargerId"), ("start_time", "startTimeIso")
    ],
    "cancel-reservation": [("reservation_id", "reservationId")],
    "check-in": [("reservation_id", "reservationId")],
    "next-slot": [],
    "availability": [],
    "timeline": [("charger_id", "chargerId"), ("day", "dateIso")],
    "calendar": [("start", "startDateIso"), ("days", "days")],
    "send-reminders": [],
    "notify-owner": [("charger_id", "chargerId")],
    "post-message": [("message", "message")],
    "force-end": [("charger_id", "chargerId")],
    "reset-charger": [("charger_id", "chargerId")],
    "config-set": [("key", "key"), ("value", "value")],
    "prop-set": [("key", "key"), ("value", "value")],
}


def setup_logging(verbose: bool = False, log_dir: Optional[str] = None) -> logging.Logger:
    """Setup application logging configuration"""
    if log_dir is None:
        log_dir = os.environ.get("EVPARK_LOG_DIR", AppConfig.DEFAULT_LOG_DIR)

    # stdout carries the JSON result, so console logging goes to stderr
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_dir:
        if not os.path.exists(log_dir):
            os.makedirs(log_dir)
        handlers.append(logging.FileHandler(os.path.join(log_dir, AppConfig.LOG_FILE)))

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=AppConfig.LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    return logging.getLogger("evpark")


def _add_common_flags(parser: argparse.ArgumentParser, with_defaults: bool) -> None:
    """Flags accepted both before and after the command name"""

    def default(value):
        return value if with_defaults else argparse.SUPPRESS

    parser.add_argument("--store", default=default(os.environ.get("EVPARK_STORE", AppConfig.DEFAULT_STORE)),
                        help="Store URL (default: sqlite:///data/evpark.db; memory:// for a throwaway store)")
    parser.add_argument("--user", default=default(os.environ.get("EVPARK_USER", AppConfig.DEFAULT_USER)),
                        help="Acting user email")
    parser.add_argument("--name", default=default(os.environ.get("EVPARK_NAME", "")),
                        help="Acting user name (derived from the email when omitted)")
    parser.add_argument("--admin", action="store_true",
                        default=default(os.environ.get("EVPARK_ADMIN") == "1"),
                        help="Act as an admin")
    parser.add_argument("--raw", action="store_true", default=default(False), help="Print compact JSON")
    parser.add_argument("--verbose", "-v", action="store_true", default=default(False),
                        help="Log progress to stderr")
    parser.add_argument("--redis-url", default=default(os.environ.get("EVPARK_REDIS_URL")),
                        help="Redis URL for the shared lock and notifications")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="evpark", description=AppConfig.APP_NAME)
    _add_common_flags(parser, with_defaults=True)

    subparsers = parser.add_subparsers(dest="command", metavar="<command>")
    for name, arguments in COMMAND_ARGUMENTS.items():
        subparser = subparsers.add_parser(name)
        _add_common_flags(subparser, with_defaults=False)
        for attribute, metavar in arguments:
            # Optional at parse time; the command reports what is missing
            subparser.add_argument(attribute, metavar=metavar, nargs="?")
        if name == "send-reminders":
            subparser.add_argument("--every", type=float, metavar="SECONDS",
                                   help="Keep running a sweep every SECONDS")
    return parser


class EVParkApplication:
    """Wires the engine components for one CLI invocation"""

    def __init__(self, store_url: str, redis_url: Optional[str] = None):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.store_url = store_url
        self.redis_url = redis_url
        self.setup_components()

    def setup_components(self):
        """Initialize all application components with dependency injection"""
        self.store = create_store(self.store_url)
        self.store.initialize()
        self.clock = SystemClock()

        if self.redis_url:
            self.notifier = RedisNotifier(self.redis_url)
            self.lock = RedisLock(self.redis_url)
        else:
            self.notifier = LoggingNotifier()
            self.lock = InProcessLock()

        self.service = ChargingService(self.store, self.clock, self.notifier)
        self.sweep = ReminderSweep(self.store, self.clock, self.notifier)
        self.processor = CommandProcessor(self.service, self.sweep, self.lock)
        self.logger.info(f"Components ready (store {self.store_url})")

    def run(self, command_name: str, actor: Actor, data: Dict[str, Any]) -> BaseDTO:
        command = CommandFactory.create_command(command_name, actor, data)
        return self.processor.process(command)

    def run_sweeps_forever(self, interval_seconds: float) -> None:
        trigger = IntervalTrigger(interval_seconds)
        self.processor.start_sweeps(trigger)
        try:
            trigger.wait()
        except KeyboardInterrupt:
            self.logger.info("Interrupted")
        finally:
            trigger.stop()


def print_result(result: BaseDTO, raw: bool = False) -> None:
    print(result.to_json() if raw else result.to_json(indent=2))


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point; returns the process exit code"""
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return 0

    try:
        actor = Actor(email=args.user, name=args.name, is_admin=args.admin)
        data = {
            attribute: getattr(args, attribute)
            for attribute, _ in COMMAND_ARGUMENTS[args.command]
        }
        app = EVParkApplication(args.store, args.redis_url)

        if args.command == "send-reminders" and args.every:
            app.run_sweeps_forever(args.every)
            return 0

        result = app.run(args.command, actor, data)
    except (EVParkError, ValueError) as e:
        logger.debug(f"{args.command} failed: {e}", exc_info=True)
        print(str(e), file=sys.stderr)
        return 1

    print_result(result, args.raw)
    return 0


if __name__ == "__main__":
    sys.exit(main())
