# File: evpark/domain/config.py
"""
Policy configuration resolved from the flat config table

The config table is a key -> string mapping. PolicyConfig turns it into an
immutable, validated value once per operation so every rule in that
operation sees the same numbers.
"""

from dataclasses import dataclass, field, asdict
from typing import Mapping, Optional, Tuple, Dict, Any
from datetime import datetime, date

from .errors import DataIntegrityError


DEFAULT_CONFIG: Dict[str, str] = {
    "allowed_domain": "",
    "admin_emails": "",
    "reservation_open_hour": "6",
    "reservation_open_minute": "0",
    "reservation_max_per_day": "1",
    "reservation_late_grace_minutes": "30",
    "session_move_grace_minutes": "10",
    "strike_threshold": "2",
    "suspension_business_days": "2",
    "walkup_net_new_window_minutes": "30",
    "walkup_returning_window_minutes": "30",
    "check_in_early_minutes": "10",
    "late_strike_minutes": "30",
}


def _parse_int(mapping: Mapping[str, Any], key: str, minimum: int = 0, maximum: Optional[int] = None) -> int:
    raw = mapping.get(key)
    if raw is None or str(raw).strip() == "":
        raw = DEFAULT_CONFIG[key]
    try:
        value = int(str(raw).strip())
    except ValueError:
        raise DataIntegrityError(f"Config value for {key} must be an integer, got {raw!r}")
    if value < minimum:
        raise DataIntegrityError(f"Config value for {key} must be at least {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise DataIntegrityError(f"Config value for {key} must be at most {maximum}, got {value}")
    return value


@dataclass(frozen=True)
class PolicyConfig:
    """Value Object: booking, walk-up and escalation policies"""
    allowed_domain: str = ""
    admin_emails: Tuple[str, ...] = field(default_factory=tuple)
    reservation_open_hour: int = 6
    reservation_open_minute: int = 0
    reservation_max_per_day: int = 1
    reservation_late_grace_minutes: int = 30
    session_move_grace_minutes: int = 10
    strike_threshold: int = 2
    suspension_business_days: int = 2
    walkup_net_new_window_minutes: int = 30
    walkup_returning_window_minutes: int = 30
    check_in_early_minutes: int = 10
    late_strike_minutes: int = 30

    def __post_init__(self):
        if not 0 <= self.reservation_open_hour <= 23:
            raise DataIntegrityError("Reservation open hour must be between 0 and 23")
        if not 0 <= self.reservation_open_minute <= 59:
            raise DataIntegrityError("Reservation open minute must be between 0 and 59")
        if self.reservation_max_per_day < 1:
            raise DataIntegrityError("Reservation max per day must be at least 1")
        if self.strike_threshold < 1:
            raise DataIntegrityError("Strike threshold must be at least 1")

    @classmethod
    def from_mapping(cls, mapping: Optional[Mapping[str, Any]] = None) -> 'PolicyConfig':
        mapping = mapping or {}
        admins = str(mapping.get("admin_emails") or "")
        return cls(
            allowed_domain=str(mapping.get("allowed_domain") or "").strip().lower().lstrip('@'),
            admin_emails=tuple(
                email.strip().lower() for email in admins.split(',') if email.strip()
            ),
            reservation_open_hour=_parse_int(mapping, "reservation_open_hour", maximum=23),
            reservation_open_minute=_parse_int(mapping, "reservation_open_minute", maximum=59),
            reservation_max_per_day=_parse_int(mapping, "reservation_max_per_day", minimum=1),
            reservation_late_grace_minutes=_parse_int(mapping, "reservation_late_grace_minutes"),
            session_move_grace_minutes=_parse_int(mapping, "session_move_grace_minutes"),
            strike_threshold=_parse_int(mapping, "strike_threshold", minimum=1),
            suspension_business_days=_parse_int(mapping, "suspension_business_days"),
            walkup_net_new_window_minutes=_parse_int(mapping, "walkup_net_new_window_minutes"),
            walkup_returning_window_minutes=_parse_int(mapping, "walkup_returning_window_minutes"),
            check_in_early_minutes=_parse_int(mapping, "check_in_early_minutes"),
            late_strike_minutes=_parse_int(mapping, "late_strike_minutes"),
        )

    def booking_opens_at(self, day: date) -> datetime:
        return datetime(day.year, day.month, day.day, self.reservation_open_hour, self.reservation_open_minute)

    def is_admin_email(self, email: str) -> bool:
        return (email or "").strip().lower() in self.admin_emails

    def allows_email(self, email: str) -> bool:
        if not self.allowed_domain:
            return True
        return (email or "").strip().lower().endswith("@" + self.allowed_domain)

    def to_dict(self) -> Dict[str, Any]:
        """Flattened view used by the board"""
        data = asdict(self)
        data["admin_emails"] = ",".join(self.admin_emails)
        return data
