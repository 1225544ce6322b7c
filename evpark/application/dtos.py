# File: evpark/application/dtos.py
"""
Data Transfer Objects (DTOs) for the charger board and queries

Output DTOs only: every mutating operation answers with a BoardDTO, and the
read-side queries answer with their own small DTOs.

DTO Principles:
- camelCase aliases on the wire, snake_case in Python
- Absent values are dropped from the serialized form
- ISO-8601 datetimes
- No business logic, only data
"""

from typing import Dict, List, Optional, Any
from datetime import datetime, date
import json

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ============================================================================
# BASE DTO CLASSES
# ============================================================================

class BaseDTO(BaseModel):
    """Base DTO with common functionality"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        use_enum_values=True,
        alias_generator=to_camel,
    )

    def to_dict(self, exclude_none: bool = True, **kwargs) -> Dict[str, Any]:
        """Convert DTO to a JSON-ready dictionary with camelCase keys"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=exclude_none, **kwargs)

    def to_json(self, indent: Optional[int] = None, **kwargs) -> str:
        """Convert DTO to JSON string"""
        return json.dumps(self.to_dict(**kwargs), indent=indent)


class ResultDTO(BaseDTO):
    """Acknowledgement for commands that do not return a board"""
    ok: bool = True
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


# ============================================================================
# BOARD DTOs
# ============================================================================

class ActingUserDTO(BaseDTO):
    email: str
    name: str
    is_admin: bool = False
    is_suspended: bool = False
    suspended_until: Optional[datetime] = None


class SessionDTO(BaseDTO):
    id: str
    charger_id: str
    user_id: str
    user_name: str
    start_time: datetime
    end_time: datetime
    status: str
    active: bool
    overdue: bool
    complete: bool
    overdue_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class ReservationDTO(BaseDTO):
    id: str
    charger_id: str
    charger_name: Optional[str] = None
    user_id: str
    user_name: str
    start_time: datetime
    end_time: datetime
    status: str
    is_mine: bool = False
    check_in_opens_at: Optional[datetime] = None
    check_in_closes_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    no_show_at: Optional[datetime] = None
    session_id: Optional[str] = None


class WalkUpDTO(BaseDTO):
    """Walk-up state of the slot window a charger is currently in"""
    slot_start: datetime
    slot_end: datetime
    tier: str
    net_new_opens_at: datetime
    returning_opens_at: datetime
    all_opens_at: datetime
    is_open: bool
    is_open_to_returning: bool
    is_open_to_all: bool
    user_class: Optional[str] = None
    can_start: bool = False
    reason: Optional[str] = None


class ChargerDTO(BaseDTO):
    id: str
    name: str
    max_minutes: int
    slot_starts: List[str] = Field(default_factory=list)
    status_key: str
    status_label: str
    active_session: Optional[SessionDTO] = None
    active_reservation: Optional[ReservationDTO] = None
    walkup: Optional[WalkUpDTO] = None


class BoardDTO(BaseDTO):
    server_time: datetime
    user: ActingUserDTO
    config: Dict[str, Any] = Field(default_factory=dict)
    reservations: List[ReservationDTO] = Field(default_factory=list)
    chargers: List[ChargerDTO] = Field(default_factory=list)

    def charger(self, charger_id: str) -> Optional[ChargerDTO]:
        for charger in self.chargers:
            if charger.id == charger_id:
                return charger
        return None


# ============================================================================
# QUERY DTOs
# ============================================================================

class SlotDTO(BaseDTO):
    charger_id: str
    charger_name: str
    start_time: datetime
    end_time: datetime
    state: str
    user_name: Optional[str] = None
    reservation_id: Optional[str] = None


class NextSlotDTO(BaseDTO):
    found: bool
    slot: Optional[SlotDTO] = None


class ChargerAvailabilityDTO(BaseDTO):
    charger_id: str
    charger_name: str
    status_key: str
    open_slots_today: int
    next_open_slot: Optional[SlotDTO] = None


class AvailabilitySummaryDTO(BaseDTO):
    server_time: datetime
    total_chargers: int
    free_now: int
    chargers: List[ChargerAvailabilityDTO] = Field(default_factory=list)


class TimelineDTO(BaseDTO):
    charger_id: str
    charger_name: str
    day: date
    slots: List[SlotDTO] = Field(default_factory=list)


class CalendarDayDTO(BaseDTO):
    day: date
    total_slots: int
    open_slots: int
    reserved_slots: int


class CalendarDTO(BaseDTO):
    start_date: date
    days: List[CalendarDayDTO] = Field(default_factory=list)
