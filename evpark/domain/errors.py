# File: evpark/domain/errors.py
"""
Error taxonomy for the charger policy engine

Every failure raised by the engine is an EVParkError whose message is meant
to be shown to the caller verbatim. The families are:

1. PolicyViolation - the request breaks a booking or walk-up rule
2. AuthorizationError - the acting user lacks the required rights
3. NotFoundError - an id does not resolve, or records do not line up
4. TransientInfrastructureError - the store hiccupped; the sweep may retry
5. DataIntegrityError - stored data is malformed and needs manual repair

Only the reminder sweep catches anything, and only the transient family.
"""


class EVParkError(Exception):
    """Base class for all engine errors"""

    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"code": self.code, "message": self.message}


# ============================================================================
# POLICY VIOLATIONS
# ============================================================================

class PolicyViolation(EVParkError):
    """A booking or walk-up rule forbids the requested action"""
    code = "policy_violation"


class BookingNotOpenYet(PolicyViolation):
    code = "booking_not_open_yet"


class OnlyTodayAllowed(PolicyViolation):
    code = "only_today_allowed"


class DuplicateDailyReservation(PolicyViolation):
    code = "duplicate_daily_reservation"


class SlotTaken(PolicyViolation):
    code = "slot_taken"


class InvalidSlot(PolicyViolation):
    code = "invalid_slot"


class SlotUnavailable(PolicyViolation):
    code = "slot_unavailable"


class CheckInWindowClosed(PolicyViolation):
    code = "check_in_window_closed"


class ChargerReservedByOther(PolicyViolation):
    code = "charger_reserved_by_other"


class WalkUpNotOpen(PolicyViolation):
    code = "walk_up_not_open"


class AlreadyReserved(PolicyViolation):
    code = "already_reserved"


class ChargerInUse(PolicyViolation):
    code = "charger_in_use"


class AlreadyCharging(PolicyViolation):
    code = "already_charging"


class UserSuspended(PolicyViolation):
    code = "user_suspended"


class InvalidTransition(PolicyViolation):
    """Record is not in a state that allows the requested change"""
    code = "invalid_transition"


class InvalidRequest(PolicyViolation):
    """Malformed or missing command arguments"""
    code = "invalid_request"


# ============================================================================
# AUTHORIZATION
# ============================================================================

class AuthorizationError(EVParkError):
    code = "authorization_error"


class AdminRequired(AuthorizationError):
    code = "admin_required"

    def __init__(self, message: str = "Admin access required."):
        super().__init__(message)


class DomainNotAllowed(AuthorizationError):
    code = "domain_not_allowed"


# ============================================================================
# LOOKUPS
# ============================================================================

class NotFoundError(EVParkError):
    code = "not_found"


class ChargerNotFound(NotFoundError):
    code = "charger_not_found"

    def __init__(self, charger_id: str):
        super().__init__(f"Charger not found: {charger_id}")
        self.charger_id = charger_id


class ReservationNotFound(NotFoundError):
    code = "reservation_not_found"

    def __init__(self, reservation_id: str):
        super().__init__(f"Reservation not found: {reservation_id}")
        self.reservation_id = reservation_id


class SessionNotFound(NotFoundError):
    code = "session_not_found"


class SessionChargerMismatch(NotFoundError):
    code = "session_charger_mismatch"


# ============================================================================
# INFRASTRUCTURE AND DATA
# ============================================================================

class TransientInfrastructureError(EVParkError):
    """Storage or network hiccup that is worth retrying"""
    code = "transient_infrastructure_error"


class DataIntegrityError(EVParkError):
    """Malformed config value or corrupt row; never retried"""
    code = "data_integrity_error"
