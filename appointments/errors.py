"""
Error taxonomy shared by adapters, the sync orchestrator and the booking guard.

Routers translate these into HTTP errors using ``status_code`` and ``code``.
"""


class AppointmentsError(Exception):
    """Base error for the scheduling core."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__name__
        super().__init__(self.message)

    def to_detail(self) -> dict:
        return {"error": self.code, "message": self.message}


# ── Remote calendar errors ───────────────────────────────────────────────


class AuthExpired(AppointmentsError):
    """Remote platform rejected the access token (401 / invalid grant)."""

    status_code = 401
    code = "auth_expired"


class RemoteUnavailable(AppointmentsError):
    """Transient platform failure: outage, timeout, rate limit."""

    status_code = 503
    code = "remote_unavailable"


class ReauthRequired(AppointmentsError):
    """Refresh failed for good; the connection needs user action."""

    status_code = 401
    code = "reauth_required"


# ── Booking-time conflicts ───────────────────────────────────────────────


class SlotUnavailable(AppointmentsError):
    status_code = 409
    code = "slot_unavailable"


class BookingsDisabled(AppointmentsError):
    status_code = 400
    code = "bookings_disabled"


class EventNotFound(AppointmentsError):
    status_code = 404
    code = "event_not_found"


# ── Request errors ───────────────────────────────────────────────────────


class InvalidInput(AppointmentsError):
    status_code = 400
    code = "invalid_input"


class NotFound(AppointmentsError):
    status_code = 404
    code = "not_found"
