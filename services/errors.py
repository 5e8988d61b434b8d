class BookingError(Exception):
    """Base class for errors surfaced synchronously to the caller."""

    code = "BOOKING_ERROR"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class Conflict(BookingError):
    code = "CONFLICT"
    status_code = 409


class InvalidRequest(BookingError):
    code = "INVALID_REQUEST"
    status_code = 400


class PromoInvalid(BookingError):
    code = "PROMO_INVALID"
    status_code = 422

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvalidState(BookingError):
    code = "INVALID_STATE"
    status_code = 409


class NotFound(BookingError):
    code = "NOT_FOUND"
    status_code = 404
