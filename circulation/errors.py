"""Error taxonomy for the circulation core.

Domain failures derive from ``CirculationError`` and carry the HTTP status and
short code the API layer reports. ``StorageError`` sits outside that
hierarchy: it means the database could not be reached, not that a rule was
broken.
"""


class CirculationError(Exception):
    status_code = 400
    code = "bad_request"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(CirculationError):
    status_code = 404
    code = "not_found"


class ForbiddenError(CirculationError):
    status_code = 403
    code = "forbidden"


class UnauthorizedError(CirculationError):
    status_code = 401
    code = "unauthorized"


class InvalidInputError(CirculationError):
    status_code = 400
    code = "invalid_input"


class ConflictError(CirculationError):
    status_code = 409
    code = "conflict"


class OutOfStockError(ConflictError):
    """No copy could be taken off the shelf."""

    code = "out_of_stock"


class AlreadyReturnedError(ConflictError):
    code = "already_returned"


class DuplicateReservationError(ConflictError):
    code = "duplicate_reservation"


class InvalidTransitionError(ConflictError):
    """Reservation status change not allowed from the current state."""

    code = "invalid_transition"


class StorageError(Exception):
    """The storage layer failed (connection lost, database locked, ...)."""
