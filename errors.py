class LedgerError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Unauthorized(LedgerError):
    status_code = 401


class NotFound(LedgerError):
    status_code = 404


class InvalidInput(LedgerError, ValueError):
    status_code = 400


class ExternalServiceFailure(LedgerError):
    status_code = 502


class ConsistencyConflict(LedgerError):
    """A concurrent writer changed the row between our read and our write."""

    status_code = 409
