"""
Ledger error kinds.

Every error carries the HTTP status it maps to; server.py renders them as
{"success": false, "message": ..., "status_code": ...}.
"""


class LedgerError(Exception):
    """Base class for errors raised by the ledger core"""
    status_code = 400

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFoundError(LedgerError):
    """Resource absent, or not owned by the acting user"""
    status_code = 404


class InvalidInputError(LedgerError):
    """Malformed identifier, non-positive amount, missing field"""
    status_code = 400


class InvalidStateError(LedgerError):
    """Party category / transaction type mismatch and similar state conflicts"""
    status_code = 400


class ConflictError(InvalidStateError):
    """Project code or party name collision"""
    status_code = 409


class UnauthorizedError(LedgerError):
    status_code = 401
