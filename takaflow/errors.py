"""Transfer and authorization error taxonomy."""

from typing import Optional


class TransferError(Exception):
    """Base class for transfer failures reported to the caller."""

    status_code = 500
    retriable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TransferError):
    """Raised when the request itself is malformed (e.g. a non-positive amount)."""

    status_code = 400


class ReceiverNotEligible(TransferError):
    """Raised when the receiver is unknown, not active, or not a customer."""

    status_code = 404


class InvalidCredential(TransferError):
    """Raised when the supplied PIN does not match the caller's PIN."""

    status_code = 401


class SelfTransferDenied(TransferError):
    """Raised when sender and receiver are the same account."""

    status_code = 405


class InsufficientBalance(TransferError):
    """Raised when the sender cannot cover the amount plus fee."""

    status_code = 406


class TransferFailed(TransferError):
    """
    Raised when the unit of work could not commit.

    Nothing was applied, so the caller may retry.
    """

    status_code = 500
    retriable = True

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class AuthError(Exception):
    """Raised by the authorization gate when a caller cannot be identified."""

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
