from __future__ import annotations


class LendingError(RuntimeError):
    status_code = 400

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationFailed(LendingError):
    status_code = 400


class TenantNotFound(LendingError):
    status_code = 404


class TenantInactive(LendingError):
    status_code = 409


class ItemNotFound(LendingError):
    status_code = 404


class LoanNotFound(LendingError):
    status_code = 404


class InsufficientQuantity(LendingError):
    status_code = 409


class UnitUnavailable(LendingError):
    status_code = 409


class ItemFaulty(LendingError):
    status_code = 409


class BorrowerOverdue(LendingError):
    status_code = 409


class IllegalTransition(LendingError):
    status_code = 409


class ModeMismatch(IllegalTransition):
    pass


class Unauthorized(LendingError):
    status_code = 401

    def __init__(self, message: str | None = None, retry_after: int | None = None):
        super().__init__(message or "Invalid credential.")
        self.retry_after = retry_after


class Forbidden(LendingError):
    status_code = 403


class OverRelease(LendingError):
    """Releasing would push stock past what the catalog says exists."""

    status_code = 500
