"""Domain errors for checkout and settlement."""
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    MIXED_CURRENCY = "MIXED_CURRENCY"
    INVALID_REQUEST = "INVALID_REQUEST"
    RATE_LIMITED = "RATE_LIMITED"
    UNAUTHORIZED = "UNAUTHORIZED"


class DomainError(Exception):
    code = ErrorCode.INVALID_REQUEST
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class NotFoundError(DomainError):
    code = ErrorCode.NOT_FOUND
    status_code = 404


class InvalidStateError(DomainError):
    code = ErrorCode.INVALID_STATE
    status_code = 409


class LimitExceededError(DomainError):
    code = ErrorCode.LIMIT_EXCEEDED
    status_code = 422


class InsufficientInventoryError(DomainError):
    code = ErrorCode.INSUFFICIENT_INVENTORY
    status_code = 409

    def __init__(self, message: str, ticket_type_id: Optional[str] = None,
                 available: Optional[int] = None):
        super().__init__(message)
        self.ticket_type_id = ticket_type_id
        self.available = available


class MixedCurrencyError(DomainError):
    code = ErrorCode.MIXED_CURRENCY
    status_code = 422


class InvalidRequestError(DomainError):
    code = ErrorCode.INVALID_REQUEST
    status_code = 400


class ProviderUnavailableError(Exception):
    """The payment provider could not be reached; the caller should retry."""


class UnauthorizedError(DomainError):
    code = ErrorCode.UNAUTHORIZED
    status_code = 401
