"""
Error Taxonomy Module

Domain exceptions raised by the ledger, catalog, lifecycle and accrual code.
Each carries the HTTP status the API layer translates it to.
"""

from typing import Optional


class CryptoNestError(Exception):
    """Base exception for all domain errors"""
    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        result = {"error": self.error_code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(CryptoNestError, ValueError):
    """Malformed or out-of-range input"""
    status_code = 400
    error_code = "validation_error"


class InvalidAmount(ValidationError):
    """Amount must be strictly positive"""
    error_code = "invalid_amount"


class InsufficientFunds(CryptoNestError):
    """Debit exceeds the available balance"""
    status_code = 400
    error_code = "insufficient_funds"


class AuthenticationError(CryptoNestError):
    """Bearer credential missing, expired or invalid"""
    status_code = 401
    error_code = "authentication_failed"


class PermissionDenied(CryptoNestError):
    """Caller is authenticated but not allowed to perform the action"""
    status_code = 403
    error_code = "permission_denied"


class NotFoundError(CryptoNestError):
    """Referenced user, plan, investment or deposit does not exist"""
    status_code = 404
    error_code = "not_found"


class ConflictError(CryptoNestError):
    """State already resolved, or a concurrent mutation won the race"""
    status_code = 409
    error_code = "conflict"


class IntegrityError(CryptoNestError):
    """
    Data-integrity violation found by the accrual job.

    Never surfaced to users: the job logs it and closes the record.
    """
    error_code = "integrity_error"


class TransientInfraError(CryptoNestError):
    """Storage or identity provider unreachable"""
    status_code = 503
    error_code = "service_unavailable"


class ConfigurationError(CryptoNestError):
    """A collaborator the operation needs was not wired in"""
    status_code = 503
    error_code = "not_configured"
