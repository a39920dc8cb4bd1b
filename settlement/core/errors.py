"""
Settlement engine exception hierarchy.

Policy rejections (disallowed jurisdiction, missing approvals, missing tax
confirmation) are *not* exceptions; they are returned as typed results with a
reason code. Everything below is raised to the caller.
"""

from __future__ import annotations

from typing import Any


class ErrorCodes:
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"
    COMPANY_INACTIVE = "COMPANY_INACTIVE"
    LOCK_UNAVAILABLE = "LOCK_UNAVAILABLE"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    RECIPIENT_INACTIVE = "RECIPIENT_INACTIVE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    MALFORMED_EVENT = "MALFORMED_EVENT"
    NOT_FOUND = "NOT_FOUND"


class SettlementError(Exception):
    code = "SETTLEMENT_ERROR"
    http_status = 500

    def __init__(self, message: str, *, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)


class InvariantViolation(SettlementError):
    """Fatal: aborts the surrounding transaction, nothing is partially committed."""

    code = ErrorCodes.INVARIANT_VIOLATION
    http_status = 422


class CompanyInactiveError(InvariantViolation):
    code = ErrorCodes.COMPANY_INACTIVE

    def __init__(self, company_id: int):
        super().__init__(
            f"Should not generate batch for inactive company {company_id}",
            context={"company_id": company_id},
        )
        self.company_id = company_id


class LockUnavailableError(SettlementError):
    code = ErrorCodes.LOCK_UNAVAILABLE
    http_status = 503


class LockTimeoutError(SettlementError):
    """Retry budget exhausted; safe for an operator to re-run."""

    code = ErrorCodes.LOCK_TIMEOUT
    http_status = 409

    def __init__(self, key: str, attempts: int):
        super().__init__(
            f"failed to acquire lock on '{key}'", context={"key": key, "attempts": attempts}
        )
        self.key = key
        self.attempts = attempts


class ProviderError(SettlementError):
    code = ErrorCodes.PROVIDER_ERROR
    http_status = 502

    def __init__(
        self,
        message: str,
        *,
        step: str | None = None,
        payment_id: int | None = None,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        ctx = dict(context or {})
        ctx.update({"step": step, "payment_id": payment_id, "status_code": status_code})
        super().__init__(message, context=ctx)
        self.step = step
        self.payment_id = payment_id
        self.status_code = status_code


class InsufficientBalanceError(ProviderError):
    code = ErrorCodes.INSUFFICIENT_BALANCE


class RecipientInactiveError(ProviderError):
    code = ErrorCodes.RECIPIENT_INACTIVE


class InvalidTransitionError(SettlementError):
    code = ErrorCodes.INVALID_TRANSITION
    http_status = 409


class MalformedEventError(SettlementError):
    code = ErrorCodes.MALFORMED_EVENT
    http_status = 400


class NotFoundError(SettlementError):
    code = ErrorCodes.NOT_FOUND
    http_status = 404
