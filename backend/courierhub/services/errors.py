from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Base error for lifecycle/settlement rule violations.

    Rendered by the HTTP layer as ``{"detail", "code", "details", "retryable"}``.
    """

    status_code = 400
    default_code = "domain_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        return {
            "detail": self.message,
            "code": self.code,
            "details": self.details,
            "retryable": self.retryable,
        }


class InvalidTransitionError(DomainError):
    status_code = 409
    default_code = "invalid_transition"

    @classmethod
    def from_check(cls, check) -> "InvalidTransitionError":
        return cls(
            check.error or "invalid transition",
            details={
                "current": check.from_status,
                "requested": check.to_status,
                "allowed": list(check.allowed),
            },
        )


class PreconditionFailedError(DomainError):
    status_code = 422
    default_code = "precondition_failed"


class ConflictError(DomainError):
    status_code = 409
    default_code = "conflict"


class NotFoundError(DomainError):
    status_code = 404
    default_code = "not_found"


class IdempotencyConflictError(DomainError):
    status_code = 409
    default_code = "idempotency_key_reused"


class InvalidPolicyError(DomainError):
    status_code = 422
    default_code = "invalid_commission_policy"


class InconsistentStateError(DomainError):
    status_code = 409
    default_code = "inconsistent_state"


class ForbiddenActorError(DomainError):
    status_code = 403
    default_code = "forbidden_actor"
