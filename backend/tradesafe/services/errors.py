from __future__ import annotations


class CoreError(Exception):
    """Base of every error the order/escrow/dispute core reports to callers."""

    code = "CORE_ERROR"
    http_status = 500

    def __init__(self, message: str = "", *, code: str | None = None, **detail):
        super().__init__(message or self.code)
        if code:
            self.code = code
        self.message = message or self.code
        self.detail = detail

    def to_dict(self) -> dict:
        body = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.http_status),
        }
        if self.detail:
            body["detail"] = self.detail
        return body


class ValidationError(CoreError):
    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(ValidationError):
    code = "NOT_FOUND"
    http_status = 404


class PermissionDenied(ValidationError):
    code = "FORBIDDEN"
    http_status = 403


class ConflictError(CoreError):
    """Precondition failed: wrong current status, lost race, insufficient funds."""

    code = "CONFLICT"
    http_status = 409


class ExternalDependencyError(CoreError):
    """Processor or fulfillment collaborator unreachable; safe to retry."""

    code = "EXTERNAL_DEPENDENCY_FAILED"
    http_status = 502


class InvariantViolation(CoreError):
    """A bookkeeping invariant does not hold. Indicates a bug; never user-facing."""

    code = "INVARIANT_VIOLATION"
    http_status = 500

    # set once the affected wallet/order has been frozen or halted
    contained: dict | None = None
