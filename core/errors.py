"""
core/errors.py -- Typed error hierarchy for the registry.

Every failure that crosses a layer boundary is one of these classes. The
HTTP layer maps each class to a status code and renders the standard error
envelope; nothing below api/ knows about HTTP.

  ValidationFailed      400  malformed input, no security event
  AuthenticationFailed  401  bad credentials, unknown email, invalid key
  AccountPending        403  correct credentials, approval outstanding
  AuthorizationDenied   403  wrong role, missing permission, blocked IP
  NotFound              404
  Conflict              409
  AccountLocked         429  lockout window active
  InfrastructureError   500  store or provider failure

`reason` is internal detail for logs and audit entries. It is never rendered
to the client -- `message` is the only text that leaves the process.

Layer rule: core/ is the kernel. No imports from api/, auth/, audit/, or cache/.
"""

from __future__ import annotations


class RegistryError(Exception):
    status_code: int = 500
    code: str = "internal_error"
    message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, *, code: str | None = None, reason: str | None = None) -> None:
        self.message = message or self.message
        self.code = code or self.code
        self.reason = reason
        super().__init__(self.message)

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationFailed(RegistryError):
    status_code = 400
    code = "validation_error"
    message = "Request validation failed."


class AuthenticationFailed(RegistryError):
    status_code = 401
    code = "unauthorized"
    message = "Authentication required."


class AccountPending(RegistryError):
    status_code = 403
    code = "account_pending"
    message = "Your account is pending approval. Please wait for an administrator to activate your account."


class AuthorizationDenied(RegistryError):
    status_code = 403
    code = "forbidden"
    message = "Access denied."


class NotFound(RegistryError):
    status_code = 404
    code = "not_found"
    message = "Resource not found."


class Conflict(RegistryError):
    status_code = 409
    code = "conflict"
    message = "Request conflicts with the current state of the resource."


class AccountLocked(RegistryError):
    status_code = 429
    code = "account_locked"
    message = "Account temporarily locked due to too many failed login attempts. Please try again later."

    def __init__(self, message: str | None = None, *, retry_after: int | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class InfrastructureError(RegistryError):
    status_code = 500
    code = "internal_error"
    message = "An unexpected error occurred."
