from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Base error for checkout, CRM sync and signup-link operations."""

    code = "domain_error"
    status_code = 500

    def __init__(self, message: str, *, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class PreconditionFailed(DomainError):
    """A state or ordering rule blocks the operation; the caller can fix it and retry."""

    code = "precondition_failed"
    status_code = 409


class NotFound(DomainError):
    """The entity is absent or not owned by the caller."""

    code = "not_found"
    status_code = 404


class Forbidden(DomainError):
    """The caller is authenticated but may not act on this entity."""

    code = "forbidden"
    status_code = 403


class UpstreamError(DomainError):
    """The remote CRM/billing service failed. Safe to retry the whole operation."""

    code = "upstream_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        remote_code: str | None = None,
        remote_status: int | None = None,
        details: Any = None,
    ) -> None:
        self.remote_code = remote_code
        self.remote_status = remote_status
        super().__init__(message, details=details)


class InvalidResponse(DomainError):
    """The remote service answered with data we cannot use."""

    code = "invalid_upstream_response"
    status_code = 502


class Expired(DomainError):
    code = "signup_link_expired"
    status_code = 410


class LimitExceeded(DomainError):
    code = "signup_link_limit_exceeded"
    status_code = 403


class CodeCollision(DomainError):
    code = "signup_code_collision"
    status_code = 503


class ConfigurationError(RuntimeError):
    """Raised at startup when required upstream settings are missing."""

    def __init__(self, setting: str) -> None:
        self.setting = setting
        super().__init__(f"Missing required upstream configuration: {setting}")
