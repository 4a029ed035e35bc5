from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base error raised by the CRM store, ledger and query services."""

    code = "crm_error"
    status_code = 500

    def __init__(self, message: str, *, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class NotFoundError(CRMError):
    """Referenced entity is absent, or belongs to another hub."""

    code = "not_found"
    status_code = 404


class ConflictError(CRMError):
    """Uniqueness violation on client identity fields, public id or manager email."""

    code = "conflict"
    status_code = 409


class InputValidationError(CRMError):
    code = "validation_error"
    status_code = 422


class UnauthorizedError(CRMError):
    code = "unauthorized"
    status_code = 403


class InfrastructureError(CRMError):
    """The store or the message bus could not be reached."""

    code = "infrastructure_error"
    status_code = 503
