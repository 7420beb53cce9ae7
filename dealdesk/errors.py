from __future__ import annotations

from typing import Any


class DealDeskError(Exception):
    """Base error for deal and document workflow failures.

    Each subclass carries a stable ``code`` and the HTTP status the API layer
    maps it to. ``details`` is passed through to the error envelope unchanged.
    """

    code = "DEALDESK_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class NotFoundError(DealDeskError):
    """Referenced deal, document, step, signature or task does not exist (or is not visible)."""

    code = "NOT_FOUND"
    status_code = 404


class PreconditionFailed(DealDeskError):
    """A required gate is not met, for example KYC not verified or no documents present."""

    code = "PRECONDITION_FAILED"
    status_code = 409


class InvalidArgument(DealDeskError):
    """Caller supplied a stage, status or step type outside the recognized values."""

    code = "INVALID_ARGUMENT"
    status_code = 422


class InvalidState(DealDeskError):
    """Operation attempted on an entity whose current state forbids it."""

    code = "INVALID_STATE"
    status_code = 409


class MismatchError(DealDeskError):
    """A child record was addressed through the wrong parent."""

    code = "MISMATCH"
    status_code = 422


class CollaboratorFailure(DealDeskError):
    """An external collaborator (AI completion, blob storage, archive) failed."""

    code = "COLLABORATOR_FAILURE"
    status_code = 502

    def __init__(self, collaborator: str, message: str, details: Any = None) -> None:
        self.collaborator = collaborator
        super().__init__(message, details)
