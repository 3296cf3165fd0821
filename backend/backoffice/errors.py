# Overview: Domain error taxonomy shared by services and routes.

"""
Back-office error taxonomy.

Every service raises one of these; routes render them as
{"error": <message>, "kind": <kind>, ...details} with the class status code.

- Quantity guards (InsufficientRemaining / InsufficientStock / InsufficientFunds)
  always carry the requested and the available amount.
- CompensationFailure means ledgers may be inconsistent. It is never raised
  for a failure whose compensation succeeded.
"""

from __future__ import annotations

from decimal import Decimal


class BackofficeError(Exception):
    """Base class for errors surfaced to API callers."""

    kind = "Error"
    status_code = 400

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message, "kind": self.kind}
        for key, value in self.details.items():
            body[key] = str(value) if isinstance(value, Decimal) else value
        return body


class ValidationError(BackofficeError):
    """Missing or malformed input."""
    kind = "ValidationError"


class InvalidState(BackofficeError):
    """Status gate violated."""
    kind = "InvalidState"


class InvalidTransition(InvalidState):
    """Requested status change is not in the transition table."""
    kind = "InvalidTransition"


class _QuantityGuard(BackofficeError):
    def __init__(self, message: str, *, requested, available, **details):
        super().__init__(message, requested=requested, available=available, **details)
        self.requested = requested
        self.available = available


class InsufficientRemaining(_QuantityGuard):
    kind = "InsufficientRemaining"


class InsufficientStock(_QuantityGuard):
    kind = "InsufficientStock"


class InsufficientFunds(_QuantityGuard):
    kind = "InsufficientFunds"


class DuplicateOperation(BackofficeError):
    """Idempotency guard tripped."""
    kind = "DuplicateOperation"
    status_code = 409


class NotFound(BackofficeError):
    kind = "NotFound"
    status_code = 404


class Conflict(BackofficeError):
    """Concurrent mutation of the same row; safe for the caller to retry."""
    kind = "Conflict"
    status_code = 409


class CompensationFailure(BackofficeError):
    """A saga's rollback itself failed. Ledgers need manual reconciliation."""
    kind = "CompensationFailure"
    status_code = 500


class IncompleteDeletion(BackofficeError):
    """A hard delete stopped part-way; the failing step is named."""
    kind = "IncompleteDeletion"
    status_code = 500
