"""Error taxonomy raised by the ticket core."""

from __future__ import annotations


class TicketError(RuntimeError):
    """Base error for ticket core failures."""

    retryable: bool = False


class NotFound(TicketError):
    """Raised when a ticket, equipment record or report does not exist."""


class Forbidden(TicketError):
    """Raised when the actor's role or identity does not permit the action."""


class InvalidTransition(TicketError):
    """Raised when the current status does not permit the requested action."""


class ValidationError(TicketError):
    """Raised when a payload field is missing or malformed."""


class ConflictError(TicketError):
    """Raised when a conditional update lost a race with a concurrent writer."""

    retryable = True


class CapacityError(TicketError):
    """Raised when the code allocator exhausted its attempts."""

    retryable = True


class DuplicateCodeError(TicketError):
    """Raised by a store when a unique code is already taken."""


class StoreError(TicketError):
    """Raised when the persistence layer fails below the store abstraction."""
