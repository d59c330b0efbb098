from __future__ import annotations


class SessionCoordinationError(Exception):
    """Base class for unit-session coordination failures.

    ``code`` is the stable identifier surfaced to API consumers.
    """

    code = "SESSION_COORDINATION_ERROR"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)


class UnitOccupiedError(SessionCoordinationError):
    code = "UNIT_OCCUPIED"


class HandoverNotOpenError(SessionCoordinationError):
    code = "HANDOVER_NOT_OPEN"


class SlotTakenError(SessionCoordinationError):
    code = "HANDOVER_SLOT_TAKEN"


class PermissionDeniedError(SessionCoordinationError):
    code = "PERMISSION_DENIED"

    def __init__(self, reason: str = "PERMISSION_DENIED", message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or reason)


class StaleSessionError(SessionCoordinationError):
    code = "STALE_SESSION"


class StoreUnavailableError(SessionCoordinationError):
    code = "STORE_UNAVAILABLE"


class ConflictError(Exception):
    """Conditional store write rejected by its predicate."""


class NotFoundError(KeyError):
    """Store row does not exist."""
