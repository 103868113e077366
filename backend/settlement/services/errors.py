"""Exceptions raised by the settlement engine.

Every engine operation either succeeds or raises one of these with no state
change.  The API layer maps them to HTTP responses; ``AuditWriteFailure``
never leaves the audit recorder.
"""


class SettlementError(Exception):
    """Base exception for settlement engine errors."""

    code = "SETTLEMENT_ERROR"


class ValidationError(SettlementError):
    """Malformed input: non-positive amounts, bad period format, missing reference."""

    code = "VALIDATION_ERROR"


class NotFoundError(SettlementError):
    """Referenced loan, commission or transaction does not exist."""

    code = "NOT_FOUND"


class InvalidStateTransitionError(SettlementError):
    """Transition not allowed from the current status."""

    code = "INVALID_STATE_TRANSITION"


class DuplicateCommissionError(SettlementError):
    """The loan already has a commission."""

    code = "DUPLICATE_COMMISSION"


class EditLockedError(SettlementError):
    """The loan's commission has left OPEN, so the sale record is frozen."""

    code = "EDIT_LOCKED"


class IntegrityViolationError(SettlementError):
    """Blocked by dependent rows.  ``hint`` names the blocking relationship."""

    code = "INTEGRITY_VIOLATION"

    def __init__(self, message: str, hint: str | None = None):
        super().__init__(message)
        self.hint = hint


class DuplicatePostingError(IntegrityViolationError):
    """A ledger posting with the same idempotency key already exists."""

    code = "DUPLICATE_POSTING"


class AuditWriteFailure(SettlementError):
    """Audit row could not be written.  Logged, never surfaced to callers."""

    code = "AUDIT_WRITE_FAILURE"
