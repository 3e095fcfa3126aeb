from __future__ import annotations


class StepLedgerError(RuntimeError):
    """Raised when session-state operations fail."""


class SessionNotFoundError(StepLedgerError):
    """Raised when an operation requires an active session and none exists."""


class StepNotFoundError(StepLedgerError):
    """Raised when a step id does not exist in the active session."""


class StepTransitionError(StepLedgerError):
    """Raised when a step status change is not allowed."""


class LockAcquisitionError(StepLedgerError):
    """Raised when the session lock cannot be acquired."""
