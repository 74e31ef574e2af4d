"""
Error taxonomy and typed command results.

Components raise these exceptions at the point a rule is violated, before
any state is touched.  The ``HandoverSession`` store catches them at its
boundary and hands them back to callers inside a ``CommandResult``, so a
rejected command never crashes the session.
"""

from __future__ import annotations

from typing import Any, Optional


class HandoverError(Exception):
    """Base class for all handover workflow errors."""

    code = "HANDOVER_ERROR"


class ValidationError(HandoverError, ValueError):
    """Rejected input: empty required text, unknown patient or item."""

    code = "VALIDATION_ERROR"


class PermissionDeniedError(HandoverError, PermissionError):
    """The acting clinician may not perform the requested operation."""

    code = "PERMISSION_DENIED"


class SyncError(HandoverError):
    """A section save failed.  Recoverable by the next edit/save cycle."""

    code = "SYNC_ERROR"


class FinalizeError(HandoverError):
    """The persistence backend rejected or failed a finalization."""

    code = "FINALIZE_ERROR"


class NotReadyError(HandoverError):
    """Finalization attempted while required checklist items are unchecked."""

    code = "NOT_READY"


class AlreadyFinalizedError(HandoverError):
    """The handover was already finalized; confirmation cannot be undone."""

    code = "ALREADY_FINALIZED"


class FinalizeInProgressError(HandoverError):
    """The patient's handover is being finalized; edits wait for the outcome."""

    code = "FINALIZE_IN_PROGRESS"


class StaleEditError(HandoverError):
    """An edit older than the section's latest edit by another clinician."""

    code = "STALE_EDIT"


class InvalidTransitionError(HandoverError):
    """Raised when a document state transition is not permitted."""

    code = "INVALID_TRANSITION"


class CommandResult:
    """Outcome of a store command or collaborator call.

    Exactly one of ``value`` / ``error`` is meaningful: ``ok`` results carry a
    value (possibly ``None``), failed results carry a ``HandoverError``.
    """

    __slots__ = ("ok", "value", "error")

    def __init__(
        self,
        ok: bool,
        value: Any = None,
        error: Optional[HandoverError] = None,
    ) -> None:
        self.ok = ok
        self.value = value
        self.error = error

    @classmethod
    def success(cls, value: Any = None) -> "CommandResult":
        return cls(True, value=value)

    @classmethod
    def failure(cls, error: HandoverError) -> "CommandResult":
        return cls(False, error=error)

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error is not None else None

    def unwrap(self) -> Any:
        """Return the value, or raise the carried error."""
        if not self.ok:
            raise self.error
        return self.value

    def __bool__(self) -> bool:
        return self.ok

    def __repr__(self) -> str:
        if self.ok:
            return f"CommandResult(ok=True, value={self.value!r})"
        return f"CommandResult(ok=False, error={self.error_code}: {self.error})"
