"""Error taxonomy for rotation and attribution."""

from __future__ import annotations

from typing import Iterable


class RotationError(Exception):
    """Base class for every failure raised by the rotation engine."""

    retryable = False


class TransientRemoteError(RotationError):
    """Network failure, timeout or throttling from the remote catalog."""

    retryable = True


class PermanentValidationError(RotationError):
    """Target media is malformed; raised before any remote call is made."""


class DataIntegrityError(RotationError):
    def __init__(self, message: str, *, phase: str, missing_keys: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.phase = phase
        self.missing_keys = sorted(missing_keys)


class RollbackRequired(DataIntegrityError):
    """VERIFY found the remote catalog out of line with the target state."""

    def __init__(self, message: str, *, missing_keys: Iterable[str] = ()) -> None:
        super().__init__(message, phase="VERIFY", missing_keys=missing_keys)


class ConcurrencyConflict(RotationError):
    """Another invocation already holds the claim on the slot."""


class SlotNotFound(RotationError):
    pass


class EventValidationError(ValueError):
    pass


class RemoteRequestError(RotationError):
    """The catalog rejected a request (auth, user errors); retrying will not help."""
