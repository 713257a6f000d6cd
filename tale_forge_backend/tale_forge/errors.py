"""Custom exceptions for the Tale Forge segment pipeline."""

from typing import Any, Optional

from .models import ErrorKind


class TaleForgeError(Exception):
    """Base exception for the segment pipeline."""

    kind: Optional[ErrorKind] = None

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class InsufficientCredits(TaleForgeError):
    """Balance too low at reserve time."""

    kind = ErrorKind.INSUFFICIENT_CREDITS

    def __init__(self, user_id: str, required: int, available: int):
        super().__init__(
            f"Insufficient credits. Required: {required}, Available: {available}",
            {"user_id": user_id},
        )
        self.required = required
        self.available = available


class UnknownReservation(TaleForgeError):
    """Commit/release on a reservation that does not exist or is already finalized."""

    def __init__(self, reservation_id: str, state: Optional[str] = None):
        detail = f" (already {state})" if state else ""
        super().__init__(f"Unknown reservation {reservation_id}{detail}")
        self.reservation_id = reservation_id
        self.state = state


class ConflictingRequest(TaleForgeError):
    """Another request is already generating one of the requested kinds."""

    kind = ErrorKind.CONFLICTING_REQUEST

    def __init__(self, segment_id: str, kinds):
        names = ", ".join(sorted(k.value for k in kinds))
        super().__init__(f"Segment {segment_id} already has {names} in flight")
        self.segment_id = segment_id
        self.kinds = set(kinds)


class MissingPrerequisite(TaleForgeError):
    kind = ErrorKind.MISSING_PREREQUISITE


class InvalidTransition(TaleForgeError):
    pass


class SegmentNotFound(TaleForgeError):
    def __init__(self, segment_id: str):
        super().__init__(f"Segment {segment_id} not found")
        self.segment_id = segment_id


class StaleSegment(TaleForgeError):
    """The stored segment changed since it was read (updated_at mismatch)."""

    def __init__(self, segment_id: str, expected: float, actual: float):
        super().__init__(
            f"Segment {segment_id} was updated concurrently",
            {"expected_updated_at": expected, "actual_updated_at": actual},
        )
        self.segment_id = segment_id


class StorageWriteFailed(TaleForgeError):
    kind = ErrorKind.STORAGE_WRITE_FAILED


class KVError(TaleForgeError):
    """KV read/write failed; the operation was not acknowledged."""

    pass
