"""Error taxonomy for the scheduler, resolver and session layers."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List


class TripleHelixError(Exception):
    """Base class for every error raised by this package."""


class EmptyTubeError(TripleHelixError):
    """Raised when a tube has no seeded positions."""

    def __init__(self, tube_index: int) -> None:
        super().__init__(f"Tube {tube_index} has no stitches; seed it from the manifest")
        self.tube_index = tube_index


class UnknownStitchError(TripleHelixError):
    """Raised when a completion names a stitch the tube does not hold."""

    def __init__(self, tube_index: int, stitch_id: str) -> None:
        super().__init__(f"Stitch {stitch_id} does not exist in tube {tube_index}")
        self.tube_index = tube_index
        self.stitch_id = stitch_id


class CorruptStateError(TripleHelixError):
    """Raised for persisted state that cannot be repaired safely."""


class ContentUnavailableError(TripleHelixError):
    """Raised internally when a resolution tier cannot produce a stitch."""


class ContentFetchError(TripleHelixError):
    """Raised by content fetchers when a batch request fails."""


class TransitionInProgressError(TripleHelixError):
    """Raised when a completion arrives before the previous one settled."""


@dataclass
class StructuralCorruption:
    """Report of a tube whose positions had to be re-normalized."""

    tube_index: int
    reason: str
    positions_before: List[int] = field(default_factory=list)
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


__all__ = [
    "ContentFetchError",
    "ContentUnavailableError",
    "CorruptStateError",
    "EmptyTubeError",
    "StructuralCorruption",
    "TransitionInProgressError",
    "TripleHelixError",
    "UnknownStitchError",
]
