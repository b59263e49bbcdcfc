"""Scheduling state shared across the scheduler, coordinator and repositories."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .models import MAX_DISTRACTOR_LEVEL, MIN_DISTRACTOR_LEVEL, TUBE_INDICES


SKIP_SEQUENCE = (1, 3, 5, 10, 25, 100)
DEFAULT_SKIP_NUMBER = 3
DEFAULT_DISTRACTOR_LEVEL = MIN_DISTRACTOR_LEVEL
# Oldest completion records are dropped past this many; total_points keeps the full tally.
MAX_COMPLETION_HISTORY = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StitchPosition:
    """Per-learner scheduling record for one stitch inside a tube."""

    stitch_id: str
    position: int
    skip_number: int = DEFAULT_SKIP_NUMBER
    distractor_level: int = DEFAULT_DISTRACTOR_LEVEL
    perfect_completion_count: int = 0

    @property
    def retired(self) -> bool:
        return self.skip_number == SKIP_SEQUENCE[-1]

    def to_dict(self) -> dict:
        return {
            "stitch_id": self.stitch_id,
            "position": self.position,
            "skip_number": self.skip_number,
            "distractor_level": self.distractor_level,
            "perfect_completion_count": self.perfect_completion_count,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "StitchPosition":
        return cls(
            stitch_id=str(payload["stitch_id"]),
            position=int(payload["position"]),
            skip_number=int(payload.get("skip_number", DEFAULT_SKIP_NUMBER)),
            distractor_level=int(payload.get("distractor_level", DEFAULT_DISTRACTOR_LEVEL)),
            perfect_completion_count=int(payload.get("perfect_completion_count", 0)),
        )


@dataclass
class Tube:
    """One of the three parallel content queues."""

    index: int
    thread_id: Optional[str] = None
    positions: List[StitchPosition] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.positions)

    @property
    def current_stitch_id(self) -> Optional[str]:
        for record in self.positions:
            if record.position == 0:
                return record.stitch_id
        return None

    def sorted_positions(self) -> List[StitchPosition]:
        return sorted(self.positions, key=lambda record: record.position)

    def find(self, stitch_id: str) -> Optional[StitchPosition]:
        for record in self.positions:
            if record.stitch_id == stitch_id:
                return record
        return None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "thread_id": self.thread_id,
            "current_stitch_id": self.current_stitch_id,
            "positions": [record.to_dict() for record in self.sorted_positions()],
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "Tube":
        return cls(
            index=int(payload["index"]),
            thread_id=payload.get("thread_id"),
            positions=[StitchPosition.from_dict(item) for item in payload.get("positions") or []],
        )


@dataclass
class CompletionRecord:
    """History entry for a recorded stitch completion."""

    stitch_id: str
    tube_index: int
    correct_count: int
    total_count: int
    perfect: bool
    completed_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "stitch_id": self.stitch_id,
            "tube_index": self.tube_index,
            "correct_count": self.correct_count,
            "total_count": self.total_count,
            "perfect": self.perfect,
            "completed_at": self.completed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "CompletionRecord":
        return cls(
            stitch_id=str(payload["stitch_id"]),
            tube_index=int(payload["tube_index"]),
            correct_count=int(payload["correct_count"]),
            total_count=int(payload["total_count"]),
            perfect=bool(payload["perfect"]),
            completed_at=datetime.fromisoformat(payload["completed_at"]),
        )


def _empty_tubes() -> Dict[int, Tube]:
    return {index: Tube(index=index) for index in TUBE_INDICES}


@dataclass
class TubeState:
    """Aggregate scheduling state for one learner."""

    user_id: str = "anonymous"
    active_tube_index: int = 1
    tubes: Dict[int, Tube] = field(default_factory=_empty_tubes)
    cycle_count: int = 0
    total_points: int = 0
    completions: List[CompletionRecord] = field(default_factory=list)
    last_updated: datetime = field(default_factory=_utcnow)

    def tube(self, tube_index: int) -> Tube:
        if tube_index not in TUBE_INDICES:
            raise ValueError(f"Tube index must be one of {TUBE_INDICES}, got {tube_index!r}")
        return self.tubes[tube_index]

    def touch(self) -> None:
        self.last_updated = _utcnow()

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "active_tube_index": self.active_tube_index,
            "cycle_count": self.cycle_count,
            "total_points": self.total_points,
            "tubes": {str(index): tube.to_dict() for index, tube in self.tubes.items()},
            "completions": [record.to_dict() for record in self.completions],
            "last_updated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "TubeState":
        """Rebuild state from a persisted payload.

        The payload is validated first; values that would break the
        spaced-repetition schedule raise ``CorruptStateError``.
        """

        from .validators import validate_tube_state_payload

        validate_tube_state_payload(payload)
        tubes = _empty_tubes()
        for key, tube_payload in (payload.get("tubes") or {}).items():
            tube = Tube.from_dict({**tube_payload, "index": int(key)})
            tubes[tube.index] = tube
        last_updated = payload.get("last_updated")
        return cls(
            user_id=str(payload.get("user_id") or "anonymous"),
            active_tube_index=int(payload.get("active_tube_index", 1)),
            tubes=tubes,
            cycle_count=int(payload.get("cycle_count", 0)),
            total_points=int(payload.get("total_points", 0)),
            completions=[CompletionRecord.from_dict(item) for item in payload.get("completions") or []],
            last_updated=datetime.fromisoformat(last_updated) if last_updated else _utcnow(),
        )


def next_skip_number(skip_number: int) -> int:
    """Advance one step along the skip sequence; the terminal value is sticky."""

    index = SKIP_SEQUENCE.index(skip_number)
    return SKIP_SEQUENCE[min(index + 1, len(SKIP_SEQUENCE) - 1)]


def next_distractor_level(level: int) -> int:
    return min(level + 1, MAX_DISTRACTOR_LEVEL)


__all__ = [
    "CompletionRecord",
    "DEFAULT_DISTRACTOR_LEVEL",
    "DEFAULT_SKIP_NUMBER",
    "MAX_COMPLETION_HISTORY",
    "SKIP_SEQUENCE",
    "StitchPosition",
    "Tube",
    "TubeState",
    "next_distractor_level",
    "next_skip_number",
]
