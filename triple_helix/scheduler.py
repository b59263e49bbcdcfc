"""Triple Helix tube scheduler.

Three tubes are cycled round-robin. Each tube is an ordered queue of
stitch positions; the stitch at position 0 is the one in play. After a
completion the stitch is re-slotted ``skip_number`` places back, so it is
not seen again until that many other stitches of the same tube have been
shown. The scheduler only ever handles stitch ids, never content.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from loguru import logger

from .domain import (
    DEFAULT_DISTRACTOR_LEVEL,
    DEFAULT_SKIP_NUMBER,
    MAX_COMPLETION_HISTORY,
    SKIP_SEQUENCE,
    CompletionRecord,
    StitchPosition,
    Tube,
    TubeState,
    next_distractor_level,
    next_skip_number,
)
from .errors import CorruptStateError, EmptyTubeError, StructuralCorruption, UnknownStitchError
from .metrics import MetricsRegistry
from .models import MAX_DISTRACTOR_LEVEL, MIN_DISTRACTOR_LEVEL, TUBE_INDICES, ContentManifest


@dataclass
class CompletionOutcome:
    """Result of ``TubeScheduler.record_completion``."""

    active_tube_index: int
    stitch_id: Optional[str]
    perfect: bool
    completed_position: int
    skip_number: int
    distractor_level: int
    cycle_count: int
    repairs: List[StructuralCorruption] = field(default_factory=list)


def compute_next_schedule(record: StitchPosition, perfect: bool) -> Tuple[int, int, int]:
    """Return the skip number, distractor level and perfect count after a completion."""

    if record.skip_number < 0 or record.skip_number not in SKIP_SEQUENCE:
        raise CorruptStateError(
            f"Stitch {record.stitch_id} has skip number {record.skip_number} outside {SKIP_SEQUENCE}"
        )
    if not MIN_DISTRACTOR_LEVEL <= record.distractor_level <= MAX_DISTRACTOR_LEVEL:
        raise CorruptStateError(
            f"Stitch {record.stitch_id} has distractor level {record.distractor_level} out of range"
        )
    if perfect:
        return (
            next_skip_number(record.skip_number),
            next_distractor_level(record.distractor_level),
            record.perfect_completion_count + 1,
        )
    # distractor level only ratchets up
    return SKIP_SEQUENCE[0], record.distractor_level, record.perfect_completion_count


def reslot(tube: Tube, record: StitchPosition) -> int:
    """Move ``record`` back by its skip number and close the gap it leaves."""

    others = [item for item in tube.sorted_positions() if item is not record]
    for slot, item in enumerate(others):
        item.position = slot
    target = min(record.skip_number, len(tube) - 1)
    for item in others:
        if item.position >= target:
            item.position += 1
    record.position = target
    return target


def normalize_tube(tube: Tube) -> Optional[StructuralCorruption]:
    """Re-number a tube to 0..n-1 if its positions are not a dense permutation.

    Order is preserved by prior position; ties keep their stored order.
    """

    positions = [record.position for record in tube.positions]
    if sorted(positions) == list(range(len(positions))):
        return None
    if len(set(positions)) != len(positions):
        reason = "duplicate positions"
    elif 0 not in positions:
        reason = "missing active slot"
    else:
        reason = "gap in positions"
    for slot, record in enumerate(sorted(tube.positions, key=lambda item: item.position)):
        record.position = slot
    return StructuralCorruption(tube_index=tube.index, reason=reason, positions_before=positions)


def build_tube(tube_index: int, manifest: ContentManifest) -> Tube:
    """Create a freshly seeded tube from the manifest's canonical order."""

    thread_id = manifest.primary_thread(tube_index)
    references = manifest.ordered_stitches(tube_index, thread_id)
    return Tube(
        index=tube_index,
        thread_id=thread_id,
        positions=[
            StitchPosition(
                stitch_id=reference.id,
                position=slot,
                skip_number=DEFAULT_SKIP_NUMBER,
                distractor_level=DEFAULT_DISTRACTOR_LEVEL,
            )
            for slot, reference in enumerate(references)
        ],
    )


class TubeScheduler:
    """Owns a learner's three tubes and their spaced-repetition ordering."""

    def __init__(
        self,
        state: Optional[TubeState] = None,
        metrics: Optional[MetricsRegistry] = None,
        history_limit: int = MAX_COMPLETION_HISTORY,
    ) -> None:
        if history_limit < 1:
            raise ValueError(f"history_limit must be positive, got {history_limit}")
        self._state = state or TubeState()
        self._metrics = metrics or MetricsRegistry()
        self._history_limit = history_limit
        self._repairs: List[StructuralCorruption] = []

    @classmethod
    def seed_from_manifest(
        cls,
        manifest: ContentManifest,
        user_id: str = "anonymous",
        metrics: Optional[MetricsRegistry] = None,
        history_limit: int = MAX_COMPLETION_HISTORY,
    ) -> "TubeScheduler":
        state = TubeState(
            user_id=user_id,
            tubes={tube_index: build_tube(tube_index, manifest) for tube_index in TUBE_INDICES},
        )
        logger.info(f"Seeded tube state for {user_id} from manifest v{manifest.version}")
        return cls(state, metrics=metrics, history_limit=history_limit)

    @property
    def state(self) -> TubeState:
        return self._state

    @property
    def active_tube_index(self) -> int:
        return self._state.active_tube_index

    @property
    def cycle_count(self) -> int:
        return self._state.cycle_count

    def snapshot(self) -> dict:
        return copy.deepcopy(self._state.to_dict())

    def drain_repairs(self) -> List[StructuralCorruption]:
        repairs, self._repairs = self._repairs, []
        return repairs

    def select_tube(self, tube_index: int) -> None:
        if tube_index not in TUBE_INDICES:
            raise ValueError(f"Tube index must be one of {TUBE_INDICES}, got {tube_index!r}")
        self._state.active_tube_index = tube_index

    def current_stitch(self) -> str:
        return self.current_position().stitch_id

    def current_position(self) -> StitchPosition:
        """Return a copy of the active tube's position-0 record."""

        tube = self._checked_tube(self._state.active_tube_index)
        if not tube.positions:
            raise EmptyTubeError(tube.index)
        for record in tube.positions:
            if record.position == 0:
                return copy.copy(record)
        raise CorruptStateError(f"Tube {tube.index} has no active slot after normalization")

    def get_tube_stitches(self, tube_index: int) -> List[StitchPosition]:
        tube = self._checked_tube(tube_index)
        return [copy.copy(record) for record in tube.sorted_positions()]

    def record_completion(
        self, tube_index: int, stitch_id: str, correct_count: int, total_count: int
    ) -> CompletionOutcome:
        """Apply a completion and advance to the next tube."""

        if correct_count < 0 or total_count < 0 or correct_count > total_count:
            raise ValueError(f"Invalid score {correct_count}/{total_count}")
        repairs_before = len(self._repairs)
        tube = self._checked_tube(tube_index)
        record = tube.find(stitch_id)
        if record is None:
            raise UnknownStitchError(tube_index, stitch_id)

        perfect = correct_count == total_count and total_count > 0
        previous_skip = record.skip_number
        (
            record.skip_number,
            record.distractor_level,
            record.perfect_completion_count,
        ) = compute_next_schedule(record, perfect)
        new_position = reslot(tube, record)
        self._metrics.record_completion(perfect, previous_skip, record.skip_number)
        logger.debug(
            f"Tube {tube_index}: {stitch_id} scored {correct_count}/{total_count}, "
            f"skip {previous_skip}->{record.skip_number}, now at position {new_position}"
        )

        self._state.completions.append(
            CompletionRecord(
                stitch_id=stitch_id,
                tube_index=tube_index,
                correct_count=correct_count,
                total_count=total_count,
                perfect=perfect,
            )
        )
        del self._state.completions[:-self._history_limit]
        self._state.total_points += correct_count
        self._advance_tube(tube_index)
        self._state.touch()

        next_tube = self._checked_tube(self._state.active_tube_index)
        return CompletionOutcome(
            active_tube_index=self._state.active_tube_index,
            stitch_id=next_tube.current_stitch_id,
            perfect=perfect,
            completed_position=new_position,
            skip_number=record.skip_number,
            distractor_level=record.distractor_level,
            cycle_count=self._state.cycle_count,
            repairs=list(self._repairs[repairs_before:]),
        )

    def reseed_tube(self, tube_index: int, manifest: ContentManifest) -> int:
        """Replace an empty tube with a fresh one from the manifest."""

        tube = self._checked_tube(tube_index)
        if tube.positions:
            return 0
        self._state.tubes[tube_index] = build_tube(tube_index, manifest)
        seeded = len(self._state.tubes[tube_index])
        logger.info(f"Re-seeded empty tube {tube_index} with {seeded} stitches")
        return seeded

    def extend_from_manifest(self, manifest: ContentManifest) -> int:
        """Append manifest stitches a tube does not hold yet, keeping existing positions."""

        added = 0
        for tube_index in TUBE_INDICES:
            tube = self._checked_tube(tube_index)
            if tube.thread_id is None:
                tube.thread_id = manifest.primary_thread(tube_index)
            known = {record.stitch_id for record in tube.positions}
            for reference in manifest.ordered_stitches(tube_index, tube.thread_id):
                if reference.id in known:
                    continue
                tube.positions.append(StitchPosition(stitch_id=reference.id, position=len(tube.positions)))
                known.add(reference.id)
                added += 1
        if added:
            logger.info(f"Added {added} new manifest stitches to {self._state.user_id}'s tubes")
            self._state.touch()
        return added

    def _advance_tube(self, completed_tube_index: int) -> None:
        self._state.active_tube_index = (completed_tube_index % len(TUBE_INDICES)) + 1
        if completed_tube_index == TUBE_INDICES[-1]:
            self._state.cycle_count += 1

    def _checked_tube(self, tube_index: int) -> Tube:
        tube = self._state.tube(tube_index)
        report = normalize_tube(tube)
        if report is not None:
            logger.warning(
                f"Repaired tube {tube_index} ({report.reason}): positions {report.positions_before}"
            )
            self._metrics.record_repair(tube_index)
            self._repairs.append(report)
        return tube


__all__ = [
    "CompletionOutcome",
    "TubeScheduler",
    "build_tube",
    "compute_next_schedule",
    "normalize_tube",
    "reslot",
]
