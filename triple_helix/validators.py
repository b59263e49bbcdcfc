"""Validation utilities for fetched content and persisted scheduling state."""
from __future__ import annotations

import re
from typing import Iterable, List, Sequence

from loguru import logger

from .domain import DEFAULT_SKIP_NUMBER, SKIP_SEQUENCE
from .errors import CorruptStateError
from .models import MAX_DISTRACTOR_LEVEL, MIN_DISTRACTOR_LEVEL, TUBE_INDICES, Question, Stitch


FORBIDDEN_PATTERNS = (
    re.compile(r"\bTODO\b", re.IGNORECASE),
    re.compile(r"\bTBD\b", re.IGNORECASE),
    re.compile(r"lorem ipsum", re.IGNORECASE),
    re.compile(r"\?{3,}"),
)


class ValidationError(ValueError):
    """Raised when fetched content fails validation."""


def _assert_forbidden_patterns(text: str, context: str) -> None:
    for pattern in FORBIDDEN_PATTERNS:
        if pattern.search(text):
            raise ValidationError(f"Forbidden pattern detected in {context}: '{pattern.pattern}'")


def _validate_question(question: Question, stitch_id: str) -> None:
    if not question.prompt.strip():
        raise ValidationError(f"Question {question.id} in {stitch_id} has an empty prompt")
    if not question.correct_answer.strip():
        raise ValidationError(f"Question {question.id} in {stitch_id} has an empty answer")
    _assert_forbidden_patterns(question.prompt, "question prompt")
    for level, distractor in question.distractors.items():
        if distractor.strip() == question.correct_answer.strip():
            raise ValidationError(
                f"Distractor L{level} of question {question.id} repeats the correct answer"
            )


def validate_stitch(stitch: Stitch) -> None:
    """Validate a stitch received from the network before caching it."""

    if not stitch.id.strip():
        raise ValidationError("Stitch ids must be non-empty")
    if not stitch.title.strip():
        raise ValidationError(f"Stitch {stitch.id} has an empty title")
    if not stitch.questions:
        raise ValidationError(f"Stitch {stitch.id} has no questions")
    _assert_forbidden_patterns(stitch.title, "stitch title")

    seen_ids = set()
    for question in stitch.questions:
        if question.id in seen_ids:
            raise ValidationError(f"Duplicate question identifier detected: {question.id}")
        seen_ids.add(question.id)
        _validate_question(question, stitch.id)


def filter_valid_stitches(requested_ids: Sequence[str], stitches: Iterable[Stitch]) -> List[Stitch]:
    """Keep only requested stitches that pass validation; the rest count as missing."""

    wanted = set(requested_ids)
    accepted: List[Stitch] = []
    for stitch in stitches:
        if stitch.id not in wanted:
            continue
        try:
            validate_stitch(stitch)
        except ValidationError as exc:
            logger.warning(f"Dropping invalid stitch {stitch.id}: {exc}")
            continue
        accepted.append(stitch)
    return accepted


def _assert_position_record(record: dict, tube_key: str) -> None:
    if not record.get("stitch_id"):
        raise CorruptStateError(f"Tube {tube_key} holds a position without a stitch id")
    try:
        skip_number = int(record.get("skip_number", DEFAULT_SKIP_NUMBER))
        level = int(record.get("distractor_level", MIN_DISTRACTOR_LEVEL))
        int(record["position"])
        perfect_count = int(record.get("perfect_completion_count", 0))
    except (KeyError, TypeError, ValueError) as exc:
        raise CorruptStateError(f"Tube {tube_key} holds a malformed position record: {record!r}") from exc
    if skip_number < 0:
        raise CorruptStateError(f"Negative skip number {skip_number} for stitch {record['stitch_id']}")
    if skip_number not in SKIP_SEQUENCE:
        raise CorruptStateError(f"Skip number {skip_number} for stitch {record['stitch_id']} is not in {SKIP_SEQUENCE}")
    if level < MIN_DISTRACTOR_LEVEL or level > MAX_DISTRACTOR_LEVEL:
        raise CorruptStateError(f"Distractor level {level} for stitch {record['stitch_id']} is out of range")
    if perfect_count < 0:
        raise CorruptStateError(f"Negative perfect completion count for stitch {record['stitch_id']}")


def validate_tube_state_payload(payload: dict) -> None:
    """Reject persisted state that cannot be repaired without losing the schedule."""

    if not isinstance(payload, dict):
        raise CorruptStateError("Persisted tube state must be a mapping")
    try:
        active = int(payload.get("active_tube_index", 1))
        cycle_count = int(payload.get("cycle_count", 0))
    except (TypeError, ValueError) as exc:
        raise CorruptStateError("Persisted tube state has non-numeric counters") from exc
    if active not in TUBE_INDICES:
        raise CorruptStateError(f"Active tube index {active} is not one of {TUBE_INDICES}")
    if cycle_count < 0:
        raise CorruptStateError(f"Negative cycle count {cycle_count}")

    tubes = payload.get("tubes") or {}
    if not isinstance(tubes, dict):
        raise CorruptStateError("Persisted tubes must be a mapping of tube index to tube")
    for key, tube_payload in tubes.items():
        try:
            tube_index = int(key)
        except (TypeError, ValueError) as exc:
            raise CorruptStateError(f"Invalid tube key {key!r}") from exc
        if tube_index not in TUBE_INDICES:
            raise CorruptStateError(f"Tube index {tube_index} is not one of {TUBE_INDICES}")
        seen_ids = set()
        for record in tube_payload.get("positions") or []:
            _assert_position_record(record, str(key))
            if record["stitch_id"] in seen_ids:
                raise CorruptStateError(f"Stitch {record['stitch_id']} appears twice in tube {key}")
            seen_ids.add(record["stitch_id"])


__all__ = [
    "ValidationError",
    "filter_valid_stitches",
    "validate_stitch",
    "validate_tube_state_payload",
]
