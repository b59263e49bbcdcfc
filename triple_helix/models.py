"""Pydantic models for stitch content and the content manifest."""
from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


MIN_DISTRACTOR_LEVEL = 1
MAX_DISTRACTOR_LEVEL = 5
TUBE_INDICES = (1, 2, 3)


def _normalize_level(key) -> int:
    text = str(key).strip().upper()
    if text.startswith("L"):
        text = text[1:]
    try:
        level = int(text)
    except ValueError:
        raise ValueError(f"Invalid distractor level key: {key!r}") from None
    if level < MIN_DISTRACTOR_LEVEL or level > MAX_DISTRACTOR_LEVEL:
        raise ValueError(f"Distractor level {level} is outside {MIN_DISTRACTOR_LEVEL}..{MAX_DISTRACTOR_LEVEL}")
    return level


class Question(BaseModel):
    """A single drill question with distractors keyed by difficulty level."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    prompt: str = Field(validation_alias=AliasChoices("prompt", "text"))
    correct_answer: str = Field(
        validation_alias=AliasChoices("correctAnswer", "correct_answer"),
        serialization_alias="correctAnswer",
    )
    distractors: Dict[int, str] = Field(default_factory=dict)

    @field_validator("distractors", mode="before")
    @classmethod
    def normalize_distractors(cls, value):
        if value is None:
            return {}
        return {_normalize_level(key): text for key, text in dict(value).items()}

    def distractor_for(self, level: int) -> Optional[str]:
        """Return the distractor at ``level`` or the hardest one below it."""

        for candidate in range(min(level, MAX_DISTRACTOR_LEVEL), MIN_DISTRACTOR_LEVEL - 1, -1):
            if candidate in self.distractors:
                return self.distractors[candidate]
        return None


class Stitch(BaseModel):
    """Immutable learning content for one stitch."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    thread_id: str = Field(
        validation_alias=AliasChoices("threadId", "thread_id"),
        serialization_alias="threadId",
    )
    title: str
    body: str = Field(default="", validation_alias=AliasChoices("body", "content"))
    order: int = 0
    questions: Tuple[Question, ...] = ()

    @field_validator("questions", mode="before")
    @classmethod
    def coerce_questions(cls, value):
        return tuple(value or ())

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class StitchReference(BaseModel):
    """Manifest entry pointing at a stitch within a thread."""

    model_config = ConfigDict(frozen=True)

    id: str
    order: int
    title: Optional[str] = None


class ThreadManifest(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    stitches: List[StitchReference] = Field(default_factory=list)

    def ordered(self) -> List[StitchReference]:
        return sorted(self.stitches, key=lambda reference: reference.order)


class TubeManifest(BaseModel):
    model_config = ConfigDict(frozen=True)

    threads: Dict[str, ThreadManifest] = Field(default_factory=dict)


class ManifestStats(BaseModel):
    tube_count: int
    thread_count: int
    stitch_count: int


class ContentManifest(BaseModel):
    """Versioned, read-only index of stitches per tube and thread."""

    model_config = ConfigDict(frozen=True)

    version: int
    generated: Optional[str] = None
    tubes: Dict[int, TubeManifest] = Field(default_factory=dict)

    @field_validator("tubes")
    @classmethod
    def validate_tube_keys(cls, value: Dict[int, TubeManifest]) -> Dict[int, TubeManifest]:
        for tube_index in value:
            if tube_index not in TUBE_INDICES:
                raise ValueError(f"Manifest tube index {tube_index} is not one of {TUBE_INDICES}")
        return value

    @model_validator(mode="after")
    def validate_unique_stitches(self) -> "ContentManifest":
        seen = set()
        for tube in self.tubes.values():
            for thread in tube.threads.values():
                for reference in thread.stitches:
                    if reference.id in seen:
                        raise ValueError(f"Stitch {reference.id} appears more than once in the manifest")
                    seen.add(reference.id)
        return self

    def primary_thread(self, tube_index: int) -> Optional[str]:
        tube = self.tubes.get(tube_index)
        if tube is None or not tube.threads:
            return None
        return sorted(tube.threads)[0]

    def ordered_stitches(self, tube_index: int, thread_id: Optional[str] = None) -> List[StitchReference]:
        tube = self.tubes.get(tube_index)
        if tube is None:
            return []
        thread_id = thread_id or self.primary_thread(tube_index)
        thread = tube.threads.get(thread_id) if thread_id else None
        if thread is None:
            return []
        return thread.ordered()

    def locate(self, stitch_id: str) -> Optional[Tuple[int, str]]:
        for tube_index, tube in self.tubes.items():
            for thread_id, thread in tube.threads.items():
                if any(reference.id == stitch_id for reference in thread.stitches):
                    return tube_index, thread_id
        return None

    def upcoming(self, tube_index: int, from_stitch_id: str, window: int) -> List[str]:
        """Return up to ``window`` stitch ids following ``from_stitch_id`` in canonical order."""

        if window <= 0:
            return []
        location = self.locate(from_stitch_id)
        if location is None or location[0] != tube_index:
            return []
        ordered = [reference.id for reference in self.ordered_stitches(tube_index, location[1])]
        start = ordered.index(from_stitch_id) + 1
        return ordered[start:start + window]

    @property
    def stats(self) -> ManifestStats:
        threads = [thread for tube in self.tubes.values() for thread in tube.threads.values()]
        return ManifestStats(
            tube_count=len(self.tubes),
            thread_count=len(threads),
            stitch_count=sum(len(thread.stitches) for thread in threads),
        )


__all__ = [
    "ContentManifest",
    "ManifestStats",
    "Question",
    "Stitch",
    "StitchReference",
    "ThreadManifest",
    "TubeManifest",
    "MAX_DISTRACTOR_LEVEL",
    "MIN_DISTRACTOR_LEVEL",
    "TUBE_INDICES",
]
