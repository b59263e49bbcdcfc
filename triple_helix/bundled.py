"""Content shipped with the client so play can start without a network.

The default manifest lists ten stitches per tube. The first
``BUNDLED_STITCHES_PER_THREAD`` stitches of every thread are bundled in
full; the rest resolve through the persisted cache or the network.
"""
from __future__ import annotations

from typing import Callable, Dict, List, Tuple

from .models import ContentManifest, Question, Stitch


BUNDLED_STITCHES_PER_THREAD = 3

_THREADS = {
    1: (
        "thread-T1-001",
        "Number Facts",
        [
            "Number Recognition",
            "Counting to 5",
            "Counting to 10",
            "Number Sequences",
            "Even and Odd Numbers",
            "Comparing Numbers",
            "Number Bonds to 5",
            "Number Bonds to 10",
            "Place Value: Tens and Ones",
            "Number Facts Review",
        ],
    ),
    2: (
        "thread-T2-001",
        "Basic Operations",
        [
            "Simple Addition",
            "Addition to 10",
            "Simple Subtraction",
            "Subtraction within 10",
            "Addition to 20",
            "Subtraction within 20",
            "Simple Multiplication",
            "Simple Division",
            "Mixed Operations",
            "Basic Operations Review",
        ],
    ),
    3: (
        "thread-T3-001",
        "Problem Solving",
        [
            "Simple Problem Solving",
            "Addition Word Problems",
            "Subtraction Word Problems",
            "Mixed Operation Problems",
            "Money Problems",
            "Time Problems",
            "Measurement Problems",
            "Pattern Problems",
            "Logic Puzzles",
            "Problem Solving Review",
        ],
    ),
}


def stitch_id_for(tube_index: int, order: int) -> str:
    return f"stitch-T{tube_index}-001-{order:02d}"


def make_distractors(answer: int) -> Dict[int, str]:
    """Wrong answers that get closer to ``answer`` as the level rises."""

    offsets = (10, 5, 3, 2, 1)
    distractors: Dict[int, str] = {}
    used = {answer}
    for level, offset in enumerate(offsets, start=1):
        candidate = answer + offset if answer - offset < 0 or level % 2 else answer - offset
        while candidate in used or candidate < 0:
            candidate += 1
        used.add(candidate)
        distractors[level] = str(candidate)
    return distractors


def _recognition(seed: int) -> List[Tuple[str, int]]:
    return [(f"What number is this: {value}?", value) for value in (seed + 3, seed + 1, seed + 5)]


def _addition(seed: int) -> List[Tuple[str, int]]:
    pairs = ((seed, 1), (seed + 1, seed), (seed + 2, 3))
    return [(f"What is {a} + {b}?", a + b) for a, b in pairs]


def _word_problems(seed: int) -> List[Tuple[str, int]]:
    return [
        (f"Sam has {seed + 2} apples and gets {seed} more. How many apples now?", 2 * seed + 2),
        (f"There are {seed + 6} birds and {seed} fly away. How many are left?", 6),
        (f"A box holds {seed + 1} pens. How many pens are in 2 boxes?", 2 * (seed + 1)),
    ]


_GENERATORS: Dict[int, Callable[[int], List[Tuple[str, int]]]] = {
    1: _recognition,
    2: _addition,
    3: _word_problems,
}


def _build_stitch(tube_index: int, order: int) -> Stitch:
    thread_id, _, titles = _THREADS[tube_index]
    stitch_id = stitch_id_for(tube_index, order)
    title = titles[order - 1]
    questions = [
        Question(
            id=f"{stitch_id}-q{number:02d}",
            prompt=prompt,
            correct_answer=str(answer),
            distractors=make_distractors(answer),
        )
        for number, (prompt, answer) in enumerate(_GENERATORS[tube_index](order), start=1)
    ]
    return Stitch(
        id=stitch_id,
        thread_id=thread_id,
        title=title,
        body=f"{title}: practice for tube {tube_index}.",
        order=order,
        questions=questions,
    )


def build_default_manifest() -> ContentManifest:
    tubes = {}
    for tube_index, (thread_id, thread_title, titles) in _THREADS.items():
        tubes[tube_index] = {
            "threads": {
                thread_id: {
                    "title": thread_title,
                    "stitches": [
                        {"id": stitch_id_for(tube_index, order), "order": order, "title": title}
                        for order, title in enumerate(titles, start=1)
                    ],
                }
            }
        }
    return ContentManifest.model_validate({"version": 1, "generated": "bundled", "tubes": tubes})


def build_bundled_stitches() -> Dict[str, Stitch]:
    stitches: Dict[str, Stitch] = {}
    for tube_index in _THREADS:
        for order in range(1, BUNDLED_STITCHES_PER_THREAD + 1):
            stitch = _build_stitch(tube_index, order)
            stitches[stitch.id] = stitch
    return stitches


DEFAULT_MANIFEST = build_default_manifest()
BUNDLED_STITCHES = build_bundled_stitches()


__all__ = [
    "BUNDLED_STITCHES",
    "BUNDLED_STITCHES_PER_THREAD",
    "DEFAULT_MANIFEST",
    "build_bundled_stitches",
    "build_default_manifest",
    "make_distractors",
    "stitch_id_for",
]
