"""Repository and port interfaces consumed by the scheduler core."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from .domain import TubeState
from .models import Stitch


class TubeStateRepository(ABC):
    """Persist and retrieve a learner's tube state.

    Implementations decide where state lives (device storage, a remote
    server); callers only rely on ``save`` having completed once it returns.
    """

    @abstractmethod
    def save(self, user_id: str, state: TubeState) -> None:
        """Persist the learner's current tube state."""

    @abstractmethod
    def load(self, user_id: str) -> Optional[TubeState]:
        """Return the stored tube state, if present."""

    def close(self) -> None:
        """Release any handles held by the repository."""


class StitchCacheRepository(ABC):
    """Persisted content cache sitting between memory and bundled content."""

    @abstractmethod
    def get(self, stitch_id: str) -> Optional[Stitch]:
        """Return the cached stitch, if present."""

    @abstractmethod
    def put(self, stitch: Stitch) -> None:
        """Store a single stitch."""

    @abstractmethod
    def clear(self) -> None:
        """Drop every cached stitch."""

    def close(self) -> None:
        """Release any handles held by the cache."""


class ContentFetcher(ABC):
    """Batch content fetch over the network."""

    @abstractmethod
    async def fetch(self, stitch_ids: Sequence[str]) -> List[Stitch]:
        """Fetch the given stitches; raise ``ContentFetchError`` on failure.

        Ids unknown to the server are simply absent from the result. The
        request must be idempotent so callers may retry it.
        """

    async def close(self) -> None:
        """Release network resources such as pooled connections."""


__all__ = [
    "ContentFetcher",
    "StitchCacheRepository",
    "TubeStateRepository",
]
