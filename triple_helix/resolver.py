"""Tiered content buffer.

``ContentResolver.get_stitch`` walks memory, the persisted cache, the
bundled dataset, the network and finally a synthesized fallback, so a
caller always receives renderable content. A look-ahead window of
upcoming stitches is kept warm by background prefetch tasks.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Set

from loguru import logger

from .bundled import make_distractors
from .errors import ContentUnavailableError
from .metrics import MetricsRegistry
from .models import ContentManifest, Question, Stitch
from .repositories import ContentFetcher, StitchCacheRepository
from .scheduler import TubeScheduler
from .validators import filter_valid_stitches


DEFAULT_PREFETCH_WINDOW = 5
FALLBACK_THREAD_ID = "fallback-thread"
FALLBACK_TITLE = "Content unavailable"
FALLBACK_QUESTIONS = (
    ("What is 1 + 1?", 2),
    ("What is 2 + 2?", 4),
    ("What is 3 + 2?", 5),
)

_STITCH_ID_PATTERN = re.compile(r"^stitch-T(\d+)-(\d+)-(\d+)$")


class SourceTier(str, Enum):
    PERSISTED = "persisted"
    BUNDLED = "bundled"
    NETWORK = "network"
    SYNTHETIC = "synthetic"


@dataclass(frozen=True)
class CacheEntry:
    stitch_id: str
    stitch: Stitch
    source_tier: SourceTier


def synthesize_fallback(stitch_id: str, manifest: Optional[ContentManifest] = None) -> Stitch:
    """Build the placeholder stitch served when no tier has real content."""

    thread_id: Optional[str] = None
    if manifest is not None:
        location = manifest.locate(stitch_id)
        if location is not None:
            thread_id = location[1]
    match = _STITCH_ID_PATTERN.match(stitch_id)
    if thread_id is None and match:
        thread_id = f"thread-T{match.group(1)}-{match.group(2)}"
    questions = [
        Question(
            id=f"{stitch_id}-fallback-q{number:02d}",
            prompt=prompt,
            correct_answer=str(answer),
            distractors=make_distractors(answer),
        )
        for number, (prompt, answer) in enumerate(FALLBACK_QUESTIONS, start=1)
    ]
    return Stitch(
        id=stitch_id,
        thread_id=thread_id or FALLBACK_THREAD_ID,
        title=FALLBACK_TITLE,
        body=f"Content for {stitch_id} is not available right now. Keep practising with these questions.",
        order=int(match.group(3)) if match else 0,
        questions=questions,
    )


class ContentResolver:
    """Resolves stitch ids to content from the fastest available tier."""

    def __init__(
        self,
        manifest: ContentManifest,
        bundled: Optional[Mapping[str, Stitch]] = None,
        fetcher: Optional[ContentFetcher] = None,
        cache_store: Optional[StitchCacheRepository] = None,
        offline_only: bool = False,
        prefetch_window: int = DEFAULT_PREFETCH_WINDOW,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._manifest = manifest
        self._bundled: Dict[str, Stitch] = dict(bundled or {})
        self._fetcher = fetcher
        self._cache_store = cache_store
        self._offline_only = offline_only
        self._prefetch_window = prefetch_window
        self._metrics = metrics or MetricsRegistry()
        self._memory: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._demanded: Set[asyncio.Task] = set()
        self._prefetch_tasks: Set[asyncio.Task] = set()
        self._seed_bundled()

    @property
    def manifest(self) -> ContentManifest:
        return self._manifest

    @property
    def metrics(self) -> MetricsRegistry:
        return self._metrics

    @property
    def offline_only(self) -> bool:
        return self._offline_only

    @offline_only.setter
    def offline_only(self, value: bool) -> None:
        self._offline_only = value

    @property
    def network_enabled(self) -> bool:
        return self._fetcher is not None and not self._offline_only

    def is_cached(self, stitch_id: str) -> bool:
        return stitch_id in self._memory

    def cached_entry(self, stitch_id: str) -> Optional[CacheEntry]:
        return self._memory.get(stitch_id)

    # region Resolution
    async def get_stitch(self, stitch_id: str) -> Stitch:
        """Return content for ``stitch_id``; never raises for missing content."""

        entry = self._memory.get(stitch_id)
        if entry is not None:
            self._metrics.record_tier_hit("memory")
            return entry.stitch

        stitch = self._resolve_local(stitch_id)
        if stitch is not None:
            return stitch

        if self.network_enabled:
            try:
                return await self._resolve_network(stitch_id)
            except ContentUnavailableError as exc:
                logger.warning(f"Network tier could not provide {stitch_id}: {exc}")

        return self._store_fallback(stitch_id)

    async def get_in_play_stitch(self, scheduler: TubeScheduler) -> Stitch:
        return await self.get_stitch(scheduler.current_stitch())

    def _resolve_local(self, stitch_id: str) -> Optional[Stitch]:
        if self._cache_store is not None:
            try:
                stitch = self._cache_store.get(stitch_id)
            except Exception as exc:
                logger.warning(f"Persisted cache lookup failed for {stitch_id}: {exc}")
                stitch = None
            if stitch is not None:
                self._remember(stitch, SourceTier.PERSISTED)
                self._metrics.record_tier_hit(SourceTier.PERSISTED.value)
                return stitch

        stitch = self._bundled.get(stitch_id)
        if stitch is not None:
            self._remember(stitch, SourceTier.BUNDLED)
            self._metrics.record_tier_hit(SourceTier.BUNDLED.value)
            return stitch
        return None

    async def _resolve_network(self, stitch_id: str) -> Stitch:
        task = self._inflight.get(stitch_id)
        if task is None:
            task = self._start_batch([stitch_id, *self._missing_window(stitch_id)])
        self._demanded.add(task)
        await asyncio.wait({task})

        if task.cancelled() and stitch_id not in self._memory:
            logger.debug(f"Batch carrying {stitch_id} was cancelled; fetching it on its own")
            task = self._start_batch([stitch_id])
            self._demanded.add(task)
            await asyncio.wait({task})

        entry = self._memory.get(stitch_id)
        if entry is None:
            raise ContentUnavailableError(f"{stitch_id} missing from batch response")
        self._metrics.record_tier_hit(SourceTier.NETWORK.value)
        return entry.stitch

    def _missing_window(self, stitch_id: str) -> List[str]:
        location = self._manifest.locate(stitch_id)
        if location is None:
            return []
        missing = []
        for candidate in self._manifest.upcoming(location[0], stitch_id, self._prefetch_window):
            if candidate in self._memory or candidate in self._inflight:
                continue
            if self._resolve_local(candidate) is None:
                missing.append(candidate)
        return missing

    def _start_batch(self, stitch_ids: Sequence[str]) -> asyncio.Task:
        ids = list(dict.fromkeys(stitch_ids))
        task = asyncio.create_task(self._fetch_batch(ids))
        for stitch_id in ids:
            self._inflight[stitch_id] = task
        task.add_done_callback(lambda done: self._release_batch(ids, done))
        return task

    def _release_batch(self, stitch_ids: Sequence[str], task: asyncio.Task) -> None:
        for stitch_id in stitch_ids:
            if self._inflight.get(stitch_id) is task:
                del self._inflight[stitch_id]
        self._demanded.discard(task)

    async def _fetch_batch(self, stitch_ids: List[str]) -> List[str]:
        self._metrics.record_network_call(len(stitch_ids))
        try:
            stitches = await self._fetcher.fetch(stitch_ids)
        except Exception as exc:
            self._metrics.record_network_failure()
            logger.warning(f"Batch fetch of {len(stitch_ids)} stitches failed: {exc}")
            return []

        accepted = filter_valid_stitches(stitch_ids, stitches)
        for stitch in accepted:
            self._remember(stitch, SourceTier.NETWORK)
            self._persist(stitch)
        self._metrics.record_network_success(len(accepted))
        return [stitch.id for stitch in accepted]

    def _store_fallback(self, stitch_id: str) -> Stitch:
        stitch = synthesize_fallback(stitch_id, self._manifest)
        self._remember(stitch, SourceTier.SYNTHETIC)
        self._metrics.record_synthetic_fallback()
        self._metrics.record_tier_hit(SourceTier.SYNTHETIC.value)
        logger.warning(f"Serving synthetic fallback for {stitch_id}")
        return stitch

    def _remember(self, stitch: Stitch, tier: SourceTier) -> None:
        self._memory[stitch.id] = CacheEntry(stitch_id=stitch.id, stitch=stitch, source_tier=tier)

    def _persist(self, stitch: Stitch) -> None:
        if self._cache_store is None:
            return
        try:
            self._cache_store.put(stitch)
        except Exception as exc:
            logger.warning(f"Could not persist {stitch.id} to the content cache: {exc}")

    # endregion

    # region Prefetch
    def prefetch(
        self,
        tube_index: int,
        from_stitch_id: str,
        window_size: Optional[int] = None,
        include_current: bool = False,
    ) -> asyncio.Task:
        """Warm the stitches that follow ``from_stitch_id`` in the background.

        With ``include_current`` the starting stitch itself is warmed too.
        """

        window = self._prefetch_window if window_size is None else window_size
        task = asyncio.create_task(
            self._run_prefetch(tube_index, from_stitch_id, window, include_current)
        )
        self._prefetch_tasks.add(task)
        task.add_done_callback(self._prefetch_tasks.discard)
        return task

    def cancel_prefetch(self) -> int:
        pending = [task for task in self._prefetch_tasks if not task.done()]
        for task in pending:
            task.cancel()
        return len(pending)

    async def _run_prefetch(
        self, tube_index: int, from_stitch_id: str, window: int, include_current: bool = False
    ) -> List[str]:
        warmed: List[str] = []
        batch: Optional[asyncio.Task] = None
        candidates = self._manifest.upcoming(tube_index, from_stitch_id, window)
        if include_current:
            candidates = [from_stitch_id, *candidates]
        try:
            missing = []
            for stitch_id in candidates:
                if stitch_id in self._memory or stitch_id in self._inflight:
                    continue
                if self._resolve_local(stitch_id) is not None:
                    warmed.append(stitch_id)
                else:
                    missing.append(stitch_id)
            if missing and self.network_enabled:
                batch = self._start_batch(missing)
                await asyncio.wait({batch})
                if not batch.cancelled():
                    warmed.extend(batch.result())
        except asyncio.CancelledError:
            if batch is not None and batch not in self._demanded:
                batch.cancel()
            raise
        except Exception as exc:
            self._metrics.record_prefetch_failure()
            logger.warning(f"Prefetch after {from_stitch_id} in tube {tube_index} failed: {exc}")
        return warmed

    # endregion

    async def close(self) -> None:
        """Cancel background work and release the fetcher."""

        pending = [task for task in (*self._prefetch_tasks, *self._inflight.values()) if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._inflight.clear()
        self._demanded.clear()
        if self._fetcher is not None:
            await self._fetcher.close()
        logger.debug(f"Content resolver closed; cancelled {len(pending)} pending fetches")

    def invalidate(self) -> None:
        """Drop memory and persisted caches, then re-seed the bundled tier."""

        self.cancel_prefetch()
        for task in set(self._inflight.values()):
            task.cancel()
        self._inflight.clear()
        self._demanded.clear()
        self._memory.clear()
        if self._cache_store is not None:
            self._cache_store.clear()
        self._seed_bundled()
        self._metrics.record_invalidation()
        logger.info(f"Content cache invalidated; {len(self._bundled)} bundled stitches re-seeded")

    def _seed_bundled(self) -> None:
        for stitch in self._bundled.values():
            self._remember(stitch, SourceTier.BUNDLED)


__all__ = [
    "CacheEntry",
    "ContentResolver",
    "DEFAULT_PREFETCH_WINDOW",
    "SourceTier",
    "synthesize_fallback",
]
