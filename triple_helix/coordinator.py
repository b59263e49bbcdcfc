"""Session orchestration between the scheduler, the content resolver and persistence."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from loguru import logger

from .config import SyncPolicy
from .domain import MAX_COMPLETION_HISTORY, StitchPosition, TubeState
from .errors import CorruptStateError, EmptyTubeError, TransitionInProgressError, UnknownStitchError
from .metrics import MetricsRegistry
from .models import TUBE_INDICES, ContentManifest, Stitch
from .repositories import TubeStateRepository
from .resolver import ContentResolver, SourceTier
from .scheduler import TubeScheduler


class SessionStatus(str, Enum):
    IDLE = "idle"
    TRANSITIONING = "transitioning"


@dataclass
class PlayableStitch:
    """Everything the player needs to present the next stitch."""

    tube_index: int
    stitch: Stitch
    position: StitchPosition
    source_tier: Optional[SourceTier]

    @property
    def distractor_level(self) -> int:
        return self.position.distractor_level

    @property
    def is_fallback(self) -> bool:
        return self.source_tier is SourceTier.SYNTHETIC


@dataclass
class SessionSummary:
    user_id: str
    completions: int
    perfect_completions: int
    points: int
    total_points: int
    cycle_count: int
    repairs: int


class SessionCoordinator:
    """Runs one learner's session: play, complete, persist, prefetch."""

    def __init__(
        self,
        manifest: ContentManifest,
        resolver: ContentResolver,
        local_repository: TubeStateRepository,
        remote_repository: Optional[TubeStateRepository] = None,
        sync_policy: SyncPolicy = SyncPolicy.LOCAL_ONLY,
        metrics: Optional[MetricsRegistry] = None,
        history_limit: int = MAX_COMPLETION_HISTORY,
    ) -> None:
        self._manifest = manifest
        self._resolver = resolver
        self._local = local_repository
        self._remote = remote_repository
        self._sync_policy = sync_policy
        self._metrics = metrics or resolver.metrics
        self._history_limit = history_limit
        self._scheduler: Optional[TubeScheduler] = None
        self._status = SessionStatus.IDLE
        self._lock = asyncio.Lock()
        self._remote_dirty = False
        self._session_completions = 0
        self._session_perfect = 0
        self._session_points = 0
        self._repair_count = 0

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def sync_policy(self) -> SyncPolicy:
        return self._sync_policy

    @property
    def scheduler(self) -> TubeScheduler:
        if self._scheduler is None:
            raise RuntimeError("Session has not been started")
        return self._scheduler

    async def start(self, user_id: str) -> PlayableStitch:
        """Load or seed the learner's tubes and return the first stitch to play."""

        async with self._lock:
            state = self._load_state(user_id)
            if state is None:
                self._scheduler = TubeScheduler.seed_from_manifest(
                    self._manifest, user_id=user_id, metrics=self._metrics, history_limit=self._history_limit
                )
            else:
                self._scheduler = TubeScheduler(state, metrics=self._metrics, history_limit=self._history_limit)
                self._scheduler.extend_from_manifest(self._manifest)
            self._session_completions = self._session_perfect = self._session_points = 0
            self._repair_count = 0
            self._local.save(user_id, self.scheduler.state)
            playable = await self._playable()
            self._prefetch_ahead()
            logger.info(
                f"Session started for {user_id} on tube {playable.tube_index} with {playable.stitch.id}"
            )
            return playable

    async def complete(
        self,
        correct_count: int,
        total_count: int,
        stitch_id: Optional[str] = None,
        tube_index: Optional[int] = None,
    ) -> PlayableStitch:
        """Record the active stitch's score and move on to the next tube.

        ``stitch_id`` and ``tube_index`` default to the stitch in play; a
        stale id from the player is logged and treated as a no-op.
        """

        if self._status is SessionStatus.TRANSITIONING:
            raise TransitionInProgressError("A completion is already being processed")
        self._status = SessionStatus.TRANSITIONING
        try:
            async with self._lock:
                scheduler = self.scheduler
                tube_index = tube_index or scheduler.active_tube_index
                if stitch_id is None:
                    stitch_id = self._current_position().stitch_id
                try:
                    outcome = scheduler.record_completion(tube_index, stitch_id, correct_count, total_count)
                except UnknownStitchError as exc:
                    logger.warning(f"Ignoring completion: {exc}")
                    return await self._playable()

                self._repair_count += len(outcome.repairs)
                self._session_completions += 1
                self._session_perfect += int(outcome.perfect)
                self._session_points += correct_count
                self._resolver.cancel_prefetch()
                self._persist_completion()
                playable = await self._playable()
                self._prefetch_ahead()
                return playable
        finally:
            self._status = SessionStatus.IDLE

    async def select_tube(self, tube_index: int) -> PlayableStitch:
        async with self._lock:
            self.scheduler.select_tube(tube_index)
            self._resolver.cancel_prefetch()
            self._local.save(self.scheduler.state.user_id, self.scheduler.state)
            playable = await self._playable()
            self._prefetch_ahead()
            return playable

    async def end_session(self) -> SessionSummary:
        """Flush state to every configured repository and summarize the session."""

        async with self._lock:
            scheduler = self.scheduler
            state = scheduler.state
            self._resolver.cancel_prefetch()
            self._local.save(state.user_id, state)
            if self._remote is not None and (
                self._sync_policy is SyncPolicy.SESSION_END or self._remote_dirty
            ):
                self._push_remote(state)
            self._repair_count += len(scheduler.drain_repairs())

            summary = SessionSummary(
                user_id=state.user_id,
                completions=self._session_completions,
                perfect_completions=self._session_perfect,
                points=self._session_points,
                total_points=state.total_points,
                cycle_count=state.cycle_count,
                repairs=self._repair_count,
            )
            logger.info(
                f"Session ended for {state.user_id}: {summary.completions} completions, {summary.points} points"
            )
            return summary

    async def close(self) -> None:
        """Stop background fetches and release the content and state backends."""

        async with self._lock:
            await self._resolver.close()
            self._local.close()
            if self._remote is not None:
                self._remote.close()

    def _load_state(self, user_id: str) -> Optional[TubeState]:
        local_state = self._local.load(user_id)
        remote_state = self._load_remote(user_id)
        candidates: List[TubeState] = [state for state in (local_state, remote_state) if state is not None]
        if not candidates:
            return None
        return max(candidates, key=lambda state: state.last_updated)

    def _load_remote(self, user_id: str) -> Optional[TubeState]:
        if self._remote is None:
            return None
        try:
            return self._remote.load(user_id)
        except CorruptStateError:
            raise
        except Exception as exc:
            logger.warning(f"Remote state for {user_id} unavailable, continuing with local state: {exc}")
            return None

    def _persist_completion(self) -> None:
        state = self.scheduler.state
        self._local.save(state.user_id, state)
        if self._remote is None:
            return
        if self._sync_policy is SyncPolicy.EVERY_COMPLETION:
            self._push_remote(state)
        elif self._sync_policy is SyncPolicy.SESSION_END:
            self._remote_dirty = True

    def _push_remote(self, state: TubeState) -> None:
        try:
            self._remote.save(state.user_id, state)
        except Exception as exc:
            self._remote_dirty = True
            logger.warning(f"Remote sync for {state.user_id} failed, will retry at session end: {exc}")
        else:
            self._remote_dirty = False

    def _current_position(self) -> StitchPosition:
        """Position-0 record of the active tube, re-seeding or skipping empty tubes."""

        scheduler = self.scheduler
        for _ in TUBE_INDICES:
            try:
                return scheduler.current_position()
            except EmptyTubeError as exc:
                if scheduler.reseed_tube(exc.tube_index, self._manifest):
                    return scheduler.current_position()
                logger.warning(f"Tube {exc.tube_index} has no content in the manifest; skipping it")
                scheduler.select_tube((exc.tube_index % len(TUBE_INDICES)) + 1)
        raise EmptyTubeError(scheduler.active_tube_index)

    async def _playable(self) -> PlayableStitch:
        position = self._current_position()
        stitch = await self._resolver.get_stitch(position.stitch_id)
        entry = self._resolver.cached_entry(position.stitch_id)
        return PlayableStitch(
            tube_index=self.scheduler.active_tube_index,
            stitch=stitch,
            position=position,
            source_tier=entry.source_tier if entry is not None else None,
        )

    def _prefetch_ahead(self) -> None:
        for tube_index in TUBE_INDICES:
            current = self.scheduler.state.tube(tube_index).current_stitch_id
            if current is not None:
                self._resolver.prefetch(tube_index, current, include_current=True)


__all__ = ["PlayableStitch", "SessionCoordinator", "SessionStatus", "SessionSummary"]
