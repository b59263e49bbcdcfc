"""Tests for the session coordinator."""
import asyncio
from datetime import timedelta

import httpx
import pytest

from triple_helix.config import SyncPolicy
from triple_helix.coordinator import SessionCoordinator, SessionStatus
from triple_helix.errors import CorruptStateError, TransitionInProgressError
from triple_helix.fetchers import HttpContentFetcher
from triple_helix.resolver import ContentResolver, SourceTier
from triple_helix.storage import InMemoryTubeStateRepository


class SlowResolver(ContentResolver):
    """Blocks content resolution until ``release`` is set."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.release = asyncio.Event()
        self.release.set()

    async def get_stitch(self, stitch_id):
        await self.release.wait()
        return await super().get_stitch(stitch_id)


class FailingRepository(InMemoryTubeStateRepository):
    def save(self, user_id, state):
        self.save_count += 1
        raise ConnectionError("state server unreachable")


class UnreachableRepository(InMemoryTubeStateRepository):
    def load(self, user_id):
        raise OSError("state server unreachable")


def _coordinator(resolver, local, remote=None, policy=SyncPolicy.LOCAL_ONLY, **kwargs):
    return SessionCoordinator(
        resolver.manifest,
        resolver,
        local_repository=local,
        remote_repository=remote,
        sync_policy=policy,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_start_seeds_and_serves_bundled_content(resolver, state_repository):
    coordinator = _coordinator(resolver, state_repository)

    playable = await coordinator.start("learner-1")

    assert playable.tube_index == 1
    assert playable.stitch.id == "stitch-T1-001-01"
    assert playable.distractor_level == 1
    assert playable.source_tier is SourceTier.BUNDLED
    assert not playable.is_fallback
    assert state_repository.save_count == 1
    assert coordinator.status is SessionStatus.IDLE


@pytest.mark.asyncio
async def test_complete_moves_to_next_tube_and_saves(resolver, state_repository):
    coordinator = _coordinator(resolver, state_repository)
    await coordinator.start("learner-1")

    playable = await coordinator.complete(3, 3)

    assert playable.tube_index == 2
    assert playable.stitch.id == "stitch-T2-001-01"
    assert state_repository.save_count == 2
    saved = state_repository.load("learner-1")
    assert saved.active_tube_index == 2
    assert saved.completions[0].stitch_id == "stitch-T1-001-01"


@pytest.mark.asyncio
async def test_second_completion_during_transition_is_rejected(manifest, bundled, state_repository):
    resolver = SlowResolver(manifest, bundled=bundled)
    coordinator = _coordinator(resolver, state_repository)
    await coordinator.start("learner-1")
    resolver.release.clear()

    first = asyncio.create_task(coordinator.complete(3, 3))
    await asyncio.sleep(0)

    assert coordinator.status is SessionStatus.TRANSITIONING
    with pytest.raises(TransitionInProgressError):
        await coordinator.complete(3, 3)

    resolver.release.set()
    playable = await first
    assert playable.tube_index == 2
    assert len(coordinator.scheduler.state.completions) == 1
    assert coordinator.status is SessionStatus.IDLE


@pytest.mark.asyncio
async def test_stale_stitch_completion_is_ignored(resolver, state_repository):
    coordinator = _coordinator(resolver, state_repository)
    await coordinator.start("learner-1")

    playable = await coordinator.complete(3, 3, stitch_id="stitch-T2-001-01", tube_index=1)

    assert playable.stitch.id == "stitch-T1-001-01"
    assert coordinator.scheduler.active_tube_index == 1
    assert coordinator.scheduler.state.completions == []


@pytest.mark.asyncio
async def test_select_tube_switches_active_tube(resolver, state_repository):
    coordinator = _coordinator(resolver, state_repository)
    await coordinator.start("learner-1")

    playable = await coordinator.select_tube(3)

    assert playable.tube_index == 3
    assert playable.stitch.id == "stitch-T3-001-01"
    assert state_repository.load("learner-1").active_tube_index == 3


@pytest.mark.asyncio
async def test_local_only_policy_never_touches_remote(resolver, state_repository):
    remote = InMemoryTubeStateRepository()
    coordinator = _coordinator(resolver, state_repository, remote, SyncPolicy.LOCAL_ONLY)
    await coordinator.start("learner-1")
    await coordinator.complete(1, 2)
    await coordinator.end_session()

    assert remote.save_count == 0


@pytest.mark.asyncio
async def test_every_completion_policy_syncs_each_completion(resolver, state_repository):
    remote = InMemoryTubeStateRepository()
    coordinator = _coordinator(resolver, state_repository, remote, SyncPolicy.EVERY_COMPLETION)
    await coordinator.start("learner-1")
    await coordinator.complete(2, 2)
    await coordinator.complete(0, 2)

    assert remote.save_count == 2
    assert remote.load("learner-1").active_tube_index == 3


@pytest.mark.asyncio
async def test_session_end_policy_syncs_once(resolver, state_repository):
    remote = InMemoryTubeStateRepository()
    coordinator = _coordinator(resolver, state_repository, remote, SyncPolicy.SESSION_END)
    await coordinator.start("learner-1")
    await coordinator.complete(2, 2)
    await coordinator.complete(1, 2)
    assert remote.save_count == 0

    summary = await coordinator.end_session()

    assert remote.save_count == 1
    assert summary.completions == 2
    assert summary.perfect_completions == 1
    assert summary.points == 3
    assert summary.total_points == 3


@pytest.mark.asyncio
async def test_remote_failure_does_not_interrupt_play(resolver, state_repository):
    remote = FailingRepository()
    coordinator = _coordinator(resolver, state_repository, remote, SyncPolicy.EVERY_COMPLETION)
    await coordinator.start("learner-1")

    playable = await coordinator.complete(2, 2)
    summary = await coordinator.end_session()

    assert playable.tube_index == 2
    assert remote.save_count == 2
    assert state_repository.load("learner-1").active_tube_index == 2
    assert summary.completions == 1


@pytest.mark.asyncio
async def test_resume_continues_from_saved_state(resolver, state_repository):
    first = _coordinator(resolver, state_repository)
    await first.start("learner-1")
    await first.complete(2, 2)
    await first.complete(2, 2)
    await first.end_session()

    second = _coordinator(resolver, state_repository)
    playable = await second.start("learner-1")
    summary = await second.end_session()

    assert playable.tube_index == 3
    assert second.scheduler.state.total_points == 4
    assert summary.completions == 0


@pytest.mark.asyncio
async def test_newer_remote_state_wins(resolver, state_repository, scheduler):
    remote = InMemoryTubeStateRepository()
    state_repository.save("learner-1", scheduler.state)
    scheduler.record_completion(1, "stitch-T1-001-01", 1, 1)
    scheduler.state.last_updated += timedelta(seconds=1)
    remote.save("learner-1", scheduler.state)
    coordinator = _coordinator(resolver, state_repository, remote, SyncPolicy.SESSION_END)

    playable = await coordinator.start("learner-1")

    assert playable.tube_index == 2


@pytest.mark.asyncio
async def test_corrupt_saved_state_is_a_hard_failure(resolver, state_repository, scheduler):
    scheduler.state.tube(1).positions[0].skip_number = 7
    state_repository.save("learner-1", scheduler.state)
    coordinator = _coordinator(resolver, state_repository)

    with pytest.raises(CorruptStateError):
        await coordinator.start("learner-1")


@pytest.mark.asyncio
async def test_tube_missing_from_manifest_is_skipped(manifest, bundled, state_repository):
    partial = manifest.model_copy(update={"tubes": {k: v for k, v in manifest.tubes.items() if k != 1}})
    resolver = ContentResolver(partial, bundled=bundled)
    coordinator = _coordinator(resolver, state_repository)

    playable = await coordinator.start("learner-1")

    assert playable.tube_index == 2
    assert playable.stitch.id == "stitch-T2-001-01"


@pytest.mark.asyncio
async def test_unbundled_stitch_is_fetched_for_play(resolver, fetcher, state_repository):
    coordinator = _coordinator(resolver, state_repository)
    await coordinator.start("learner-1")
    for _ in range(3):
        for _ in range(3):
            await coordinator.complete(3, 3)

    playable = await coordinator.complete(3, 3)

    assert playable.stitch.id == "stitch-T2-001-04"
    assert playable.source_tier is SourceTier.NETWORK
    assert not playable.is_fallback


@pytest.mark.asyncio
async def test_unreachable_remote_falls_back_to_local_state(resolver, state_repository, scheduler):
    scheduler.record_completion(1, "stitch-T1-001-01", 1, 1)
    state_repository.save("learner-1", scheduler.state)
    coordinator = _coordinator(resolver, state_repository, UnreachableRepository(), SyncPolicy.SESSION_END)

    playable = await coordinator.start("learner-1")

    assert playable.tube_index == 2
    assert coordinator.scheduler.state.total_points == 1


@pytest.mark.asyncio
async def test_corrupt_remote_state_is_still_a_hard_failure(resolver, state_repository):
    class CorruptRepository(InMemoryTubeStateRepository):
        def load(self, user_id):
            raise CorruptStateError("tube 1 lists a stitch twice")

    coordinator = _coordinator(resolver, state_repository, CorruptRepository(), SyncPolicy.SESSION_END)

    with pytest.raises(CorruptStateError):
        await coordinator.start("learner-1")


@pytest.mark.asyncio
async def test_summary_counts_survive_history_trimming(resolver, state_repository):
    coordinator = _coordinator(resolver, state_repository, history_limit=2)
    await coordinator.start("learner-1")
    for _ in range(5):
        await coordinator.complete(1, 2)

    summary = await coordinator.end_session()

    assert len(state_repository.load("learner-1").completions) == 2
    assert summary.completions == 5
    assert summary.perfect_completions == 0
    assert summary.points == 5
    assert summary.total_points == 5


@pytest.mark.asyncio
async def test_close_shuts_down_content_client(manifest, bundled, state_repository):
    fetcher = HttpContentFetcher(
        "http://content.local/",
        client=httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"success": True, "stitches": []}))
        ),
    )
    resolver = ContentResolver(manifest, bundled=bundled, fetcher=fetcher)
    coordinator = _coordinator(resolver, state_repository)
    await coordinator.start("learner-1")

    await coordinator.close()

    assert fetcher.client.is_closed
