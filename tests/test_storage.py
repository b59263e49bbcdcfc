"""Persistence round trips for tube state and cached stitches."""
import json

import pytest

from triple_helix.domain import TubeState
from triple_helix.errors import CorruptStateError
from triple_helix.storage import (
    InMemoryStitchCache,
    InMemoryTubeStateRepository,
    LocalFileTubeStateRepository,
    SqliteStore,
)

from .factories import make_stitch


@pytest.fixture
def played_state(scheduler) -> TubeState:
    scheduler.record_completion(1, "stitch-T1-001-01", 5, 5)
    scheduler.record_completion(2, "stitch-T2-001-01", 2, 5)
    return scheduler.state


@pytest.fixture
def sqlite_store(tmp_path):
    store = SqliteStore(tmp_path / "triple_helix.db")
    yield store
    store.close()


def test_in_memory_repository_round_trip(played_state):
    repository = InMemoryTubeStateRepository()

    repository.save("learner-1", played_state)
    loaded = repository.load("learner-1")

    assert loaded.to_dict() == played_state.to_dict()
    assert loaded is not played_state
    assert repository.save_count == 1
    assert repository.load("someone-else") is None


def test_local_file_repository_round_trip(tmp_path, played_state):
    repository = LocalFileTubeStateRepository(tmp_path / "state")

    repository.save("learner-1", played_state)

    assert (tmp_path / "state" / "triple_helix_state_learner-1.json").exists()
    assert not list((tmp_path / "state").glob("*.tmp"))
    assert repository.load("learner-1").to_dict() == played_state.to_dict()
    assert repository.load("missing") is None


def test_local_file_repository_rejects_corrupt_file(tmp_path, played_state):
    repository = LocalFileTubeStateRepository(tmp_path)
    payload = played_state.to_dict()
    payload["active_tube_index"] = 9
    (tmp_path / "triple_helix_state_learner-1.json").write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(CorruptStateError):
        repository.load("learner-1")


def test_sqlite_state_round_trip_and_overwrite(sqlite_store, played_state):
    sqlite_store.save("learner-1", played_state)
    played_state.total_points = 42
    sqlite_store.save("learner-1", played_state)

    loaded = sqlite_store.load("learner-1")

    assert loaded.total_points == 42
    assert loaded.to_dict() == played_state.to_dict()
    assert sqlite_store.load("nobody") is None


def test_sqlite_stitch_cache(sqlite_store):
    stitch = make_stitch("stitch-T3-001-05", thread_id="thread-T3-001", order=5)

    sqlite_store.put(stitch)

    assert sqlite_store.get("stitch-T3-001-05") == stitch
    assert sqlite_store.get("stitch-T3-001-06") is None
    sqlite_store.clear()
    assert sqlite_store.get("stitch-T3-001-05") is None


def test_clearing_cache_keeps_tube_state(sqlite_store, played_state):
    sqlite_store.save("learner-1", played_state)
    sqlite_store.put(make_stitch("stitch-T1-001-04"))

    sqlite_store.clear()

    assert sqlite_store.load("learner-1") is not None


def test_in_memory_stitch_cache():
    cache = InMemoryStitchCache()
    cache.put(make_stitch("a"))

    assert len(cache) == 1
    assert cache.get("a").id == "a"
    cache.clear()
    assert cache.get("a") is None
