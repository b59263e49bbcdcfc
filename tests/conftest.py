"""Shared fixtures for the triple-helix test suite."""
from typing import Dict

import pytest

from triple_helix.bundled import BUNDLED_STITCHES, DEFAULT_MANIFEST
from triple_helix.fetchers import InMemoryContentFetcher
from triple_helix.metrics import MetricsRegistry
from triple_helix.models import ContentManifest, Stitch
from triple_helix.resolver import ContentResolver
from triple_helix.scheduler import TubeScheduler
from triple_helix.storage import InMemoryStitchCache, InMemoryTubeStateRepository

from .factories import manifest_stitches


@pytest.fixture
def manifest() -> ContentManifest:
    return DEFAULT_MANIFEST


@pytest.fixture
def bundled() -> Dict[str, Stitch]:
    return dict(BUNDLED_STITCHES)


@pytest.fixture
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def scheduler(manifest, metrics) -> TubeScheduler:
    return TubeScheduler.seed_from_manifest(manifest, user_id="learner-1", metrics=metrics)


@pytest.fixture
def fetcher(manifest) -> InMemoryContentFetcher:
    return InMemoryContentFetcher(manifest_stitches(manifest))


@pytest.fixture
def stitch_cache() -> InMemoryStitchCache:
    return InMemoryStitchCache()


@pytest.fixture
def state_repository() -> InMemoryTubeStateRepository:
    return InMemoryTubeStateRepository()


@pytest.fixture
def resolver(manifest, bundled, fetcher, stitch_cache, metrics) -> ContentResolver:
    return ContentResolver(
        manifest,
        bundled=bundled,
        fetcher=fetcher,
        cache_store=stitch_cache,
        metrics=metrics,
    )
