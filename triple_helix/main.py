"""Runtime wiring for the triple-helix engine."""

from __future__ import annotations

import sys
from typing import Optional

from loguru import logger

from .bundled import BUNDLED_STITCHES, DEFAULT_MANIFEST
from .config import Settings, get_settings
from .coordinator import SessionCoordinator
from .fetchers import HttpContentFetcher
from .metrics import MetricsRegistry
from .models import ContentManifest
from .repositories import ContentFetcher
from .resolver import ContentResolver
from .storage import LocalFileTubeStateRepository, SqliteStore

LOG_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <7}</level> | {name}:{line} - {message}"


def configure_logging(level: str = "INFO") -> None:
    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)


def build_coordinator(
    settings: Optional[Settings] = None,
    manifest: Optional[ContentManifest] = None,
    fetcher: Optional[ContentFetcher] = None,
) -> SessionCoordinator:
    """Assemble a coordinator backed by SQLite, the bundled dataset and, if configured, the content API."""

    settings = settings or get_settings()
    configure_logging(settings.log_level)
    manifest = manifest or DEFAULT_MANIFEST
    metrics = MetricsRegistry()

    store = SqliteStore(settings.database_path)
    if fetcher is None and settings.content_api_url:
        fetcher = HttpContentFetcher(
            settings.content_api_url,
            api_key=settings.content_api_key,
            timeout_seconds=settings.request_timeout_seconds,
            retry_attempts=settings.retry_attempts,
        )
    resolver = ContentResolver(
        manifest,
        bundled=BUNDLED_STITCHES,
        fetcher=fetcher,
        cache_store=store,
        offline_only=settings.offline_only,
        prefetch_window=settings.prefetch_window,
        metrics=metrics,
    )
    remote = (
        LocalFileTubeStateRepository(settings.remote_state_dir)
        if settings.remote_state_dir is not None
        else None
    )
    logger.info(
        f"Coordinator ready: network={'on' if resolver.network_enabled else 'off'}, "
        f"sync={settings.sync_policy.value}, db={settings.database_path}"
    )
    return SessionCoordinator(
        manifest,
        resolver,
        local_repository=store,
        remote_repository=remote,
        sync_policy=settings.sync_policy,
        metrics=metrics,
        history_limit=settings.completion_history_limit,
    )


__all__ = ["build_coordinator", "configure_logging"]
