"""Concrete repository implementations backed by memory, SQLite and local files."""
from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Dict, Optional

from .domain import TubeState
from .models import Stitch
from .repositories import StitchCacheRepository, TubeStateRepository


class InMemoryTubeStateRepository(TubeStateRepository):
    """Keeps serialized tube state per learner for tests and throwaway sessions."""

    def __init__(self) -> None:
        self._payloads: Dict[str, str] = {}
        self.save_count = 0

    def save(self, user_id: str, state: TubeState) -> None:
        self._payloads[user_id] = json.dumps(state.to_dict())
        self.save_count += 1

    def load(self, user_id: str) -> Optional[TubeState]:
        payload = self._payloads.get(user_id)
        if payload is None:
            return None
        return TubeState.from_dict(json.loads(payload))


class LocalFileTubeStateRepository(TubeStateRepository):
    """Persists tube state as one JSON document per learner on the local filesystem."""

    def __init__(self, base_path: Path) -> None:
        self._base_path = base_path
        self._base_path.mkdir(parents=True, exist_ok=True)

    def _path(self, user_id: str) -> Path:
        return self._base_path / f"triple_helix_state_{user_id}.json"

    def save(self, user_id: str, state: TubeState) -> None:
        path = self._path(user_id)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(state.to_dict()), encoding="utf-8")
        tmp_path.replace(path)

    def load(self, user_id: str) -> Optional[TubeState]:
        path = self._path(user_id)
        if not path.exists():
            return None
        return TubeState.from_dict(json.loads(path.read_text(encoding="utf-8")))


class InMemoryStitchCache(StitchCacheRepository):
    """Persisted-cache stand-in that lives only as long as the process."""

    def __init__(self) -> None:
        self._stitches: Dict[str, Stitch] = {}

    def get(self, stitch_id: str) -> Optional[Stitch]:
        return self._stitches.get(stitch_id)

    def put(self, stitch: Stitch) -> None:
        self._stitches[stitch.id] = stitch

    def clear(self) -> None:
        self._stitches.clear()

    def __len__(self) -> int:
        return len(self._stitches)


class SqliteStore(TubeStateRepository, StitchCacheRepository):
    """Stores tube state and cached stitch content in a SQLite database."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._initialise_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _initialise_schema(self) -> None:
        with self._lock:
            cursor = self._conn.cursor()
            cursor.executescript(
                """
                CREATE TABLE IF NOT EXISTS tube_state (
                    user_id TEXT PRIMARY KEY,
                    state_json TEXT NOT NULL,
                    last_updated TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS stitch_cache (
                    stitch_id TEXT PRIMARY KEY,
                    payload_json TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    # TubeStateRepository ------------------------------------------------
    def save(self, user_id: str, state: TubeState) -> None:
        payload = json.dumps(state.to_dict())
        with self._lock:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                INSERT OR REPLACE INTO tube_state (user_id, state_json, last_updated)
                VALUES (?, ?, ?)
                """,
                (user_id, payload, state.last_updated.isoformat()),
            )
            self._conn.commit()

    def load(self, user_id: str) -> Optional[TubeState]:
        with self._lock:
            cursor = self._conn.cursor()
            row = cursor.execute(
                "SELECT state_json FROM tube_state WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return TubeState.from_dict(json.loads(row["state_json"]))

    # StitchCacheRepository ----------------------------------------------
    def get(self, stitch_id: str) -> Optional[Stitch]:
        with self._lock:
            cursor = self._conn.cursor()
            row = cursor.execute(
                "SELECT payload_json FROM stitch_cache WHERE stitch_id = ?",
                (stitch_id,),
            ).fetchone()
        if not row:
            return None
        return Stitch.model_validate_json(row["payload_json"])

    def put(self, stitch: Stitch) -> None:
        with self._lock:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                INSERT OR REPLACE INTO stitch_cache (stitch_id, payload_json)
                VALUES (?, ?)
                """,
                (stitch.id, json.dumps(stitch.to_wire())),
            )
            self._conn.commit()

    def clear(self) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM stitch_cache")
            self._conn.commit()


__all__ = [
    "InMemoryStitchCache",
    "InMemoryTubeStateRepository",
    "LocalFileTubeStateRepository",
    "SqliteStore",
]
