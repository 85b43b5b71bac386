from __future__ import annotations

import os
import re
import sqlite3
import tempfile
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .config import THUMBNAIL_EXTENSION
from .exceptions import PersistenceError


class KeyValueStore:
    """String-keyed blob store backed by a single SQLite table."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=5)
        conn.row_factory = sqlite3.Row
        return conn

    def _initialize(self) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS blobs (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to initialize store {self.db_path}: {exc}") from exc

    def get(self, key: str) -> Optional[str]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT value FROM blobs WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to read {key}: {exc}") from exc
        return None if row is None else row["value"]

    def put(self, key: str, value: str) -> None:
        now = datetime.now().isoformat(timespec="seconds")
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO blobs (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, now),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to write {key}: {exc}") from exc

    def delete(self, key: str) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM blobs WHERE key = ?", (key,))
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to delete {key}: {exc}") from exc


_UNSAFE_CHARS = re.compile(r"[\\/:*?\"<>|\x00-\x1f]")


class ThumbnailStore:
    """One encoded image file per name inside a directory."""

    def __init__(self, directory: Path, extension: str = THUMBNAIL_EXTENSION):
        self.directory = Path(directory)
        self.extension = extension
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Failed to create thumbnail directory {self.directory}: {exc}") from exc

    def path_for(self, name: str) -> Path:
        if not name or name in {".", ".."} or _UNSAFE_CHARS.search(name):
            raise PersistenceError(f"Name {name!r} cannot be used as a thumbnail file name.")
        return self.directory / f"{name}{self.extension}"

    def read(self, name: str) -> Optional[bytes]:
        path = self.path_for(name)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"Failed to read thumbnail for {name}: {exc}") from exc

    def write(self, name: str, data: bytes) -> None:
        path = self.path_for(name)
        tmp_name = None
        try:
            with tempfile.NamedTemporaryFile(dir=self.directory, suffix=".tmp", delete=False) as handle:
                tmp_name = handle.name
                handle.write(data)
            os.replace(tmp_name, path)
        except OSError as exc:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceError(f"Failed to write thumbnail for {name}: {exc}") from exc

    def delete(self, name: str) -> None:
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise PersistenceError(f"Failed to delete thumbnail for {name}: {exc}") from exc

    def names(self) -> List[str]:
        try:
            return sorted(
                path.name[: -len(self.extension)]
                for path in self.directory.iterdir()
                if path.is_file() and path.name.endswith(self.extension)
            )
        except OSError as exc:
            raise PersistenceError(f"Failed to list thumbnails in {self.directory}: {exc}") from exc
