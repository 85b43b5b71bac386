from __future__ import annotations

import json
import math
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

import numpy as np

from .config import ROSTER_KEY
from .exceptions import DimensionMismatchError, NotFoundError, PersistenceError
from .logger import setup_logger
from .storage import KeyValueStore, ThumbnailStore

METADATA_FIELDS = ("name", "id", "department", "section")


@dataclass(frozen=True)
class Identity:
    name: str
    id: str
    department: str
    section: str
    embedding: Tuple[float, ...]

    @property
    def vector(self) -> np.ndarray:
        return np.asarray(self.embedding, dtype=np.float32)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "id": self.id,
            "department": self.department,
            "section": self.section,
            "embedding": list(self.embedding),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Identity":
        if not isinstance(data, dict):
            raise TypeError(f"record must be an object, got {type(data).__name__}")

        values = {}
        for key in METADATA_FIELDS:
            value = data[key]
            if not isinstance(value, str):
                raise TypeError(f"{key} must be a string")
            values[key] = value

        raw_embedding = data["embedding"]
        if not isinstance(raw_embedding, list) or not raw_embedding:
            raise ValueError("embedding must be a non-empty list")
        embedding = []
        for item in raw_embedding:
            if isinstance(item, bool) or not isinstance(item, (int, float)):
                raise TypeError("embedding values must be numbers")
            if not math.isfinite(item):
                raise ValueError("embedding values must be finite")
            embedding.append(float(item))

        return cls(embedding=tuple(embedding), **values)


class Roster:
    """In-memory roster that only ever reflects a successful store write.

    Mutations build a candidate mapping, persist it, and swap it in after the
    write succeeds. Readers take ``snapshot()`` without locking because a
    committed mapping is never mutated in place.
    """

    def __init__(
        self,
        store: KeyValueStore,
        thumbnails: ThumbnailStore,
        embedding_dim: Optional[int] = None,
        key: str = ROSTER_KEY,
    ):
        self.store = store
        self.thumbnails = thumbnails
        self.embedding_dim = embedding_dim
        self.key = key
        self.logger = setup_logger(self.__class__.__name__)

        self._entries: Dict[str, Identity] = {}
        self._write_lock = threading.RLock()
        self._thumb_lock = threading.Lock()
        self._thumb_cache: Dict[str, bytes] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[Identity]:
        return iter(self.snapshot())

    def snapshot(self) -> Tuple[Identity, ...]:
        return tuple(self._entries.values())

    def names(self) -> List[str]:
        return list(self._entries.keys())

    def get(self, name: str) -> Optional[Identity]:
        return self._entries.get(name)

    def load(self) -> int:
        with self._write_lock:
            entries = self._read_entries()
            self._prune_orphan_thumbnails(entries)
            self._entries = entries
            with self._thumb_lock:
                self._thumb_cache.clear()
        self.logger.info("Loaded %d identities", len(entries))
        return len(entries)

    def save(self) -> None:
        with self._write_lock:
            self._write(self._entries)

    def add(self, identity: Identity, thumbnail: Optional[bytes] = None) -> None:
        """Insert or replace an identity together with its thumbnail.

        The thumbnail is written first and rolled back to its previous bytes
        if the roster commit fails, so a failed add leaves both stores as
        they were. A crash between the two steps leaves an orphan file that
        ``load()`` prunes.
        """
        with self._write_lock:
            self._check_dimension(identity)
            candidate = dict(self._entries)
            candidate[identity.name] = identity

            previous = None
            if thumbnail is not None:
                previous = self.thumbnails.read(identity.name)
                self.thumbnails.write(identity.name, thumbnail)
            try:
                self._write(candidate)
            except PersistenceError:
                if thumbnail is not None:
                    self._restore_thumbnail(identity.name, previous)
                raise

            self._entries = candidate
            with self._thumb_lock:
                if thumbnail is not None:
                    self._thumb_cache[identity.name] = thumbnail
                else:
                    self._thumb_cache.pop(identity.name, None)

    def remove(self, name: str) -> Identity:
        """Commit the roster without ``name``, then delete its thumbnail."""
        with self._write_lock:
            identity = self._entries.get(name)
            if identity is None:
                raise NotFoundError(name)
            candidate = dict(self._entries)
            del candidate[name]
            self._write(candidate)
            self._entries = candidate
            try:
                self.delete_thumbnail(name)
            except PersistenceError as exc:
                self.logger.warning("Thumbnail for %r left for pruning on next load: %s", name, exc)
            return identity

    def save_thumbnail(self, name: str, data: bytes) -> None:
        with self._write_lock:
            if name not in self._entries:
                raise NotFoundError(name)
            self.thumbnails.write(name, data)
        with self._thumb_lock:
            self._thumb_cache[name] = data

    def delete_thumbnail(self, name: str) -> None:
        with self._write_lock:
            with self._thumb_lock:
                self._thumb_cache.pop(name, None)
            self.thumbnails.delete(name)

    def thumbnail(self, name: str) -> Optional[bytes]:
        if name not in self._entries:
            return None
        with self._thumb_lock:
            cached = self._thumb_cache.get(name)
        if cached is not None:
            return cached

        data = self.thumbnails.read(name)
        if data is not None:
            with self._thumb_lock:
                self._thumb_cache[name] = data
        return data

    def _write(self, entries: Dict[str, Identity]) -> None:
        payload = json.dumps({name: identity.to_dict() for name, identity in entries.items()})
        self.store.put(self.key, payload)

    def _read_entries(self) -> Dict[str, Identity]:
        raw = self.store.get(self.key)
        if raw is None:
            return {}

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"Roster blob is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise PersistenceError(f"Roster blob must be an object, got {type(data).__name__}.")

        entries: Dict[str, Identity] = {}
        dim = self.embedding_dim
        for key, record in data.items():
            try:
                identity = Identity.from_dict(record)
            except (KeyError, TypeError, ValueError) as exc:
                self.logger.warning("Dropping corrupt roster record %r: %s", key, exc)
                continue

            if identity.name != key:
                self.logger.warning("Dropping roster record %r: stored name is %r", key, identity.name)
                continue
            if dim is None:
                dim = len(identity.embedding)
            elif len(identity.embedding) != dim:
                self.logger.warning(
                    "Dropping roster record %r: embedding length %d, expected %d",
                    key,
                    len(identity.embedding),
                    dim,
                )
                continue
            entries[key] = identity
        return entries

    def _prune_orphan_thumbnails(self, entries: Dict[str, Identity]) -> None:
        for name in self.thumbnails.names():
            if name not in entries:
                self.logger.warning("Removing orphan thumbnail for %r", name)
                self.thumbnails.delete(name)

    def _check_dimension(self, identity: Identity) -> None:
        expected = self.embedding_dim
        if expected is None:
            existing = next(iter(self._entries.values()), None)
            if existing is None:
                return
            expected = len(existing.embedding)
        if len(identity.embedding) != expected:
            raise DimensionMismatchError(
                f"Embedding for '{identity.name}' has length {len(identity.embedding)}, expected {expected}"
            )

    def _restore_thumbnail(self, name: str, previous: Optional[bytes]) -> None:
        try:
            if previous is None:
                self.thumbnails.delete(name)
            else:
                self.thumbnails.write(name, previous)
        except PersistenceError as exc:
            self.logger.error("Failed to roll back thumbnail for %r: %s", name, exc)
