from __future__ import annotations

import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import requests

from .config import EVENT_SINK_QUEUE_SIZE, EVENT_SINK_TIMEOUT_SECONDS
from .exceptions import NetworkError
from .logger import setup_logger
from .roster import Identity


@dataclass(frozen=True)
class MatchEvent:
    identity: Identity
    distance: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.identity.id,
            "name": self.identity.name,
            "department": self.identity.department,
            "section": self.identity.section,
            "distance": float(self.distance),
            "timestamp": self.timestamp.astimezone(timezone.utc).isoformat(),
        }


class EventSink:
    def notify(self, event: MatchEvent) -> None:
        raise NotImplementedError

    def close(self) -> None:
        return None


class NullEventSink(EventSink):
    def notify(self, event: MatchEvent) -> None:
        return None


_STOP = object()


class HttpEventSink(EventSink):
    """Posts match events as JSON from a background thread.

    Delivery is best effort: failures are logged and never retried, and a
    full queue drops the newest event instead of blocking the caller.
    """

    def __init__(
        self,
        url: str,
        timeout: float = EVENT_SINK_TIMEOUT_SECONDS,
        max_pending: int = EVENT_SINK_QUEUE_SIZE,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout = float(timeout)
        self.session = session or requests.Session()
        self.logger = setup_logger(self.__class__.__name__)
        self._queue: queue.Queue = queue.Queue(maxsize=max(1, int(max_pending)))
        self._worker: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def notify(self, event: MatchEvent) -> None:
        self._ensure_worker()
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.logger.warning("Event queue full; dropping match event for %s", event.identity.name)

    def send(self, event: MatchEvent) -> bool:
        try:
            self._deliver(event)
        except NetworkError as exc:
            self.logger.warning("Match event for %s not delivered: %s", event.identity.name, exc)
            return False
        return True

    def close(self) -> None:
        with self._lock:
            worker = self._worker
            self._worker = None
        if worker is None:
            return
        try:
            self._queue.put(_STOP, timeout=self.timeout)
        except queue.Full:
            discarded = self._discard_pending()
            self.logger.warning("Event sink closing; discarded %d undelivered events", discarded)
            self._queue.put_nowait(_STOP)
        worker.join(timeout=self.timeout + 1.0)

    def _discard_pending(self) -> int:
        discarded = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return discarded
            discarded += 1

    def _deliver(self, event: MatchEvent) -> None:
        try:
            response = self.session.post(self.url, json=event.to_payload(), timeout=self.timeout)
        except requests.RequestException as exc:
            raise NetworkError(f"POST {self.url} failed: {exc}") from exc
        if response.status_code != 200:
            raise NetworkError(f"POST {self.url} returned {response.status_code}: {response.text[:200]}")

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(target=self._run, name="event-sink", daemon=True)
            self._worker.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                self.send(item)
            except Exception:
                self.logger.exception("Unexpected event sink failure")
