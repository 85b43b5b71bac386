from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from .config import MATCH_COOLDOWN_SECONDS
from .matcher import MatchResult


class RecognitionDebouncer:
    """Suppresses repeated match events for the same identity.

    An event is emitted when the matched name differs from the last emitted
    one, or when more than ``cooldown`` seconds have passed since it. Unknown
    results are ignored entirely, so they do not reset the clock.
    """

    def __init__(
        self,
        cooldown: float = MATCH_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cooldown = float(cooldown)
        self.clock = clock
        self.last_matched_name: Optional[str] = None
        self.last_matched_at: Optional[float] = None
        self._lock = threading.Lock()

    def should_emit(self, result: MatchResult, now: Optional[float] = None) -> bool:
        if result.is_unknown:
            return False

        now = self.clock() if now is None else now
        with self._lock:
            if (
                self.last_matched_name == result.name
                and self.last_matched_at is not None
                and now - self.last_matched_at <= self.cooldown
            ):
                return False
            self.last_matched_name = result.name
            self.last_matched_at = now
            return True

    def reset(self) -> None:
        with self._lock:
            self.last_matched_name = None
            self.last_matched_at = None
