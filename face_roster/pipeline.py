from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple

import numpy as np

from .camera import CameraSource
from .color import RawFrame, convert_to_rgb, decode_still
from .config import FALLBACK_INTERVAL_SECONDS, MIN_INFERENCE_INTERVAL_SECONDS
from .debounce import RecognitionDebouncer
from .events import EventSink, MatchEvent, NullEventSink
from .exceptions import DimensionMismatchError, FaceRosterError, ModelError
from .logger import setup_logger
from .matcher import Matcher, MatchResult
from .model import EmbeddingModel
from .roster import Roster
from .tensor import build_tensor


class PipelineState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"


@dataclass(frozen=True)
class RecognitionStatus:
    result: MatchResult
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def label(self) -> str:
        return self.result.label

    @property
    def confidence(self) -> float:
        return self.result.confidence


@dataclass
class PipelineStats:
    processed: int = 0
    dropped: int = 0
    failed: int = 0


StatusListener = Callable[[RecognitionStatus], None]
MatchListener = Callable[[MatchEvent], None]


class FramePipeline:
    """Single-flight frame scheduler.

    At most one frame is in flight. Frames that arrive while one is being
    processed are dropped, never queued. Processing runs on a single worker
    thread so the camera callback or fallback timer never blocks, and the
    state returns to IDLE after every frame, including failed ones.
    """

    def __init__(
        self,
        camera: CameraSource,
        model: EmbeddingModel,
        roster: Roster,
        matcher: Optional[Matcher] = None,
        debouncer: Optional[RecognitionDebouncer] = None,
        event_sink: Optional[EventSink] = None,
        fallback_interval: float = FALLBACK_INTERVAL_SECONDS,
        min_interval: float = MIN_INFERENCE_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.camera = camera
        self.model = model
        self.roster = roster
        self.matcher = matcher or Matcher()
        self.debouncer = debouncer or RecognitionDebouncer()
        self.event_sink = event_sink or NullEventSink()
        self.fallback_interval = max(0.01, float(fallback_interval))
        self.min_interval = max(0.0, float(min_interval))
        self.clock = clock
        self.input_size = int(model.input_size)
        self.logger = setup_logger(self.__class__.__name__)

        self.stats = PipelineStats()
        self._state = PipelineState.IDLE
        self._state_cond = threading.Condition()
        self._last_accepted_at: Optional[float] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._running = False
        self._source_active = False
        self._mode: Optional[str] = None

        self._fallback_stop = threading.Event()
        self._fallback_thread: Optional[threading.Thread] = None

        self._capture_lock = threading.Lock()
        self._last_embedding: Optional[np.ndarray] = None
        self._last_frame: Optional[np.ndarray] = None
        self._last_status: Optional[RecognitionStatus] = None

        self._status_listeners: List[StatusListener] = []
        self._match_listeners: List[MatchListener] = []

    @property
    def state(self) -> PipelineState:
        with self._state_cond:
            return self._state

    @property
    def mode(self) -> Optional[str]:
        return self._mode

    @property
    def running(self) -> bool:
        return self._running

    @property
    def last_status(self) -> Optional[RecognitionStatus]:
        return self._last_status

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def add_match_listener(self, listener: MatchListener) -> None:
        self._match_listeners.append(listener)

    def latest_capture(self) -> Tuple[Optional[np.ndarray], Optional[np.ndarray]]:
        """Most recent successfully embedded (embedding, RGB frame) pair."""
        with self._capture_lock:
            return self._last_embedding, self._last_frame

    def start(self) -> None:
        if self._running:
            return
        # CameraError propagates; start() can simply be called again.
        self.camera.open()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="frame-pipeline")
        self.debouncer.reset()
        self._running = True
        self._start_source()
        self.logger.info("Frame pipeline started in %s mode", self._mode)

    def pause(self) -> None:
        if not self._running:
            return
        self._stop_source()
        self.wait_idle()
        self.logger.info("Frame pipeline paused")

    def resume(self) -> None:
        if not self._running or self._source_active:
            return
        self._start_source()
        self.logger.info("Frame pipeline resumed in %s mode", self._mode)

    def stop(self) -> None:
        """Stop the frame source, cancel the fallback timer, drain, then release."""
        if not self._running:
            return
        self._running = False
        self._stop_source()

        executor = self._executor
        with self._state_cond:
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=True)

        self.camera.close()
        self.model.close()
        self.event_sink.close()
        self.logger.info(
            "Frame pipeline stopped (processed=%d dropped=%d failed=%d)",
            self.stats.processed,
            self.stats.dropped,
            self.stats.failed,
        )

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._state_cond:
            return self._state_cond.wait_for(lambda: self._state is PipelineState.IDLE, timeout=timeout)

    def on_frame(self, frame: RawFrame) -> bool:
        """Streaming callback. Returns False when the frame was dropped."""
        if not self._try_begin(rate_limited=True):
            return False
        return self._dispatch(lambda: convert_to_rgb(frame))

    def on_tick(self) -> bool:
        """Fallback timer tick: take a still unless a frame is in flight."""
        if not self._try_begin(rate_limited=False):
            return False
        return self._dispatch(lambda: decode_still(self.camera.take_picture()))

    def _start_source(self) -> None:
        if self.camera.supports_streaming:
            self._mode = "streaming"
            self.camera.start_stream(self.on_frame)
        else:
            self._mode = "fallback"
            self.logger.info("Streaming unavailable; capturing a still every %.2fs", self.fallback_interval)
            self._fallback_stop.clear()
            self._fallback_thread = threading.Thread(
                target=self._fallback_loop,
                name="frame-fallback-timer",
                daemon=True,
            )
            self._fallback_thread.start()
        self._source_active = True

    def _stop_source(self) -> None:
        if self._mode == "streaming":
            self.camera.stop_stream()
        self._fallback_stop.set()
        thread = self._fallback_thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=self.fallback_interval + 1.0)
        self._fallback_thread = None
        self._source_active = False

    def _fallback_loop(self) -> None:
        while not self._fallback_stop.wait(self.fallback_interval):
            self.on_tick()

    def _try_begin(self, rate_limited: bool) -> bool:
        now = self.clock()
        with self._state_cond:
            if self._executor is None:
                return False
            if self._state is PipelineState.PROCESSING:
                self.stats.dropped += 1
                self.logger.debug("Frame dropped: pipeline busy")
                return False
            if (
                rate_limited
                and self.min_interval > 0.0
                and self._last_accepted_at is not None
                and now - self._last_accepted_at < self.min_interval
            ):
                self.stats.dropped += 1
                self.logger.debug("Frame dropped: rate limited")
                return False
            self._state = PipelineState.PROCESSING
            self._last_accepted_at = now
            return True

    def _finish(self) -> None:
        with self._state_cond:
            self._state = PipelineState.IDLE
            self._state_cond.notify_all()

    def _dispatch(self, acquire: Callable[[], np.ndarray]) -> bool:
        with self._state_cond:
            executor = self._executor
        try:
            if executor is None:
                raise RuntimeError("pipeline is stopped")
            executor.submit(self._run, acquire)
        except RuntimeError:
            self._finish()
            return False
        return True

    def _run(self, acquire: Callable[[], np.ndarray]) -> None:
        try:
            self._process(acquire())
            self.stats.processed += 1
        except FaceRosterError as exc:
            self.stats.failed += 1
            self.logger.warning("Frame dropped: %s", exc)
        except DimensionMismatchError:
            # The worker future is never read.
            self.stats.failed += 1
            self.logger.critical("Embedding length invariant violated", exc_info=True)
        except Exception:
            self.stats.failed += 1
            self.logger.exception("Unexpected frame processing failure")
        finally:
            self._finish()

    def _process(self, rgb: np.ndarray) -> None:
        tensor = build_tensor(rgb, self.input_size)
        embedding = np.asarray(self.model.infer(tensor), dtype=np.float32).reshape(-1)
        if embedding.size != self.model.output_dim:
            raise ModelError(f"Model returned {embedding.size} values, expected {self.model.output_dim}.")

        with self._capture_lock:
            self._last_embedding = embedding
            self._last_frame = rgb

        result = self.matcher.match(embedding, self.roster.snapshot())
        status = RecognitionStatus(result=result)
        self._last_status = status
        self._publish(self._status_listeners, status)

        if self.debouncer.should_emit(result):
            event = MatchEvent(identity=result.identity, distance=result.distance)
            self.logger.info("Recognized %s (distance %.3f)", result.name, result.distance)
            self._publish(self._match_listeners, event)
            self.event_sink.notify(event)

    def _publish(self, listeners: list, payload) -> None:
        for listener in list(listeners):
            try:
                listener(payload)
            except Exception:
                self.logger.exception("Pipeline listener raised")
