from __future__ import annotations

import threading
import time
from typing import Callable, Optional

import cv2
import numpy as np

from .camera_capture import open_camera_capture
from .color import RawFrame
from .config import CAMERA_INDEX, CAMERA_STREAMING, FRAME_FPS, FRAME_HEIGHT, FRAME_WIDTH, STILL_JPEG_QUALITY
from .exceptions import CameraError
from .logger import setup_logger

FrameCallback = Callable[[RawFrame], None]


class CameraSource:
    """Either a push stream of raw frames or discrete still captures."""

    @property
    def supports_streaming(self) -> bool:
        return False

    def open(self) -> None:
        return None

    def start_stream(self, callback: FrameCallback) -> None:
        raise CameraError("Streaming is not supported by this camera source.")

    def stop_stream(self) -> None:
        return None

    def take_picture(self) -> bytes:
        raise NotImplementedError

    def close(self) -> None:
        return None

    def __enter__(self) -> "CameraSource":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class OpenCVCameraSource(CameraSource):
    """Webcam source on top of ``cv2.VideoCapture``.

    Streamed frames are delivered as BGRA8888 raw frames from a reader thread;
    stills are JPEG-encoded.
    """

    def __init__(
        self,
        camera_index: int = CAMERA_INDEX,
        streaming: bool = CAMERA_STREAMING,
        width: int = FRAME_WIDTH,
        height: int = FRAME_HEIGHT,
        fps: int = FRAME_FPS,
    ):
        self.camera_index = camera_index
        self.streaming = streaming
        self.width = width
        self.height = height
        self.fps = fps
        self.logger = setup_logger(self.__class__.__name__)

        self.cap: Optional[cv2.VideoCapture] = None
        self.backend_name: Optional[str] = None
        self._capture_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._reader: Optional[threading.Thread] = None

    @property
    def supports_streaming(self) -> bool:
        return self.streaming

    def open(self) -> None:
        if self.cap is not None:
            return
        handle = open_camera_capture(self.camera_index)
        handle.capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        handle.capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        handle.capture.set(cv2.CAP_PROP_FPS, self.fps)
        self.cap = handle.capture
        self.backend_name = handle.backend
        self.logger.info("Camera %s opened with %s backend", self.camera_index, self.backend_name)

    def start_stream(self, callback: FrameCallback) -> None:
        if not self.streaming:
            raise CameraError("Streaming disabled for this camera source.")
        if self._reader is not None and self._reader.is_alive():
            return

        self._stop_event.clear()
        self._reader = threading.Thread(
            target=self._stream_loop,
            args=(callback,),
            name="camera-stream",
            daemon=True,
        )
        self._reader.start()

    def stop_stream(self) -> None:
        self._stop_event.set()
        if self._reader is not None and self._reader.is_alive():
            self._reader.join(timeout=2.0)
        self._reader = None

    def take_picture(self) -> bytes:
        frame = self._read_bgr()
        ok, encoded = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), STILL_JPEG_QUALITY])
        if not ok:
            raise CameraError("Failed to encode still capture.")
        return encoded.tobytes()

    def close(self) -> None:
        self.stop_stream()
        with self._capture_lock:
            if self.cap is not None:
                self.cap.release()
                self.cap = None
        self.logger.info("Camera %s released", self.camera_index)

    def _read_bgr(self) -> np.ndarray:
        with self._capture_lock:
            if self.cap is None:
                raise CameraError("Camera is not open.")
            ok, frame = self.cap.read()
        if not ok or frame is None:
            raise CameraError("Failed to read frame from camera.")
        return frame

    def _stream_loop(self, callback: FrameCallback) -> None:
        while not self._stop_event.is_set():
            try:
                frame = self._read_bgr()
            except CameraError as exc:
                self.logger.warning("Stream read failed: %s", exc)
                time.sleep(0.05)
                continue

            raw = RawFrame.from_bgra(cv2.cvtColor(frame, cv2.COLOR_BGR2BGRA))
            try:
                callback(raw)
            except Exception:
                self.logger.exception("Frame callback raised")
