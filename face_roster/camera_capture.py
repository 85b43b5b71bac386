from __future__ import annotations

import os
import sys
import time
from dataclasses import dataclass
from typing import List, Optional

import cv2

from .exceptions import CameraError

# Display name -> cv2 constant name. Constants missing from the local OpenCV
# build resolve to None and are skipped.
_BACKENDS = {
    "auto": ("Auto", "CAP_ANY"),
    "any": ("Auto", "CAP_ANY"),
    "v4l2": ("V4L2", "CAP_V4L2"),
    "dshow": ("DirectShow", "CAP_DSHOW"),
    "directshow": ("DirectShow", "CAP_DSHOW"),
    "msmf": ("Media Foundation", "CAP_MSMF"),
    "avfoundation": ("AVFoundation", "CAP_AVFOUNDATION"),
}


@dataclass
class CaptureBackend:
    name: str
    api: Optional[int]


@dataclass
class CaptureHandle:
    capture: cv2.VideoCapture
    backend: str


def _default_order() -> List[str]:
    if os.name == "nt":
        return ["dshow", "msmf", "auto"]
    if sys.platform == "darwin":
        return ["avfoundation", "auto"]
    return ["v4l2", "auto"]


def capture_backends() -> List[CaptureBackend]:
    raw = os.getenv("FACE_ROSTER_CAMERA_BACKENDS", "").strip()
    order = [item.strip().lower() for item in raw.split(",") if item.strip()] if raw else _default_order()
    if "auto" not in order and "any" not in order:
        order.append("auto")

    backends: List[CaptureBackend] = []
    seen: set[Optional[int]] = set()
    for key in order:
        entry = _BACKENDS.get(key)
        if entry is None:
            continue
        name, constant = entry
        api = getattr(cv2, constant, None)
        if api is None and constant != "CAP_ANY":
            continue
        if api in seen:
            continue
        seen.add(api)
        backends.append(CaptureBackend(name=name, api=api))
    return backends


def _delivers_frames(capture: cv2.VideoCapture, attempts: int = 6) -> bool:
    # Some backends report opened=True and then never deliver a frame.
    for _ in range(attempts):
        ok, frame = capture.read()
        if ok and frame is not None:
            return True
        time.sleep(0.03)
    return False


def open_camera_capture(camera_index: int) -> CaptureHandle:
    tried: List[str] = []
    for backend in capture_backends():
        tried.append(backend.name)
        if backend.api is None:
            capture = cv2.VideoCapture(camera_index)
        else:
            capture = cv2.VideoCapture(camera_index, backend.api)

        if capture.isOpened() and _delivers_frames(capture):
            return CaptureHandle(capture=capture, backend=backend.name)
        capture.release()

    raise CameraError(
        f"Unable to open camera index {camera_index}. Tried backends: {', '.join(tried) or 'none'}."
    )
