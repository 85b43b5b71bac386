import os
import tempfile
import threading

os.environ.setdefault("FACE_ROSTER_LOG_DIR", tempfile.mkdtemp(prefix="face_roster_logs_"))

import cv2  # noqa: E402
import numpy as np  # noqa: E402
import pytest  # noqa: E402

from face_roster.camera import CameraSource  # noqa: E402
from face_roster.color import RawFrame  # noqa: E402
from face_roster.exceptions import CameraError, PersistenceError  # noqa: E402
from face_roster.model import EmbeddingModel  # noqa: E402
from face_roster.roster import Identity, Roster  # noqa: E402
from face_roster.storage import KeyValueStore, ThumbnailStore  # noqa: E402


class FakeModel(EmbeddingModel):
    def __init__(self, vector=(1.0, 0.0, 0.0, 0.0), input_size=16, log=None):
        self.vector = np.asarray(vector, dtype=np.float32)
        self.input_size = input_size
        self.calls = 0
        self.error = None
        self.gate = None
        self.entered = threading.Event()
        self.log = log if log is not None else []

    @property
    def output_dim(self):
        return int(self.vector.size)

    def infer(self, tensor):
        assert tensor.shape == (self.input_size, self.input_size, 3)
        self.calls += 1
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return self.vector.copy()

    def close(self):
        self.log.append("model.close")


def solid_png(value=90, size=24):
    image = np.full((size, size, 3), value, dtype=np.uint8)
    ok, encoded = cv2.imencode(".png", image)
    assert ok
    return encoded.tobytes()


class FakeCamera(CameraSource):
    def __init__(self, streaming=True, log=None):
        self.streaming = streaming
        self.callback = None
        self.open_error = None
        self.pictures = 0
        self.log = log if log is not None else []

    @property
    def supports_streaming(self):
        return self.streaming

    def open(self):
        if self.open_error is not None:
            raise self.open_error
        self.log.append("camera.open")

    def start_stream(self, callback):
        self.callback = callback
        self.log.append("camera.start_stream")

    def stop_stream(self):
        self.callback = None
        self.log.append("camera.stop_stream")

    def take_picture(self):
        self.pictures += 1
        return solid_png()

    def close(self):
        self.log.append("camera.close")

    def emit(self, frame=None):
        if self.callback is None:
            raise CameraError("stream not started")
        return self.callback(frame if frame is not None else bgra_frame())


def bgra_frame(value=120, width=8, height=8):
    return RawFrame.from_bgra(np.full((height, width, 4), value, dtype=np.uint8))


class FailingStore(KeyValueStore):
    def __init__(self, db_path):
        super().__init__(db_path)
        self.fail = False

    def put(self, key, value):
        if self.fail:
            raise PersistenceError("disk full")
        super().put(key, value)


def make_identity(name, embedding=(1.0, 0.0, 0.0, 0.0), person_id="1", department="CS", section="A"):
    return Identity(
        name=name,
        id=person_id,
        department=department,
        section=section,
        embedding=tuple(float(v) for v in embedding),
    )


@pytest.fixture
def store(tmp_path):
    return FailingStore(tmp_path / "roster.db")


@pytest.fixture
def thumbnails(tmp_path):
    return ThumbnailStore(tmp_path / "thumbs")


@pytest.fixture
def roster(store, thumbnails):
    roster = Roster(store=store, thumbnails=thumbnails)
    roster.load()
    return roster


@pytest.fixture
def reopen(store, thumbnails):
    def _reopen():
        fresh = Roster(store=KeyValueStore(store.db_path), thumbnails=ThumbnailStore(thumbnails.directory))
        fresh.load()
        return fresh

    return _reopen
