import logging
import threading
import time

import pytest

from face_roster.color import RawFrame, RawPlane
from face_roster.debounce import RecognitionDebouncer
from face_roster.events import EventSink
from face_roster.exceptions import CameraError, ModelError
from face_roster.matcher import Matcher
from face_roster.pipeline import FramePipeline, PipelineState

from conftest import FakeCamera, FakeModel, bgra_frame, make_identity


class RecordingSink(EventSink):
    def __init__(self, log=None):
        self.events = []
        self.log = log if log is not None else []

    def notify(self, event):
        self.events.append(event)

    def close(self):
        self.log.append("sink.close")


def wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def parts(roster):
    log = []
    return {
        "camera": FakeCamera(log=log),
        "model": FakeModel(log=log),
        "sink": RecordingSink(log=log),
        "roster": roster,
        "log": log,
    }


def make_pipeline(parts, **kwargs):
    return FramePipeline(
        camera=parts["camera"],
        model=parts["model"],
        roster=parts["roster"],
        matcher=kwargs.pop("matcher", Matcher(threshold=0.2)),
        debouncer=kwargs.pop("debouncer", RecognitionDebouncer(cooldown=5.0)),
        event_sink=parts["sink"],
        **kwargs,
    )


def test_frames_are_ignored_before_start(parts):
    pipeline = make_pipeline(parts)
    assert not pipeline.on_frame(bgra_frame())
    assert pipeline.state is PipelineState.IDLE
    assert parts["model"].calls == 0


def test_frames_arriving_while_processing_are_dropped(parts):
    model = parts["model"]
    model.gate = threading.Event()
    pipeline = make_pipeline(parts)
    pipeline.start()
    try:
        assert parts["camera"].emit()
        assert model.entered.wait(timeout=2)
        assert pipeline.state is PipelineState.PROCESSING

        assert not parts["camera"].emit()
        assert not parts["camera"].emit()
        assert pipeline.stats.dropped == 2
        assert pipeline.state is PipelineState.PROCESSING

        model.gate.set()
        assert pipeline.wait_idle(timeout=2)
        assert model.calls == 1

        assert parts["camera"].emit()
        assert pipeline.wait_idle(timeout=2)
        assert model.calls == 2
    finally:
        model.gate.set()
        pipeline.stop()


def test_inference_failure_returns_to_idle(parts):
    parts["model"].error = ModelError("backend crashed")
    pipeline = make_pipeline(parts)
    pipeline.start()
    try:
        assert parts["camera"].emit()
        assert pipeline.wait_idle(timeout=2)
        assert pipeline.stats.failed == 1
        assert pipeline.latest_capture() == (None, None)

        parts["model"].error = None
        assert parts["camera"].emit()
        assert pipeline.wait_idle(timeout=2)
        assert pipeline.stats.processed == 1
    finally:
        pipeline.stop()


def test_malformed_frame_returns_to_idle(parts):
    pipeline = make_pipeline(parts)
    pipeline.start()
    try:
        bad = RawFrame(pixel_format="rgb565", width=2, height=2, planes=[RawPlane(bytes(8), row_stride=4)])
        assert parts["camera"].emit(bad)
        assert pipeline.wait_idle(timeout=2)
        assert pipeline.stats.failed == 1
        assert parts["model"].calls == 0
    finally:
        pipeline.stop()


def test_match_updates_status_and_emits_one_event(parts):
    parts["roster"].add(make_identity("Alice", (1.0, 0.0, 0.0, 0.0)))
    statuses, matches = [], []
    pipeline = make_pipeline(parts)
    pipeline.add_status_listener(statuses.append)
    pipeline.add_match_listener(matches.append)
    pipeline.start()
    try:
        for _ in range(3):
            assert parts["camera"].emit()
            assert pipeline.wait_idle(timeout=2)
    finally:
        pipeline.stop()

    assert [status.label for status in statuses] == ["Alice"] * 3
    assert statuses[0].confidence == pytest.approx(1.0)
    assert len(matches) == 1
    assert matches[0].identity.name == "Alice"
    assert [event.identity.name for event in parts["sink"].events] == ["Alice"]


def test_unknown_face_emits_no_event(parts):
    parts["roster"].add(make_identity("Bob", (0.0, 1.0, 0.0, 0.0)))
    pipeline = make_pipeline(parts)
    pipeline.start()
    try:
        assert parts["camera"].emit()
        assert pipeline.wait_idle(timeout=2)
    finally:
        pipeline.stop()

    assert pipeline.last_status.label == "Unknown"
    assert parts["sink"].events == []


def test_latest_capture_holds_last_embedding_and_frame(parts):
    pipeline = make_pipeline(parts)
    pipeline.start()
    try:
        assert parts["camera"].emit(bgra_frame(value=200, width=10, height=6))
        assert pipeline.wait_idle(timeout=2)
        embedding, frame = pipeline.latest_capture()
    finally:
        pipeline.stop()

    assert embedding.tolist() == [1.0, 0.0, 0.0, 0.0]
    assert frame.shape == (6, 10, 3)


def test_listener_errors_do_not_stick_the_pipeline(parts):
    pipeline = make_pipeline(parts)

    def broken(_status):
        raise RuntimeError("ui went away")

    pipeline.add_status_listener(broken)
    pipeline.start()
    try:
        assert parts["camera"].emit()
        assert pipeline.wait_idle(timeout=2)
        assert pipeline.stats.processed == 1
        assert parts["camera"].emit()
    finally:
        pipeline.stop()


def test_min_interval_rate_limits_streaming(parts):
    now = {"t": 0.0}
    pipeline = make_pipeline(parts, min_interval=0.5, clock=lambda: now["t"])
    pipeline.start()
    try:
        assert parts["camera"].emit()
        assert pipeline.wait_idle(timeout=2)
        now["t"] = 0.2
        assert not parts["camera"].emit()
        now["t"] = 0.6
        assert parts["camera"].emit()
        assert pipeline.wait_idle(timeout=2)
    finally:
        pipeline.stop()
    assert parts["model"].calls == 2


def test_fallback_captures_stills_on_a_timer(parts):
    parts["camera"].streaming = False
    pipeline = make_pipeline(parts, fallback_interval=0.02)
    pipeline.start()
    try:
        assert pipeline.mode == "fallback"
        assert wait_for(lambda: pipeline.stats.processed >= 2)
    finally:
        pipeline.stop()
    assert parts["camera"].pictures >= 2


def test_fallback_tick_is_skipped_while_processing(parts):
    parts["camera"].streaming = False
    model = parts["model"]
    model.gate = threading.Event()
    pipeline = make_pipeline(parts, fallback_interval=10.0)
    pipeline.start()
    try:
        assert pipeline.on_tick()
        assert model.entered.wait(timeout=2)
        assert not pipeline.on_tick()
        assert parts["camera"].pictures == 1
    finally:
        model.gate.set()
        pipeline.stop()


def test_stop_tears_down_in_order(parts):
    pipeline = make_pipeline(parts)
    pipeline.start()
    assert parts["camera"].emit()
    pipeline.stop()

    log = parts["log"]
    assert log.index("camera.stop_stream") < log.index("camera.close") < log.index("model.close")
    assert log[-1] == "sink.close"
    assert pipeline.state is PipelineState.IDLE
    assert parts["model"].calls == 1
    assert not pipeline.on_frame(bgra_frame())


def test_pause_and_resume_restart_the_source(parts):
    pipeline = make_pipeline(parts)
    pipeline.start()
    try:
        pipeline.pause()
        assert parts["camera"].callback is None
        pipeline.resume()
        assert parts["camera"].emit()
        assert pipeline.wait_idle(timeout=2)
    finally:
        pipeline.stop()
    assert parts["log"].count("camera.start_stream") == 2


def test_camera_failure_at_start_can_be_retried(parts):
    parts["camera"].open_error = CameraError("no device")
    pipeline = make_pipeline(parts)
    with pytest.raises(CameraError):
        pipeline.start()
    assert not pipeline.running

    parts["camera"].open_error = None
    pipeline.start()
    try:
        assert pipeline.running
    finally:
        pipeline.stop()


def test_embedding_length_mismatch_is_logged_and_pipeline_recovers(parts, caplog):
    parts["roster"].add(make_identity("Alice", (1.0, 0.0, 0.0)))
    pipeline = make_pipeline(parts)
    pipeline.start()
    try:
        with caplog.at_level(logging.CRITICAL, logger="face_roster"):
            assert parts["camera"].emit()
            assert pipeline.wait_idle(timeout=2)
        assert pipeline.stats.failed == 1
        assert any(record.levelno == logging.CRITICAL for record in caplog.records)
        assert parts["camera"].emit()
        assert pipeline.wait_idle(timeout=2)
    finally:
        pipeline.stop()
