import cv2
import numpy as np
import pytest

from face_roster.enrollment import EnrollmentController, EnrollmentMetadata
from face_roster.exceptions import NoFaceCapturedError, NotFoundError, PersistenceError, ValidationError

EMBEDDING = np.array([0.5, -0.25, 0.125, 1.0], dtype=np.float32)
FRAME = np.full((90, 120, 3), 77, dtype=np.uint8)


def alice(**overrides):
    fields = dict(name="Alice", id="1", department="CS", section="A")
    fields.update(overrides)
    return EnrollmentMetadata(**fields)


def test_enroll_round_trip(roster, reopen, thumbnails):
    controller = EnrollmentController(roster)
    identity = controller.enroll(alice(), EMBEDDING, FRAME)

    fresh = reopen()
    assert fresh.get("Alice") == identity
    assert identity.embedding == tuple(float(v) for v in EMBEDDING)

    data = fresh.thumbnail("Alice")
    assert data
    decoded = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    assert decoded.shape == (128, 128, 3)
    assert (thumbnails.directory / "Alice.png").is_file()


def test_metadata_is_stripped(roster):
    identity = EnrollmentController(roster).enroll(alice(name="  Alice ", section=" B"), EMBEDDING, FRAME)
    assert identity.name == "Alice"
    assert identity.section == "B"


@pytest.mark.parametrize("field", ["name", "id", "department", "section"])
def test_blank_field_is_named(roster, field):
    with pytest.raises(ValidationError) as info:
        EnrollmentController(roster).enroll(alice(**{field: "   "}), EMBEDDING, FRAME)
    assert info.value.field == field
    assert len(roster) == 0


def test_name_unusable_as_file_name_is_rejected(roster):
    with pytest.raises(ValidationError) as info:
        EnrollmentController(roster).enroll(alice(name="a/b"), EMBEDDING, FRAME)
    assert info.value.field == "name"


def test_enroll_without_capture_fails(roster):
    controller = EnrollmentController(roster)
    with pytest.raises(NoFaceCapturedError):
        controller.enroll(alice(), None, FRAME)
    with pytest.raises(NoFaceCapturedError):
        controller.enroll(alice(), EMBEDDING, None)


def test_reenroll_overwrites(roster):
    controller = EnrollmentController(roster)
    controller.enroll(alice(), EMBEDDING, FRAME)
    updated = controller.enroll(alice(department="EE"), EMBEDDING * 2, FRAME)
    assert len(roster) == 1
    assert roster.get("Alice") == updated


def test_delete_removes_identity_and_thumbnail(roster, reopen, thumbnails):
    controller = EnrollmentController(roster)
    controller.enroll(alice(), EMBEDDING, FRAME)
    controller.delete("Alice")

    assert "Alice" not in reopen()
    assert thumbnails.read("Alice") is None


def test_delete_absent_name_leaves_roster_unchanged(roster):
    controller = EnrollmentController(roster)
    controller.enroll(alice(), EMBEDDING, FRAME)
    controller.delete("Alice")

    with pytest.raises(NotFoundError):
        controller.delete("Alice")
    with pytest.raises(NotFoundError):
        controller.delete("Bob")
    assert len(roster) == 0


def test_persistence_failure_surfaces_and_writes_no_thumbnail(roster, store, thumbnails):
    store.fail = True
    with pytest.raises(PersistenceError):
        EnrollmentController(roster).enroll(alice(), EMBEDDING, FRAME)
    assert len(roster) == 0
    assert thumbnails.names() == []


class _StubPipeline:
    def __init__(self, embedding, frame):
        self.capture = (embedding, frame)

    def latest_capture(self):
        return self.capture


def test_enroll_latest_uses_pipeline_capture(roster):
    controller = EnrollmentController(roster, pipeline=_StubPipeline(EMBEDDING, FRAME))
    identity = controller.enroll_latest(alice())
    assert identity.embedding == tuple(float(v) for v in EMBEDDING)

    empty = EnrollmentController(roster, pipeline=_StubPipeline(None, None))
    with pytest.raises(NoFaceCapturedError):
        empty.enroll_latest(alice(name="Bob"))


def test_thumbnail_failure_leaves_person_unenrolled(roster, reopen, thumbnails, monkeypatch):
    def broken_write(name, data):
        raise PersistenceError("read-only filesystem")

    monkeypatch.setattr(thumbnails, "write", broken_write)
    with pytest.raises(PersistenceError):
        EnrollmentController(roster).enroll(alice(), EMBEDDING, FRAME)
    assert "Alice" not in roster
    assert "Alice" not in reopen()
