from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from .config import THUMBNAIL_SIZE
from .exceptions import NoFaceCapturedError, PersistenceError, ValidationError
from .logger import setup_logger
from .pipeline import FramePipeline
from .roster import METADATA_FIELDS, Identity, Roster
from .tensor import encode_thumbnail


@dataclass
class EnrollmentMetadata:
    name: str
    id: str
    department: str
    section: str

    def cleaned(self) -> "EnrollmentMetadata":
        values = {}
        for key in METADATA_FIELDS:
            value = getattr(self, key)
            value = value.strip() if isinstance(value, str) else ""
            if not value:
                raise ValidationError(key)
            values[key] = value
        return EnrollmentMetadata(**values)


class EnrollmentController:
    """Turns the last computed embedding and frame into a roster entry.

    Runs outside the frame single-flight guard; roster writes are serialized
    by the roster itself. ``PersistenceError`` always reaches the caller.
    """

    def __init__(
        self,
        roster: Roster,
        pipeline: Optional[FramePipeline] = None,
        thumbnail_size: int = THUMBNAIL_SIZE,
    ):
        self.roster = roster
        self.pipeline = pipeline
        self.thumbnail_size = thumbnail_size
        self.logger = setup_logger(self.__class__.__name__)

    def enroll(
        self,
        metadata: EnrollmentMetadata,
        embedding: Optional[np.ndarray],
        frame: Optional[np.ndarray],
    ) -> Identity:
        if embedding is None or frame is None:
            raise NoFaceCapturedError("No face captured yet. Position your face in front of the camera.")

        metadata = metadata.cleaned()
        try:
            self.roster.thumbnails.path_for(metadata.name)
        except PersistenceError as exc:
            raise ValidationError("name", f"name {metadata.name!r} contains unsupported characters.") from exc

        thumbnail = encode_thumbnail(frame, self.thumbnail_size)
        vector = np.asarray(embedding, dtype=np.float32).reshape(-1)
        identity = Identity(
            name=metadata.name,
            id=metadata.id,
            department=metadata.department,
            section=metadata.section,
            embedding=tuple(float(value) for value in vector),
        )

        replacing = identity.name in self.roster
        self.roster.add(identity, thumbnail=thumbnail)
        self.logger.info(
            "%s %s (%s) with %d-dim embedding",
            "Re-enrolled" if replacing else "Enrolled",
            identity.name,
            identity.id,
            len(identity.embedding),
        )
        return identity

    def enroll_latest(self, metadata: EnrollmentMetadata) -> Identity:
        if self.pipeline is None:
            raise NoFaceCapturedError("No frame pipeline attached.")
        embedding, frame = self.pipeline.latest_capture()
        return self.enroll(metadata, embedding, frame)

    def delete(self, name: str) -> Identity:
        identity = self.roster.remove(name)
        self.logger.info("Deleted %s (%s)", identity.name, identity.id)
        return identity
