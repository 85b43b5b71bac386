from typing import Optional


class FaceRosterError(Exception):
    """Base exception for the identity-matching pipeline."""


class FormatError(FaceRosterError):
    """Raised when a camera buffer has an unsupported or malformed pixel layout."""


class DimensionError(FaceRosterError):
    """Raised when a raster has zero width or height."""


class ModelError(FaceRosterError):
    """Raised when the embedding model cannot be loaded or inference fails."""


class ValidationError(FaceRosterError):
    """Raised when enrollment metadata is incomplete."""

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        super().__init__(message or f"{field} is required.")


class NoFaceCapturedError(FaceRosterError):
    """Raised when enrollment is attempted before any successful inference."""


class NotFoundError(FaceRosterError):
    """Raised when an identity is not present in the roster."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Identity '{name}' not found.")


class PersistenceError(FaceRosterError):
    """Raised when the roster or thumbnail store cannot be read or written."""


class NetworkError(FaceRosterError):
    """Raised when a match event cannot be delivered to the remote sink."""


class CameraError(FaceRosterError):
    """Raised when camera access fails."""


class DimensionMismatchError(AssertionError):
    """Raised when two embeddings of different lengths are compared.

    All embeddings come from the same model, so this is a programming error
    rather than a recoverable condition.
    """
