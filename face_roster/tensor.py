import cv2
import numpy as np

from .exceptions import DimensionError, FormatError


def _check_raster(rgb: np.ndarray) -> None:
    if rgb.ndim != 3 or rgb.shape[2] != 3:
        raise FormatError(f"Expected an H x W x 3 RGB raster, got shape {rgb.shape}.")
    if rgb.shape[0] == 0 or rgb.shape[1] == 0:
        raise DimensionError(f"Raster has degenerate size {rgb.shape[1]}x{rgb.shape[0]}.")


def resize_rgb(rgb: np.ndarray, size: int) -> np.ndarray:
    _check_raster(rgb)
    if size <= 0:
        raise DimensionError(f"Target size must be positive, got {size}.")
    return cv2.resize(rgb, (size, size), interpolation=cv2.INTER_LINEAR)


def build_tensor(rgb: np.ndarray, size: int) -> np.ndarray:
    """Resize to size x size and scale every channel into [-1, 1]."""
    resized = resize_rgb(rgb, size).astype(np.float32)
    return (resized - 127.5) / 127.5


def encode_thumbnail(rgb: np.ndarray, size: int) -> bytes:
    resized = resize_rgb(rgb, size)
    ok, encoded = cv2.imencode(".png", cv2.cvtColor(resized, cv2.COLOR_RGB2BGR))
    if not ok:
        raise FormatError("Failed to encode thumbnail as PNG.")
    return encoded.tobytes()
