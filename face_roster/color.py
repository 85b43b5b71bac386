from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union

import cv2
import numpy as np

from .exceptions import DimensionError, FormatError

Buffer = Union[bytes, bytearray, memoryview, np.ndarray]


class PixelFormat(str, Enum):
    YUV420 = "yuv420"
    BGRA8888 = "bgra8888"


@dataclass
class RawPlane:
    data: Buffer
    row_stride: int
    pixel_stride: int = 1


@dataclass
class RawFrame:
    pixel_format: PixelFormat | str
    width: int
    height: int
    planes: list[RawPlane] = field(default_factory=list)

    @classmethod
    def from_bgra(cls, bgra: np.ndarray) -> "RawFrame":
        """Wrap a contiguous H x W x 4 BGRA array as a single-plane frame."""
        if bgra.ndim != 3 or bgra.shape[2] != 4:
            raise FormatError(f"Expected an H x W x 4 array, got shape {bgra.shape}.")
        height, width = bgra.shape[:2]
        data = np.ascontiguousarray(bgra, dtype=np.uint8)
        return cls(
            pixel_format=PixelFormat.BGRA8888,
            width=width,
            height=height,
            planes=[RawPlane(data=data.reshape(-1), row_stride=width * 4, pixel_stride=4)],
        )


# BT.601-style coefficients applied to full-range YUV.
_R_V = 1.370705
_G_U = 0.337633
_G_V = 0.698001
_B_U = 1.732446


def convert_to_rgb(frame: RawFrame) -> np.ndarray:
    """Decode a raw camera buffer into an H x W x 3 uint8 RGB raster."""
    if frame.width <= 0 or frame.height <= 0:
        raise DimensionError(f"Frame has degenerate size {frame.width}x{frame.height}.")

    try:
        pixel_format = PixelFormat(frame.pixel_format)
    except ValueError as exc:
        raise FormatError(f"Unsupported pixel format: {frame.pixel_format!r}") from exc

    if pixel_format is PixelFormat.YUV420:
        return _yuv420_to_rgb(frame)
    return _bgra_to_rgb(frame)


def decode_still(data: bytes) -> np.ndarray:
    """Decode an encoded still capture (JPEG, PNG) into an RGB raster."""
    if not data:
        raise FormatError("Still capture is empty.")
    encoded = np.frombuffer(data, dtype=np.uint8)
    bgr = cv2.imdecode(encoded, cv2.IMREAD_COLOR)
    if bgr is None:
        raise FormatError("Still capture could not be decoded.")
    return cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)


def _plane_bytes(plane: RawPlane) -> np.ndarray:
    if plane.row_stride <= 0 or plane.pixel_stride <= 0:
        raise FormatError(
            f"Invalid plane strides: row_stride={plane.row_stride}, pixel_stride={plane.pixel_stride}"
        )
    if isinstance(plane.data, np.ndarray):
        return np.ascontiguousarray(plane.data, dtype=np.uint8).reshape(-1)
    return np.frombuffer(plane.data, dtype=np.uint8)


def _gather(plane: RawPlane, index: np.ndarray, label: str) -> np.ndarray:
    buf = _plane_bytes(plane)
    needed = int(index.max()) + 1
    if buf.size < needed:
        raise FormatError(f"{label} plane too short: {buf.size} bytes, need {needed}.")
    return buf[index].astype(np.float64)


def _yuv420_to_rgb(frame: RawFrame) -> np.ndarray:
    if len(frame.planes) != 3:
        raise FormatError(f"YUV420 expects 3 planes, got {len(frame.planes)}.")
    y_plane, u_plane, v_plane = frame.planes

    rows = np.arange(frame.height, dtype=np.intp)[:, None]
    cols = np.arange(frame.width, dtype=np.intp)[None, :]

    luma_index = rows * y_plane.row_stride + cols * y_plane.pixel_stride
    luma = _gather(y_plane, luma_index, "Y")

    # Chroma is subsampled by two in both directions.
    u_index = (rows >> 1) * u_plane.row_stride + (cols >> 1) * u_plane.pixel_stride
    v_index = (rows >> 1) * v_plane.row_stride + (cols >> 1) * v_plane.pixel_stride
    u = _gather(u_plane, u_index, "U") - 128.0
    v = _gather(v_plane, v_index, "V") - 128.0

    rgb = np.empty((frame.height, frame.width, 3), dtype=np.float64)
    rgb[..., 0] = luma + _R_V * v
    rgb[..., 1] = luma - _G_U * u - _G_V * v
    rgb[..., 2] = luma + _B_U * u

    return np.clip(np.trunc(rgb), 0, 255).astype(np.uint8)


def _bgra_to_rgb(frame: RawFrame) -> np.ndarray:
    if len(frame.planes) != 1:
        raise FormatError(f"BGRA8888 expects 1 plane, got {len(frame.planes)}.")
    plane = frame.planes[0]
    buf = _plane_bytes(plane)

    row_bytes = frame.width * 4
    if plane.row_stride < row_bytes:
        raise FormatError(f"Row stride {plane.row_stride} is smaller than row width {row_bytes}.")

    needed = (frame.height - 1) * plane.row_stride + row_bytes
    if buf.size < needed:
        raise FormatError(f"BGRA plane too short: {buf.size} bytes, need {needed}.")

    # The last row may omit its padding, so pad up to a whole number of strides.
    padded = np.zeros(frame.height * plane.row_stride, dtype=np.uint8)
    usable = min(buf.size, padded.size)
    padded[:usable] = buf[:usable]
    rows = padded.reshape(frame.height, plane.row_stride)[:, :row_bytes]
    bgra = np.ascontiguousarray(rows).reshape(frame.height, frame.width, 4)
    return cv2.cvtColor(bgra, cv2.COLOR_BGRA2RGB)
