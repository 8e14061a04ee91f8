from __future__ import annotations

import functools
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .config import ControllerConfig

HORIZONTAL_FOV_RAD = 60.0 / 57.0
VERTICAL_FOV_RAD = 45.0 / 57.0
NO_DEPTH = 1e6  # nearest-depth sentinel when nothing is inside the search box
MILLIMETERS_TO_METERS = 0.001


class MalformedDepthFrameError(ValueError):
    """Raised when a depth buffer does not match its declared geometry."""


@dataclass(frozen=True)
class DepthFrame:
    """Row-major depth image.

    ``samples`` holds either float32 meters (NaN, inf and non-positive values are
    invalid) or uint16 millimeters (0 is invalid). ``row_stride_bytes`` may exceed
    ``width * itemsize`` when rows are padded.
    """

    width: int
    height: int
    row_stride_bytes: int
    samples: np.ndarray

    @classmethod
    def from_array(cls, depth: np.ndarray) -> "DepthFrame":
        depth = np.ascontiguousarray(depth)
        if depth.ndim != 2:
            raise MalformedDepthFrameError("Expected a 2D depth array.")
        height, width = depth.shape
        return cls(width=width, height=height, row_stride_bytes=depth.strides[0], samples=depth)

    def rows(self) -> np.ndarray:
        """Return a read-only ``height x width`` view honoring the row stride."""
        samples = self.samples
        if not isinstance(samples, np.ndarray):
            samples = np.asarray(samples, dtype=np.float32)
        flat = np.ascontiguousarray(samples).reshape(-1)

        itemsize = flat.dtype.itemsize
        if self.width <= 0 or self.height <= 0:
            raise MalformedDepthFrameError(f"Invalid frame size {self.width}x{self.height}.")
        if self.row_stride_bytes % itemsize != 0:
            raise MalformedDepthFrameError(
                f"Row stride {self.row_stride_bytes} is not a multiple of sample size {itemsize}."
            )
        stride = self.row_stride_bytes // itemsize
        if stride < self.width:
            raise MalformedDepthFrameError(f"Row stride {stride} is shorter than width {self.width}.")
        needed = stride * (self.height - 1) + self.width
        if flat.size < needed:
            raise MalformedDepthFrameError(f"Depth buffer holds {flat.size} samples, need {needed}.")

        view = np.lib.stride_tricks.as_strided(
            flat,
            shape=(self.height, self.width),
            strides=(stride * itemsize, itemsize),
            writeable=False,
        )
        return view


@dataclass(frozen=True)
class DepthObservation:
    """Aggregate of the depth points found inside the search box."""

    centroid: Optional[tuple[float, float]]
    z: float
    n: int

    @classmethod
    def empty(cls) -> "DepthObservation":
        return cls(centroid=None, z=NO_DEPTH, n=0)

    @property
    def has_points(self) -> bool:
        return self.n > 0


@functools.lru_cache(maxsize=16)
def bearing_tables(
    width: int,
    height: int,
    horizontal_fov: float = HORIZONTAL_FOV_RAD,
    vertical_fov: float = VERTICAL_FOV_RAD,
) -> tuple[np.ndarray, np.ndarray]:
    """Sines of the per-column and per-row bearing angles.

    Rows are sign-inverted so image rows above the optical axis map to positive
    y. Both axes are scaled by the image width to keep pixels square.
    """
    columns = (np.arange(width, dtype=np.float64) - width / 2.0) * (horizontal_fov / width)
    rows = (height / 2.0 - np.arange(height, dtype=np.float64)) * (vertical_fov / width)
    sin_columns = np.sin(columns)
    sin_rows = np.sin(rows)
    sin_columns.setflags(write=False)
    sin_rows.setflags(write=False)
    return sin_columns, sin_rows


def decode_depth(samples: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Convert raw samples to meters and a validity mask."""
    if np.issubdtype(samples.dtype, np.integer):
        meters = samples.astype(np.float64) * MILLIMETERS_TO_METERS
        valid = samples > 0
    else:
        meters = samples.astype(np.float64)
        valid = np.isfinite(meters) & (meters > 0.0)
    return np.where(valid, meters, 0.0), valid


class DepthFieldScanner:
    """Finds the depth points that fall inside the configured search box."""

    def __init__(self, config: ControllerConfig | None = None) -> None:
        self._config = config or ControllerConfig()

    def scan(self, frame: DepthFrame, config: ControllerConfig | None = None) -> DepthObservation:
        """Raises :class:`MalformedDepthFrameError` when the buffer does not match its geometry."""
        cfg = config or self._config
        raw = frame.rows()

        sin_columns, sin_rows = bearing_tables(frame.width, frame.height)
        depth, valid = decode_depth(raw)
        valid &= depth <= cfg.max_z

        x = sin_columns[np.newaxis, :] * depth
        y = sin_rows[:, np.newaxis] * depth
        in_box = valid & (y > cfg.min_y) & (y < cfg.max_y) & (x > cfg.min_x) & (x < cfg.max_x)

        n = int(np.count_nonzero(in_box))
        if n == 0:
            return DepthObservation.empty()

        centroid = (float(x[in_box].sum() / n), float(y[in_box].sum() / n))
        z = float(depth[in_box].min())
        if not (math.isfinite(centroid[0]) and math.isfinite(centroid[1])):
            raise MalformedDepthFrameError(f"Non-finite centroid from {n} points.")
        return DepthObservation(centroid=centroid, z=z, n=n)
