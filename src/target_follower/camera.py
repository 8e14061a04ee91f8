from __future__ import annotations

import contextlib
import logging
import math
from dataclasses import dataclass
from typing import Iterator

import numpy as np

from .config import CameraConfig
from .depth import MILLIMETERS_TO_METERS, DepthFrame

try:
    import pyrealsense2 as rs
except ImportError as exc:  # pragma: no cover - exercised only without HW support
    rs = None
    _IMPORT_ERROR = exc
else:
    _IMPORT_ERROR = None

LOG = logging.getLogger(__name__)


class RealSenseUnavailableError(RuntimeError):
    """Raised when pyrealsense2 is not available in the environment."""


@dataclass
class FrameBundle:
    """Color image and the depth frame aligned to it."""

    color_bgr: np.ndarray
    depth: DepthFrame


class RealSenseCamera:
    """Streams color and depth aligned to the color view.

    Depth is handed over as raw z16 millimeters with the device row stride when
    the sensor reports millimeter units, and as float32 meters otherwise.
    """

    def __init__(self, config: CameraConfig | None = None) -> None:
        if rs is None:
            message = (
                "pyrealsense2 is not installed. Install librealsense SDK and "
                "pyrealsense2 before running the follower."
            )
            raise RealSenseUnavailableError(message) from _IMPORT_ERROR

        self._config = config or CameraConfig()
        self._pipeline: rs.pipeline | None = None
        self._align: rs.align | None = None
        self._depth_scale = MILLIMETERS_TO_METERS

    def start(self) -> None:
        if self._pipeline is not None:
            return

        cfg = self._config
        stream_config = rs.config()
        stream_config.enable_stream(rs.stream.color, cfg.width, cfg.height, rs.format.bgr8, cfg.fps)
        stream_config.enable_stream(rs.stream.depth, cfg.width, cfg.height, rs.format.z16, cfg.fps)

        pipeline = rs.pipeline()
        profile = pipeline.start(stream_config)
        self._depth_scale = profile.get_device().first_depth_sensor().get_depth_scale()
        LOG.info(
            "RealSense streaming %sx%s @ %s FPS (depth scale %.6f m)",
            cfg.width,
            cfg.height,
            cfg.fps,
            self._depth_scale,
        )

        self._align = rs.align(rs.stream.color)
        self._pipeline = pipeline

    def stop(self) -> None:
        if self._pipeline is None:
            return
        LOG.info("Stopping RealSense pipeline")
        self._pipeline.stop()
        self._pipeline = None
        self._align = None

    def frames(self, *, timeout_ms: int = 5000) -> FrameBundle | None:
        if self._pipeline is None or self._align is None:
            raise RuntimeError("Camera pipeline is not running. Call start() first.")

        frames = self._align.process(self._pipeline.wait_for_frames(timeout_ms))
        depth_frame = frames.get_depth_frame()
        color_frame = frames.get_color_frame()
        if not depth_frame or not color_frame:
            LOG.warning("Incomplete frame set from RealSense pipeline")
            return None

        color = np.asanyarray(color_frame.get_data())
        return FrameBundle(color_bgr=color, depth=self._to_depth_frame(depth_frame))

    def _to_depth_frame(self, depth_frame) -> DepthFrame:
        # copy: the SDK recycles the buffer once the frame is released
        raw = np.asanyarray(depth_frame.get_data()).copy()
        if math.isclose(self._depth_scale, MILLIMETERS_TO_METERS):
            return DepthFrame(
                width=depth_frame.get_width(),
                height=depth_frame.get_height(),
                row_stride_bytes=depth_frame.get_stride_in_bytes(),
                samples=raw.reshape(-1),
            )
        return DepthFrame.from_array(raw.astype(np.float32) * self._depth_scale)

    @contextlib.contextmanager
    def streaming(self) -> Iterator["RealSenseCamera"]:
        try:
            self.start()
            yield self
        finally:
            self.stop()
