from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from .config import ControllerConfig
from .fusion import FusedSnapshot

LOG = logging.getLogger(__name__)

CAMERA_FRAME = "camera_rgb_optical_frame"
TARGET_MARKER_ID = 0
SEARCH_BOX_MARKER_ID = 1


@dataclass(frozen=True)
class Marker:
    """Plain-data visualization marker in the camera optical frame."""

    marker_id: int
    shape: str
    position: tuple[float, float, float]
    scale: tuple[float, float, float]
    color_rgba: tuple[float, float, float, float]
    frame_id: str = CAMERA_FRAME

    def as_dict(self) -> dict:
        return {
            "id": self.marker_id,
            "shape": self.shape,
            "frame_id": self.frame_id,
            "position": list(self.position),
            "scale": list(self.scale),
            "color": list(self.color_rgba),
        }


class MarkerExporter(Protocol):
    def export(self, markers: Sequence[Marker]) -> None:
        ...


def target_marker(x: float, y: float, z: float) -> Marker:
    return Marker(
        marker_id=TARGET_MARKER_ID,
        shape="sphere",
        position=(x, y, z),
        scale=(0.2, 0.2, 0.2),
        color_rgba=(1.0, 0.0, 0.0, 1.0),
    )


def search_box_marker(config: ControllerConfig) -> Marker:
    """Cuboid covering the search box; y is flipped to the optical frame."""
    x = (config.min_x + config.max_x) / 2.0
    y = (config.min_y + config.max_y) / 2.0
    z = config.max_z / 2.0
    return Marker(
        marker_id=SEARCH_BOX_MARKER_ID,
        shape="cube",
        position=(x, -y, z),
        scale=(config.max_x - config.min_x, config.max_y - config.min_y, config.max_z),
        color_rgba=(0.0, 1.0, 0.0, 0.5),
    )


def markers_for(snapshot: FusedSnapshot, config: ControllerConfig) -> list[Marker]:
    markers: list[Marker] = []
    position = _target_position(snapshot, config)
    if position is not None:
        markers.append(target_marker(*position))
    markers.append(search_box_marker(config))
    return markers


def _target_position(snapshot: FusedSnapshot, config: ControllerConfig) -> Optional[tuple[float, float, float]]:
    depth = snapshot.depth
    if snapshot.target.valid:
        z = depth.z if depth.has_points else config.goal_z
        return (snapshot.target.x, snapshot.target.y, z)
    if depth.centroid is not None:
        return (depth.centroid[0], depth.centroid[1], depth.z)
    return None


class MarkerBuffer:
    """Keeps the most recent marker set for readers on other threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._markers: tuple[Marker, ...] = ()

    def export(self, markers: Sequence[Marker]) -> None:
        with self._lock:
            self._markers = tuple(markers)

    def latest(self) -> tuple[Marker, ...]:
        with self._lock:
            return self._markers
