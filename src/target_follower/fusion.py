from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence, Union

from .config import ControllerConfig, DetectorConfig
from .depth import DepthObservation
from .obstacle import ObstacleMonitor

LOG = logging.getLogger(__name__)


class TargetSource(str, Enum):
    DEPTH = "depth"
    FACE = "face"
    COLOR = "color"


class FusionPolicy(str, Enum):
    BLENDED = "blended"
    FACE_ONLY = "face_only"


@dataclass(frozen=True)
class FaceBox:
    """Face bounding box in detector pixel coordinates."""

    center_x: float
    center_y: float
    width: float
    height: float

    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in (self.center_x, self.center_y, self.width, self.height))


@dataclass(frozen=True)
class FaceObservation:
    """Faces reported by the detector; an empty sequence means nobody was found."""

    faces: Sequence[FaceBox] = ()

    @property
    def primary(self) -> Optional[FaceBox]:
        if not self.faces:
            return None
        face = self.faces[0]
        return face if face.is_finite() else None

    @property
    def found(self) -> bool:
        return self.primary is not None


@dataclass(frozen=True)
class ColorObservation:
    """Color blob match. ``center`` is the blob center in pixels when the detector reports one."""

    present: bool
    center: Optional[tuple[float, float]] = None


Observation = Union[DepthObservation, FaceObservation, ColorObservation]


@dataclass(frozen=True)
class TargetEstimate:
    """Normalized target position; x and y lie in [-0.5, 0.5]."""

    x: float
    y: float
    valid: bool
    source: TargetSource

    @classmethod
    def missing(cls, source: TargetSource) -> "TargetEstimate":
        return cls(x=0.0, y=0.0, valid=False, source=source)


@dataclass
class SensorFusionState:
    """Smoothed per-source target positions carried across updates."""

    face_x: float = 0.0
    face_y: float = 0.0
    color_x: float = 0.0
    color_y: float = 0.0
    face_found: bool = False
    color_found: bool = False
    color_located: bool = False
    close_to_human: bool = False
    face_width: float = 0.0
    depth: DepthObservation = field(default_factory=DepthObservation.empty)
    obstacle_detected: bool = False


@dataclass(frozen=True)
class FusedSnapshot:
    """Immutable view of the fused sensor state handed to the behavior controllers."""

    point_count: int
    obstacle_detected: bool
    face_found: bool
    close_to_human: bool
    target: TargetEstimate
    depth: DepthObservation


def normalize(pixel: float, dimension: float) -> float:
    """Map a pixel coordinate to [-0.5, 0.5] around the frame center."""
    value = (pixel - dimension / 2.0) / dimension
    return min(max(value, -0.5), 0.5)


def smooth(sample: float, previous: float) -> float:
    return (sample + previous) / 2.0


class TargetFusion:
    """Blends depth, face and color observations into one target estimate.

    All mutation goes through :meth:`update`, which is called from the single
    control loop thread. The smoothed value of a source survives gaps in its
    detections, so smoothing resumes from the last known position.
    """

    def __init__(
        self,
        controller: ControllerConfig | None = None,
        detector: DetectorConfig | None = None,
        policy: FusionPolicy = FusionPolicy.BLENDED,
    ) -> None:
        self._controller = controller or ControllerConfig()
        self._detector = detector or DetectorConfig()
        self._policy = policy
        self._obstacles = ObstacleMonitor(self._controller.obstacle_point_threshold)

    @property
    def policy(self) -> FusionPolicy:
        return self._policy

    def update(self, state: SensorFusionState, observation: Observation) -> TargetEstimate:
        if isinstance(observation, DepthObservation):
            state.depth = observation
            state.obstacle_detected = self._obstacles.update(observation.n)
        elif isinstance(observation, FaceObservation):
            self._update_face(state, observation)
        elif isinstance(observation, ColorObservation):
            self._update_color(state, observation)
        else:
            raise TypeError(f"Unsupported observation type {type(observation).__name__}")
        return self.estimate(state)

    def estimate(self, state: SensorFusionState) -> TargetEstimate:
        if self._policy is FusionPolicy.FACE_ONLY:
            if state.face_found:
                return TargetEstimate(x=state.face_x, y=state.face_y, valid=True, source=TargetSource.FACE)
            return TargetEstimate.missing(TargetSource.FACE)

        if state.depth.n >= self._controller.obstacle_point_threshold:
            return TargetEstimate.missing(TargetSource.DEPTH)
        # a located blob wins; a face stands in when the blob has no usable center
        if state.color_found and state.color_located:
            return TargetEstimate(x=state.color_x, y=state.color_y, valid=True, source=TargetSource.COLOR)
        if state.face_found:
            return TargetEstimate(x=state.face_x, y=state.face_y, valid=True, source=TargetSource.FACE)
        if state.color_found:
            return TargetEstimate(x=state.color_x, y=state.color_y, valid=True, source=TargetSource.COLOR)
        return TargetEstimate.missing(TargetSource.DEPTH)

    def snapshot(self, state: SensorFusionState) -> FusedSnapshot:
        return FusedSnapshot(
            point_count=state.depth.n,
            obstacle_detected=state.obstacle_detected,
            face_found=state.face_found,
            close_to_human=state.close_to_human,
            target=self.estimate(state),
            depth=state.depth,
        )

    def _update_face(self, state: SensorFusionState, observation: FaceObservation) -> None:
        face = observation.primary
        if face is None:
            if state.face_found:
                LOG.debug("Face lost")
            state.face_found = False
            state.close_to_human = False
            return

        state.face_x = smooth(normalize(face.center_x, self._detector.frame_width), state.face_x)
        state.face_y = smooth(normalize(face.center_y, self._detector.frame_height), state.face_y)
        state.face_found = True
        state.face_width = face.width
        state.close_to_human = face.width > self._controller.proximity_width_threshold

    def _update_color(self, state: SensorFusionState, observation: ColorObservation) -> None:
        state.color_found = bool(observation.present)
        state.color_located = False
        if not observation.present or observation.center is None:
            return
        cx, cy = observation.center
        if not (math.isfinite(cx) and math.isfinite(cy)):
            return
        state.color_located = True
        state.color_x = smooth(normalize(cx, self._detector.frame_width), state.color_x)
        state.color_y = smooth(normalize(cy, self._detector.frame_height), state.color_y)
