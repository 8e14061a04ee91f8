from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, get_args, get_type_hints

import yaml

LOG = logging.getLogger(__name__)

POLICIES = ("blended", "state_machine")


class ConfigurationError(ValueError):
    """Raised when a follower configuration is inconsistent."""


@dataclass
class CameraConfig:
    """Streaming configuration for the RealSense camera."""

    width: int = 640
    height: int = 480
    fps: int = 30


@dataclass
class DetectorConfig:
    """Face and color-blob detector runtime parameters."""

    frame_width: int = 640
    frame_height: int = 480
    cascade_path: str | None = None
    enable_faces: bool = True
    scale_factor: float = 1.1
    min_neighbors: int = 5
    min_face_size: int = 30
    enable_color: bool = True
    color_hue_min: int = 20
    color_hue_max: int = 35
    color_saturation_min: int = 100
    color_value_min: int = 80
    color_min_area_px: int = 400


@dataclass
class ControllerConfig:
    """Search box, gains and arbitration thresholds for the follower."""

    min_x: float = -0.2
    max_x: float = 0.2
    min_y: float = 0.1
    max_y: float = 0.5
    max_z: float = 0.8
    goal_z: float = 0.6
    z_scale: float = 1.0
    x_scale: float = 5.0
    enabled: bool = True
    obstacle_point_threshold: int = 4000
    proximity_width_threshold: float = 100.0
    policy: str = "blended"
    tick_rate_hz: float = 10.0

    def validate(self) -> None:
        if not self.min_x < self.max_x:
            raise ConfigurationError(f"min_x ({self.min_x}) must be below max_x ({self.max_x}).")
        if not self.min_y < self.max_y:
            raise ConfigurationError(f"min_y ({self.min_y}) must be below max_y ({self.max_y}).")
        if self.max_z <= 0.0:
            raise ConfigurationError(f"max_z must be positive, got {self.max_z}.")
        if self.goal_z <= 0.0:
            raise ConfigurationError(f"goal_z must be positive, got {self.goal_z}.")
        if self.z_scale <= 0.0 or self.x_scale <= 0.0:
            raise ConfigurationError(
                f"z_scale and x_scale must be positive, got {self.z_scale} and {self.x_scale}."
            )
        if self.obstacle_point_threshold <= 0:
            raise ConfigurationError(
                f"obstacle_point_threshold must be positive, got {self.obstacle_point_threshold}."
            )
        if self.proximity_width_threshold <= 0:
            raise ConfigurationError(
                f"proximity_width_threshold must be positive, got {self.proximity_width_threshold}."
            )
        if self.policy not in POLICIES:
            raise ConfigurationError(f"Unknown policy {self.policy!r}; expected one of {POLICIES}.")
        if self.tick_rate_hz < 0.0:
            raise ConfigurationError(f"tick_rate_hz must not be negative, got {self.tick_rate_hz}.")


@dataclass
class FollowerConfig:
    """Aggregate configuration for the target follower."""

    camera: CameraConfig = field(default_factory=CameraConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)

    def validate(self) -> "FollowerConfig":
        if self.camera.width <= 0 or self.camera.height <= 0:
            raise ConfigurationError("Camera resolution must be positive.")
        if self.detector.frame_width <= 0 or self.detector.frame_height <= 0:
            raise ConfigurationError("Detector frame size must be positive.")
        self.controller.validate()
        return self

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "FollowerConfig":
        """Build a validated configuration from nested ``camera``/``detector``/``controller`` sections."""
        unknown = set(data) - {"camera", "detector", "controller"}
        if unknown:
            raise ConfigurationError(f"Unknown configuration sections: {sorted(unknown)}")
        config = cls(
            camera=_build_section(CameraConfig, data.get("camera")),
            detector=_build_section(DetectorConfig, data.get("detector")),
            controller=_build_section(ControllerConfig, data.get("controller")),
        )
        return config.validate()


def load_config(path: str | Path | None) -> FollowerConfig:
    """Load a YAML configuration file; ``None`` or a missing file yields the defaults."""
    if path is None:
        return FollowerConfig().validate()

    path = Path(path)
    if not path.exists():
        LOG.warning("Config file %s not found, using defaults", path)
        return FollowerConfig().validate()

    with path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Could not parse {path}: {exc}") from exc

    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Top level of {path} must be a mapping.")
    LOG.info("Configuration loaded from %s", path)
    return FollowerConfig.from_mapping(data)


def _build_section(section_cls, values: Mapping[str, Any] | None):
    if values is None:
        return section_cls()
    if not isinstance(values, Mapping):
        raise ConfigurationError(f"Section for {section_cls.__name__} must be a mapping.")
    known = {f.name for f in fields(section_cls)}
    unknown = set(values) - known
    if unknown:
        raise ConfigurationError(f"Unknown {section_cls.__name__} keys: {sorted(unknown)}")
    hints = get_type_hints(section_cls)
    checked = {name: _check_type(section_cls, name, value, hints[name]) for name, value in values.items()}
    return section_cls(**checked)


def _check_type(section_cls, name: str, value: Any, hint: Any) -> Any:
    """Reject values whose type does not match the field; ints are accepted for floats."""
    accepted = get_args(hint) or (hint,)
    if isinstance(value, bool):
        if bool in accepted:
            return value
    elif float in accepted and isinstance(value, (int, float)):
        return float(value)
    elif isinstance(value, accepted):
        return value
    expected = " or ".join("null" if t is type(None) else t.__name__ for t in accepted)
    raise ConfigurationError(
        f"{section_cls.__name__}.{name} must be {expected}, got {type(value).__name__} {value!r}."
    )
