"""
Face and color-blob follower built around depth-image obstacle detection.
"""

from .config import (
    CameraConfig,
    ConfigurationError,
    ControllerConfig,
    DetectorConfig,
    FollowerConfig,
    load_config,
)
from .controller import (
    BehaviorController,
    BlendedController,
    RobotState,
    StateMachineController,
    VelocityCommand,
)
from .depth import DepthFieldScanner, DepthFrame, DepthObservation
from .fusion import (
    ColorObservation,
    FaceBox,
    FaceObservation,
    SensorFusionState,
    TargetEstimate,
    TargetFusion,
)
from .loop import ControlLoop, FollowResult, FollowState
from .motion import MotionPrimitive, OdometryPoseSource
from .obstacle import ObstacleMonitor, is_obstacle

__all__ = [
    "CameraConfig",
    "ConfigurationError",
    "ControllerConfig",
    "DetectorConfig",
    "FollowerConfig",
    "load_config",
    "BehaviorController",
    "BlendedController",
    "RobotState",
    "StateMachineController",
    "VelocityCommand",
    "DepthFieldScanner",
    "DepthFrame",
    "DepthObservation",
    "ColorObservation",
    "FaceBox",
    "FaceObservation",
    "SensorFusionState",
    "TargetEstimate",
    "TargetFusion",
    "ControlLoop",
    "FollowResult",
    "FollowState",
    "MotionPrimitive",
    "OdometryPoseSource",
    "ObstacleMonitor",
    "is_obstacle",
]
