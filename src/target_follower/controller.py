from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .config import ControllerConfig
from .depth import DepthObservation
from .fusion import FaceObservation, FusedSnapshot, FusionPolicy

LOG = logging.getLogger(__name__)

Greeter = Callable[[], None]


@dataclass(frozen=True)
class VelocityCommand:
    linear_x: float = 0.0
    angular_z: float = 0.0

    @classmethod
    def zero(cls) -> "VelocityCommand":
        return cls(0.0, 0.0)

    @property
    def is_zero(self) -> bool:
        return self.linear_x == 0.0 and self.angular_z == 0.0


class RobotState(str, Enum):
    SEARCH = "search"
    AVOID = "avoid"
    APPROACH = "approach"
    ENGAGE = "engage"


class BehaviorController:
    """Common gate for the follower policies.

    ``compute`` returns the command to publish, or ``None`` when the policy
    leaves the previous command in place. While disabled every tick yields a
    zero command and the policy itself is not consulted.
    """

    fusion_policy: FusionPolicy = FusionPolicy.BLENDED
    triggers: tuple[type, ...] = ()

    def __init__(self, config: ControllerConfig | None = None) -> None:
        self._config = config or ControllerConfig()
        self.enabled = self._config.enabled

    def compute(self, snapshot: FusedSnapshot) -> Optional[VelocityCommand]:
        if not self.enabled:
            return VelocityCommand.zero()
        return self._decide(snapshot)

    def _decide(self, snapshot: FusedSnapshot) -> Optional[VelocityCommand]:
        raise NotImplementedError


class BlendedController(BehaviorController):
    """Proportional steering toward the color target, backing off when the search box fills up."""

    APPROACH_SPEED = 0.05
    REVERSE_SPEED = -2.5

    triggers = (DepthObservation,)

    def _decide(self, snapshot: FusedSnapshot) -> Optional[VelocityCommand]:
        cfg = self._config
        n = snapshot.point_count
        threshold = cfg.obstacle_point_threshold

        if n < threshold and snapshot.target.valid:
            return VelocityCommand(self.APPROACH_SPEED, -snapshot.target.x * cfg.z_scale)
        if n > threshold:
            return VelocityCommand(self.REVERSE_SPEED, 0.0)
        if n < threshold:
            # no target yet; a search behavior would go here
            return None
        return VelocityCommand.zero()


def next_state(face_found: bool, obstacle_detected: bool, close_to_human: bool) -> RobotState:
    """Transition table of the state machine; ENGAGE wins over an obstacle."""
    if not face_found and not obstacle_detected and not close_to_human:
        return RobotState.SEARCH
    if obstacle_detected and not close_to_human:
        return RobotState.AVOID
    if face_found and not obstacle_detected and not close_to_human:
        return RobotState.APPROACH
    if face_found and close_to_human:
        return RobotState.ENGAGE
    return RobotState.SEARCH


class StateMachineController(BehaviorController):
    """Four-state face follower: search, avoid, approach and engage."""

    SEARCH_SPEED = 0.3
    AVOID_SPEED = -1.0
    APPROACH_SPEED = 0.2

    fusion_policy = FusionPolicy.FACE_ONLY
    triggers = (FaceObservation, DepthObservation)

    def __init__(self, config: ControllerConfig | None = None, greeter: Greeter | None = None) -> None:
        super().__init__(config)
        self._greeter = greeter or _log_greeting
        self._state = RobotState.SEARCH
        self._greeted = False

    @property
    def state(self) -> RobotState:
        return self._state

    def _decide(self, snapshot: FusedSnapshot) -> Optional[VelocityCommand]:
        state = next_state(snapshot.face_found, snapshot.obstacle_detected, snapshot.close_to_human)
        if state is not self._state:
            LOG.info("State %s -> %s", self._state.name, state.name)
            self._state = state
            self._greeted = False

        if state is RobotState.SEARCH:
            return VelocityCommand(self.SEARCH_SPEED, 0.0)
        if state is RobotState.AVOID:
            return VelocityCommand(self.AVOID_SPEED, 0.0)
        if state is RobotState.APPROACH:
            return VelocityCommand(self.APPROACH_SPEED, -snapshot.target.x * self._config.z_scale)

        if not self._greeted:
            self._greeted = True
            try:
                self._greeter()
            except Exception:  # greeting is fire-and-forget
                LOG.exception("Greeting callback failed")
        return None


def build_controller(config: ControllerConfig, greeter: Greeter | None = None) -> BehaviorController:
    if config.policy == "state_machine":
        return StateMachineController(config, greeter=greeter)
    return BlendedController(config)


def _log_greeting() -> None:
    LOG.info("Engaging with human")
