"""
Closed-loop motion helpers driven by odometry.

These are not used by the follower policies; they drive the base over a
fixed distance or through a fixed angle while watching the pose reported by
a :class:`PoseSource`.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from .controller import VelocityCommand
from .loop import CommandSink

LOG = logging.getLogger(__name__)

ANGULAR_VELOCITY_MINIMUM = 0.4


class TransformUnavailableError(RuntimeError):
    """Raised when no pose is available for the base frame."""


@dataclass(frozen=True)
class Pose2D:
    x: float
    y: float
    yaw: float


class PoseSource(Protocol):
    def lookup(self) -> Pose2D:
        ...


def yaw_from_quaternion(x: float, y: float, z: float, w: float) -> float:
    return math.atan2(2.0 * (w * z + x * y), 1.0 - 2.0 * (y * y + z * z))


def wrap_angle(angle: float) -> float:
    """Wrap to (-pi, pi]."""
    wrapped = math.fmod(angle + math.pi, 2.0 * math.pi)
    if wrapped <= 0.0:
        wrapped += 2.0 * math.pi
    return wrapped - math.pi


class OdometryPoseSource:
    """Latest odometry pose, updated from the odometry callback thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pose: Pose2D | None = None

    def update(
        self,
        position: tuple[float, float, float],
        orientation: tuple[float, float, float, float],
    ) -> None:
        qx, qy, qz, qw = orientation
        pose = Pose2D(x=position[0], y=position[1], yaw=yaw_from_quaternion(qx, qy, qz, qw))
        with self._lock:
            self._pose = pose

    def lookup(self) -> Pose2D:
        with self._lock:
            pose = self._pose
        if pose is None:
            raise TransformUnavailableError("No odometry received yet.")
        return pose


class MotionPrimitive:
    """Drive a fixed distance or rotate a fixed angle, publishing at ``rate_hz``.

    Both calls block until the goal is reached. When the pose cannot be looked
    up after ``lookup_attempts`` tries the call is abandoned and the last
    published command stays in effect.
    """

    def __init__(
        self,
        sink: CommandSink,
        pose_source: PoseSource,
        *,
        rate_hz: float = 10.0,
        lookup_attempts: int = 3,
        retry_delay_s: float = 1.0,
        timeout_s: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate_hz <= 0:
            raise ValueError("rate_hz must be positive.")
        if lookup_attempts < 1:
            raise ValueError("lookup_attempts must be at least 1.")
        self._sink = sink
        self._pose_source = pose_source
        self._period = 1.0 / rate_hz
        self._lookup_attempts = lookup_attempts
        self._retry_delay = retry_delay_s
        self._timeout = timeout_s
        self._sleep = sleep
        self._clock = clock

    def move_distance(self, speed: float, distance: float, forward: bool = True) -> float:
        """Drive straight until ``distance`` meters are covered; returns the distance moved."""
        start = self._lookup()
        if start is None:
            LOG.error("Abandoning move: no initial pose")
            return 0.0

        linear = abs(speed) if forward else -abs(speed)
        command = VelocityCommand(linear, 0.0)
        moved = 0.0
        started_at = self._clock()
        while moved < distance:
            self._sink.send(command)
            self._sleep(self._period)
            pose = self._lookup()
            if pose is None:
                LOG.error("Abandoning move after %.2fm: pose unavailable", moved)
                return moved
            moved = math.hypot(pose.x - start.x, pose.y - start.y)
            if self._timed_out(started_at):
                LOG.warning("Move timed out after %.2fm of %.2fm", moved, distance)
                return moved

        self._sink.send(VelocityCommand.zero())
        return moved

    def rotate(self, angular_speed: float, radians: float, clockwise: bool = False) -> float:
        """Rotate in place by ``radians`` (normalized to [0, 2pi]); returns the angle turned."""
        angular_speed = max(angular_speed, ANGULAR_VELOCITY_MINIMUM)
        while radians < 0:
            radians += 2.0 * math.pi
        while radians > 2.0 * math.pi:
            radians -= 2.0 * math.pi

        start = self._lookup()
        if start is None:
            LOG.error("Abandoning rotation: no initial pose")
            return 0.0

        direction = -1.0 if clockwise else 1.0
        command = VelocityCommand(0.0, direction * angular_speed)
        turned = 0.0
        previous_yaw = start.yaw
        started_at = self._clock()
        while True:
            self._sink.send(command)
            self._sleep(self._period)
            pose = self._lookup()
            if pose is None:
                LOG.error("Abandoning rotation after %.3f rad: pose unavailable", turned)
                return turned

            turned += direction * wrap_angle(pose.yaw - previous_yaw)
            previous_yaw = pose.yaw
            if turned > radians:
                self._sink.send(VelocityCommand.zero())
                return turned
            if self._timed_out(started_at):
                LOG.warning("Rotation timed out after %.3f of %.3f rad", turned, radians)
                return turned

            # slow down linearly as the goal approaches
            remaining = min(max((radians - turned) / radians, 0.0), 1.0) if radians > 0 else 0.0
            magnitude = (angular_speed - ANGULAR_VELOCITY_MINIMUM) * remaining + ANGULAR_VELOCITY_MINIMUM
            command = VelocityCommand(0.0, direction * magnitude)

    def _lookup(self) -> Optional[Pose2D]:
        for attempt in range(1, self._lookup_attempts + 1):
            try:
                return self._pose_source.lookup()
            except TransformUnavailableError as exc:
                LOG.error("Pose lookup failed (attempt %d/%d): %s", attempt, self._lookup_attempts, exc)
                if attempt < self._lookup_attempts:
                    self._sleep(self._retry_delay)
        return None

    def _timed_out(self, started_at: float) -> bool:
        return self._timeout is not None and self._clock() - started_at > self._timeout
