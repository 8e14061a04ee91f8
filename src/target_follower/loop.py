from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Union

from .config import FollowerConfig
from .controller import BehaviorController, Greeter, RobotState, StateMachineController, VelocityCommand, build_controller
from .depth import DepthFieldScanner, DepthFrame, DepthObservation, MalformedDepthFrameError
from .fusion import ColorObservation, FaceObservation, FusedSnapshot, SensorFusionState, TargetFusion
from .markers import MarkerExporter, markers_for

LOG = logging.getLogger(__name__)

MAX_PENDING_SENSOR_EVENTS = 30


class FollowState(str, Enum):
    STOPPED = "STOPPED"
    FOLLOW = "FOLLOW"


class FollowResult(str, Enum):
    OK = "OK"
    ERROR = "ERROR"


@dataclass(frozen=True)
class FollowRequest:
    state: FollowState


Event = Union[DepthFrame, DepthObservation, FaceObservation, ColorObservation, FollowRequest]


class CommandSink(Protocol):
    def send(self, command: VelocityCommand) -> None:
        ...


class LoggingCommandSink:
    """Sink for dry runs: logs each command instead of driving a base."""

    def send(self, command: VelocityCommand) -> None:
        LOG.debug("cmd_vel linear=%.2f angular=%+.2f", command.linear_x, command.angular_z)


@dataclass(frozen=True)
class LoopStatus:
    """Latest fused state and command, published for readers on other threads."""

    timestamp: float
    snapshot: FusedSnapshot
    command: Optional[VelocityCommand]
    robot_state: Optional[RobotState]
    enabled: bool


class ControlLoop:
    """Single consumer of all sensor and administration events.

    Fusion state and controller state are only touched by the thread that
    drains the queue (or by the caller of :meth:`run_pending` when no thread
    is running). The blended policy recomputes on every depth frame; the state
    machine recomputes on a fixed cadence from the latest snapshot unless
    ``tick_rate_hz`` is 0, in which case it recomputes on each face or depth
    event.
    """

    def __init__(
        self,
        config: FollowerConfig,
        *,
        controller: BehaviorController | None = None,
        sink: CommandSink | None = None,
        exporter: MarkerExporter | None = None,
        greeter: Greeter | None = None,
        max_pending: int = MAX_PENDING_SENSOR_EVENTS,
    ) -> None:
        self._config = config
        self._controller = controller or build_controller(config.controller, greeter=greeter)
        self._scanner = DepthFieldScanner(config.controller)
        self._fusion = TargetFusion(config.controller, config.detector, self._controller.fusion_policy)
        self._fusion_state = SensorFusionState()
        self._sink = sink or LoggingCommandSink()
        self._exporter = exporter

        rate = config.controller.tick_rate_hz
        if isinstance(self._controller, StateMachineController) and rate > 0:
            self._tick_period: float | None = 1.0 / rate
        else:
            self._tick_period = None

        self._events: "queue.Queue[Event]" = queue.Queue()
        self._max_pending = max_pending
        self._pending_lock = threading.Lock()
        self._pending_sensor = 0
        self._dropped = 0
        self._last_drop_log = 0.0
        self._status_lock = threading.Lock()
        self._status: LoopStatus | None = None
        self._last_command: VelocityCommand | None = None
        self._last_log_time = 0.0

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def controller(self) -> BehaviorController:
        return self._controller

    @property
    def cadence_s(self) -> float | None:
        return self._tick_period

    @property
    def dropped_events(self) -> int:
        with self._pending_lock:
            return self._dropped

    def submit(self, event: Event) -> None:
        """Queue an event. Sensor events are dropped while too many are pending; follow requests never are."""
        if not isinstance(event, FollowRequest):
            with self._pending_lock:
                if self._pending_sensor >= self._max_pending:
                    self._dropped += 1
                    now = time.monotonic()
                    if now - self._last_drop_log >= 1.0:
                        self._last_drop_log = now
                        LOG.warning(
                            "Control loop is behind (%d events pending); dropped %d sensor events so far",
                            self._pending_sensor,
                            self._dropped,
                        )
                    return
                self._pending_sensor += 1
        self._events.put(event)

    def set_following(self, state: FollowState | str) -> FollowResult:
        """Queue a start/stop request. Stopping emits a zero command when processed."""
        try:
            requested = FollowState(state.upper() if isinstance(state, str) else state)
        except ValueError:
            LOG.warning("Rejected follow state request %r", state)
            return FollowResult.ERROR
        self.submit(FollowRequest(requested))
        return FollowResult.OK

    def status(self) -> LoopStatus | None:
        with self._status_lock:
            return self._status

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="FollowerControlLoop", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)
        self._thread = None

    def run_pending(self) -> int:
        """Process every queued event on the calling thread."""
        processed = 0
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return processed
            self._dequeued(event)
            self.process(event)
            processed += 1

    def process(self, event: Event) -> Optional[VelocityCommand]:
        try:
            return self._handle(event)
        except Exception:
            LOG.exception("Failed to process %s; keeping last command", type(event).__name__)
            return None

    def tick(self) -> Optional[VelocityCommand]:
        snapshot = self._fusion.snapshot(self._fusion_state)
        command = self._controller.compute(snapshot)
        self._emit(command)
        self._export(snapshot)
        self._publish_status(snapshot, command)
        return command

    def _dequeued(self, event: Event) -> None:
        if not isinstance(event, FollowRequest):
            with self._pending_lock:
                self._pending_sensor -= 1

    def _handle(self, event: Event) -> Optional[VelocityCommand]:
        if isinstance(event, FollowRequest):
            return self._apply_follow(event.state)

        if isinstance(event, DepthFrame):
            try:
                observation = self._scanner.scan(event)
            except MalformedDepthFrameError as exc:
                # blind frame: leave depth and obstacle state untouched
                LOG.warning("Dropping malformed depth frame (%s); keeping last command", exc)
                return None
        else:
            observation = event
        self._fusion.update(self._fusion_state, observation)
        if self._tick_period is None and isinstance(observation, self._controller.triggers):
            return self.tick()
        return None

    def _apply_follow(self, state: FollowState) -> Optional[VelocityCommand]:
        if state is FollowState.STOPPED:
            if self._controller.enabled:
                LOG.info("Change mode request: following stopped")
            self._controller.enabled = False
            command = VelocityCommand.zero()
            self._emit(command)
            return command

        if not self._controller.enabled:
            LOG.info("Change mode request: following (re)started")
        self._controller.enabled = True
        return None

    def _emit(self, command: Optional[VelocityCommand]) -> None:
        if command is None:
            return
        try:
            self._sink.send(command)
        except Exception:
            LOG.exception("Command sink failed to send %s", command)
        self._last_command = command

    def _export(self, snapshot: FusedSnapshot) -> None:
        if self._exporter is None:
            return
        try:
            self._exporter.export(markers_for(snapshot, self._config.controller))
        except Exception:
            LOG.exception("Marker export failed")

    def _publish_status(self, snapshot: FusedSnapshot, command: Optional[VelocityCommand]) -> None:
        robot_state = self._controller.state if isinstance(self._controller, StateMachineController) else None
        now = time.time()
        status = LoopStatus(
            timestamp=now,
            snapshot=snapshot,
            command=command if command is not None else self._last_command,
            robot_state=robot_state,
            enabled=self._controller.enabled,
        )
        with self._status_lock:
            self._status = status

        if now - self._last_log_time >= 1.0:
            self._last_log_time = now
            _log_status(status)

    def _run_loop(self) -> None:
        LOG.info("Starting follower control loop (cadence=%s)", self._tick_period)
        next_tick = time.monotonic() + (self._tick_period or 0.0)
        try:
            while not self._stop_event.is_set():
                timeout = 0.1
                if self._tick_period is not None:
                    timeout = max(0.0, next_tick - time.monotonic())
                try:
                    event = self._events.get(timeout=timeout)
                except queue.Empty:
                    pass
                else:
                    self._dequeued(event)
                    self.process(event)

                if self._tick_period is not None and time.monotonic() >= next_tick:
                    self.tick()
                    next_tick = max(next_tick + self._tick_period, time.monotonic())
        finally:
            LOG.info("Follower control loop exiting")


def _log_status(status: LoopStatus) -> None:
    snapshot = status.snapshot
    if not status.enabled:
        LOG.info("Following disabled")
        return
    state = f" state={status.robot_state.name}" if status.robot_state is not None else ""
    command = status.command or VelocityCommand.zero()
    LOG.info(
        "points=%d obstacle=%s target=%s(%+.2f, %+.2f)%s lin=%.2f ang=%+.2f",
        snapshot.point_count,
        snapshot.obstacle_detected,
        snapshot.target.source.value if snapshot.target.valid else "none",
        snapshot.target.x,
        snapshot.target.y,
        state,
        command.linear_x,
        command.angular_z,
    )
