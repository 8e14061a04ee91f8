"""
Tests for the blended controller and the state machine controller.
"""

import itertools

import pytest

from src.target_follower.config import ControllerConfig
from src.target_follower.controller import (
    BlendedController,
    RobotState,
    StateMachineController,
    VelocityCommand,
    build_controller,
    next_state,
)
from src.target_follower.depth import DepthObservation
from src.target_follower.fusion import FusedSnapshot, TargetEstimate, TargetSource


def snapshot(
    n=0,
    target_x=0.0,
    target_valid=False,
    source=TargetSource.COLOR,
    face=False,
    obstacle=False,
    close=False,
):
    depth = DepthObservation(centroid=(0.0, 0.2), z=0.5, n=n) if n else DepthObservation.empty()
    return FusedSnapshot(
        point_count=n,
        obstacle_detected=obstacle,
        face_found=face,
        close_to_human=close,
        target=TargetEstimate(x=target_x, y=0.0, valid=target_valid, source=source),
        depth=depth,
    )


# Every branch of both policies, used by the enable/disable tests.
BLENDED_BRANCHES = [
    snapshot(n=3999, target_x=0.25, target_valid=True),
    snapshot(n=4001),
    snapshot(n=10),
    snapshot(n=4000, target_valid=True),
]
FSM_BRANCHES = [
    snapshot(),
    snapshot(obstacle=True),
    snapshot(face=True, target_x=0.1, target_valid=True, source=TargetSource.FACE),
    snapshot(face=True, close=True, target_valid=True, source=TargetSource.FACE),
]


class TestVelocityCommand:
    def test_zero(self):
        assert VelocityCommand.zero() == VelocityCommand(0.0, 0.0)
        assert VelocityCommand.zero().is_zero
        assert not VelocityCommand(0.1, 0.0).is_zero


class TestBlendedController:
    """Test the continuous control law"""

    @pytest.fixture
    def controller(self):
        return BlendedController(ControllerConfig())

    def test_steers_toward_color_target(self, controller):
        command = controller.compute(snapshot(n=3999, target_x=0.25, target_valid=True))
        assert command.linear_x == pytest.approx(0.05)
        assert command.angular_z == pytest.approx(-0.25)

    def test_steering_uses_z_scale(self):
        controller = BlendedController(ControllerConfig(z_scale=2.0))
        command = controller.compute(snapshot(n=0, target_x=-0.1, target_valid=True))
        assert command.angular_z == pytest.approx(0.2)

    def test_reverses_when_box_is_full(self, controller):
        assert controller.compute(snapshot(n=4001)) == VelocityCommand(-2.5, 0.0)

    def test_reverses_even_with_target(self, controller):
        assert controller.compute(snapshot(n=5000, target_valid=True)) == VelocityCommand(-2.5, 0.0)

    def test_no_command_without_target(self, controller):
        assert controller.compute(snapshot(n=10)) is None

    def test_stops_at_threshold(self, controller):
        assert controller.compute(snapshot(n=4000)) == VelocityCommand.zero()
        assert controller.compute(snapshot(n=4000, target_valid=True)) == VelocityCommand.zero()


EXPECTED_STATES = {
    (False, False, False): RobotState.SEARCH,
    (False, False, True): RobotState.SEARCH,
    (False, True, False): RobotState.AVOID,
    (False, True, True): RobotState.SEARCH,
    (True, False, False): RobotState.APPROACH,
    (True, False, True): RobotState.ENGAGE,
    (True, True, False): RobotState.AVOID,
    (True, True, True): RobotState.ENGAGE,
}


class TestTransitions:
    """Test the state machine transition table exhaustively"""

    def test_table_covers_all_combinations(self):
        assert set(EXPECTED_STATES) == set(itertools.product((False, True), repeat=3))

    @pytest.mark.parametrize("face, obstacle, close", list(EXPECTED_STATES))
    def test_next_state(self, face, obstacle, close):
        assert next_state(face, obstacle, close) is EXPECTED_STATES[(face, obstacle, close)]

    @pytest.mark.parametrize("face, obstacle, close", list(EXPECTED_STATES))
    def test_controller_follows_table(self, face, obstacle, close):
        controller = StateMachineController(ControllerConfig(), greeter=lambda: None)
        controller.compute(snapshot(face=face, obstacle=obstacle, close=close))
        assert controller.state is EXPECTED_STATES[(face, obstacle, close)]


class TestStateMachineController:
    """Test state actions and the engage debounce"""

    @pytest.fixture
    def greetings(self):
        return []

    @pytest.fixture
    def controller(self, greetings):
        return StateMachineController(ControllerConfig(), greeter=lambda: greetings.append(1))

    def test_starts_in_search(self, controller):
        assert controller.state is RobotState.SEARCH

    def test_search_crawls_forward(self, controller):
        assert controller.compute(snapshot()) == VelocityCommand(0.3, 0.0)

    def test_avoid_reverses(self, controller):
        assert controller.compute(snapshot(obstacle=True)) == VelocityCommand(-1.0, 0.0)

    def test_approach_steers_toward_face(self, controller):
        command = controller.compute(snapshot(face=True, target_x=0.2, target_valid=True, source=TargetSource.FACE))
        assert command.linear_x == pytest.approx(0.2)
        assert command.angular_z == pytest.approx(-0.2)

    def test_engage_emits_no_velocity(self, controller, greetings):
        assert controller.compute(snapshot(face=True, close=True)) is None
        assert greetings == [1]

    def test_engage_fires_once_per_dwell(self, controller, greetings):
        for _ in range(10):
            controller.compute(snapshot(face=True, close=True))
        assert controller.state is RobotState.ENGAGE
        assert len(greetings) == 1

    def test_engage_fires_again_after_leaving(self, controller, greetings):
        for _ in range(3):
            controller.compute(snapshot(face=True, close=True))
        controller.compute(snapshot(face=True))
        for _ in range(3):
            controller.compute(snapshot(face=True, close=True))
        assert len(greetings) == 2

    def test_engage_overrides_obstacle(self, controller, greetings):
        controller.compute(snapshot(face=True, obstacle=True, close=True))
        assert controller.state is RobotState.ENGAGE

    def test_greeter_failure_is_contained(self, caplog):
        def broken():
            raise RuntimeError("speaker unplugged")

        controller = StateMachineController(ControllerConfig(), greeter=broken)
        assert controller.compute(snapshot(face=True, close=True)) is None
        assert "Greeting callback failed" in caplog.text


class TestEnabledGate:
    """Test that a disabled controller only ever emits zero"""

    @pytest.mark.parametrize("snap", BLENDED_BRANCHES)
    def test_blended_disabled(self, snap):
        controller = BlendedController(ControllerConfig(enabled=False))
        assert controller.compute(snap) == VelocityCommand.zero()

    @pytest.mark.parametrize("snap", FSM_BRANCHES)
    def test_state_machine_disabled(self, snap):
        greetings = []
        controller = StateMachineController(ControllerConfig(enabled=False), greeter=lambda: greetings.append(1))
        assert controller.compute(snap) == VelocityCommand.zero()
        assert greetings == []

    def test_blended_resumes_when_enabled(self):
        controller = BlendedController(ControllerConfig())
        controller.enabled = False
        assert controller.compute(BLENDED_BRANCHES[0]) == VelocityCommand.zero()
        controller.enabled = True
        assert controller.compute(BLENDED_BRANCHES[0]) == VelocityCommand(0.05, -0.25)

    def test_state_machine_resumes_when_enabled(self):
        controller = StateMachineController(ControllerConfig(), greeter=lambda: None)
        controller.enabled = False
        assert controller.compute(FSM_BRANCHES[1]) == VelocityCommand.zero()
        controller.enabled = True
        assert controller.compute(FSM_BRANCHES[1]) == VelocityCommand(-1.0, 0.0)


class TestBuildController:
    def test_blended_by_default(self):
        assert isinstance(build_controller(ControllerConfig()), BlendedController)

    def test_state_machine(self):
        controller = build_controller(ControllerConfig(policy="state_machine"))
        assert isinstance(controller, StateMachineController)
