"""
Tests for the FastAPI control surface.
"""

import numpy as np
import pytest
from fastapi.testclient import TestClient

import src.web.app as web_app
from src.target_follower.config import FollowerConfig
from src.target_follower.depth import DepthFrame
from src.target_follower.fusion import ColorObservation
from src.target_follower.loop import ControlLoop
from src.target_follower.markers import MarkerBuffer
from src.target_follower.pipeline import PipelineState


class RecordingSink:
    def __init__(self):
        self.commands = []

    def send(self, command):
        self.commands.append(command)


class StubPipeline:
    """Pipeline stand-in backed by a real control loop."""

    def __init__(self, frame_jpeg=None):
        self.sink = RecordingSink()
        self._markers = MarkerBuffer()
        self.loop = ControlLoop(FollowerConfig(), sink=self.sink, exporter=self._markers)
        self.state = None
        self.frame_jpeg = frame_jpeg
        self.failure = None

    def drive(self):
        self.loop.process(ColorObservation(present=True, center=(480.0, 240.0)))
        self.loop.process(DepthFrame.from_array(np.full((48, 64), np.nan, dtype=np.float32)))
        self.state = PipelineState(
            timestamp=1.0,
            faces=None,
            color=None,
            status=self.loop.status(),
            annotated_frame_jpeg=self.frame_jpeg,
            fps=15.0,
        )

    def latest_state(self):
        return self.state

    def markers(self):
        return self._markers.latest()

    def set_following(self, state):
        return self.loop.set_following(state)

    def error(self):
        return self.failure


@pytest.fixture
def pipeline(monkeypatch):
    stub = StubPipeline()
    monkeypatch.setattr(web_app, "_pipeline", stub)
    monkeypatch.setattr(web_app, "_pipeline_error", None)
    return stub


@pytest.fixture
def client():
    return TestClient(web_app.app)


class TestHealth:
    def test_warming_up(self, pipeline, client):
        assert client.get("/api/health").json() == {"status": "warming_up"}

    def test_ok(self, pipeline, client):
        pipeline.drive()
        assert client.get("/api/health").json() == {"status": "ok"}

    def test_startup_error(self, monkeypatch, client):
        monkeypatch.setattr(web_app, "_pipeline", None)
        monkeypatch.setattr(web_app, "_pipeline_error", "pyrealsense2 is not installed.")
        body = client.get("/api/health").json()
        assert body["status"] == "error"
        assert "pyrealsense2" in body["message"]


class TestStatus:
    def test_warming_up(self, pipeline, client):
        assert client.get("/api/status").json() == {"status": "warming_up"}

    def test_reports_loop_status(self, pipeline, client):
        pipeline.drive()
        body = client.get("/api/status").json()
        assert body["status"] == "ok"
        assert body["enabled"] is True
        assert body["robot_state"] is None
        assert body["depth"] == {"points": 0, "centroid": None, "nearest_m": None, "obstacle": False}
        assert body["target"]["source"] == "color"
        assert body["target"]["x"] == pytest.approx(0.125)
        assert body["command"]["linear_x"] == pytest.approx(0.05)
        assert body["command"]["angular_z"] == pytest.approx(-0.125)
        assert body["fps"] == 15.0

    def test_unavailable_pipeline(self, monkeypatch, client):
        monkeypatch.setattr(web_app, "_pipeline", None)
        monkeypatch.setattr(web_app, "_pipeline_error", "camera missing")
        assert client.get("/api/status").status_code == 503

    def test_crashed_pipeline(self, pipeline, client):
        pipeline.failure = "Pipeline crashed; check logs for details."
        assert client.get("/api/status").status_code == 503


class TestMarkers:
    def test_lists_latest_markers(self, pipeline, client):
        pipeline.drive()
        markers = client.get("/api/markers").json()["markers"]
        assert [marker["shape"] for marker in markers] == ["sphere", "cube"]
        assert markers[1]["frame_id"] == "camera_rgb_optical_frame"


class TestFollow:
    def test_stop(self, pipeline, client):
        response = client.post("/api/follow", json={"state": "STOPPED"})
        assert response.status_code == 200
        assert response.json() == {"result": "OK"}
        pipeline.loop.run_pending()
        assert not pipeline.loop.controller.enabled
        assert pipeline.sink.commands[-1].is_zero

    def test_follow_is_case_insensitive(self, pipeline, client):
        assert client.post("/api/follow", json={"state": "follow"}).json() == {"result": "OK"}

    def test_rejects_unknown_state(self, pipeline, client):
        response = client.post("/api/follow", json={"state": "DANCE"})
        assert response.status_code == 400
        assert response.json() == {"result": "ERROR"}

    def test_requires_state_field(self, pipeline, client):
        assert client.post("/api/follow", json={}).status_code == 422


class TestFrame:
    def test_not_available(self, pipeline, client):
        assert client.get("/api/frame").status_code == 404

    def test_returns_jpeg(self, pipeline, client):
        pipeline.frame_jpeg = b"\xff\xd8jpeg"
        pipeline.drive()
        response = client.get("/api/frame")
        assert response.status_code == 200
        assert response.headers["content-type"] == "image/jpeg"
        assert response.content == b"\xff\xd8jpeg"
