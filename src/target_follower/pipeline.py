from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

import cv2

from .camera import FrameBundle, RealSenseCamera, RealSenseUnavailableError
from .config import FollowerConfig
from .controller import Greeter
from .detector import build_detectors
from .fusion import ColorObservation, FaceObservation
from .loop import CommandSink, ControlLoop, FollowResult, FollowState, LoopStatus
from .markers import Marker, MarkerBuffer
from .visualization import annotate_frame, overlay_status

LOG = logging.getLogger(__name__)


@dataclass
class PipelineState:
    """Latest perception + control snapshot produced by the pipeline."""

    timestamp: float
    faces: FaceObservation | None
    color: ColorObservation | None
    status: LoopStatus | None
    annotated_frame_jpeg: bytes | None
    fps: float


class FollowerPipeline:
    """Reads the camera in a background thread and feeds the control loop.

    Depth frames and detections are queued as independent events; the control
    loop runs on its own thread and owns all fusion and controller state.
    """

    def __init__(
        self,
        config: FollowerConfig,
        *,
        sink: CommandSink | None = None,
        greeter: Greeter | None = None,
        annotate: bool = True,
        camera: RealSenseCamera | None = None,
    ) -> None:
        self._config = config
        self._camera = camera or RealSenseCamera(config.camera)
        self._face_detector, self._color_detector = build_detectors(config.controller.policy, config.detector)
        self._markers = MarkerBuffer()
        self._loop = ControlLoop(config, sink=sink, exporter=self._markers, greeter=greeter)

        self._annotate = annotate
        self._state: PipelineState | None = None
        self._error: str | None = None
        self._fps: float = 0.0
        self._last_timestamp: float | None = None

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def loop(self) -> ControlLoop:
        return self._loop

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._loop.start()
        self._thread = threading.Thread(target=self._run_loop, name="FollowerPipeline", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)
        self._thread = None
        self._loop.stop()
        self._loop.set_following(FollowState.STOPPED)
        self._loop.run_pending()

    def set_following(self, state: FollowState | str) -> FollowResult:
        return self._loop.set_following(state)

    def latest_state(self) -> PipelineState | None:
        with self._lock:
            return self._state

    def markers(self) -> tuple[Marker, ...]:
        return self._markers.latest()

    def error(self) -> Optional[str]:
        with self._lock:
            return self._error

    def _run_loop(self) -> None:
        LOG.info("Starting follower pipeline thread")
        try:
            with self._camera.streaming():
                while not self._stop_event.is_set():
                    frame_bundle = self._camera.frames()
                    if frame_bundle is None:
                        continue
                    state = self._process(frame_bundle)
                    with self._lock:
                        self._state = state
        except RealSenseUnavailableError as exc:
            LOG.error("RealSense unavailable: %s", exc)
            with self._lock:
                self._error = str(exc)
        except Exception:  # pragma: no cover - runtime guard for camera failures
            LOG.exception("Unhandled exception in pipeline loop")
            with self._lock:
                self._error = "Pipeline crashed; check logs for details."
        finally:
            LOG.info("Follower pipeline thread exiting")

    def _process(self, bundle: FrameBundle) -> PipelineState:
        faces = None
        if self._face_detector is not None:
            faces = self._face_detector.detect(bundle.color_bgr)
            self._loop.submit(faces)
        color = None
        if self._color_detector is not None:
            color = self._color_detector.detect(bundle.color_bgr)
            self._loop.submit(color)
        # depth last so the blended tick sees this frame's detections
        self._loop.submit(bundle.depth)

        now = time.time()
        if self._last_timestamp is not None:
            dt = now - self._last_timestamp
            if dt > 0:
                inst_fps = 1.0 / dt
                if self._fps == 0.0:
                    self._fps = inst_fps
                else:
                    self._fps = 0.8 * self._fps + 0.2 * inst_fps
        self._last_timestamp = now

        status = self._loop.status()
        annotated_bytes: bytes | None = None
        if self._annotate:
            annotated = bundle.color_bgr.copy()
            annotate_frame(annotated, faces, color)
            overlay_status(annotated, status)
            success, encoded = cv2.imencode(".jpg", annotated, [int(cv2.IMWRITE_JPEG_QUALITY), 80])
            if success:
                annotated_bytes = encoded.tobytes()

        return PipelineState(
            timestamp=now,
            faces=faces,
            color=color,
            status=status,
            annotated_frame_jpeg=annotated_bytes,
            fps=self._fps,
        )
