from __future__ import annotations

import logging
from pathlib import Path

import cv2
import numpy as np

from .config import DetectorConfig
from .fusion import ColorObservation, FaceBox, FaceObservation

LOG = logging.getLogger(__name__)

DEFAULT_CASCADE = "haarcascade_frontalface_default.xml"


class FaceDetector:
    """Haar-cascade face detector producing :class:`FaceObservation` messages.

    Faces are ordered largest first so the closest person drives the follower.
    """

    def __init__(self, config: DetectorConfig | None = None) -> None:
        self._config = config or DetectorConfig()
        cascade_path = self._config.cascade_path or str(Path(cv2.data.haarcascades) / DEFAULT_CASCADE)
        LOG.info("Loading face cascade %s", cascade_path)
        self._cascade = cv2.CascadeClassifier(cascade_path)
        if self._cascade.empty():
            raise RuntimeError(f"Could not load face cascade from {cascade_path}.")

    def detect(self, frame_bgr: np.ndarray) -> FaceObservation:
        if frame_bgr.ndim != 3:
            raise ValueError("Expected 3-channel color frame for detection.")

        gray = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2GRAY)
        gray = cv2.equalizeHist(gray)
        min_size = self._config.min_face_size
        boxes = self._cascade.detectMultiScale(
            gray,
            scaleFactor=self._config.scale_factor,
            minNeighbors=self._config.min_neighbors,
            minSize=(min_size, min_size),
        )
        faces = [
            FaceBox(center_x=x + w / 2.0, center_y=y + h / 2.0, width=float(w), height=float(h))
            for (x, y, w, h) in boxes
        ]
        faces.sort(key=lambda face: face.width, reverse=True)
        if faces:
            LOG.debug("Detected %d faces, largest width=%.0fpx", len(faces), faces[0].width)
        return FaceObservation(faces=tuple(faces))


class ColorBlobDetector:
    """HSV threshold detector reporting the centroid of the largest matching blob."""

    def __init__(self, config: DetectorConfig | None = None) -> None:
        self._config = config or DetectorConfig()
        cfg = self._config
        self._lower = np.array([cfg.color_hue_min, cfg.color_saturation_min, cfg.color_value_min], dtype=np.uint8)
        self._upper = np.array([cfg.color_hue_max, 255, 255], dtype=np.uint8)

    def detect(self, frame_bgr: np.ndarray) -> ColorObservation:
        if frame_bgr.ndim != 3 or frame_bgr.size == 0:
            return ColorObservation(present=False)

        hsv = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2HSV)
        mask = cv2.inRange(hsv, self._lower, self._upper)
        contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        if not contours:
            return ColorObservation(present=False)

        largest = max(contours, key=cv2.contourArea)
        moments = cv2.moments(largest)
        area = moments["m00"]
        if area < self._config.color_min_area_px:
            LOG.debug("Largest color blob too small (%.0f px)", area)
            return ColorObservation(present=False)

        center = (moments["m10"] / area, moments["m01"] / area)
        LOG.debug("Color blob area=%.0f center=(%.1f, %.1f)", area, center[0], center[1])
        return ColorObservation(present=True, center=center)


def build_detectors(
    policy: str, config: DetectorConfig | None = None
) -> tuple[FaceDetector | None, ColorBlobDetector | None]:
    """Detectors feeding a policy: the state machine sees faces only, the blended policy faces and blobs."""
    config = config or DetectorConfig()
    if policy == "state_machine":
        return FaceDetector(config), None
    face_detector = FaceDetector(config) if config.enable_faces else None
    color_detector = ColorBlobDetector(config) if config.enable_color else None
    return face_detector, color_detector
