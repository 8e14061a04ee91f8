"""
Tests for the OpenCV detectors.
"""

import numpy as np
import pytest

from src.target_follower.config import DetectorConfig
from src.target_follower.detector import ColorBlobDetector, FaceDetector, build_detectors


@pytest.fixture
def yellow_square():
    frame = np.zeros((480, 640, 3), dtype=np.uint8)
    frame[100:140, 100:140] = (0, 255, 255)
    return frame


class TestColorBlobDetector:
    """Test the HSV blob detector"""

    def test_finds_blob_centroid(self, yellow_square):
        observation = ColorBlobDetector().detect(yellow_square)
        assert observation.present
        assert observation.center == pytest.approx((119.5, 119.5), abs=0.5)

    def test_picks_largest_blob(self, yellow_square):
        yellow_square[300:330, 500:530] = (0, 255, 255)
        observation = ColorBlobDetector().detect(yellow_square)
        assert observation.center == pytest.approx((119.5, 119.5), abs=0.5)

    def test_black_frame(self):
        observation = ColorBlobDetector().detect(np.zeros((480, 640, 3), dtype=np.uint8))
        assert not observation.present
        assert observation.center is None

    def test_small_blob_is_ignored(self, yellow_square):
        detector = ColorBlobDetector(DetectorConfig(color_min_area_px=5000))
        assert not detector.detect(yellow_square).present

    def test_other_hues_are_ignored(self):
        frame = np.zeros((480, 640, 3), dtype=np.uint8)
        frame[100:140, 100:140] = (255, 0, 0)
        assert not ColorBlobDetector().detect(frame).present

    def test_grayscale_frame(self):
        assert not ColorBlobDetector().detect(np.zeros((480, 640), dtype=np.uint8)).present


class TestFaceDetector:
    """Test the Haar cascade wrapper"""

    def test_blank_image_has_no_faces(self):
        observation = FaceDetector().detect(np.zeros((480, 640, 3), dtype=np.uint8))
        assert not observation.found
        assert observation.primary is None

    def test_rejects_grayscale(self):
        with pytest.raises(ValueError):
            FaceDetector().detect(np.zeros((480, 640), dtype=np.uint8))

    def test_missing_cascade(self, tmp_path):
        with pytest.raises(RuntimeError):
            FaceDetector(DetectorConfig(cascade_path=str(tmp_path / "missing.xml")))


class TestBuildDetectors:
    """Test which detectors feed each policy"""

    def test_blended_uses_faces_and_blobs(self):
        faces, color = build_detectors("blended")
        assert isinstance(faces, FaceDetector)
        assert isinstance(color, ColorBlobDetector)

    def test_blended_without_faces(self):
        faces, color = build_detectors("blended", DetectorConfig(enable_faces=False))
        assert faces is None
        assert isinstance(color, ColorBlobDetector)

    def test_state_machine_ignores_color(self):
        faces, color = build_detectors("state_machine", DetectorConfig(enable_faces=False))
        assert isinstance(faces, FaceDetector)
        assert color is None
