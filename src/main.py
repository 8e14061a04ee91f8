from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

import cv2

from .target_follower.camera import FrameBundle, RealSenseCamera, RealSenseUnavailableError
from .target_follower.config import ConfigurationError, FollowerConfig, load_config
from .target_follower.detector import ColorBlobDetector, FaceDetector, build_detectors
from .target_follower.fusion import ColorObservation, FaceObservation
from .target_follower.loop import ControlLoop
from .target_follower.visualization import annotate_frame, overlay_status

LOG = logging.getLogger("target_follower")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Face / color-blob follower with depth obstacle detection.")

    parser.add_argument("--config", type=Path, default=None, help="YAML configuration file.")
    parser.add_argument("--policy", choices=("blended", "state_machine"), default=None, help="Behavior policy.")
    parser.add_argument("--width", type=int, default=None, help="Color/depth stream width.")
    parser.add_argument("--height", type=int, default=None, help="Color/depth stream height.")
    parser.add_argument("--fps", type=int, default=None, help="Stream frames per second.")
    parser.add_argument("--min-x", type=float, default=None, help="Search box left bound (m).")
    parser.add_argument("--max-x", type=float, default=None, help="Search box right bound (m).")
    parser.add_argument("--min-y", type=float, default=None, help="Search box lower bound (m).")
    parser.add_argument("--max-y", type=float, default=None, help="Search box upper bound (m).")
    parser.add_argument("--max-z", type=float, default=None, help="Search box depth limit (m).")
    parser.add_argument("--z-scale", type=float, default=None, help="Steering gain.")
    parser.add_argument("--obstacle-points", type=int, default=None, help="Point count above which the box is blocked.")
    parser.add_argument("--proximity-width", type=float, default=None, help="Face width (px) that counts as close.")
    parser.add_argument("--tick-rate", type=float, default=None, help="State machine tick rate (Hz); 0 ticks per event.")
    parser.add_argument("--disabled", action="store_true", help="Start with following stopped.")
    parser.add_argument("--display", action="store_true", help="Render annotated frames in an OpenCV window.")
    parser.add_argument("--save-video", type=Path, default=None, help="Optional output video path (mp4).")
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, ...).")

    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def create_config(args: argparse.Namespace) -> FollowerConfig:
    config = load_config(args.config)

    camera_overrides = {"width": args.width, "height": args.height, "fps": args.fps}
    for name, value in camera_overrides.items():
        if value is not None:
            setattr(config.camera, name, value)
    if args.width is not None:
        config.detector.frame_width = args.width
    if args.height is not None:
        config.detector.frame_height = args.height

    controller_overrides = {
        "policy": args.policy,
        "min_x": args.min_x,
        "max_x": args.max_x,
        "min_y": args.min_y,
        "max_y": args.max_y,
        "max_z": args.max_z,
        "z_scale": args.z_scale,
        "obstacle_point_threshold": args.obstacle_points,
        "proximity_width_threshold": args.proximity_width,
        "tick_rate_hz": args.tick_rate,
    }
    for name, value in controller_overrides.items():
        if value is not None:
            setattr(config.controller, name, value)
    if args.disabled:
        config.controller.enabled = False

    return config.validate()


def create_video_writer(path: Path, width: int, height: int, fps: int):
    path.parent.mkdir(parents=True, exist_ok=True)
    fourcc = cv2.VideoWriter_fourcc(*"mp4v")
    return cv2.VideoWriter(str(path), fourcc, float(fps), (width, height))


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    try:
        config = create_config(args)
    except ConfigurationError as exc:
        LOG.error("Invalid configuration: %s", exc)
        return 2

    try:
        camera = RealSenseCamera(config.camera)
    except RealSenseUnavailableError as exc:
        LOG.error("%s", exc)
        return 1

    face_detector, color_detector = build_detectors(config.controller.policy, config.detector)
    loop = ControlLoop(config)
    LOG.info("Running %s policy", config.controller.policy)

    video_writer = None
    if args.save_video is not None:
        video_writer = create_video_writer(args.save_video, config.camera.width, config.camera.height, config.camera.fps)
        LOG.info("Recording annotated stream to %s", args.save_video)

    loop.start()
    try:
        with camera.streaming():
            while True:
                frame_bundle = camera.frames()
                if frame_bundle is None:
                    continue
                faces, color = process_frame(
                    frame_bundle, loop=loop, face_detector=face_detector, color_detector=color_detector
                )

                if args.display or video_writer is not None:
                    viz = frame_bundle.color_bgr.copy()
                    annotate_frame(viz, faces, color)
                    overlay_status(viz, loop.status())

                    if args.display:
                        cv2.imshow("TargetFollower", viz)
                        if cv2.waitKey(1) & 0xFF == ord("q"):
                            LOG.info("Received quit signal (q).")
                            break
                    if video_writer is not None:
                        video_writer.write(viz)
    except KeyboardInterrupt:
        LOG.info("Interrupted by user.")
    finally:
        loop.stop()
        loop.set_following("STOPPED")
        loop.run_pending()
        if video_writer is not None:
            video_writer.release()
        if args.display:
            cv2.destroyAllWindows()

    return 0


def process_frame(
    bundle: FrameBundle,
    *,
    loop: ControlLoop,
    face_detector: FaceDetector | None,
    color_detector: ColorBlobDetector | None,
) -> tuple[Optional[FaceObservation], Optional[ColorObservation]]:
    """Queue any detections, then the depth frame, as independent events."""
    faces = face_detector.detect(bundle.color_bgr) if face_detector is not None else None
    if faces is not None:
        loop.submit(faces)
    color = color_detector.detect(bundle.color_bgr) if color_detector is not None else None
    if color is not None:
        loop.submit(color)
    loop.submit(bundle.depth)
    return faces, color


if __name__ == "__main__":
    sys.exit(main())
