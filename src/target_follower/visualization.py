from __future__ import annotations

import cv2

from .controller import VelocityCommand
from .fusion import ColorObservation, FaceObservation
from .loop import LoopStatus


def annotate_frame(frame_bgr, faces: FaceObservation | None, color: ColorObservation | None) -> None:
    if faces is None or not faces.found:
        cv2.putText(frame_bgr, "No face detected", (16, 32), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (0, 0, 255), 2)
    else:
        for face in faces.faces:
            x1 = int(face.center_x - face.width / 2)
            y1 = int(face.center_y - face.height / 2)
            x2 = int(face.center_x + face.width / 2)
            y2 = int(face.center_y + face.height / 2)
            cv2.rectangle(frame_bgr, (x1, y1), (x2, y2), (0, 255, 0), 2)
        primary = faces.faces[0]
        text = f"width {primary.width:.0f}px"
        cv2.putText(frame_bgr, text, (16, 32), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 255, 0), 2)

    if color is not None and color.present and color.center is not None:
        center = (int(color.center[0]), int(color.center[1]))
        cv2.circle(frame_bgr, center, 8, (0, 255, 255), 2)


def overlay_status(frame_bgr, status: LoopStatus | None) -> None:
    if status is None:
        return
    command = status.command or VelocityCommand.zero()
    text = f"v={command.linear_x:+.2f} m/s | w={command.angular_z:+.2f} rad/s | n={status.snapshot.point_count}"
    if status.robot_state is not None:
        text += f" | {status.robot_state.name}"
    if not status.enabled:
        text += " | STOPPED"
    cv2.putText(frame_bgr, text, (16, frame_bgr.shape[0] - 16), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (255, 255, 255), 2)
