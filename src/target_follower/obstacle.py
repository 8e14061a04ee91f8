from __future__ import annotations

import logging

LOG = logging.getLogger(__name__)


def is_obstacle(point_count: int, threshold: int) -> bool:
    """A search box holding more than ``threshold`` points is blocked; the bound is exclusive."""
    return point_count > threshold


class ObstacleMonitor:
    """Thresholds the scanner point count into an obstacle signal."""

    def __init__(self, threshold: int = 4000) -> None:
        self._threshold = threshold
        self._last: bool | None = None

    @property
    def threshold(self) -> int:
        return self._threshold

    def update(self, point_count: int) -> bool:
        detected = is_obstacle(point_count, self._threshold)
        if detected != self._last:
            if detected:
                LOG.info("Obstacle detected (%d points > %d)", point_count, self._threshold)
            else:
                LOG.info("Obstacle cleared (%d points)", point_count)
            self._last = detected
        return detected
