"""
Box Utilities

Detection record and overlap helpers used by flexible NMS.

Coordinates are absolute pixel boundaries [x0, y0, x1, y1] where both
boundaries belong to the box, so a box with x0 == x1 is one pixel wide.
"""

import math
from dataclasses import dataclass


@dataclass
class Box:
    """One detection. ``dropped`` marks a box absorbed by a higher-confidence anchor."""

    x0: float
    y0: float
    x1: float
    y1: float
    confidence: float
    dropped: bool = False

    @property
    def width(self) -> float:
        return self.x1 - self.x0 + 1

    @property
    def height(self) -> float:
        return self.y1 - self.y0 + 1

    @property
    def area(self) -> float:
        return self.width * self.height

    def coords(self):
        return (self.x0, self.y0, self.x1, self.y1)


def compute_iou(box1: Box, box2: Box) -> float:
    """
    Compute IoU between two boxes using inclusive pixel areas.

    Returns exactly 0.0 when the intersection is empty, which also covers
    degenerate boxes (x1 < x0 or y1 < y0).
    """
    inter_w = min(box1.x1, box2.x1) - max(box1.x0, box2.x0) + 1
    if inter_w <= 0:
        return 0.0

    inter_h = min(box1.y1, box2.y1) - max(box1.y0, box2.y0) + 1
    if inter_h <= 0:
        return 0.0

    inter = inter_w * inter_h
    union = box1.area + box2.area - inter

    return inter / union


def gaussian_decay(iou: float, sigma: float) -> float:
    """Soft suppression multiplier exp(-iou^2 / sigma)."""
    return math.exp(-(iou * iou) / sigma)
