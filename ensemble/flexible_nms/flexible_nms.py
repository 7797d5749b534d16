"""
Flexible NMS

Greedy clustering of one image's detections from several detector passes.
Each surviving anchor absorbs the boxes it strongly overlaps (geometry fused
by confidence-weighted averaging), softly decays the boxes it moderately
overlaps, and gets a confidence that rewards agreement across the ensemble.
"""

from typing import Dict, List, NamedTuple

import numpy as np

from ensemble.flexible_nms.box_utils import Box, compute_iou, gaussian_decay
from ensemble.flexible_nms.config import NMSConfig


class MergeCandidate(NamedTuple):
    index: int
    weight: float


def merge_weight(confidence: float, exponent: float) -> float:
    """Fusion weight of a box; negative confidences contribute nothing."""
    return max(confidence, 0.0) ** exponent


def fuse_geometry(boxes: List[Box], candidates: List[MergeCandidate]) -> None:
    """
    Overwrite the anchor (first candidate) geometry with the weighted average
    of all candidate boxes, coordinate by coordinate.
    """
    weights = np.array([c.weight for c in candidates], dtype=float)
    if weights.sum() <= 0:
        return

    coords = np.array([boxes[c.index].coords() for c in candidates], dtype=float)
    x0, y0, x1, y1 = np.average(coords, axis=0, weights=weights)

    anchor = boxes[candidates[0].index]
    anchor.x0, anchor.y0, anchor.x1, anchor.y1 = float(x0), float(y0), float(x1), float(y1)


def rescale_confidence(
    boxes: List[Box],
    candidates: List[MergeCandidate],
    ensemble_size: int,
) -> float:
    """
    Agreement score for a merged anchor.

    Sums the current confidences of at most ``ensemble_size`` candidates, in
    the order they were merged, and divides by ``ensemble_size`` rather than
    by the number of boxes summed. A box found by every pass scores close to
    the per-pass confidence, one found by a single pass scores a fraction of it.
    """
    top = candidates[:min(len(candidates), ensemble_size)]
    return sum(boxes[c.index].confidence for c in top) / ensemble_size


def flexible_nms(boxes: List[Box], config: NMSConfig) -> Dict[str, int]:
    """
    Run flexible NMS over one image's boxes, in place.

    The list is sorted by confidence (descending, stable so equal scores keep
    their input order). Boxes are never removed: absorbed boxes get
    ``dropped = True``. Surviving anchors get fused geometry and a rescaled
    confidence.

    Args:
        boxes: all detections for one image, from every pass
        config: validated NMSConfig (ensemble_size must be set)

    Returns:
        Counters {"boxes", "kept", "merged", "decayed"} for reporting
    """
    ensemble_size = config.ensemble_size
    stats = {"boxes": len(boxes), "kept": 0, "merged": 0, "decayed": 0}

    boxes.sort(key=lambda b: b.confidence, reverse=True)
    n = len(boxes)

    for i in range(n):
        anchor = boxes[i]
        if anchor.dropped:
            continue

        candidates = [MergeCandidate(i, merge_weight(anchor.confidence, config.merge_exponent))]

        for j in range(i + 1, n):
            other = boxes[j]
            if other.dropped:
                continue

            iou = compute_iou(anchor, other)

            if iou > config.merge_threshold:
                candidates.append(
                    MergeCandidate(j, merge_weight(other.confidence, config.merge_exponent))
                )
                other.dropped = True
            elif iou > config.suppress_threshold:
                other.confidence *= gaussian_decay(iou, config.decay_sigma)
                stats["decayed"] += 1

        if len(candidates) > 1:
            fuse_geometry(boxes, candidates)
            stats["merged"] += len(candidates) - 1

        anchor.confidence = rescale_confidence(boxes, candidates, ensemble_size)
        stats["kept"] += 1

    return stats
