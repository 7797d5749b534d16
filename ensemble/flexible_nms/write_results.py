"""
Result writing

Serialize the boxes that survived flexible NMS as CSV rows
``image_filename,x0,y0,x1,y1,label,confidence``.
"""

import csv
from typing import Dict, Iterator, List, Optional, TextIO

from ensemble.flexible_nms.box_utils import Box
from ensemble.flexible_nms.config import OUTPUT_HEADER, NMSConfig


def filter_survivors(boxes: List[Box], min_confidence: Optional[float] = None) -> Iterator[Box]:
    """Yield boxes that were not dropped and clear the optional confidence floor."""
    for box in boxes:
        if box.dropped:
            continue
        if min_confidence is not None and box.confidence < min_confidence:
            continue
        yield box


def format_row(image_id: str, box: Box, config: NMSConfig) -> List[str]:
    cp = config.coord_precision
    return [
        image_id,
        f"{box.x0:.{cp}f}",
        f"{box.y0:.{cp}f}",
        f"{box.x1:.{cp}f}",
        f"{box.y1:.{cp}f}",
        config.label,
        f"{box.confidence:.{config.confidence_precision}f}",
    ]


def write_results(groups: Dict[str, List[Box]], stream: TextIO, config: NMSConfig) -> int:
    """
    Write surviving boxes of every image to ``stream``.

    Images are written in sorted identifier order; boxes within an image
    keep their post-NMS order.

    Returns:
        Number of box rows written
    """
    writer = csv.writer(stream, lineterminator="\n")
    writer.writerow(OUTPUT_HEADER)

    written = 0
    for image_id in sorted(groups):
        for box in filter_survivors(groups[image_id], config.min_confidence):
            writer.writerow(format_row(image_id, box, config))
            written += 1

    return written
