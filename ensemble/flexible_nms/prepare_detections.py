"""
Detection loading

Read detection CSV files (one per detector pass) and group their rows by
image. Every file must carry the columns in REQUIRED_COLUMNS; extra columns
are ignored and column order does not matter.
"""

import csv
import logging
import math
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from tqdm import tqdm

from ensemble.flexible_nms.box_utils import Box
from ensemble.flexible_nms.config import REQUIRED_COLUMNS

logger = logging.getLogger(__name__)


class InputFormatError(ValueError):
    """Raised when a detection file does not have the expected layout."""


def parse_row(row: Dict[str, str]) -> Tuple[str, Box]:
    """
    Convert one CSV row to (image_id, Box).

    Raises:
        ValueError: when a required field is missing, empty, not numeric or not finite
    """
    image_id = row.get("image_filename")
    if image_id is None or image_id == "":
        raise ValueError("missing image_filename")

    values = []
    for name in REQUIRED_COLUMNS[1:]:
        raw = row.get(name)
        if raw is None or raw.strip() == "":
            raise ValueError(f"missing {name}")
        value = float(raw)
        if not math.isfinite(value):
            raise ValueError(f"non-finite {name}")
        values.append(value)

    x0, y0, x1, y1, confidence = values
    return image_id, Box(x0, y0, x1, y1, confidence)


def read_detections(path: Path, show_progress: bool = False) -> Tuple[List[Tuple[str, Box]], int]:
    """
    Read one detection CSV.

    Malformed rows are skipped with a warning. A leading UTF-8 BOM is ignored.

    Returns:
        ([(image_id, Box)], number_of_skipped_rows)
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Detection file not found: {path}")

    detections = []
    skipped = 0

    try:
        with open(path, "r", newline="", encoding="utf-8-sig") as f:
            reader = csv.DictReader(f, skipinitialspace=True)
            if reader.fieldnames is None:
                raise InputFormatError(f"{path}: file is empty, expected a header row")

            missing = [c for c in REQUIRED_COLUMNS if c not in reader.fieldnames]
            if missing:
                raise InputFormatError(
                    f"{path}: missing required columns: {', '.join(missing)}"
                )

            for row in tqdm(reader, desc=f"  {path.name}", unit=" rows", disable=not show_progress):
                try:
                    detections.append(parse_row(row))
                except ValueError as e:
                    skipped += 1
                    logger.warning("%s line %d: skipping malformed row (%s)", path, reader.line_num, e)
    except UnicodeDecodeError as e:
        raise InputFormatError(f"{path}: not valid UTF-8 text ({e})") from e

    return detections, skipped


def load_detection_groups(
    paths: Iterable,
    show_progress: bool = False,
) -> Tuple[Dict[str, List[Box]], Dict[str, int]]:
    """
    Load every detection source and group the boxes by image.

    Returns:
        groups: {image_id: [Box]} across all sources
        stats: {"sources", "rows", "skipped_rows", "images"}
    """
    groups: Dict[str, List[Box]] = {}
    stats = {"sources": 0, "rows": 0, "skipped_rows": 0, "images": 0}

    for path in paths:
        logger.info("Loading detections from %s", path)
        detections, skipped = read_detections(path, show_progress)

        for image_id, box in detections:
            groups.setdefault(image_id, []).append(box)

        stats["sources"] += 1
        stats["rows"] += len(detections)
        stats["skipped_rows"] += skipped

    stats["images"] = len(groups)
    logger.info(
        "Loaded %d boxes across %d images from %d sources",
        stats["rows"], stats["images"], stats["sources"],
    )
    if stats["skipped_rows"]:
        logger.warning("Skipped %d malformed rows", stats["skipped_rows"])

    return groups, stats
