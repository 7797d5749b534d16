#!/usr/bin/env python3
"""
Flexible NMS runner

Merge the detections of several detector passes (one CSV per pass) into one
consensus set per image:
1. Load and group detections by image
2. Run flexible NMS on every image (optionally in worker processes)
3. Write the surviving boxes as CSV to stdout or a file
"""

import argparse
import logging
import sys
from concurrent.futures import ProcessPoolExecutor
from pathlib import Path
from typing import Dict, List, Tuple

from tqdm import tqdm

from ensemble.flexible_nms.box_utils import Box
from ensemble.flexible_nms.config import (
    CLASS_LABEL,
    CONFIDENCE_PRECISION,
    COORD_PRECISION,
    DECAY_SIGMA,
    MERGE_EXPONENT,
    MERGE_THRESHOLD,
    SUPPRESS_THRESHOLD,
    ConfigurationError,
    NMSConfig,
    load_config_file,
    resolve_config,
)
from ensemble.flexible_nms.flexible_nms import flexible_nms
from ensemble.flexible_nms.log_utils import setup_logging
from ensemble.flexible_nms.prepare_detections import InputFormatError, load_detection_groups
from ensemble.flexible_nms.write_results import write_results

logger = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _process_group(item: Tuple[str, List[Box], NMSConfig]) -> Tuple[str, List[Box], Dict[str, int]]:
    image_id, boxes, config = item
    stats = flexible_nms(boxes, config)
    return image_id, boxes, stats


def process_groups(
    groups: Dict[str, List[Box]],
    config: NMSConfig,
    workers: int = 1,
    show_progress: bool = False,
) -> Dict[str, int]:
    """
    Run flexible NMS on every image group.

    Groups are independent, so with ``workers > 1`` they are spread over a
    process pool; the processed lists replace the entries in ``groups``.

    Returns:
        Totals of the per-group counters
    """
    totals = {"boxes": 0, "kept": 0, "merged": 0, "decayed": 0}
    items = [(image_id, groups[image_id], config) for image_id in sorted(groups)]

    if workers > 1 and len(items) > 1:
        with ProcessPoolExecutor(max_workers=workers) as executor:
            results = list(tqdm(
                executor.map(_process_group, items, chunksize=max(1, len(items) // (workers * 4))),
                total=len(items), desc="Flexible NMS", disable=not show_progress,
            ))
    else:
        results = [
            _process_group(item)
            for item in tqdm(items, desc="Flexible NMS", disable=not show_progress)
        ]

    for image_id, boxes, stats in results:
        groups[image_id] = boxes
        for key in totals:
            totals[key] += stats[key]

    return totals


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flexible-nms",
        description="Merge overlapping detections from several detector passes",
    )
    parser.add_argument(
        "sources", nargs="*", metavar="SOURCE",
        help="Detection CSV files with image_filename,x0,y0,x1,y1,confidence columns",
    )
    parser.add_argument(
        "--ensemble-size", type=int, default=None,
        help="Expected number of passes per image (default: number of sources)",
    )
    parser.add_argument(
        "--merge-threshold", type=float, default=None,
        help=f"IoU above which boxes are fused (default: {MERGE_THRESHOLD})",
    )
    parser.add_argument(
        "--suppress-threshold", type=float, default=None,
        help=f"IoU above which boxes are decayed (default: {SUPPRESS_THRESHOLD})",
    )
    parser.add_argument(
        "--merge-exponent", type=float, default=None,
        help=f"Confidence exponent for fusion weights (default: {MERGE_EXPONENT})",
    )
    parser.add_argument(
        "--decay-sigma", type=float, default=None,
        help=f"Sigma of the Gaussian confidence decay (default: {DECAY_SIGMA})",
    )
    parser.add_argument(
        "--min-confidence", type=float, default=None,
        help="Drop surviving boxes below this confidence",
    )
    parser.add_argument(
        "--coord-precision", type=int, default=None,
        help=f"Decimals for coordinates (default: {COORD_PRECISION})",
    )
    parser.add_argument(
        "--confidence-precision", type=int, default=None,
        help=f"Decimals for confidence (default: {CONFIDENCE_PRECISION})",
    )
    parser.add_argument(
        "--label", type=str, default=None,
        help=f"Class label written for every box (default: {CLASS_LABEL})",
    )
    parser.add_argument(
        "--config", type=str, default=None,
        help="YAML file with NMS settings (command line flags take precedence)",
    )
    parser.add_argument(
        "--output", "-o", type=str, default=None,
        help="Output CSV file (default: stdout)",
    )
    parser.add_argument(
        "--workers", type=int, default=1,
        help="Worker processes for per-image NMS (default: 1)",
    )
    parser.add_argument(
        "--log-level", type=str.upper, default="INFO", choices=LOG_LEVELS,
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--log-file", type=str, default=None, help="Also log to this file")
    parser.add_argument("--no-color", action="store_true", help="Disable colored log output")
    parser.add_argument("--quiet", "-q", action="store_true", help="Hide progress bars")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.sources:
        parser.error("at least one SOURCE file is required")
    if args.workers < 1:
        parser.error("--workers must be at least 1")

    setup_logging(level=args.log_level, log_file=args.log_file, color_output=not args.no_color)

    overrides = {
        "ensemble_size": args.ensemble_size,
        "merge_threshold": args.merge_threshold,
        "suppress_threshold": args.suppress_threshold,
        "merge_exponent": args.merge_exponent,
        "decay_sigma": args.decay_sigma,
        "min_confidence": args.min_confidence,
        "coord_precision": args.coord_precision,
        "confidence_precision": args.confidence_precision,
        "label": args.label,
    }
    try:
        file_values = load_config_file(args.config) if args.config else None
        config = resolve_config(args.sources, file_values, overrides)
    except (ConfigurationError, FileNotFoundError) as e:
        parser.error(str(e))

    logger.info("Config: %s", config.to_dict())

    try:
        groups, _ = load_detection_groups(args.sources, show_progress=not args.quiet)
    except (InputFormatError, FileNotFoundError) as e:
        logger.error("%s", e)
        return 1

    totals = process_groups(groups, config, workers=args.workers, show_progress=not args.quiet)
    logger.info(
        "Kept %d of %d boxes (%d merged, %d decays applied)",
        totals["kept"], totals["boxes"], totals["merged"], totals["decayed"],
    )

    if args.output:
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w", newline="", encoding="utf-8") as f:
            written = write_results(groups, f, config)
        logger.info("Wrote %d boxes to %s", written, output_path)
    else:
        written = write_results(groups, sys.stdout, config)
        sys.stdout.flush()
        logger.info("Wrote %d boxes", written)

    return 0


if __name__ == "__main__":
    sys.exit(main())
