#!/usr/bin/env python
"""Auto-annotate captured game frames for YOLO training.

Runs every screenshot in a directory through the trained detector on a
bounded worker pool and writes one YOLO label file per frame, plus a
``classes.txt`` and a JSON run report.

YOLO class indices (matching ``configs/annotation/default.yaml``)::

    0 = player
    1 = enemy
    2 = projectile
    3 = powerup
    4 = obstacle

Usage::

    python scripts/auto_annotate.py screenshots
    python scripts/auto_annotate.py screenshots --output-dir output/labels -j 8
    python scripts/auto_annotate.py screenshots --recursive --skip-existing -v

Press Ctrl+C to stop early; frames already annotated are kept and the
partial report is still written.
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import sys
import threading
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.annotation import (
    AnnotationConfig,
    AnnotationError,
    LabelWriter,
    load_annotation_config,
    run_pipeline,
)
from src.perception import YoloDetectionAdapter
from src.reporting import save_report, summary_lines

logger = logging.getLogger(__name__)

REPORT_FILENAME = "annotation_report.json"
EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    """Return the command line parser."""
    parser = argparse.ArgumentParser(
        description="Auto-annotate game frames for YOLO training.",
    )
    parser.add_argument(
        "input_dir",
        type=Path,
        nargs="?",
        help="Directory containing captured frames (overrides config)",
    )
    parser.add_argument(
        "--config",
        default="default",
        help="Config name in configs/annotation/ or path to a YAML file",
    )
    parser.add_argument("--output-dir", type=Path, help="Root of the label tree")
    parser.add_argument(
        "--alongside",
        action="store_true",
        help="Write labels next to their images instead of an output dir",
    )
    parser.add_argument(
        "-j", "--concurrency", type=int, help="Frames processed in parallel"
    )
    parser.add_argument("--conf", type=float, help="Confidence threshold")
    parser.add_argument(
        "--recursive", action="store_true", help="Scan subdirectories too"
    )
    parser.add_argument(
        "--timeout", type=float, help="Per-frame detection timeout in seconds"
    )
    parser.add_argument("--weights", type=Path, help="Detector weights (.pt)")
    parser.add_argument("--device", help="auto, xpu, cuda or cpu")
    parser.add_argument(
        "--skip-existing",
        action="store_true",
        help="Leave frames that already have a label file untouched",
    )
    parser.add_argument(
        "--report",
        type=Path,
        help=f"Report path (default: <output-dir>/{REPORT_FILENAME})",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def apply_overrides(config: AnnotationConfig, args: argparse.Namespace) -> AnnotationConfig:
    """Return a new config with command line overrides applied."""
    overrides: dict = {}
    if args.input_dir is not None:
        overrides["input_dir"] = args.input_dir
    if args.alongside:
        overrides["output_dir"] = None
    elif args.output_dir is not None:
        overrides["output_dir"] = args.output_dir
    if args.concurrency is not None:
        overrides["concurrency"] = args.concurrency
    if args.conf is not None:
        overrides["confidence_threshold"] = args.conf
    if args.recursive:
        overrides["recursive_scan"] = True
    if args.timeout is not None:
        overrides["per_frame_timeout_s"] = args.timeout
    if args.weights is not None:
        overrides["weights_path"] = args.weights
    if args.device is not None:
        overrides["device"] = args.device
    if args.skip_existing:
        overrides["skip_existing"] = True

    if not overrides:
        return config
    return dataclasses.replace(config, **overrides)


def main(argv: list[str] | None = None) -> int:
    """Run auto-annotation on a directory of captured frames."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)-8s %(message)s",
    )

    try:
        config = apply_overrides(load_annotation_config(args.config), args)
    except (FileNotFoundError, ValueError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_FATAL

    try:
        adapter = YoloDetectionAdapter(
            weights_path=config.weights_path,
            device=config.device,
            iou_threshold=config.iou_threshold,
            img_size=config.img_size,
            classes=config.class_names,
        )
    except RuntimeError as exc:
        logger.error("%s", exc)
        return EXIT_FATAL

    cancel_event = threading.Event()

    def _on_sigint(signum, frame):  # noqa: ANN001
        if cancel_event.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupt received; finishing in-flight frames (Ctrl+C again to abort)")
        cancel_event.set()

    previous_handler = signal.signal(signal.SIGINT, _on_sigint)
    try:
        report = run_pipeline(config, adapter, cancel_event=cancel_event)
    except AnnotationError as exc:
        logger.error("Annotation aborted: %s", exc)
        return EXIT_FATAL
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    report_path = args.report
    if report_path is None:
        base = config.output_dir if config.output_dir is not None else config.input_dir
        report_path = Path(base) / REPORT_FILENAME

    try:
        classes_path = LabelWriter(config.output_dir).write_class_names(config.class_names)
        save_report(
            report, report_path, input_dir=config.input_dir, output_dir=config.output_dir
        )
    except (AnnotationError, OSError) as exc:
        logger.error("Could not save run outputs: %s", exc)
        return EXIT_FATAL

    if classes_path is not None:
        logger.info("Class names saved to : %s", classes_path)

    for line in summary_lines(report):
        logger.info("%s", line)
    logger.info("Report saved to : %s", report_path)

    return EXIT_CANCELLED if report.cancelled else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
