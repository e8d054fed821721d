"""Annotation run reports: JSON serialisation and text summaries.

A :class:`~src.annotation.types.PipelineReport` is serialised to JSON
for archiving next to the labels.

JSON schema::

    {
        "run_id": "uuid",
        "build_id": "local",
        "timestamp": "ISO-8601",
        "input_dir": "screenshots",
        "output_dir": "output/labels",
        "summary": {
            "total": 1200,
            "succeeded": 1195,
            "failed": 3,
            "skipped": 2,
            "detection_count": 15342,
            "cancelled": false
        },
        "failures": [
            {"path": "screenshots/frame_00042.png", "reason": "timeout"}
        ],
        "skips": [
            {"path": "screenshots/frame_00007.png", "reason": "label exists"}
        ]
    }

The ``summary`` and ``failures`` sections depend only on the frames and
detector output, so two runs over the same inputs produce the same
content apart from the run metadata.
"""

from __future__ import annotations

import json
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from src.annotation.label_writer import atomic_write_text
from src.annotation.types import PipelineReport


def report_to_dict(
    report: PipelineReport,
    input_dir: str | Path | None = None,
    output_dir: str | Path | None = None,
) -> dict[str, Any]:
    """Convert a report to a plain, JSON-ready dict.

    Parameters
    ----------
    report : PipelineReport
        The finished run report.
    input_dir, output_dir : str or Path, optional
        Recorded as run metadata.

    Returns
    -------
    dict[str, Any]
    """
    return {
        "run_id": str(uuid.uuid4()),
        "build_id": os.getenv("CI_COMMIT_SHORT_SHA", "local"),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "input_dir": str(input_dir) if input_dir is not None else None,
        "output_dir": str(output_dir) if output_dir is not None else None,
        "summary": {
            "total": report.total,
            "succeeded": report.succeeded,
            "failed": report.failed,
            "skipped": report.skipped,
            "detection_count": report.detection_count,
            "cancelled": report.cancelled,
        },
        "failures": [{"path": str(p), "reason": r} for p, r in report.failures],
        "skips": [{"path": str(p), "reason": r} for p, r in report.skips],
    }


def save_report(
    report: PipelineReport,
    path: str | Path,
    input_dir: str | Path | None = None,
    output_dir: str | Path | None = None,
) -> Path:
    """Serialise the report to a JSON file.

    Creates the parent directory if needed.  The file is replaced
    atomically.

    Returns
    -------
    Path
        Path to the written JSON file.
    """
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    payload = report_to_dict(report, input_dir=input_dir, output_dir=output_dir)
    atomic_write_text(out_path, json.dumps(payload, indent=2) + "\n")
    return out_path


def summary_lines(report: PipelineReport, max_failures: int = 20) -> list[str]:
    """Render a human-readable summary, one line per entry.

    Parameters
    ----------
    report : PipelineReport
        The finished run report.
    max_failures : int
        Failures beyond this many are collapsed into a count.

    Returns
    -------
    list[str]
    """
    lines = [
        "--- Annotation Summary ---",
        f"Total frames    : {report.total}",
        f"Succeeded       : {report.succeeded}",
        f"Failed          : {report.failed}",
        f"Skipped         : {report.skipped}",
        f"Detections      : {report.detection_count}",
    ]
    if report.cancelled:
        lines.append("Run was cancelled before all frames were processed")
    if report.failures:
        lines.append("Failures:")
        for path, reason in report.failures[:max_failures]:
            lines.append(f"  {Path(path).name}: {reason}")
        hidden = len(report.failures) - max_failures
        if hidden > 0:
            lines.append(f"  ... and {hidden} more")
    return lines
