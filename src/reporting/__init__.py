"""Reporting module: annotation run report serialisation and summaries."""

from .report import report_to_dict, save_report, summary_lines

__all__ = [
    "report_to_dict",
    "save_report",
    "summary_lines",
]
