"""
Report sinks.

A sink receives the finished ``VerdictReport`` exactly once.  The CSV sink
writes the rows as delimited text with the column set of the scenario.
"""

import csv
import logging
from pathlib import Path
from typing import Protocol

from inflightbench.verdict import ReportRow, VerdictReport

log = logging.getLogger("inflightbench.report")

INFLIGHT_FIELDS = ["subscriber", "publisher", "index", "status"]
SHARED_FIELDS = ["group", "message", "publisher", "sequence", "receivedBy", "status"]


class ReportSink(Protocol):
    def write(self, report: VerdictReport) -> None: ...


def row_to_dict(row: ReportRow, mode: str) -> dict:
    if mode == "shared":
        return {
            "group":      row.subject,
            "message":    row.message,
            "publisher":  row.publisher,
            "sequence":   row.sequence,
            "receivedBy": "|".join(row.received_by),
            "status":     row.status.value,
        }
    return {
        "subscriber": row.subject,
        "publisher":  row.publisher,
        "index":      row.sequence,
        "status":     row.status.value,
    }


class CsvReportSink:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def write(self, report: VerdictReport) -> None:
        fields = SHARED_FIELDS if report.mode == "shared" else INFLIGHT_FIELDS
        self.path.parent.mkdir(parents=True, exist_ok=True)
        log.info("Writing CSV report to %s…", self.path)
        with self.path.open("w", newline="", encoding="utf-8") as fh:
            writer = csv.DictWriter(fh, fieldnames=fields)
            writer.writeheader()
            for row in report.rows:
                writer.writerow(row_to_dict(row, report.mode))
        log.info("CSV report generation complete (%d rows).", len(report.rows))


class MemorySink:
    """Keeps written reports in memory."""

    def __init__(self):
        self.reports: list[VerdictReport] = []

    def write(self, report: VerdictReport) -> None:
        self.reports.append(report)
