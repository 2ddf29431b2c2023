"""
Report sinks for scenario runs.

- EvidenceSink   : one pretty-printed JSON file per executed iteration.
- SummarySink    : the run's summary.csv, written once at the end.
- ConsoleReporter: one line per iteration plus the final report location.
"""

from __future__ import annotations

import csv
import json
import logging
import re
import sys
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, TextIO

if TYPE_CHECKING:
    from scenario_runner import EvidenceRecord, SummaryRow

logger = logging.getLogger("ScenarioRunner.reports")

SUMMARY_FILE_NAME = "summary.csv"
SUMMARY_HEADER = ["TestID", "Description", "Status", "HTTP", "Notes", "Evidence"]

_unsafe_file_chars = re.compile(r"[^\w.\-]")


def evidence_file_name(label: str) -> str:
    """File name for an iteration label, with path separators and other unsafe characters replaced."""
    return f"{_unsafe_file_chars.sub('_', label) or '_'}.json"


class EvidenceSink:
    """Writes each EvidenceRecord to <report_dir>/<label>.json."""

    def __init__(self, report_dir: str | Path) -> None:
        self.report_dir = Path(report_dir)

    def write(self, record: EvidenceRecord) -> str:
        self.report_dir.mkdir(parents=True, exist_ok=True)
        out_file = self.report_dir / evidence_file_name(record.label)
        with out_file.open("w", encoding="utf-8") as f:
            json.dump(record.model_dump(mode="json"), f, indent=2, ensure_ascii=False, default=str)
        return str(out_file)


class SummarySink:
    """Writes the ordered summary rows as a fully quoted CSV file."""

    def __init__(self, report_dir: str | Path) -> None:
        self.report_dir = Path(report_dir)

    def write(self, rows: List[SummaryRow]) -> str:
        self.report_dir.mkdir(parents=True, exist_ok=True)
        out_file = self.report_dir / SUMMARY_FILE_NAME
        with out_file.open("w", encoding="utf-8", newline="") as f:
            writer = csv.writer(f, quoting=csv.QUOTE_ALL, lineterminator="\n")
            writer.writerow(SUMMARY_HEADER)
            for row in rows:
                writer.writerow(row.as_csv_row())
        logger.debug(f"Summary with {len(rows)} rows written to {out_file}")
        return str(out_file)


class ConsoleReporter:
    """Prints live per-iteration results; the stream defaults to stdout."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream

    def _print(self, line: str) -> None:
        print(line, file=self.stream or sys.stdout, flush=True)

    def report_row(self, row: SummaryRow) -> None:
        status = row.http_status if row.http_status is not None else "-"
        self._print(f"{'PASS' if row.passed else 'FAIL'} | {row.test_id} | {status} | {row.notes}")

    def report_summary(self, summary_path: str) -> None:
        self._print(f"\nReport: {summary_path}")
