"""Per-applicant summary spreadsheet (serial number → link)."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Mapping, Sequence

import pandas as pd

from .records import SummaryRow, serial_sort_key

logger = logging.getLogger(__name__)

SUMMARY_HEADERS = ["Serial Number", "Application Form Link"]
MISSING = "N/A"
SUMMARY_FILENAME = "merged_records.csv"


def summary_frame(rows: Sequence[SummaryRow], email: str = "") -> pd.DataFrame:
    """
    Sort rows by numeric serial and format them for a spreadsheet.

    Serials get a leading apostrophe so spreadsheet apps keep them as text
    (no dropped leading zeros or scientific notation).
    """
    ordered = sorted(rows, key=lambda r: serial_sort_key(r.serial_number))

    table: List[List[str]] = []
    for row in ordered:
        serial = str(row.serial_number) if row.serial_number not in (None, "") else MISSING
        link = row.link or MISSING
        if serial == MISSING or link == MISSING:
            logger.warning("Missing data for %s: serial=%s link=%s", email, row.serial_number, row.link)
        if serial != MISSING:
            serial = f"'{serial}"
        table.append([serial, link])

    return pd.DataFrame(table, columns=SUMMARY_HEADERS)


def build_summary_csv(rows: Sequence[SummaryRow], output_path, email: str = "") -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    summary_frame(rows, email=email).to_csv(output_path, index=False)
    logger.info("CSV file generated for %s: %s", email, output_path)
    return output_path


def generate_summaries(grouped_rows: Mapping[str, Sequence[SummaryRow]], work_dir) -> Dict[str, Path]:
    """
    Write one summary per email under ``<work_dir>/<email>/``.

    Emails whose summary fails to write are logged and left out of the result.
    """
    paths: Dict[str, Path] = {}
    for email, rows in grouped_rows.items():
        try:
            paths[email] = build_summary_csv(rows, Path(work_dir) / safe_dirname(email) / SUMMARY_FILENAME, email=email)
        except Exception as exc:
            logger.error("Error generating CSV for %s: %s", email, exc, exc_info=True)
    return paths


def safe_dirname(value: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in "@._-" else "_" for ch in value)
    return cleaned if cleaned.strip(".") else "_"
