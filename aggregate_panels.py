#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
aggregate_panels.py

Combine a directory of per-period panel files into a single file covering
the whole span (e.g. seven daily panels -> one weekly panel).

Input:
- Every non-hidden file in a folder (--files), processed in ascending file-name order.
  File names are expected to sort chronologically (date-prefixed names).
- Each file is delimited text with a header row, then rows of:
  panelist_id <sep> weight <sep> feature_1 <sep> ... <sep> feature_n
  Rows may be ragged (different field counts).

Output (--output):
- The header of the first file processed
- One row per distinct panelist:
  panelist_id <sep> mean weight (5 decimals) <sep> features from the last file containing the panelist

Optional report (--out-report, utf-8-sig CSV):
- One row per period file with row / new / returning / duplicate counts

Logs:
- Console + logs/panel_aggregation.log

Weight rules:
- The first "," is replaced with "." before parsing (vendors emitting decimal commas)
- The mean is taken only over periods the panelist appeared in (absence is not a zero)
- A panelist repeated inside one file keeps its last row for that period

Any read / parse / write failure aborts the whole run with a non-zero exit.

Dependencies:
- pandas (report only)
"""

from __future__ import annotations

import argparse
import codecs
import csv
import logging
import math
import os
import sys
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Dict, Iterator, List, NamedTuple, Optional, Tuple

import pandas as pd


# -------------
# Configuration
# -------------

DEFAULT_SEPARATOR = "\t"

# Leading marker for non-data artifacts (.DS_Store, editor swap files, ...)
HIDDEN_PREFIX = "."

# Fixed precision of the averaged weight column
WEIGHT_DECIMALS = 5

LOG_NAME = "panel_aggregation"
LOG_FILE = "panel_aggregation.log"

INPUT_ENCODING = "utf-8-sig"
OUTPUT_ENCODING = "utf-8"
REPORT_ENCODING = "utf-8-sig"


# ------
# Errors
# ------

class PanelAggregationError(Exception):
    """Base class for every failure that aborts a run."""


class DirectoryReadError(PanelAggregationError):
    pass


class FileOpenError(PanelAggregationError):
    pass


class HeaderReadError(PanelAggregationError):
    pass


class MalformedRow(PanelAggregationError):
    def __init__(self, message: str, source: Optional[str] = None, line_no: Optional[int] = None):
        self.source = source
        self.line_no = line_no
        where = ""
        if source is not None:
            where = f"{source}:{line_no}: " if line_no is not None else f"{source}: "
        super().__init__(f"{where}{message}")


class NumericParseError(PanelAggregationError, ValueError):
    def __init__(self, raw: str, source: Optional[str] = None, line_no: Optional[int] = None):
        self.raw = raw
        self.source = source
        self.line_no = line_no
        where = ""
        if source is not None:
            where = f"{source}:{line_no}: " if line_no is not None else f"{source}: "
        super().__init__(f"{where}Cannot parse weight {raw!r} as a number")


class OutputCreateError(PanelAggregationError):
    pass


class OutputWriteError(PanelAggregationError):
    pass


class ReportWriteError(PanelAggregationError):
    pass


# -------------
# Data classes
# -------------

class PanelRow(NamedTuple):
    key: str
    raw_weight: str
    features: List[str]
    source: Optional[str] = None
    line_no: Optional[int] = None


@dataclass
class PanelistRecord:
    key: str
    weights: List[float] = field(default_factory=list)
    features: str = ""
    last_period: int = -1

    def average(self) -> float:
        if not self.weights:
            raise ValueError(f"Panelist {self.key!r} has no weights")
        return sum(self.weights) / len(self.weights)


@dataclass
class PeriodReport:
    file: str
    period_index: int
    rows: int
    new_panelists: int
    returning_panelists: int
    duplicate_rows: int
    panelists_total: int


# ----------
# Logging
# ----------

def setup_logging(debug: bool, log_dir: str = "logs") -> logging.Logger:
    logger = logging.getLogger(LOG_NAME)
    logger.setLevel(logging.DEBUG)

    if logger.handlers:
        return logger

    os.makedirs(log_dir, exist_ok=True)
    log_path = Path(log_dir) / LOG_FILE

    fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setLevel(logging.DEBUG if debug else logging.INFO)
    fh.setFormatter(fmt)

    sh = logging.StreamHandler(sys.stdout)
    sh.setLevel(logging.DEBUG if debug else logging.INFO)
    sh.setFormatter(fmt)

    logger.addHandler(fh)
    logger.addHandler(sh)
    return logger


# --------------------------
# Row parsing / weight values
# --------------------------

def normalize_weight(raw: str) -> float:
    """
    Parse a weight field into a float.

    Only the first comma is treated as a decimal separator ("1,5" -> 1.5);
    values with several commas will fail. Blank values, surrounding
    whitespace, digit-group underscores, non-ASCII digits and values that
    overflow to infinity are rejected even though float() would accept them.
    Only a literal "inf" / "infinity" yields an infinite weight.
    """
    if not raw or raw != raw.strip() or "_" in raw or not raw.isascii():
        raise NumericParseError(raw)
    try:
        value = float(raw.replace(",", ".", 1))
    except ValueError:
        raise NumericParseError(raw) from None
    if math.isinf(value) and raw.lstrip("+-").lower() not in ("inf", "infinity"):
        raise NumericParseError(raw)
    return value


def parse_row(fields: List[str], source: Optional[str] = None, line_no: Optional[int] = None) -> PanelRow:
    if len(fields) < 2:
        raise MalformedRow(
            f"expected at least 2 fields (panelist, weight), got {len(fields)}",
            source=source,
            line_no=line_no,
        )
    return PanelRow(
        key=fields[0],
        raw_weight=fields[1],
        features=list(fields[2:]),
        source=source,
        line_no=line_no,
    )


# -------------------
# Aggregation table
# -------------------

class AggregationTable:
    """
    Panelist key -> PanelistRecord, merged one period at a time.

    Iteration order is whatever the underlying dict yields; consumers must
    not depend on it.
    """

    def __init__(self) -> None:
        self.header: Optional[List[str]] = None
        self._records: Dict[str, PanelistRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def __getitem__(self, key: str) -> PanelistRecord:
        return self._records[key]

    def items(self) -> Iterator[Tuple[str, PanelistRecord]]:
        return iter(self._records.items())

    def average(self, key: str) -> float:
        return self._records[key].average()

    def merge(
        self,
        period_index: int,
        header: List[str],
        rows: List[PanelRow],
        sep: str = DEFAULT_SEPARATOR,
        logger: Optional[logging.Logger] = None,
    ) -> Dict[str, int]:
        """
        Fold one period's rows into the table.

        The first header seen becomes the table header; later ones are
        ignored. Each row appends its weight and replaces the feature
        payload. A key repeated within the same period overwrites that
        period's entry instead of adding a second weight.
        """
        if self.header is None:
            self.header = list(header)

        stats = {"rows": 0, "new_panelists": 0, "returning_panelists": 0, "duplicate_rows": 0}

        for row in rows:
            try:
                weight = normalize_weight(row.raw_weight)
            except NumericParseError:
                raise NumericParseError(row.raw_weight, source=row.source, line_no=row.line_no) from None
            stats["rows"] += 1

            rec = self._records.get(row.key)
            if rec is None:
                rec = PanelistRecord(key=row.key)
                self._records[row.key] = rec
                stats["new_panelists"] += 1

            if rec.last_period == period_index:
                stats["duplicate_rows"] += 1
                if logger is not None:
                    logger.warning(f"period {period_index}: panelist {row.key!r} repeated, keeping last row")
                rec.weights[-1] = weight
            else:
                if rec.last_period >= 0:
                    stats["returning_panelists"] += 1
                rec.weights.append(weight)
                rec.last_period = period_index

            rec.features = sep.join(row.features)

        return stats


# --------------------------
# Period file discovery / IO
# --------------------------

def list_period_files(folder: Path, logger: logging.Logger) -> List[Path]:
    """
    Period files in ascending name order.

    Chronology is taken from the file names; hidden entries and
    subdirectories are skipped without being counted.
    """
    folder = Path(folder)
    if not folder.is_dir():
        raise DirectoryReadError(f"Input folder not found or not a directory: {folder}")

    try:
        entries = sorted(os.scandir(folder), key=lambda e: e.name)
    except OSError as e:
        raise DirectoryReadError(f"Cannot read input folder {folder}: {e}") from e

    files: List[Path] = []
    for entry in entries:
        if entry.name.startswith(HIDDEN_PREFIX):
            logger.debug(f"Skipping hidden entry: {entry.name}")
            continue
        if entry.is_dir():
            logger.debug(f"Skipping subdirectory: {entry.name}")
            continue
        files.append(Path(entry.path))
    return files


def read_period_file(path: Path, sep: str, logger: logging.Logger) -> Tuple[List[str], List[PanelRow]]:
    """Read one period file completely; the handle is closed before returning."""
    rows: List[PanelRow] = []
    try:
        fh = open(path, "r", encoding=INPUT_ENCODING, newline="")
    except OSError as e:
        raise FileOpenError(f"Cannot open period file {path}: {e}") from e

    with fh:
        reader = csv.reader(fh, delimiter=sep, strict=True)

        try:
            header = next((r for r in reader if r), None)
        except (csv.Error, UnicodeDecodeError) as e:
            raise HeaderReadError(f"{path.name}: cannot read header: {e}") from e
        except OSError as e:
            raise FileOpenError(f"Cannot read period file {path}: {e}") from e
        if header is None:
            raise HeaderReadError(f"{path.name}: file is empty, no header row")

        try:
            for fields in reader:
                if not fields:
                    continue
                rows.append(parse_row(fields, source=path.name, line_no=reader.line_num))
        except (csv.Error, UnicodeDecodeError) as e:
            raise MalformedRow(str(e), source=path.name, line_no=reader.line_num) from e
        except OSError as e:
            raise FileOpenError(f"Cannot read period file {path}: {e}") from e

    logger.debug(f"{path.name}: header={header} rows={len(rows)}")
    return header, rows


# ---------------
# Output writing
# ---------------

def format_weight(value: float) -> str:
    return f"{value:.{WEIGHT_DECIMALS}f}"


def render_lines(table: AggregationTable, sep: str = DEFAULT_SEPARATOR) -> Iterator[str]:
    yield sep.join(table.header or []) + "\n"
    for key, rec in table.items():
        yield f"{key}{sep}{format_weight(rec.average())}{sep}{rec.features}\n"


def write_output(table: AggregationTable, output_path: Path, sep: str, logger: logging.Logger) -> None:
    output_path = Path(output_path)
    try:
        out = open(output_path, "w", encoding=OUTPUT_ENCODING, newline="")
    except OSError as e:
        raise OutputCreateError(f"Cannot create output file {output_path}: {e}") from e

    try:
        with out:
            for line in render_lines(table, sep):
                out.write(line)
    except OSError as e:
        raise OutputWriteError(f"Failed writing output file {output_path}: {e}") from e

    logger.info(f"Wrote aggregated panel: {output_path.resolve()} rows={len(table)}")


def write_report(reports: List[PeriodReport], report_path: Path, panel: str, logger: logging.Logger) -> None:
    rep_df = pd.DataFrame([asdict(r) for r in reports])
    if rep_df.empty:
        rep_df = pd.DataFrame(columns=[f.name for f in PeriodReport.__dataclass_fields__.values()])
    rep_df.insert(0, "panel", panel)

    try:
        rep_df.to_csv(report_path, index=False, encoding=REPORT_ENCODING)
    except OSError as e:
        raise ReportWriteError(f"Cannot write report {report_path}: {e}") from e
    logger.info(f"Wrote period report: {Path(report_path).resolve()} rows={len(rep_df)}")


# -------------------
# Folder-level pipeline
# -------------------

def aggregate_folder(
    folder: Path,
    sep: str,
    logger: logging.Logger,
) -> Tuple[AggregationTable, List[PeriodReport]]:
    table = AggregationTable()
    reports: List[PeriodReport] = []

    files = list_period_files(folder, logger)
    if not files:
        logger.warning(f"No period files found in {Path(folder).resolve()}")
        return table, reports

    for period_index, fp in enumerate(files):
        logger.info(f"Processing period file: {fp.name}")
        header, rows = read_period_file(fp, sep, logger)
        stats = table.merge(period_index, header, rows, sep=sep, logger=logger)
        reports.append(
            PeriodReport(
                file=fp.name,
                period_index=period_index,
                rows=stats["rows"],
                new_panelists=stats["new_panelists"],
                returning_panelists=stats["returning_panelists"],
                duplicate_rows=stats["duplicate_rows"],
                panelists_total=len(table),
            )
        )

    logger.info(f"Aggregated {len(reports)} period file(s): panelists={len(table)}")
    return table, reports


# -----
# Main
# -----

def resolve_separator(raw: str) -> str:
    """argparse type for --sep: accepts a literal character or an escape like '\\t'."""
    sep = codecs.decode(raw, "unicode_escape") if "\\" in raw else raw
    if len(sep) != 1:
        raise argparse.ArgumentTypeError(f"separator must be a single character, got {raw!r}")
    if sep in ('"', "\r", "\n"):
        raise argparse.ArgumentTypeError(f"unsupported separator {raw!r}")
    return sep


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Combine per-period panel files into a single averaged panel.")
    parser.add_argument("--panel", required=True, help="Name of panel type to aggregate (informational)")
    parser.add_argument("--files", required=True, help="Directory of period files")
    parser.add_argument("--sep", type=resolve_separator, default=DEFAULT_SEPARATOR, help="Field separator for input and output (default: tab)")
    parser.add_argument("--output", required=True, help="Output file")
    parser.add_argument("--out-report", default=None, help="Optional per-period report CSV")
    parser.add_argument("--debug", action="store_true", help="Enable DEBUG logging")
    parser.add_argument("--log-dir", default="logs", help="Folder for the log file (default: logs)")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    logger = setup_logging(args.debug, args.log_dir)
    logger.info(f"Aggregating panel '{args.panel}' from {Path(args.files).resolve()}")

    try:
        table, reports = aggregate_folder(Path(args.files), args.sep, logger)
        write_output(table, Path(args.output), args.sep, logger)
        if args.out_report:
            write_report(reports, Path(args.out_report), args.panel, logger)
    except PanelAggregationError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
