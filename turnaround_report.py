#!/usr/bin/env python3
"""
Turnaround time report.

Reads every CSV export in INPUT_DIR, measures how long each work item took
between its created-at and updated-at timestamps, sorts the items into
duration groups and writes one Excel workbook with a sheet per input file.

Groups (total minutes):
  A  <= 120
  B  121 - 240
  C  > 240

Report modes:
  raw          per-file listing of every valid row
  raw_medians  listing plus a Group / Median / Count table under it (default)
  summary      per-file median table only

Outputs:
  processed_<timestamp>.xlsx       (raw, raw_medians)
  median_summary_<timestamp>.xlsx  (summary)

Environment variables (load from .env if present):
  INPUT_DIR=assets  OUTPUT_DIR=exports
  REPORT_MODE=raw|raw_medians|summary
  CREATED_AT_COLUMN=AA  UPDATED_AT_COLUMN=X  (spreadsheet column letters)
  LOCAL_TZ=UTC (zone used for timestamps without an offset)
  NEGATIVE_DURATIONS=skip|clamp|keep (rows updated before they were created)
  WORKERS=1 (files processed in parallel when > 1)

Run: python turnaround_report.py
"""
import os
from dotenv import load_dotenv
load_dotenv()

import csv
import re
import sys
import tempfile
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as dateparser
from openpyxl import Workbook
from openpyxl.utils import column_index_from_string, get_column_letter

# -----------------------------
# CONFIG
# -----------------------------
REPORT_MODES = ("raw", "raw_medians", "summary")
NEGATIVE_POLICIES = ("skip", "clamp", "keep")


def env_choice(name, default, choices):
    value = os.getenv(name, default).strip().lower()
    if value not in choices:
        print(f"{name}={value!r} not one of {', '.join(choices)}; using {default}")
        return default
    return value


def env_zone(name, default):
    value = os.getenv(name, default).strip()
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        print(f"{name}={value!r} is not a known time zone; using {default}")
        return default
    return value


INPUT_DIR = os.getenv("INPUT_DIR", "assets")
OUTPUT_DIR = os.getenv("OUTPUT_DIR", "exports")
REPORT_MODE = env_choice("REPORT_MODE", "raw_medians", REPORT_MODES)
CREATED_AT_COLUMN = os.getenv("CREATED_AT_COLUMN", "AA").strip().upper()
UPDATED_AT_COLUMN = os.getenv("UPDATED_AT_COLUMN", "X").strip().upper()
LOCAL_TZ = env_zone("LOCAL_TZ", "UTC")
NEGATIVE_DURATIONS = env_choice("NEGATIVE_DURATIONS", "skip", NEGATIVE_POLICIES)
try:
    WORKERS = max(1, int(os.getenv("WORKERS", "1")))
except ValueError:
    print(f"WORKERS={os.getenv('WORKERS')!r} is not a number; using 1")
    WORKERS = 1

GROUPS = ("A", "B", "C")
GROUP_A_MAX_MINUTES = 120
GROUP_B_MAX_MINUTES = 240

# header, record key, column width
RAW_COLUMNS = [
    ("Identifier", "identifier", 30),
    ("Hour", "hr", 15),
    ("Minutes", "min", 15),
    ("Hour to Sec", "hr_to_sec", 20),
    ("Minutes to Sec", "min_to_sec", 20),
    ("Total Sec", "total_sec", 20),
    ("Total Minutes", "total_minutes", 20),
    ("Grouping", "grouping", 10),
]
MEDIAN_COLUMNS = ["Group", "Median Total Minutes", "Count", "Count of Median"]
MEDIAN_FIRST_COLUMN = column_index_from_string("I")
SUMMARY_COLUMNS = [
    ("Grouping", 30),
    ("Median Total Minutes", 30),
    ("Median Total Seconds", 30),
    ("Count", 15),
]
SHEET_TITLE_MAX = 31
SHEET_TITLE_BAD_CHARS_RE = re.compile(r"[\[\]:*?/\\]")

# -----------------------------
# TIMESTAMPS
# -----------------------------
def to_local(dt: datetime, tz_name: str = LOCAL_TZ) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=ZoneInfo(tz_name))
    return dt.astimezone(ZoneInfo(tz_name))

def parse_timestamp(value, tz_name: str = LOCAL_TZ):
    """Parse a CSV cell into an aware datetime, or None when it isn't a date."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return to_local(datetime.fromisoformat(text.replace("Z", "+00:00")), tz_name)
    except ValueError:
        pass
    try:
        return to_local(datetime.strptime(text, "%Y-%m-%d %H:%M:%S %z"), tz_name)
    except ValueError:
        pass
    # parse twice with different defaults; a difference means the date was incomplete
    try:
        parsed = dateparser.parse(text, default=datetime(1, 1, 1))
        check = dateparser.parse(text, default=datetime(2, 2, 2))
    except (ValueError, OverflowError):
        return None
    if parsed != check:
        return None
    return to_local(parsed, tz_name)

# -----------------------------
# DURATIONS & GROUPS
# -----------------------------
def split_minutes(total_minutes: int) -> dict:
    hr, mins = divmod(total_minutes, 60)
    return {
        "identifier": f"{hr} hours, {mins} minutes",
        "hr": hr,
        "min": mins,
        "hr_to_sec": hr * 3600,
        "min_to_sec": mins * 60,
        "total_sec": total_minutes * 60,
        "total_minutes": total_minutes,
    }

def compute_duration(created_at: datetime, updated_at: datetime) -> dict:
    # compare in UTC so a DST change between the two stamps is counted
    elapsed = updated_at.astimezone(timezone.utc) - created_at.astimezone(timezone.utc)
    return split_minutes(int(elapsed.total_seconds() / 60))

def classify(total_minutes) -> str:
    if total_minutes <= GROUP_A_MAX_MINUTES:
        return "A"
    if total_minutes <= GROUP_B_MAX_MINUTES:
        return "B"
    return "C"

def median(values):
    if not values:
        return 0
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2

def group_statistics(group_minutes: dict) -> dict:
    stats = {}
    for group in GROUPS:
        values = group_minutes.get(group, [])
        med = median(values)
        stats[group] = {
            "median_minutes": med,
            "median_seconds": med * 60,
            "count": len(values),
            "median_count": sum(1 for v in values if v == med),
        }
    return stats

def process_records(rows, source="",
                    created_col=CREATED_AT_COLUMN, updated_col=UPDATED_AT_COLUMN,
                    tz_name=LOCAL_TZ, negative=NEGATIVE_DURATIONS):
    """Classify data rows (header already removed).

    Returns (records, stats): records keep input order minus skipped rows,
    stats always holds groups A, B and C.
    """
    created_idx = column_index_from_string(created_col) - 1
    updated_idx = column_index_from_string(updated_col) - 1
    where = f" in {source}" if source else ""
    group_minutes = {g: [] for g in GROUPS}
    records = []
    # row 1 is the header
    for row_number, row in enumerate(rows, start=2):
        created_at = parse_timestamp(row[created_idx] if created_idx < len(row) else None, tz_name)
        updated_at = parse_timestamp(row[updated_idx] if updated_idx < len(row) else None, tz_name)
        if created_at is None or updated_at is None:
            print(f"Invalid date at row {row_number}{where}")
            continue
        record = compute_duration(created_at, updated_at)
        if record["total_minutes"] < 0:
            if negative == "skip":
                print(f"Updated before created at row {row_number}{where}; skipping")
                continue
            if negative == "clamp":
                record = split_minutes(0)
        record["grouping"] = classify(record["total_minutes"])
        group_minutes[record["grouping"]].append(record["total_minutes"])
        records.append(record)
    return records, group_statistics(group_minutes)

# -----------------------------
# CSV INPUT
# -----------------------------
def find_input_files(input_dir):
    root = Path(input_dir)
    if not root.is_dir():
        print(f"Input directory not found: {root}")
        return []
    try:
        entries = list(root.iterdir())
    except OSError as e:
        print(f"Error reading input directory {root}: {e}")
        return []
    return sorted(p for p in entries if p.is_file() and p.suffix.lower() == ".csv")

def read_csv_rows(path):
    with open(path, "r", newline="", encoding="utf-8-sig") as f:
        rows = list(csv.reader(f))
    return rows[1:]

def process_file(path, **options):
    """Returns (records, stats) for one CSV, or None if it could not be read."""
    path = Path(path)
    print(f"Processing file: {path.name}")
    try:
        rows = read_csv_rows(path)
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        print(f"Error processing file {path}: {e}")
        return None
    return process_records(rows, source=path.name, **options)

# -----------------------------
# WORKBOOK OUTPUT
# -----------------------------
def sheet_title(name, taken):
    base = SHEET_TITLE_BAD_CHARS_RE.sub("_", name).strip("'") or "Sheet"
    title = base[:SHEET_TITLE_MAX]
    n = 2
    while title.lower() in taken:
        suffix = f" ({n})"
        title = base[:SHEET_TITLE_MAX - len(suffix)] + suffix
        n += 1
    taken.add(title.lower())
    return title

def set_widths(ws, widths, first_column=1):
    for offset, width in enumerate(widths):
        ws.column_dimensions[get_column_letter(first_column + offset)].width = width

def add_raw_sheet(wb, title, records, stats=None):
    ws = wb.create_sheet(title)
    ws.append([header for header, _, _ in RAW_COLUMNS])
    set_widths(ws, [width for _, _, width in RAW_COLUMNS])
    for r in records:
        ws.append([r[key] for _, key, _ in RAW_COLUMNS])
    if stats is None:
        return ws
    # one blank row between the listing and the median table
    start = ws.max_row + 2
    for offset, header in enumerate(MEDIAN_COLUMNS):
        ws.cell(row=start, column=MEDIAN_FIRST_COLUMN + offset, value=header)
    for i, group in enumerate(GROUPS, start=1):
        s = stats[group]
        values = [group, s["median_minutes"], s["count"], s["median_count"]]
        for offset, value in enumerate(values):
            ws.cell(row=start + i, column=MEDIAN_FIRST_COLUMN + offset, value=value)
    return ws

def add_summary_sheet(wb, title, stats):
    ws = wb.create_sheet(title)
    ws.append([header for header, _ in SUMMARY_COLUMNS])
    set_widths(ws, [width for _, width in SUMMARY_COLUMNS])
    for group in GROUPS:
        s = stats[group]
        ws.append([group, s["median_minutes"], s["median_seconds"], s["count"]])
    return ws

def build_workbook(results, mode=REPORT_MODE):
    """results: [(path, (records, stats) or None)] in input order.

    Returns None when no file produced a sheet.
    """
    wb = Workbook()
    wb.remove(wb.active)
    taken = set()
    for path, result in results:
        path = Path(path)
        if result is None:
            continue
        records, stats = result
        if mode == "summary":
            add_summary_sheet(wb, sheet_title(path.stem, taken), stats)
        elif records:
            add_raw_sheet(wb, sheet_title(path.stem, taken), records,
                          stats if mode == "raw_medians" else None)
        else:
            print(f"No valid data found in file: {path.name}")
    if not wb.worksheets:
        return None
    return wb

def output_filename(mode=REPORT_MODE, now=None):
    stamp = (now or datetime.now()).strftime("%Y-%m-%d_%H-%M-%S")
    prefix = "median_summary" if mode == "summary" else "processed"
    return f"{prefix}_{stamp}.xlsx"

def write_workbook(wb, output_path):
    """Save via a temp file in the same directory so a failed save leaves nothing behind."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".tmp_", suffix=".xlsx", dir=output_path.parent)
    os.close(fd)
    try:
        wb.save(tmp_name)
        os.replace(tmp_name, output_path)
    except Exception:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)
        raise
    return output_path

# -----------------------------
# MAIN
# -----------------------------
def run(input_dir=INPUT_DIR, output_dir=OUTPUT_DIR, mode=REPORT_MODE, workers=WORKERS,
        now=None, **options):
    """Process every CSV in input_dir; returns the workbook path or None."""
    files = find_input_files(input_dir)
    if not files:
        print("No CSV files found in the input directory.")
        return None

    process = partial(process_file, **options)
    if workers > 1 and len(files) > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(zip(files, pool.map(process, files)))
    else:
        results = [(path, process(path)) for path in files]

    wb = build_workbook(results, mode)
    if wb is None:
        print("No valid data in any input file; nothing written.")
        return None

    output_path = write_workbook(wb, Path(output_dir) / output_filename(mode, now))
    print(f"Processing complete. Output saved to: {output_path}")
    return output_path

def main():
    print(f"Start... (mode={REPORT_MODE}, input={INPUT_DIR}, output={OUTPUT_DIR})")
    try:
        run()
    except OSError as e:
        print(f"Failed writing workbook: {e}")
        return 1
    return 0

if __name__ == '__main__':
    sys.exit(main())
