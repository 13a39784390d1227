#!/usr/bin/env python3
"""
Cognos Batch Report Downloader

Runs many Cognos reports concurrently and saves each one as a CSV file.

Input is a table (csv, parquet or json) with one row per report and either
a `path` column ("public/Folder/Report" or "~/Folder/Report") or an `id`
column holding the report's Cognos id. An optional `name` column sets the
output file name.

Reports run on a thread pool; the session's admission gate still caps the
number of HTTP requests in flight across all of them. A failed report is
recorded in the overview and does not stop the others.

Examples:
  python download_reports.py --config cognos.json --input reports.csv --output exports/
  python download_reports.py --url https://cognos.example.org --dsn mydsn \\
      --user 'DOMAIN\\me' --input reports.parquet --output exports/ --concurrent_reports 8
"""

from __future__ import annotations

import argparse
import json
import os
import re
import signal
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import polars as pl
from tqdm import tqdm

from cognos_config import Config, add_connection_args, config_from_args, load_config_file
from cognos_errors import CognosError, ConfigError, FolderPathError, OperationCancelled
from cognos_folders import folder_entry_from_path, split_path
from cognos_report import download_report_csv
from cognos_transport import CognosSession


# =============================================================================
# SHUTDOWN HANDLING
# =============================================================================

cancel_event = threading.Event()


def _signal_handler(sig, frame):
    print("\n[Shutdown] Interrupt received. Cancelling pending reports...")
    cancel_event.set()


def install_signal_handlers() -> None:
    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class BatchConfig:
    """Batch-level settings (connection settings live in cognos_config.Config)."""
    input_path: str
    output_folder: str
    input_format: Optional[str] = None
    path_col: str = "path"
    id_col: str = "id"
    name_col: str = "name"
    concurrent_reports: int = 4
    create_overview: bool = True


def parse_args(argv: Optional[List[str]] = None) -> Tuple[Config, BatchConfig]:
    """Parse command line arguments or JSON config file."""
    p = argparse.ArgumentParser(
        description="Run Cognos reports concurrently and save them as CSV files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    add_connection_args(p)
    p.add_argument("--input", dest="input_path", type=str)
    p.add_argument("--input_format", type=str, default=None,
                   help="csv, parquet or json (default: from the file extension)")
    p.add_argument("--output", dest="output_folder", type=str)
    p.add_argument("--path_col", type=str, default="path")
    p.add_argument("--id_col", type=str, default="id")
    p.add_argument("--name_col", type=str, default="name")
    p.add_argument("--concurrent_reports", type=int, default=4)
    p.add_argument("--no_overview", action="store_true")

    args = p.parse_args(argv)
    cfg = config_from_args(args)
    data = load_config_file(args.config)

    batch = BatchConfig(
        input_path=data.get("input", args.input_path),
        output_folder=data.get("output", args.output_folder),
        input_format=data.get("input_format", args.input_format),
        path_col=data.get("path_col", args.path_col),
        id_col=data.get("id_col", args.id_col),
        name_col=data.get("name_col", args.name_col),
        concurrent_reports=data.get("concurrent_reports", args.concurrent_reports),
        create_overview=data.get("create_overview", not args.no_overview),
    )

    if not batch.input_path or not batch.output_folder:
        p.error("--input and --output are required (or set them in --config)")
    if batch.concurrent_reports < 1:
        p.error("--concurrent_reports must be at least 1")

    return cfg, batch


# =============================================================================
# INPUT LOADING
# =============================================================================

def load_report_table(file_path: str, file_format: Optional[str] = None) -> pl.DataFrame:
    """
    Load the report list using Polars.

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If format is unsupported
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"Input file {file_path} not found")

    if file_format is None:
        if file_path.endswith(".parquet"):
            file_format = "parquet"
        elif file_path.endswith(".csv") or file_path.endswith(".txt"):
            file_format = "csv"
        elif file_path.endswith(".json"):
            file_format = "json"
        else:
            raise ValueError(f"Could not determine file format from extension: {file_path}")

    if file_format == "parquet":
        return pl.read_parquet(file_path)
    elif file_format == "csv":
        return pl.read_csv(file_path, infer_schema_length=0)
    elif file_format == "json":
        return pl.read_json(file_path)
    raise ValueError(f"Unsupported file format: {file_format}")


def _sanitize_filename(name: str, max_len: int = 180) -> str:
    name = name.strip().replace(os.sep, "_")
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name)
    name = re.sub(r"_+", "_", name).strip("._")
    if not name:
        name = "report"
    return name[:max_len]


@dataclass(frozen=True)
class ReportJob:
    """One row of the input table."""
    key: str
    path: Optional[str]
    report_id: Optional[str]
    name: str

    @property
    def label(self) -> str:
        return self.path or self.report_id or self.key


def _cell(row: dict, col: str) -> Optional[str]:
    value = row.get(col)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def build_jobs(df: pl.DataFrame, batch: BatchConfig) -> List[ReportJob]:
    """
    Turn input rows into report jobs with unique output names.

    Raises:
        ValueError: Neither the path nor the id column exists, or a row has neither
    """
    if batch.path_col not in df.columns and batch.id_col not in df.columns:
        raise ValueError(f"Input needs a '{batch.path_col}' or '{batch.id_col}' column")

    jobs: List[ReportJob] = []
    used_names: Counter = Counter()

    for i, row in enumerate(df.iter_rows(named=True)):
        path = _cell(row, batch.path_col)
        report_id = _cell(row, batch.id_col)
        if path is None and report_id is None:
            raise ValueError(f"Row {i} has neither a report path nor a report id")

        name = _cell(row, batch.name_col)
        if name is None:
            name = split_path(path)[-1] if path else report_id
        name = _sanitize_filename(name)

        used_names[name] += 1
        if used_names[name] > 1:
            name = f"{name}_{used_names[name]}"

        jobs.append(ReportJob(key=str(i), path=path, report_id=report_id, name=name))

    return jobs


# =============================================================================
# RUNNING REPORTS
# =============================================================================

@dataclass
class ReportOutcome:
    """Result of one report run."""
    key: str
    report: str
    success: bool
    file_path: Optional[str]
    error_type: Optional[str]
    error: Optional[str]
    bytes_written: int = 0
    elapsed_sec: float = 0.0


def run_one(session: CognosSession, job: ReportJob, output_folder: str,
            cancel: Optional[threading.Event] = None) -> ReportOutcome:
    """Resolve, run and save a single report; failures become the outcome's error."""
    t0 = time.monotonic()
    file_path = os.path.join(output_folder, f"{job.name}.csv")

    try:
        report_id = job.report_id
        if report_id is None:
            entry = folder_entry_from_path(session, split_path(job.path))
            if entry.is_folder:
                raise FolderPathError(f"{job.path} is a folder, not a report")
            report_id = entry.id

        data = download_report_csv(session, report_id, cancel=cancel)
        with open(file_path, "wb") as f:
            f.write(data)

    except CognosError as e:
        return ReportOutcome(
            key=job.key,
            report=job.label,
            success=False,
            file_path=None,
            error_type=type(e).__name__,
            error=str(e),
            elapsed_sec=time.monotonic() - t0,
        )
    except OSError as e:
        return ReportOutcome(
            key=job.key,
            report=job.label,
            success=False,
            file_path=None,
            error_type="SaveError",
            error=f"Save error: {e}",
            elapsed_sec=time.monotonic() - t0,
        )

    return ReportOutcome(
        key=job.key,
        report=job.label,
        success=True,
        file_path=file_path,
        error_type=None,
        error=None,
        bytes_written=len(data),
        elapsed_sec=time.monotonic() - t0,
    )


def run_batch(session: CognosSession, jobs: List[ReportJob], output_folder: str,
              concurrent_reports: int, cancel: Optional[threading.Event] = None,
              show_progress: bool = True) -> List[ReportOutcome]:
    """Run every job on a thread pool and collect outcomes in input order."""
    os.makedirs(output_folder, exist_ok=True)
    outcomes = {}

    pbar = tqdm(total=len(jobs), desc="Reports", unit="report", disable=not show_progress)
    try:
        with ThreadPoolExecutor(max_workers=max(1, min(concurrent_reports, len(jobs)))) as pool:
            futures = {
                pool.submit(run_one, session, job, output_folder, cancel): job
                for job in jobs
            }
            for fut in as_completed(futures):
                outcome = fut.result()
                outcomes[outcome.key] = outcome
                if not outcome.success:
                    tqdm.write(f"[Report] {outcome.report} failed: {outcome.error}")
                pbar.update(1)
    finally:
        pbar.close()

    return [outcomes[job.key] for job in jobs]


# =============================================================================
# OVERVIEW
# =============================================================================

def write_overview(batch: BatchConfig, cfg: Config, outcomes: List[ReportOutcome],
                   elapsed_sec: float, cancelled: bool = False) -> str:
    """Write JSON overview report next to the output folder."""
    successes = [o for o in outcomes if o.success]
    failures = [o for o in outcomes if not o.success]
    err_counter = Counter(o.error_type for o in failures)

    total = len(outcomes)
    report = {
        "script_inputs": {
            "input": batch.input_path,
            "output_folder": batch.output_folder,
            "cognos_url": cfg.url,
            "dsn": cfg.dsn,
            "concurrent_reports": batch.concurrent_reports,
            "concurrent_requests": cfg.concurrent_requests,
        },
        "summary": {
            "total_reports": total,
            "successful_reports": len(successes),
            "failed_reports": len(failures),
            "success_rate_percent": round((len(successes) / total) * 100.0, 2) if total else 0.0,
            "bytes_written": sum(o.bytes_written for o in successes),
            "elapsed_sec": round(elapsed_sec, 3),
            "shutdown_requested": cancelled,
        },
        "error_breakdown": [
            {"error_type": et, "count": cnt}
            for et, cnt in err_counter.most_common()
        ],
        "failures": [
            {"report": o.report, "error_type": o.error_type, "error": o.error}
            for o in failures
        ],
        "timestamp_local": time.strftime("%Y-%m-%d %H:%M:%S", time.localtime()),
    }

    out = Path(batch.output_folder)
    overview_path = out.with_name(out.name + "_overview.json")

    with overview_path.open("w") as f:
        json.dump(report, f, indent=2)

    return str(overview_path.resolve())


# =============================================================================
# MAIN
# =============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    try:
        cfg, batch = parse_args(argv)
    except ConfigError as e:
        print(f"[Error] {e}")
        return 2

    print("=" * 72)
    print("Cognos Batch Report Downloader")
    print("=" * 72)

    try:
        df = load_report_table(batch.input_path, batch.input_format)
        jobs = build_jobs(df, batch)
    except (OSError, ValueError, pl.exceptions.PolarsError) as e:
        print(f"[Error] Could not load report list {batch.input_path}: {e}")
        return 2
    print(f"[Load] Reports to run: {len(jobs)}")
    if not jobs:
        return 0

    install_signal_handlers()

    start = time.monotonic()
    with CognosSession(cfg, cancel=cancel_event) as session:
        outcomes = run_batch(session, jobs, batch.output_folder, batch.concurrent_reports, cancel_event)
    elapsed = time.monotonic() - start

    successes = [o for o in outcomes if o.success]
    cancelled = sum(1 for o in outcomes if o.error_type == OperationCancelled.__name__)

    print("\n" + "=" * 72)
    print("FINAL SUMMARY")
    print("=" * 72)
    print(f"Total reports:         {len(outcomes)}")
    print(f"Successful reports:    {len(successes)}")
    print(f"Failed reports:        {len(outcomes) - len(successes)}")
    if cancelled:
        print(f"Cancelled:             {cancelled}")
    print(f"Elapsed time:          {elapsed:.2f}s")

    if batch.create_overview:
        try:
            overview = write_overview(batch, cfg, outcomes, elapsed, cancel_event.is_set())
            print(f"[Report] Overview: {overview}")
        except OSError as e:
            print(f"[Report] Failed to write overview: {e}")

    print("=" * 72)
    return 0 if len(successes) == len(outcomes) else 1


if __name__ == "__main__":
    raise SystemExit(main())
