#!/usr/bin/env python3
"""
Cognos Single Report Tool

Lists a Cognos folder or runs one report to CSV.

This module provides:
- --ls PATH:   print the entries of a folder as JSON
- --path PATH: resolve a report by path, run it, write the CSV
- --id ID:     run a report by its Cognos id, write the CSV

Examples:
  python single_report.py --config cognos.json --ls public
  python single_report.py --config cognos.json --ls "~/My Reports"
  python single_report.py --config cognos.json --path "public/Student/Enrollment" --out enrollment.csv
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from typing import List, Optional

from cognos_config import add_connection_args, config_from_args
from cognos_errors import CognosError, FolderPathError
from cognos_folders import FolderEntryEncoder, folder_entry_from_path, ls_folder, split_path
from cognos_report import download_report_csv
from cognos_transport import CognosSession


cancel_event = threading.Event()


def _signal_handler(sig, frame):
    print("\n[Shutdown] Interrupt received. Cancelling...", file=sys.stderr)
    cancel_event.set()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="List a Cognos folder or run one report to CSV",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    add_connection_args(p)
    action = p.add_mutually_exclusive_group(required=True)
    action.add_argument("--ls", type=str, metavar="PATH", help="Folder path to list")
    action.add_argument("--path", type=str, help="Report path to run")
    action.add_argument("--id", dest="report_id", type=str, help="Report id to run")
    p.add_argument("--out", type=str, default=None, help="CSV output file (default: stdout)")
    return p.parse_args(argv)


def list_folder(session: CognosSession, path: str) -> str:
    """Return the listing of the folder at `path` as a JSON document."""
    entry = folder_entry_from_path(session, split_path(path))
    if not entry.is_folder:
        raise FolderPathError(f"{path} is a report, not a folder")
    entries = ls_folder(session, entry.id)
    return json.dumps(entries, cls=FolderEntryEncoder, indent=2, sort_keys=True)


def run_report(session: CognosSession, path: Optional[str], report_id: Optional[str]) -> bytes:
    """Resolve the report if needed, run it, and return the CSV bytes."""
    if report_id is None:
        entry = folder_entry_from_path(session, split_path(path))
        if entry.is_folder:
            raise FolderPathError(f"{path} is a folder, not a report")
        report_id = entry.id
    return download_report_csv(session, report_id, cancel=cancel_event)


def main(argv: Optional[List[str]] = None) -> int:
    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    args = parse_args(argv)
    try:
        cfg = config_from_args(args)
        with CognosSession(cfg, cancel=cancel_event) as session:
            if args.ls is not None:
                print(list_folder(session, args.ls))
                return 0

            csv_data = run_report(session, args.path, args.report_id)

    except CognosError as e:
        print(f"[Error] {type(e).__name__}: {e}", file=sys.stderr)
        return 1

    if args.out:
        with open(args.out, "wb") as f:
            f.write(csv_data)
        print(f"Success: Saved to {args.out} ({len(csv_data):,} bytes)", file=sys.stderr)
    else:
        sys.stdout.buffer.write(csv_data)
        sys.stdout.buffer.flush()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
