#!/usr/bin/env python3
"""
Club Portal — spreadsheet → database importer

Loads member and work-credit files (system backup or the old Excel
exports) into a portal database without going through the web app.
Members are always loaded before logs so credits can find their owners.

Usage:
  python scripts/import_backup_csvs.py --members members.csv --logs credits.csv
  python scripts/import_backup_csvs.py --folder exports/ --db data/db/clubportal.db
"""

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bulk_import import (  # noqa: E402
    clear_legacy_members, detect_log_schema, detect_member_schema,
    import_logs, import_members, read_table,
)
from errors import StoreError  # noqa: E402
from portal_store import init_db, open_store  # noqa: E402
from settings import Settings  # noqa: E402

TABLE_SUFFIXES = (".csv", ".xlsx", ".xlsm")


def load_rows(path: Path):
    with open(path, "rb") as fh:
        return read_table(fh, path.name)


def classify_folder(root: Path):
    """Split a folder of exports into member files and log files by header."""
    member_files = []
    log_files = []
    for path in sorted(root.rglob("*")):
        if path.suffix.lower() not in TABLE_SUFFIXES:
            continue
        rows = load_rows(path)
        if not rows:
            print(f"⚠️ {path.name}: empty, skipped")
            continue
        if detect_member_schema(rows[0]):
            member_files.append(path)
        elif detect_log_schema(rows[0]):
            log_files.append(path)
        else:
            print(f"⚠️ {path.name}: columns not recognised, skipped")
    return member_files, log_files


def run_import(store, label, importer, path: Path):
    print(f"📄 {path.name}")
    try:
        report = importer(store, load_rows(path))
    except StoreError as exc:
        partial = getattr(exc, "report", None)
        done = partial.imported if partial else 0
        print(f"   ❌ {label} import stopped after {done} row(s): {exc}")
        raise SystemExit(1)
    print(f"   ✔ Imported: {report.imported}")
    if report.skipped:
        print(f"   ⚠️ Skipped: {report.skipped}")
        for line in report.errors[:20]:
            print(f"      {line}")
    return report


def main():
    p = argparse.ArgumentParser()
    p.add_argument("--members", action="append", default=[], help="Member CSV/XLSX file (repeatable)")
    p.add_argument("--logs", action="append", default=[], help="Work-credit CSV/XLSX file (repeatable)")
    p.add_argument("--folder", help="Folder of exports; files are classified by their header row")
    p.add_argument("--db", help="SQLite file (defaults to CLUBPORTAL_DB_FILE or data/db/clubportal.db)")
    p.add_argument("--clear-legacy", action="store_true", help="Delete every legacy member and its logs first")
    args = p.parse_args()

    settings = Settings.from_env()
    if args.db:
        settings = Settings(db_file=str(Path(args.db).expanduser().resolve()), db_backend="sqlite")

    member_files = [Path(m).expanduser() for m in args.members]
    log_files = [Path(l).expanduser() for l in args.logs]
    if args.folder:
        root = Path(args.folder).expanduser().resolve()
        if not root.exists():
            raise SystemExit(f"❌ Folder not found: {root}")
        print("\n📂 Scanning exports in:")
        print(f"   {root}\n")
        found_members, found_logs = classify_folder(root)
        member_files += found_members
        log_files += found_logs

    missing = [str(p) for p in member_files + log_files if not p.exists()]
    if missing:
        raise SystemExit(f"❌ File(s) not found: {', '.join(missing)}")
    if not member_files and not log_files:
        raise SystemExit("❌ Nothing to import. Pass --members, --logs or --folder.")

    init_db(settings)
    store = open_store(settings)
    try:
        if args.clear_legacy:
            counts = clear_legacy_members(store)
            print(f"\n🔥 Cleared {counts['members']} legacy member(s) and {counts['logs']} log(s)")

        totals = {"members": 0, "logs": 0, "skipped": 0}
        for path in member_files:
            report = run_import(store, "Member", import_members, path)
            totals["members"] += report.imported
            totals["skipped"] += report.skipped
        for path in log_files:
            report = run_import(store, "Log", import_logs, path)
            totals["logs"] += report.imported
            totals["skipped"] += report.skipped
    finally:
        store.close()

    print("\n🎉 IMPORT COMPLETE")
    print(f"   ✔ Members written: {totals['members']}")
    print(f"   ✔ Logs written: {totals['logs']}")
    print(f"   ⚠️ Rows skipped: {totals['skipped']}")


if __name__ == "__main__":
    main()
