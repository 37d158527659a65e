#!/usr/bin/env python3
"""
Batch SQL query migrator: retarget saved SELECT queries from deprecated tables/columns to a new schema.

Reads a mapping CSV and a query CSV, migrates every query (sql_migration), and writes a CSV report
of the impacted queries (or of all queries with --all).

Mapping CSV (one rename per row):
  Deprecated Object,New Object
  Amendment,Orders
  Amendment.Name,Orders.OrderNumber

Query CSV:
  Query Name,Query Description,Original Query[,Updated Query]

Header matching ignores case, spaces and underscores. Rows without a query name are skipped;
mapping rows without a deprecated object are dropped.

Usage:
  python migrate_queries.py --mapping-csv mapping.csv --queries-csv queries.csv
  python migrate_queries.py --mapping-csv mapping.csv --queries-csv queries.csv -o out/report.csv --workers 8
  python migrate_queries.py ... --dialect trino --log-level DEBUG --log-file migrate.log
"""

from __future__ import annotations

import argparse
import csv
import logging
import os
import re
import sys
import time
from pathlib import Path
from typing import Optional

from sql_migration import (
    MappingEntry,
    QueryRecord,
    impacted_queries,
    migrate_queries,
    parse_mapping_entry,
    summarize,
)

# -----------------------------------------------------------------------------
# Defaults (override with env or CLI)
# -----------------------------------------------------------------------------
DEFAULT_WORKERS: int = 1
DEFAULT_DIALECT: str = ""              # empty = sqlglot generic dialect
DEFAULT_OUTPUT: str = "reports/impacted_queries.csv"

REPORT_FIELDS = ["Query Name", "Query Description", "Original Query", "Updated Query", "Impacted", "Status"]

# Module-level logger; configured in main()
log = logging.getLogger("migrate_queries")


def _normalize_header(name: Optional[str]) -> str:
    return re.sub(r"[\s_]+", "", name or "").lower()


def _row_value(row: dict, *names: str) -> str:
    """First non-empty value among the given (normalized) header names."""
    normalized = {_normalize_header(k): v for k, v in row.items() if k is not None}
    for name in names:
        value = normalized.get(name)
        if value is not None and str(value).strip():
            return str(value)
    return ""


def read_mapping_csv(path: Path) -> list[MappingEntry]:
    entries: list[MappingEntry] = []
    dropped = 0
    with open(path, newline="", encoding="utf-8-sig") as f:
        for row in csv.DictReader(f):
            entry = parse_mapping_entry(
                _row_value(row, "deprecatedobject", "deprecated"),
                _row_value(row, "newobject", "new"),
            )
            if entry is None:
                dropped += 1
                continue
            entries.append(entry)
    log.info("[MAPPING] Loaded %d mapping row(s) from %s (%d dropped)", len(entries), path, dropped)
    return entries


def read_query_csv(path: Path) -> list[QueryRecord]:
    records: list[QueryRecord] = []
    with open(path, newline="", encoding="utf-8-sig") as f:
        for lineno, row in enumerate(csv.DictReader(f), 2):
            name = _row_value(row, "queryname", "name").strip()
            if not name:
                log.debug("[INPUT] Line %d: skipped (no query name)", lineno)
                continue
            updated = _row_value(row, "updatedquery")
            records.append(QueryRecord(
                name=name,
                description=_row_value(row, "querydescription", "description"),
                original_query=_row_value(row, "originalquery", "query"),
                updated_query=updated or None,
            ))
    log.info("[INPUT] Loaded %d quer%s from %s", len(records), "y" if len(records) == 1 else "ies", path)
    return records


def write_report(path: Path, records: list[QueryRecord]) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=REPORT_FIELDS)
        w.writeheader()
        for r in records:
            w.writerow({
                "Query Name": r.name,
                "Query Description": r.description,
                "Original Query": r.original_query,
                "Updated Query": r.updated_query or "",
                "Impacted": "yes" if r.impacted else "no",
                "Status": r.status or "",
            })
    log.info("[REPORT] Wrote %d row(s) to %s", len(records), path)
    return len(records)


def _setup_logging(level_name: str, log_file: Optional[str]) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S")
    loggers = (log, logging.getLogger("sql_migration"))

    # One FileHandler per path, shared by both loggers and reused across calls
    fh = None
    if log_file:
        path = os.path.abspath(log_file)
        fh = next(
            (h for lg in loggers for h in lg.handlers
             if isinstance(h, logging.FileHandler) and h.baseFilename == path),
            None,
        )
        if fh is None:
            fh = logging.FileHandler(path, encoding="utf-8")
            fh.setFormatter(fmt)

    for logger in loggers:
        logger.setLevel(level)
        if not any(type(h) is logging.StreamHandler for h in logger.handlers):
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(fmt)
            logger.addHandler(handler)
        if fh is not None and fh not in logger.handlers:
            logger.addHandler(fh)


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Migrate SQL SELECT queries from deprecated tables/columns to a new schema.",
    )
    parser.add_argument("--mapping-csv", required=True, metavar="FILE",
                        help="CSV with 'Deprecated Object' and 'New Object' columns")
    parser.add_argument("--queries-csv", required=True, metavar="FILE",
                        help="CSV with 'Query Name', 'Query Description' and 'Original Query' columns")
    parser.add_argument("-o", "--output", default=DEFAULT_OUTPUT, metavar="PATH",
                        help=f"Report CSV path (default: {DEFAULT_OUTPUT})")
    parser.add_argument("--all", action="store_true",
                        help="Write every query to the report, not only the impacted ones")
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        metavar="N",
        help=f"Parallel workers (or QUERY_MIGRATOR_WORKERS env; default: {DEFAULT_WORKERS}). Use 1 for sequential.",
    )
    parser.add_argument("--dialect", default=None,
                        help="sqlglot read dialect, e.g. trino, mysql (or QUERY_MIGRATOR_DIALECT env; default: generic)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Logging level (default: INFO). Use DEBUG for per-query detail.",
    )
    parser.add_argument("--log-file", default=None, metavar="PATH",
                        help="Optional file to write logs to (in addition to stderr).")
    args = parser.parse_args(argv)

    if args.workers is not None:
        workers = args.workers
    else:
        env_workers = os.environ.get("QUERY_MIGRATOR_WORKERS", str(DEFAULT_WORKERS))
        try:
            workers = int(env_workers)
        except ValueError:
            parser.error(f"QUERY_MIGRATOR_WORKERS must be an integer, got {env_workers!r}")
    if workers < 1:
        parser.error("--workers must be at least 1")
    dialect = args.dialect if args.dialect is not None else os.environ.get("QUERY_MIGRATOR_DIALECT", DEFAULT_DIALECT)

    _setup_logging(args.log_level, args.log_file)
    log.info(
        "Script started: mapping_csv=%s queries_csv=%s output=%s workers=%s dialect=%s",
        args.mapping_csv, args.queries_csv, args.output, workers, dialect or "(generic)",
    )

    mapping_path, queries_path = Path(args.mapping_csv), Path(args.queries_csv)
    for path in (mapping_path, queries_path):
        if not path.is_file():
            print(f"Error: file not found: {path}", file=sys.stderr, flush=True)
            sys.exit(1)
    try:
        entries = read_mapping_csv(mapping_path)
        records = read_query_csv(queries_path)
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        log.error("[INPUT] Cannot read input: %s", e)
        print(f"Error: cannot read input: {e}", file=sys.stderr, flush=True)
        sys.exit(1)

    t0 = time.perf_counter()
    records = migrate_queries(records, entries, workers=workers, dialect=dialect or None)
    elapsed = time.perf_counter() - t0

    rows = records if args.all else impacted_queries(records)
    out_path = Path(args.output)
    write_report(out_path, rows)

    counts = summarize(records)
    print(f"\nCompleted in {elapsed:.1f}s", flush=True)
    print(f"Report written to: {out_path}", flush=True)
    print("Summary:", flush=True)
    print(f"  Queries:  total={counts['total']}, impacted={counts['impacted']}", flush=True)
    print(f"  Strategy: structural={counts['structural']}, fallback={counts['fallback']}, errors={counts['errors']}", flush=True)


if __name__ == "__main__":
    main()
