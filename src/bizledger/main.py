from __future__ import annotations

import argparse
import logging
import sys
from datetime import date, timedelta
from typing import Optional, Sequence

from bizledger.application.container import build_container
from bizledger.config import SyncSettings, get_app_paths
from bizledger.domain.errors import AppError
from bizledger.logging_config import setup_logging
from bizledger.repositories.schema import SchemaManager

log = logging.getLogger(__name__)


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="bizledger", description="Offline ledger store maintenance.")
    p.add_argument("--home", help="Data directory (defaults to the per-user app folder).")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create or upgrade the local database.")
    sub.add_parser("status", help="Show schema version, integrity and unsynced row counts.")

    led = sub.add_parser("export-ledger", help="Export a client statement to Excel.")
    led.add_argument("client_id", type=int)
    led.add_argument("path")

    dem = sub.add_parser("export-demand", help="Export a demand batch to Excel.")
    dem.add_argument("batch_id", type=int)
    dem.add_argument("path")

    sal = sub.add_parser("export-sales", help="Export a sales report (start inclusive, end exclusive) to Excel.")
    sal.add_argument("start")
    sal.add_argument("end")
    sal.add_argument("path")

    cln = sub.add_parser("cleanup", help="Remove deleted records the server has already confirmed.")
    cln.add_argument("--older-than-days", type=int, default=None)
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parser().parse_args(argv)
    paths = get_app_paths(base_dir=args.home)
    setup_logging(paths.logs_dir, level=logging.INFO)

    try:
        c = build_container(paths.db_path)

        if args.command == "init":
            print(f"Database ready: {paths.db_path} (schema v{SchemaManager(paths.db_path).current_version()})")

        elif args.command == "status":
            print(f"Database: {paths.db_path}")
            print(f"Schema version: {SchemaManager(paths.db_path).current_version()}")
            print(f"Integrity: {c.repo.integrity_check()}")
            for table, counts in c.repo.sync_status().items():
                print(f"  {table:<13} total={counts['total']:<6} unsynced={counts['unsynced']:<6} synced={counts['synced_percent']}%")
            stats = c.reporting.dashboard()
            print(f"Revenue: {stats['revenue']:.2f}  Outstanding: {stats['outstanding']:.2f}  Low stock: {stats['low_stock']}")

        elif args.command == "export-ledger":
            c.reporting.export_client_statement_excel(args.path, args.client_id)
            print(f"Exported: {args.path}")

        elif args.command == "export-demand":
            c.reporting.export_demand_batch_excel(args.path, args.batch_id)
            print(f"Exported: {args.path}")

        elif args.command == "export-sales":
            c.reporting.export_sales_report_excel(args.path, args.start, args.end)
            print(f"Exported: {args.path}")

        elif args.command == "cleanup":
            days = args.older_than_days
            if days is None:
                days = SyncSettings.from_env().cleanup_age_days
            threshold = (date.today() - timedelta(days=days)).isoformat()
            removed = c.repo.purge_deleted_records(threshold)
            log.info("cleanup_completed removed_rows=%s older_than=%s", removed, threshold)
            print(f"Removed {removed} deleted record(s) synced before {threshold}")

    except AppError as e:
        log.error("command_failed command=%s error=%s", args.command, e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
