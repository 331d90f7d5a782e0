"""
main.py
-------
Command-line entry point.

Commands:
    python main.py init-db
        Create the database schema.
    python main.py sweep-overdue --school 1 --actor 7 [--as-of 2025-03-31]
        Mark a school's past-due installments overdue (run it from cron).
"""

import argparse
import sys
from datetime import date

from db.connection import ConnectionPool
from db.init_db import create_tables
from db.unit_of_work import PostgresUnitOfWork
from notifications.dispatcher import build_dispatcher
from services.installment_service import InstallmentService
from utils.logger import get_logger, set_level

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="School enrollment and installment ledger")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database schema")

    sweep = sub.add_parser("sweep-overdue", help="Mark past-due installments overdue")
    sweep.add_argument("--school", type=int, required=True, help="Tenant (school) id")
    sweep.add_argument("--actor", type=int, required=True, help="User id recorded on the events")
    sweep.add_argument("--as-of", type=date.fromisoformat, default=None,
                       help="Cut-off date YYYY-MM-DD (default: today)")
    return parser


def run_sweep(uow, school_id: int, actor_id: int, as_of=None) -> int:
    """Run the overdue sweep; returns the process exit code."""
    notifier = build_dispatcher()
    try:
        result = InstallmentService(uow, notifier=notifier).sweep_overdue(school_id, actor_id, as_of)
    finally:
        notifier.close()
    if not result["success"]:
        logger.error(f"Overdue sweep rejected: {result['error']['message']}")
        return 2
    data = result["data"]
    logger.info(
        f"Overdue sweep done: {len(data['marked'])} marked, {len(data['errors'])} failed"
    )
    return 1 if data["errors"] else 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.log_level:
        set_level(args.log_level)

    # ── 1. Database setup ─────────────────────────────────
    pool = ConnectionPool()
    pool.open()
    try:
        # ── 2. Run the command ────────────────────────────
        if args.command == "init-db":
            create_tables(pool)
            return 0
        return run_sweep(PostgresUnitOfWork(pool), args.school, args.actor, args.as_of)
    finally:
        # ── 3. Cleanup ────────────────────────────────────
        pool.close()


if __name__ == "__main__":
    sys.exit(main())
