#!/usr/bin/env python3
"""
Editorial Workflow Management CLI

Commands:
- init-db: Create tables and seed default time limits (PostgreSQL)
- run-sweep: Run one deadline sweep and print the result
- deadline-stats: Show what the next sweep would act on
- list-time-limits: Show the effective policy for every stage
- set-time-limit: Create or update a stage's time limit
- health-check: Check storage and configuration

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage init-db
    python -m tools.manage run-sweep
    python -m tools.manage set-time-limit --stage reviewer-response --days 10 --escalation-days 7
"""

import argparse
import json
import os
import sys
from importlib import resources
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _parse_days(value: str) -> list[int]:
    if not value:
        return []
    try:
        return [int(part) for part in value.split(",") if part.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected comma-separated integers, got {value!r}")


def cmd_init_db(args):
    """Apply schema.sql to the configured PostgreSQL database."""
    from editorial.db.config import DatabaseConfig, RepositoryDriver, get_repository_driver

    if get_repository_driver() == RepositoryDriver.MEMORY:
        print("[FAIL] No database configured (set DATABASE_URL or DATABASE_HOST)")
        return 1

    import psycopg2

    config = DatabaseConfig.resolve()
    schema = resources.files("editorial.db").joinpath("schema.sql").read_text()

    print(f"Applying schema to {config.describe()} ...")
    conn = psycopg2.connect(**config.connect_kwargs())
    try:
        with conn:
            with conn.cursor() as cursor:
                cursor.execute(schema)
    finally:
        conn.close()

    print("[OK] Schema applied")
    return 0


def cmd_run_sweep(args):
    """Run one sweep now."""
    from editorial import services
    from editorial.observability import setup_logging

    setup_logging()
    engine = services.get_sweep_engine()
    try:
        result = engine.run_sweep()
    finally:
        services.shutdown()

    print(json.dumps(result.to_dict(), indent=2))
    return 1 if result.errors and args.fail_on_errors else 0


def cmd_deadline_stats(args):
    """Counts of invitations and assignments the next sweep would touch."""
    from editorial import services

    stats = services.get_sweep_engine().deadline_statistics()
    services.shutdown()

    print(json.dumps(stats, indent=2))
    return 0


def cmd_list_time_limits(args):
    """Print the effective policy for every stage."""
    from editorial import services
    from editorial.core.policy import PolicyStore

    policies = PolicyStore(services.get_repository()).list_all()

    print(f"{'STAGE':<32} {'DAYS':>5}  {'REMINDERS':<12} {'ESCALATION':<12} SOURCE")
    for p in policies:
        print(
            f"{p.stage:<32} {p.time_limit_days:>5}  "
            f"{','.join(map(str, p.reminder_days)) or '-':<12} "
            f"{','.join(map(str, p.escalation_days)) or '-':<12} "
            f"{'default' if p.is_default else 'stored'}"
        )
    return 0


def cmd_set_time_limit(args):
    """Upsert one stage's time limit."""
    from pydantic import ValidationError

    from editorial import services
    from editorial.schemas import WorkflowTimeLimit

    try:
        record = WorkflowTimeLimit(
            stage=args.stage,
            time_limit_days=args.days,
            reminder_days=args.reminder_days,
            escalation_days=args.escalation_days,
            is_active=not args.inactive,
        )
    except ValidationError as e:
        print(f"[FAIL] {e}")
        return 1

    services.get_repository().upsert_time_limit(record)
    print(f"[OK] {record.stage}: {record.time_limit_days} days"
          f"{'' if record.is_active else ' (inactive)'}")
    return 0


def cmd_health_check(args):
    """Check storage connectivity and configuration."""
    from editorial import services
    from editorial.db.config import DatabaseConfig, RepositoryDriver, get_repository_driver
    from editorial.db.repository import RepositoryError
    from editorial.schemas import InvitationStatus

    driver = get_repository_driver()

    print("=== Editorial Workflow Health Check ===\n")

    print("Storage:")
    if driver == RepositoryDriver.MEMORY:
        print("  Type: In-Memory")
    else:
        print(f"  Type: PostgreSQL ({driver.value})")
        print(f"  Location: {DatabaseConfig.resolve().describe()}")
    try:
        repository = services.get_repository()
        pending = repository.count_invitations(InvitationStatus.PENDING)
        print("  Status: [OK] Connected")
        print(f"  Pending invitations: {pending}")
    except RepositoryError as e:
        print(f"  Status: [FAIL] {e}")
        return 1

    print("\nEnvironment:")
    if len(os.environ.get("EDITORIAL_SECRET_KEY", "")) >= 16:
        print("  Token secret: [OK] Set")
    else:
        print("  Token secret: [WARN] Using default (development)")
    if os.environ.get("EDITORIAL_SWEEP_ENABLED", "").lower() in ("1", "true", "yes"):
        print("  Background sweep: [OK] Enabled")
    else:
        print("  Background sweep: [WARN] Disabled (run-sweep from cron instead)")

    print("\n=== Health Check Complete ===")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Editorial Workflow Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-db", help="Create tables and default time limits")

    p_sweep = subparsers.add_parser("run-sweep", help="Run one deadline sweep")
    p_sweep.add_argument(
        "--fail-on-errors",
        action="store_true",
        help="Exit 1 if any row failed (for cron alerting)"
    )

    subparsers.add_parser("deadline-stats", help="Show pending reminder/withdrawal counts")
    subparsers.add_parser("list-time-limits", help="Show effective stage policies")

    p_set = subparsers.add_parser("set-time-limit", help="Create or update a stage time limit")
    p_set.add_argument("--stage", required=True, help="Stage key, e.g. reviewer-response")
    p_set.add_argument("--days", type=int, required=True, help="Days allowed for the stage")
    p_set.add_argument("--reminder-days", type=_parse_days, default=[], help="e.g. 7,3,1")
    p_set.add_argument("--escalation-days", type=_parse_days, default=[], help="e.g. 7,14,21")
    p_set.add_argument("--inactive", action="store_true", help="Store but fall back to defaults")

    subparsers.add_parser("health-check", help="Check storage and configuration")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "init-db": cmd_init_db,
        "run-sweep": cmd_run_sweep,
        "deadline-stats": cmd_deadline_stats,
        "list-time-limits": cmd_list_time_limits,
        "set-time-limit": cmd_set_time_limit,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
