#!/usr/bin/env python3
"""
Gatekeeper -- maintenance command line for the authentication engine.

Usage:
  python main.py sweep-sessions
  python main.py cleanup-audit
  python main.py cleanup-audit --dry-run
  python main.py verify-audit
  python main.py purge-counters
  python main.py maintenance

Environment variables:
  DATABASE_URL   SQLAlchemy URL shared by every Gatekeeper process.
  SECRET_KEY     Must match the API server's key, or audit checksums and
                 token hashes will not verify.

Exit codes:
  0  success
  1  storage unavailable
  2  audit integrity violation (tampering or corruption)
"""

import argparse
import logging
import sys
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from audit.models import IntegrityViolation
from auth.service import AuthOrchestrator, create_orchestrator

logger = logging.getLogger("gatekeeper.cli")

EXIT_OK = 0
EXIT_STORAGE = 1
EXIT_INTEGRITY = 2


def _sweep_sessions(orchestrator: AuthOrchestrator, args: argparse.Namespace) -> int:
    removed = orchestrator.sessions.sweep_expired()
    print(f"  Removed {removed} expired or revoked session(s).")
    return EXIT_OK


def _cleanup_audit(orchestrator: AuthOrchestrator, args: argparse.Namespace) -> int:
    count = orchestrator.audit.cleanup_expired(dry_run=args.dry_run)
    verb = "would be deleted" if args.dry_run else "deleted"
    print(f"  {count} audit entr{'y' if count == 1 else 'ies'} past retention {verb}.")
    return EXIT_OK


def _verify_audit(orchestrator: AuthOrchestrator, args: argparse.Namespace) -> int:
    try:
        verified = orchestrator.audit.run_integrity_check(batch_size=args.batch_size)
    except IntegrityViolation as exc:
        print(f"  [!] {exc}", file=sys.stderr)
        return EXIT_INTEGRITY
    print(f"  Audit log intact ({verified} entries verified).")
    return EXIT_OK


def _purge_counters(orchestrator: AuthOrchestrator, args: argparse.Namespace) -> int:
    purged = orchestrator.limiter.purge_stale()
    print(f"  Purged {purged} stale rate-limit counter(s).")
    return EXIT_OK


def _maintenance(orchestrator: AuthOrchestrator, args: argparse.Namespace) -> int:
    report = orchestrator.run_maintenance()
    print(f"  Sessions removed:       {report.sessions_removed}")
    print(f"  Challenges removed:     {report.challenges_removed}")
    print(f"  Counters purged:        {report.counters_purged}")
    print(f"  Audit entries removed:  {report.audit_entries_removed}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gatekeeper",
        description="Maintenance jobs for the Gatekeeper authentication engine.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py sweep-sessions
  python main.py cleanup-audit --dry-run
  DATABASE_URL=sqlite:////var/lib/gatekeeper.db python main.py verify-audit
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="Override DATABASE_URL for this run",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log at DEBUG level",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("sweep-sessions", help="Delete sessions expired or revoked longer than the grace period")
    p.set_defaults(func=_sweep_sessions)

    p = sub.add_parser("cleanup-audit", help="Apply the audit retention policy")
    p.add_argument("--dry-run", action="store_true", help="Only count what would be deleted")
    p.set_defaults(func=_cleanup_audit)

    p = sub.add_parser("verify-audit", help="Verify every audit checksum (exit 2 on tampering)")
    p.add_argument("--batch-size", type=int, default=500, metavar="N", help="Entries per batch (default: 500)")
    p.set_defaults(func=_verify_audit)

    p = sub.add_parser("purge-counters", help="Delete elapsed rate-limit windows and stale failure tallies")
    p.set_defaults(func=_purge_counters)

    p = sub.add_parser("maintenance", help="Run every sweep in one pass")
    p.set_defaults(func=_maintenance)
    return parser


def main(argv: Optional[list[str]] = None, orchestrator: Optional[AuthOrchestrator] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if not getattr(args, "func", None):
        parser.print_help()
        return EXIT_OK

    owned = orchestrator is None
    try:
        if orchestrator is None:
            orchestrator = create_orchestrator(db_url=args.database_url)
        return args.func(orchestrator, args)
    except SQLAlchemyError:
        logger.exception("Storage unavailable while running %s", args.command)
        print("  [!] Storage unavailable. See log for details.", file=sys.stderr)
        return EXIT_STORAGE
    finally:
        if owned and orchestrator is not None:
            orchestrator.close()


if __name__ == "__main__":
    sys.exit(main())
