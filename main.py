#!/usr/bin/env python3
"""
PostureWatch -- Passive website security posture monitoring.

Usage:
  python main.py scan example.com
  python main.py scan https://example.com --json
  python main.py scan example.com --no-color
  python main.py run-scheduler
  python main.py run-scheduler --interval 300
  python main.py send-digest
  python main.py add-user alice@example.com --name "Alice"

Environment variables (see core/config.py for the full list):
  DATABASE_URL   SQLAlchemy URL for the monitor store (default sqlite:///posturewatch.db)
  SMTP_HOST      Enables email delivery of digests; without it digests are logged
  DEBUG          true for development (auto-generates SECRET_KEY)
"""

import argparse
import logging
import sys
import time

from alerts.digest import DigestDispatcher
from alerts.engine import AlertEngine
from alerts.notifier import notifier_from_settings
from auth.tokens import create_access_token
from core.config import Settings, get_settings
from core.errors import InvalidTargetError
from core.formatter import disable_color, print_terminal, to_json
from core.pipeline import ScanService, assess_url
from core.validation import validate_url
from monitor.models import UserProfile
from monitor.scheduler import Scheduler
from monitor.store import MonitorStore


def _build_scheduler(store: MonitorStore, settings: Settings) -> Scheduler:
    engine = AlertEngine(store, settings.improvement_cooldown_hours)
    service = ScanService(store, engine, settings)
    return Scheduler(store, service, settings.scheduler_max_workers)


def cmd_scan(args: argparse.Namespace, settings: Settings) -> int:
    """Ad-hoc scan. Nothing is persisted."""
    try:
        url = validate_url(args.url)
    except InvalidTargetError as e:
        print(f"  [!] {e}", file=sys.stderr)
        return 2

    if not args.json:
        print(f"  Scanning {url}...", end=" ", flush=True)
    assessment = assess_url(url, settings)
    if args.json:
        print(to_json(assessment))
    else:
        print("done.")
        print_terminal(assessment)
    return 0


def cmd_run_scheduler(args: argparse.Namespace, settings: Settings) -> int:
    store = MonitorStore(settings.database_url)
    scheduler = _build_scheduler(store, settings)
    try:
        while True:
            result = scheduler.run_due()
            print(
                f"  due={result.due} succeeded={result.succeeded} "
                f"skipped={result.skipped} failed={len(result.failures)}"
            )
            for failure in result.failures:
                print(f"    [!] {failure['target_url']}: {failure['error']}")
            if not args.interval:
                return 1 if result.failures else 0
            time.sleep(args.interval)
    except KeyboardInterrupt:
        return 0
    finally:
        store.close()


def cmd_send_digest(args: argparse.Namespace, settings: Settings) -> int:
    store = MonitorStore(settings.database_url)
    try:
        dispatcher = DigestDispatcher(store, notifier_from_settings(settings), settings.dashboard_url)
        result = dispatcher.dispatch()
    finally:
        store.close()
    print(
        f"  emails={result.emails_dispatched} alerts={result.alerts_sent} "
        f"skipped_users={result.users_skipped} failures={result.delivery_failures}"
    )
    return 1 if result.delivery_failures else 0


def cmd_add_user(args: argparse.Namespace, settings: Settings) -> int:
    """Create a user profile and print a bearer token for it."""
    store = MonitorStore(settings.database_url)
    try:
        user_id = store.create_user(UserProfile(email=args.email, full_name=args.name))
    finally:
        store.close()
    print(f"  user_id={user_id}")
    print(f"  token={create_access_token(user_id, expire_seconds=args.expire)}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="posturewatch",
        description="Passive website security posture monitoring.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py scan example.com
  python main.py scan https://example.com --json > report.json
  python main.py run-scheduler --interval 300
  python main.py send-digest
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)

    p_scan = sub.add_parser("scan", help="Scan one URL now and print the assessment")
    p_scan.add_argument("url", metavar="URL", help="URL or bare hostname (defaults to https)")
    p_scan.add_argument("--json", action="store_true", help="Output structured JSON")
    p_scan.add_argument("--no-color", action="store_true", help="Disable ANSI color codes")
    p_scan.set_defaults(func=cmd_scan)

    p_sched = sub.add_parser("run-scheduler", help="Run due scheduled scans")
    p_sched.add_argument(
        "--interval",
        type=int,
        default=0,
        metavar="SECONDS",
        help="Repeat every SECONDS instead of running a single pass",
    )
    p_sched.set_defaults(func=cmd_run_scheduler)

    p_digest = sub.add_parser("send-digest", help="Send pending alerts as per-user digests")
    p_digest.set_defaults(func=cmd_send_digest)

    p_user = sub.add_parser("add-user", help="Create a user profile and print a bearer token")
    p_user.add_argument("email")
    p_user.add_argument("--name", default=None)
    p_user.add_argument("--expire", type=int, default=0, metavar="SECONDS", help="Token lifetime")
    p_user.set_defaults(func=cmd_add_user)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if getattr(args, "no_color", False):
        disable_color()

    sys.exit(args.func(args, get_settings()))


if __name__ == "__main__":
    main()
