"""Run one billing sweep tick from the command line (cron or manual recovery)."""

from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime, timezone
from typing import Optional, Sequence

from scripts._path import add_root

add_root()

from core.logging import setup_logging
from jobs.tasks import run_billing_sweep

logger = logging.getLogger(__name__)


def _parse_now(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Commit due scheduled plan changes and cancel overdue subscriptions.")
    parser.add_argument("--skip-scheduled", action="store_true", help="Do not commit due scheduled plan changes.")
    parser.add_argument("--skip-overdue", action="store_true", help="Do not auto-cancel past-due subscriptions.")
    parser.add_argument("--now", help="Evaluate as of this ISO-8601 timestamp (UTC if no offset).")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    summary = run_billing_sweep(
        now=_parse_now(args.now),
        scheduled_changes=not args.skip_scheduled,
        overdue=not args.skip_overdue,
    )
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
