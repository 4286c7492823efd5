"""Retention purge for the webhook seen-set."""
import argparse
import json
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from mattrainer.core.config import settings
from mattrainer.core.logging import configure_logging, log_event
from mattrainer.features.billing import store
from mattrainer.features.billing.periods import normalize_now


def run_purge_job(
    now: Optional[datetime] = None,
    *,
    retention_days: Optional[int] = None,
    dry_run: bool = False,
) -> Dict[str, Any]:
    now = normalize_now(now)
    days = retention_days if retention_days is not None else int(settings.WEBHOOK_DEDUP_RETENTION_DAYS)
    cutoff = now - timedelta(days=days)

    candidates = store.count_webhook_events(older_than=cutoff)
    deleted = 0
    if not dry_run and candidates:
        deleted = store.purge_webhook_events(cutoff)

    log_event(
        "info",
        "billing.webhook_events.purged",
        extra={"retention_days": days, "dry_run": dry_run, "candidates": candidates, "deleted": deleted},
    )
    return {
        "retention_days": days,
        "dry_run": dry_run,
        "candidates": candidates,
        "deleted": deleted,
        "cutoff": cutoff.isoformat(),
    }


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Delete webhook seen-set entries past retention.")
    parser.add_argument("--retention-days", type=int, default=None, help="Override WEBHOOK_DEDUP_RETENTION_DAYS.")
    parser.add_argument("--dry-run", action="store_true", help="Count candidates without deleting.")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    result = run_purge_job(retention_days=args.retention_days, dry_run=args.dry_run)
    print(json.dumps(result))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
