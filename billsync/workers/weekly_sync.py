"""
Scheduled billing reconciliation worker.

Invoked by the external scheduler (cron) once per period. The scheduler is
responsible for single-flight execution; overlapping runs are not safe.

Exit codes:
    0  run completed, including a partial run (time budget hit or an
       incomplete provider scan)
    1  run aborted (setup failure or unhandled error); a failure
       notification has already been attempted
"""
import argparse
import json
import logging

from billsync.core.config import settings
from billsync.core.logging import configure_logging
from billsync.features.billing.reconcile_job import TRIGGERS, run_reconcile_job

logger = logging.getLogger("billsync.workers.weekly_sync")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile local subscriptions with the billing provider.")
    parser.add_argument("--trigger", choices=TRIGGERS, default="scheduled", help="Recorded trigger of this run.")
    parser.add_argument("--dry-run", dest="dry_run", action="store_true", help="Compute decisions without writes.")
    parser.add_argument("--live", dest="dry_run", action="store_false", help="Apply writes (overrides RECONCILE_DRY_RUN).")
    parser.set_defaults(dry_run=settings.RECONCILE_DRY_RUN)
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)

    try:
        report = run_reconcile_job(trigger=args.trigger, dry_run=args.dry_run)
    except Exception as e:
        logger.error(f"[weekly_sync] reconciliation aborted: {e}")
        return 1

    print(json.dumps(report.to_dict(), default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
