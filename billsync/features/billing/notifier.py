"""
Operational report delivery.

Posts the run report to a webhook-style sink (Discord/Slack compatible
`content` line plus the structured payload). Delivery is best-effort:
failures are logged and reported back as False, never raised.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from billsync.features.billing.stats import ReconcileReport

logger = logging.getLogger("billsync.notifier")

WEBHOOK_TIMEOUT_SECONDS = 10


def _summary_line(report: ReconcileReport) -> str:
    local, provider = report.local, report.provider
    if not report.success:
        return f"Billing reconciliation FAILED ({report.trigger}, run {report.run_id}): {report.error}"
    prefix = "Billing reconciliation"
    if report.dry_run:
        prefix += " (dry run)"
    if report.timed_out:
        prefix += " stopped at time budget"
    elif report.incomplete:
        prefix += f" incomplete ({provider.page_errors} provider page errors, no provider writes)"
    return (
        f"{prefix} ({report.trigger}): "
        f"local {local.total} checked, {local.updated} updated, {local.cancelled} cancelled, "
        f"{local.invalid_customer_reset} ghost resets, {local.errored} errors; "
        f"provider {provider.scanned} scanned, {provider.created} created, {provider.updated} updated, "
        f"{provider.skipped} skipped, {provider.unresolved} unresolved"
    )


def build_payload(report: ReconcileReport) -> Dict[str, Any]:
    return {
        "event": "billing.reconcile.completed" if report.success else "billing.reconcile.failed",
        "level": "info" if report.success else "error",
        "content": _summary_line(report),
        "report": report.to_dict(),
    }


class ReportNotifier:
    def __init__(self, webhook_url: Optional[str], *, timeout: float = WEBHOOK_TIMEOUT_SECONDS):
        self.webhook_url = webhook_url
        self.timeout = timeout

    def send(self, report: ReconcileReport) -> bool:
        payload = build_payload(report)
        if not self.webhook_url:
            logger.info(f"[notifier] no webhook configured; {payload['content']}")
            return False

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                f"[notifier] report delivery failed: {e}",
                extra={"event_type": payload["event"]},
            )
            return False

        logger.info("[notifier] report delivered", extra={"event_type": payload["event"]})
        return True
