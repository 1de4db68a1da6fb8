"""
Scheduled billing state reconciliation.

Keeps the local subscription store consistent with the payment provider in
two sequential passes:

- Pass A (local-first): every local row with a provider customer is
  re-derived from that customer's subscriptions; drift is corrected, rows
  without a live subscription are cancelled, ghost customers are reset.
- Pass B (provider-first): every live provider subscription is scanned
  account-wide and grouped by resolved user; only after the full scan is a
  single winner per user ranked and written. This catches rows that are
  missing locally.

Per-item failures are counted and logged, never raised; the item is picked
up again by the next scheduled run. Only setup errors abort a run.
Concurrent runs are not safe: the scheduler must guarantee single flight.
"""
from __future__ import annotations

import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from billsync.core.config import Settings, require_run_config, settings
from billsync.core.database import get_db_session, reconcile_runs, subscriptions
from billsync.core.logging import log_event, run_id_ctx_var
from billsync.features.billing.identity import ExclusionSet, IdentityResolver
from billsync.features.billing.notifier import ReportNotifier
from billsync.features.billing.pricing import (
    LIVE_STATUSES,
    derive_plan_type,
    discount_info,
    effective_status,
    monthly_equivalent,
)
from billsync.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    CustomerNotFoundError,
    ProviderCustomer,
    ProviderSubscription,
)
from billsync.features.billing.ranking import Candidate, select_canonical
from billsync.features.billing.stats import LocalPassStats, ProviderPassStats, ReconcileReport
from billsync.features.billing.stripe_provider import StripeProvider
from billsync.features.billing.writer import (
    CANCELLED_VALUES,
    GHOST_RESET_VALUES,
    SubscriptionState,
    load_subscription,
    record_orphan,
    resolve_orphan,
    update_subscription,
    upsert_profile,
    upsert_subscription,
    utc_now,
)

logger = logging.getLogger("billsync.reconcile")

JOB_NAME = "billing.reconcile"
TRIGGERS = ("scheduled", "manual")


class Deadline:
    """Wall-clock budget for a run; 0 or None means unlimited."""

    def __init__(self, budget_seconds: Optional[float], clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at = clock() + budget_seconds if budget_seconds else None

    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at


@dataclass(frozen=True)
class ReconcileOptions:
    exclusions: ExclusionSet
    monthly_plan: str = "pro_monthly"
    annual_plan: str = "pro_annual"
    dry_run: bool = False

    @classmethod
    def from_settings(cls, cfg: Settings, dry_run: Optional[bool] = None) -> "ReconcileOptions":
        return cls(
            exclusions=ExclusionSet.from_config(cfg.RECONCILE_EXCLUDED_IDENTITIES),
            monthly_plan=cfg.RECONCILE_DEFAULT_MONTHLY_PLAN,
            annual_plan=cfg.RECONCILE_DEFAULT_ANNUAL_PLAN,
            dry_run=cfg.RECONCILE_DRY_RUN if dry_run is None else dry_run,
        )


def build_state(
    user_id: str,
    candidate: Candidate,
    options: ReconcileOptions,
    now: datetime,
    *,
    customer_id: Optional[str] = None,
) -> SubscriptionState:
    """Desired local row for a winning candidate."""
    sub = candidate.subscription
    info = discount_info(sub, now)
    customer = candidate.customer
    return SubscriptionState(
        user_id=user_id,
        status=effective_status(sub.status, info),
        plan_type=derive_plan_type(sub, monthly_default=options.monthly_plan, annual_default=options.annual_plan),
        provider_customer_id=customer_id or (customer.id if customer else sub.customer_id),
        provider_subscription_id=sub.id,
        user_email=customer.email if customer else None,
        trial_ends_at=sub.trial_end,
        current_period_end=sub.current_period_end,
        monthly_amount_due=info.monthly_amount_due,
        has_discount=info.has_discount,
        discount_percent=info.discount_percent,
        discount_ends_at=info.discount_ends_at,
        coupon_id=info.coupon_id,
    )


# ---------------------------------------------------------------------------
# Pass A: local-first
# ---------------------------------------------------------------------------

def reconcile_local_subscriptions(
    provider: BillingProvider,
    options: ReconcileOptions,
    *,
    deadline: Optional[Deadline] = None,
    now_fn: Callable[[], datetime] = utc_now,
) -> LocalPassStats:
    stats = LocalPassStats()
    deadline = deadline or Deadline(None)

    with get_db_session() as session:
        rows = session.execute(
            select(
                subscriptions.c.user_id,
                subscriptions.c.user_email,
                subscriptions.c.status,
                subscriptions.c.plan_type,
                subscriptions.c.provider_customer_id,
                subscriptions.c.provider_subscription_id,
            )
            .where(subscriptions.c.provider_customer_id.isnot(None))
            .order_by(subscriptions.c.user_id)
        ).fetchall()

    logger.info(f"[reconcile] pass A: {len(rows)} local rows with a provider customer")

    for row in rows:
        if deadline.expired():
            stats.timed_out = True
            logger.warning(f"[reconcile] pass A stopped at time budget after {stats.total} rows")
            break
        stats.total += 1

        if options.exclusions.matches(email=row.user_email, user_id=row.user_id):
            stats.excluded += 1
            continue

        _reconcile_local_row(provider, row, options, stats, now_fn())

    logger.info("[reconcile] pass A complete", extra={"stats": stats.__dict__})
    return stats


def _reconcile_local_row(provider: BillingProvider, row, options: ReconcileOptions, stats: LocalPassStats, now: datetime) -> None:
    customer_id = row.provider_customer_id
    try:
        subs = provider.list_customer_subscriptions(customer_id)
    except CustomerNotFoundError:
        log_event(
            "warning", "[reconcile] ghost customer, resetting row to free",
            user_id=row.user_id, customer_id=customer_id, event_type="reconcile.ghost_customer",
        )
        if _apply_update(row.user_id, GHOST_RESET_VALUES, options, stats, now):
            stats.invalid_customer_reset += 1
        return
    except BillingProviderError as e:
        stats.errored += 1
        log_event(
            "error", f"[reconcile] provider lookup failed: {e}",
            user_id=row.user_id, customer_id=customer_id,
            event_type="reconcile.provider_error", error_code="provider_error",
        )
        return

    live = [s for s in subs if s.status in LIVE_STATUSES]
    if not live:
        if row.status in ("free", "cancelled"):
            stats.no_change += 1
            return
        log_event(
            "info", "[reconcile] no live subscription, cancelling",
            user_id=row.user_id, customer_id=customer_id, event_type="reconcile.cancel",
            extra={"previous_status": row.status},
        )
        if _apply_update(row.user_id, CANCELLED_VALUES, options, stats, now):
            stats.cancelled += 1
        return

    winner = select_canonical(
        row.user_id,
        [Candidate(s, None, monthly_equivalent(s, now)) for s in live],
    )
    state = build_state(row.user_id, winner, options, now, customer_id=customer_id)

    if (row.status, row.plan_type, row.provider_subscription_id) == (
        state.status, state.plan_type, state.provider_subscription_id
    ):
        stats.no_change += 1
        return

    values = state.as_values()
    for key in ("user_id", "user_email", "provider_customer_id"):
        values.pop(key)
    log_event(
        "info", "[reconcile] correcting drift",
        user_id=row.user_id, subscription_id=state.provider_subscription_id, customer_id=customer_id,
        event_type="reconcile.update",
        extra={"from_status": row.status, "to_status": state.status, "plan_type": state.plan_type},
    )
    if _apply_update(row.user_id, values, options, stats, now):
        stats.updated += 1


def _apply_update(user_id: str, values: Dict, options: ReconcileOptions, stats: LocalPassStats, now: datetime) -> bool:
    if options.dry_run:
        return True
    try:
        with get_db_session() as session:
            update_subscription(session, user_id, values, now=now)
    except SQLAlchemyError as e:
        stats.errored += 1
        log_event(
            "error", f"[reconcile] write failed: {e}",
            user_id=user_id, event_type="reconcile.write_error", error_code="persistence_error",
        )
        return False
    return True


# ---------------------------------------------------------------------------
# Pass B: provider-first
# ---------------------------------------------------------------------------

def reconcile_provider_subscriptions(
    provider: BillingProvider,
    options: ReconcileOptions,
    *,
    resolver: Optional[IdentityResolver] = None,
    deadline: Optional[Deadline] = None,
    now_fn: Callable[[], datetime] = utc_now,
) -> ProviderPassStats:
    stats = ProviderPassStats()
    deadline = deadline or Deadline(None)
    resolver = resolver or IdentityResolver()

    # Collect every candidate before writing anything: a user's winner is
    # only known once all three status listings have been seen.
    groups: "OrderedDict[str, List[Candidate]]" = OrderedDict()
    complete = _collect_candidates(provider, resolver, options, groups, stats, deadline, now_fn)

    if not complete:
        stats.scan_complete = False
        logger.warning(
            "[reconcile] pass B scan incomplete, skipping writes",
            extra={"timed_out": stats.timed_out, "page_errors": stats.page_errors},
        )
        return stats

    logger.info(f"[reconcile] pass B: {len(groups)} users with live subscriptions")
    for user_id, candidates in groups.items():
        if deadline.expired():
            stats.timed_out = True
            logger.warning("[reconcile] pass B stopped at time budget while applying")
            break
        _apply_winner(user_id, candidates, options, stats, now_fn())

    logger.info("[reconcile] pass B complete", extra={"stats": stats.__dict__})
    return stats


def _collect_candidates(
    provider: BillingProvider,
    resolver: IdentityResolver,
    options: ReconcileOptions,
    groups: "OrderedDict[str, List[Candidate]]",
    stats: ProviderPassStats,
    deadline: Deadline,
    now_fn: Callable[[], datetime],
) -> bool:
    customers: Dict[str, Optional[ProviderCustomer]] = {}
    seen: Set[str] = set()
    complete = True

    for status in LIVE_STATUSES:
        cursor: Optional[str] = None
        while True:
            if deadline.expired():
                stats.timed_out = True
                return False
            try:
                page = provider.list_subscriptions(status, cursor)
            except BillingProviderError as e:
                stats.page_errors += 1
                complete = False
                log_event(
                    "error", f"[reconcile] listing {status} subscriptions failed: {e}",
                    event_type="reconcile.page_error", error_code="provider_error",
                )
                break
            stats.pages += 1

            for sub in page.subscriptions:
                # A subscription changing status mid-scan can show up twice
                if sub.id in seen:
                    continue
                seen.add(sub.id)
                stats.scanned += 1
                _collect_one(provider, resolver, options, sub, customers, groups, stats, now_fn())

            if not page.has_more or not page.next_cursor:
                break
            cursor = page.next_cursor

    return complete


def _collect_one(
    provider: BillingProvider,
    resolver: IdentityResolver,
    options: ReconcileOptions,
    sub: ProviderSubscription,
    customers: Dict[str, Optional[ProviderCustomer]],
    groups: "OrderedDict[str, List[Candidate]]",
    stats: ProviderPassStats,
    now: datetime,
) -> None:
    customer_id = sub.customer_id
    customer: Optional[ProviderCustomer] = None
    if customer_id:
        if customer_id not in customers:
            try:
                customers[customer_id] = provider.get_customer(customer_id)
            except BillingProviderError as e:
                stats.customer_errors += 1
                stats.unresolved += 1
                log_event(
                    "error", f"[reconcile] customer lookup failed: {e}",
                    subscription_id=sub.id, customer_id=customer_id,
                    event_type="reconcile.provider_error", error_code="provider_error",
                )
                return
        customer = customers[customer_id]

    if customer is None:
        stats.unresolved += 1
        log_event(
            "warning", "[reconcile] subscription without a live customer",
            subscription_id=sub.id, customer_id=customer_id, event_type="reconcile.unresolved",
        )
        return

    if options.exclusions.matches(email=customer.email, name=customer.name):
        stats.excluded += 1
        stats.skipped += 1
        return

    resolution = resolver.resolve(sub, customer)
    if resolution is None:
        stats.unresolved += 1
        log_event(
            "warning", "[reconcile] could not resolve identity",
            subscription_id=sub.id, customer_id=customer.id, event_type="reconcile.unresolved",
            extra={"email": customer.email, "status": sub.status},
        )
        _remember_orphan(sub, customer, options, now)
        return

    if options.exclusions.matches(user_id=resolution.user_id):
        stats.excluded += 1
        stats.skipped += 1
        return

    groups.setdefault(resolution.user_id, []).append(
        Candidate(sub, customer, monthly_equivalent(sub, now))
    )


def _remember_orphan(sub: ProviderSubscription, customer: ProviderCustomer, options: ReconcileOptions, now: datetime) -> None:
    if options.dry_run:
        return
    try:
        with get_db_session() as session:
            record_orphan(
                session,
                subscription_id=sub.id,
                customer_id=customer.id,
                email=customer.email,
                status=sub.status,
                now=now,
            )
    except SQLAlchemyError as e:
        logger.error(f"[reconcile] failed to record orphaned subscription {sub.id}: {e}")


def _apply_winner(user_id: str, candidates: List[Candidate], options: ReconcileOptions, stats: ProviderPassStats, now: datetime) -> None:
    if len(candidates) > 1:
        stats.users_with_multiple_candidates += 1
    winner = select_canonical(user_id, candidates)
    state = build_state(user_id, winner, options, now)

    try:
        with get_db_session() as session:
            existing = load_subscription(session, user_id)
            if existing is None:
                outcome = "created"
            elif (existing.status, existing.provider_subscription_id) != (state.status, state.provider_subscription_id):
                outcome = "updated"
            else:
                outcome = "skipped"

            if not options.dry_run:
                if outcome != "skipped":
                    upsert_subscription(session, state, now=now)
                upsert_profile(session, user_id, state.provider_customer_id, now=now)
                resolve_orphan(session, winner.subscription_id, user_id, now=now)
    except SQLAlchemyError as e:
        stats.unresolved += 1
        log_event(
            "error", f"[reconcile] write failed: {e}",
            user_id=user_id, subscription_id=winner.subscription_id,
            event_type="reconcile.write_error", error_code="persistence_error",
        )
        return

    setattr(stats, outcome, getattr(stats, outcome) + 1)
    if outcome != "skipped":
        log_event(
            "info", f"[reconcile] {outcome} subscription row",
            user_id=user_id, subscription_id=state.provider_subscription_id,
            customer_id=state.provider_customer_id, event_type=f"reconcile.{outcome}",
            extra={"status": state.status, "monthly_amount_due": state.monthly_amount_due},
        )


# ---------------------------------------------------------------------------
# Run orchestration
# ---------------------------------------------------------------------------

def _build_provider(cfg: Settings) -> BillingProvider:
    require_run_config(cfg)
    return StripeProvider(
        secret_key=cfg.STRIPE_SECRET_KEY,
        api_version=cfg.STRIPE_API_VERSION,
        page_size=cfg.RECONCILE_PAGE_SIZE,
        max_retries=cfg.RECONCILE_PROVIDER_RETRIES,
        backoff_seconds=cfg.RECONCILE_RETRY_BACKOFF_SECONDS,
    )


def _record_run(report: ReconcileReport) -> None:
    try:
        with get_db_session() as session:
            exists = session.execute(
                select(reconcile_runs.c.id).where(reconcile_runs.c.run_id == report.run_id)
            ).scalar()
            values = dict(
                finished_at=report.finished_at,
                status=report.status,
                stats_json=json.dumps(report.to_dict(), default=str),
            )
            if exists:
                session.execute(
                    update(reconcile_runs).where(reconcile_runs.c.run_id == report.run_id).values(**values)
                )
            else:
                session.execute(
                    insert(reconcile_runs).values(
                        run_id=report.run_id,
                        job_name=JOB_NAME,
                        trigger=report.trigger,
                        started_at=report.started_at,
                        **values,
                    )
                )
    except SQLAlchemyError as e:
        logger.error(f"[reconcile] failed to record job run: {e}")


def _notify(notifier: ReportNotifier, report: ReconcileReport) -> None:
    try:
        notifier.send(report)
    except Exception:
        logger.exception("[reconcile] report notification raised")


def run_reconcile_job(
    *,
    trigger: str = "scheduled",
    provider: Optional[BillingProvider] = None,
    settings_obj: Optional[Settings] = None,
    dry_run: Optional[bool] = None,
    notifier: Optional[ReportNotifier] = None,
    resolver: Optional[IdentityResolver] = None,
    clock: Callable[[], float] = time.monotonic,
    now_fn: Callable[[], datetime] = utc_now,
) -> ReconcileReport:
    """Run Pass A then Pass B and emit one combined report.

    Scheduled and manual triggers run identical logic; the trigger is only
    recorded. Raises on setup failure or an unhandled error, after
    attempting a failure notification.
    """
    if trigger not in TRIGGERS:
        raise ValueError(f"Unknown trigger {trigger!r}; expected one of {TRIGGERS}")

    cfg = settings_obj or settings
    notifier = notifier or ReportNotifier(cfg.RECONCILE_WEBHOOK_URL)
    report = ReconcileReport(run_id=uuid4().hex, trigger=trigger, started_at=now_fn())
    token = run_id_ctx_var.set(report.run_id)
    try:
        try:
            options = ReconcileOptions.from_settings(cfg, dry_run=dry_run)
            report.dry_run = options.dry_run
            provider = provider or _build_provider(cfg)
            deadline = Deadline(cfg.RECONCILE_TIME_BUDGET_SECONDS, clock=clock)

            logger.info(
                f"[reconcile] starting run (trigger={trigger}, dry_run={options.dry_run})",
                extra={"excluded_identities": len(options.exclusions)},
            )
            report.local = reconcile_local_subscriptions(provider, options, deadline=deadline, now_fn=now_fn)
            report.provider = reconcile_provider_subscriptions(
                provider, options, resolver=resolver, deadline=deadline, now_fn=now_fn
            )
        except Exception as e:
            report.success = False
            report.error = f"{type(e).__name__}: {e}"
            report.finished_at = now_fn()
            logger.exception(f"[reconcile] run failed: {report.error}")
            _record_run(report)
            _notify(notifier, report)
            raise

        report.success = True
        report.finished_at = now_fn()
        logger.info(f"[reconcile] run finished with status {report.status}", extra={"report": report.to_dict()})
        _record_run(report)
        _notify(notifier, report)
        return report
    finally:
        run_id_ctx_var.reset(token)
