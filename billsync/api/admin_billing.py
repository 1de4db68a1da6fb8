"""
Admin-only billing reconciliation router.

Requires the X-Admin-Key header. The manual trigger runs exactly the same
job as the scheduled worker; only the recorded trigger differs.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import desc, select

from billsync.core.admin_auth import AdminActor, require_admin
from billsync.core.database import get_db_session, orphaned_subscriptions, reconcile_runs
from billsync.features.billing.provider import BillingProvider
from billsync.features.billing.reconcile_job import run_reconcile_job

logger = logging.getLogger("billsync.admin_billing")

router = APIRouter()


# ============================================================================
# Pydantic Models
# ============================================================================

class ReconcileRunResponse(BaseModel):
    """Combined report of one reconciliation run."""
    run_id: str
    trigger: str
    status: str
    success: bool
    dry_run: bool
    timed_out: bool
    incomplete: bool = False
    started_at: datetime
    finished_at: Optional[datetime]
    error: Optional[str] = None
    local: Dict[str, Any]
    provider: Dict[str, Any]


class ReconcileRunListItem(BaseModel):
    run_id: str
    trigger: str
    status: Optional[str]
    started_at: datetime
    finished_at: Optional[datetime]
    stats: Optional[Dict[str, Any]] = None


class OrphanedSubscriptionItem(BaseModel):
    provider_subscription_id: str
    provider_customer_id: Optional[str]
    customer_email: Optional[str]
    status: Optional[str]
    first_seen_at: datetime
    last_seen_at: datetime


# ============================================================================
# Dependencies
# ============================================================================

def get_reconcile_provider() -> Optional[BillingProvider]:
    """Provider override hook; None builds the Stripe provider from settings."""
    return None


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/v1/admin/billing/reconcile", response_model=ReconcileRunResponse)
def trigger_reconcile(
    dry_run: Optional[bool] = Query(None, description="Compute decisions without writing"),
    actor: AdminActor = Depends(require_admin),
    provider: Optional[BillingProvider] = Depends(get_reconcile_provider),
):
    """Run a full reconciliation (Pass A then Pass B) synchronously."""
    logger.info(f"[admin] manual reconciliation requested by {actor.actor_id}, dry_run={dry_run}")
    report = run_reconcile_job(trigger="manual", provider=provider, dry_run=dry_run)
    return ReconcileRunResponse(**report.to_dict())


@router.get("/v1/admin/billing/reconcile/runs", response_model=List[ReconcileRunListItem])
def list_reconcile_runs(
    limit: int = Query(20, ge=1, le=100),
    actor: AdminActor = Depends(require_admin),
):
    """Most recent reconciliation runs, newest first."""
    with get_db_session() as session:
        rows = session.execute(
            select(reconcile_runs).order_by(desc(reconcile_runs.c.started_at)).limit(limit)
        ).fetchall()

    return [
        ReconcileRunListItem(
            run_id=row.run_id,
            trigger=row.trigger,
            status=row.status,
            started_at=row.started_at,
            finished_at=row.finished_at,
            stats=json.loads(row.stats_json) if row.stats_json else None,
        )
        for row in rows
    ]


@router.get("/v1/admin/billing/reconcile/orphans", response_model=List[OrphanedSubscriptionItem])
def list_orphaned_subscriptions(
    limit: int = Query(100, ge=1, le=500),
    actor: AdminActor = Depends(require_admin),
):
    """Provider subscriptions no local identity could be resolved for."""
    with get_db_session() as session:
        rows = session.execute(
            select(orphaned_subscriptions)
            .where(orphaned_subscriptions.c.resolved.is_(False))
            .order_by(desc(orphaned_subscriptions.c.last_seen_at))
            .limit(limit)
        ).fetchall()

    return [
        OrphanedSubscriptionItem(
            provider_subscription_id=row.provider_subscription_id,
            provider_customer_id=row.provider_customer_id,
            customer_email=row.customer_email,
            status=row.status,
            first_seen_at=row.first_seen_at,
            last_seen_at=row.last_seen_at,
        )
        for row in rows
    ]
