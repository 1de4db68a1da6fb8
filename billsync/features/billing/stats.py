"""Per-run counters for both reconciliation passes."""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class LocalPassStats:
    """Pass A: local rows that already reference a provider customer."""
    total: int = 0
    updated: int = 0
    cancelled: int = 0
    invalid_customer_reset: int = 0
    no_change: int = 0
    errored: int = 0
    excluded: int = 0
    timed_out: bool = False


@dataclass
class ProviderPassStats:
    """Pass B: every live provider subscription, account-wide."""
    pages: int = 0
    scanned: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    excluded: int = 0
    unresolved: int = 0
    customer_errors: int = 0
    page_errors: int = 0
    users_with_multiple_candidates: int = 0
    timed_out: bool = False
    scan_complete: bool = True


@dataclass
class ReconcileReport:
    run_id: str
    trigger: str
    started_at: datetime
    dry_run: bool = False
    finished_at: Optional[datetime] = None
    success: bool = False
    error: Optional[str] = None
    local: LocalPassStats = field(default_factory=LocalPassStats)
    provider: ProviderPassStats = field(default_factory=ProviderPassStats)

    @property
    def timed_out(self) -> bool:
        return self.local.timed_out or self.provider.timed_out

    @property
    def incomplete(self) -> bool:
        """True when any pass stopped early or the provider scan missed pages."""
        provider = self.provider
        return self.timed_out or not provider.scan_complete or provider.page_errors > 0

    @property
    def status(self) -> str:
        if not self.success:
            return "failed"
        return "partial" if self.incomplete else "success"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "trigger": self.trigger,
            "status": self.status,
            "success": self.success,
            "dry_run": self.dry_run,
            "timed_out": self.timed_out,
            "incomplete": self.incomplete,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "local": asdict(self.local),
            "provider": asdict(self.provider),
        }
