"""
Candidate ranking: status, then amount, then recency; stable under permutation.
"""
import itertools
import logging
from datetime import timedelta
from decimal import Decimal

import pytest

from billsync.features.billing.ranking import Candidate, rank_candidates, select_canonical
from billsync.tests.mocks import BASE_TIME, make_subscription


def _candidate(sub_id, status="active", amount="9.99", created_days=0):
    sub = make_subscription(sub_id, status=status, created=BASE_TIME + timedelta(days=created_days))
    return Candidate(sub, None, Decimal(amount) if amount is not None else None)


def test_active_beats_trialing_beats_past_due():
    ranked = rank_candidates([
        _candidate("sub_pd", status="past_due", amount="50.00"),
        _candidate("sub_tr", status="trialing", amount="40.00"),
        _candidate("sub_ac", status="active", amount="1.00"),
    ])
    assert [c.subscription_id for c in ranked] == ["sub_ac", "sub_tr", "sub_pd"]


def test_higher_amount_wins_within_status():
    winner = select_canonical("u1", [_candidate("sub_low", amount="9.99"), _candidate("sub_high", amount="19.99")])
    assert winner.subscription_id == "sub_high"


def test_newer_wins_remaining_ties():
    winner = select_canonical("u1", [_candidate("sub_old", created_days=0), _candidate("sub_new", created_days=5)])
    assert winner.subscription_id == "sub_new"


def test_missing_amount_ranks_below_priced():
    winner = select_canonical("u1", [_candidate("sub_none", amount=None), _candidate("sub_priced", amount="0.50")])
    assert winner.subscription_id == "sub_priced"


def test_winner_is_stable_under_permutation():
    candidates = [
        _candidate("sub_a", status="active", amount="9.99", created_days=1),
        _candidate("sub_b", status="active", amount="9.99", created_days=1),
        _candidate("sub_c", status="trialing", amount="99.00"),
        _candidate("sub_d", status="active", amount="9.99", created_days=0),
        _candidate("sub_e", status="past_due", amount="9.99"),
    ]
    winners = {select_canonical("u1", list(p)).subscription_id for p in itertools.permutations(candidates)}
    assert len(winners) == 1


def test_multiple_candidates_log_warning_with_all_ids(caplog):
    with caplog.at_level(logging.WARNING, logger="billsync.reconcile.ranking"):
        select_canonical("u1", [_candidate("sub_x"), _candidate("sub_y", status="trialing")])
    assert "sub_x" in caplog.text
    assert "sub_y" in caplog.text


def test_single_candidate_no_warning(caplog):
    with caplog.at_level(logging.WARNING, logger="billsync.reconcile.ranking"):
        select_canonical("u1", [_candidate("sub_x")])
    assert caplog.records == []


def test_empty_candidates_rejected():
    with pytest.raises(ValueError):
        select_canonical("u1", [])
