from concurrent.futures import ThreadPoolExecutor

import pytest

from ugc_pipeline.db import transaction
from ugc_pipeline.ledger import (
    DuplicateRefund,
    InsufficientCredits,
    LedgerError,
    TransactionType,
)


def test_unknown_user_has_zero_balance(ledger):
    assert ledger.balance("nobody") == 0
    assert ledger.history("nobody") == ([], 0)


def test_grant_creates_account_and_logs_entry(ledger):
    ledger.grant("u1", 5)
    ledger.grant("u1", 10, TransactionType.SUBSCRIPTION_CREDIT, "monthly plan")

    assert ledger.balance("u1") == 15
    entries, total = ledger.history("u1")
    assert total == 2
    assert entries[0].type is TransactionType.SUBSCRIPTION_CREDIT
    assert entries[0].balance_after == 15
    assert entries[0].description == "monthly plan"
    assert entries[1].type is TransactionType.BONUS


def test_grant_rejects_non_grant_types(ledger):
    with pytest.raises(ValueError):
        ledger.grant("u1", 1, TransactionType.REFUND)
    with pytest.raises(ValueError):
        ledger.grant("u1", 0)


def test_debit_requires_sufficient_balance(ledger):
    ledger.grant("u1", 1)
    ledger.debit("u1", 1, "job-1")

    with pytest.raises(InsufficientCredits) as err:
        ledger.debit("u1", 1, "job-2")

    assert str(err.value) == "Insufficient credits. You have 0 credits, but need 1."
    assert err.value.balance == 0
    assert ledger.balance("u1") == 0
    assert not ledger.has_debit("job-2")


def test_job_is_debited_at_most_once(ledger):
    ledger.grant("u1", 5)
    ledger.debit("u1", 1, "job-1")

    with pytest.raises(LedgerError):
        ledger.debit("u1", 1, "job-1")
    assert ledger.balance("u1") == 4


def test_refund_restores_balance_once(ledger):
    ledger.grant("u1", 1)
    ledger.debit("u1", 1, "job-1")
    ledger.refund("u1", 1, "job-1", "Video generation failed - automatic refund")

    with pytest.raises(DuplicateRefund):
        ledger.refund("u1", 1, "job-1", "again")

    assert ledger.balance("u1") == 1
    assert ledger.has_refund("job-1")
    txs = ledger.transactions_for_job("job-1")
    assert [(t.type, t.amount, t.balance_after) for t in txs] == [
        (TransactionType.DEBIT, 1, 0),
        (TransactionType.REFUND, 1, 1),
    ]


def test_balance_matches_sum_of_entries(ledger):
    ledger.grant("u1", 3)
    ledger.debit("u1", 1, "a")
    ledger.debit("u1", 1, "b")
    ledger.refund("u1", 1, "a", "failed")

    entries, _ = ledger.history("u1", limit=100)
    signed = sum(-e.amount if e.type is TransactionType.DEBIT else e.amount for e in entries)
    assert signed == ledger.balance("u1") == 2


def test_history_pages_newest_first(ledger):
    for _ in range(5):
        ledger.grant("u1", 1)

    first, total = ledger.history("u1", page=1, limit=2)
    third, _ = ledger.history("u1", page=3, limit=2)

    assert total == 5
    assert [e.balance_after for e in first] == [5, 4]
    assert [e.balance_after for e in third] == [1]


def test_debit_joins_callers_transaction(ledger):
    ledger.grant("u1", 1)

    with pytest.raises(RuntimeError):
        with transaction(ledger.database_path) as conn:
            ledger.debit("u1", 1, "job-1", conn=conn)
            raise RuntimeError("job insert failed")

    assert ledger.balance("u1") == 1
    assert ledger.transactions_for_job("job-1") == []


def test_concurrent_debits_never_overdraw(ledger):
    ledger.grant("u1", 7)

    def _debit(i: int) -> bool:
        try:
            ledger.debit("u1", 1, f"job-{i}")
        except InsufficientCredits:
            return False
        return True

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(_debit, range(10)))

    assert results.count(True) == 7
    assert ledger.balance("u1") == 0
    entries, _ = ledger.history("u1", limit=50)
    debits = [e for e in entries if e.type is TransactionType.DEBIT]
    assert sorted(e.balance_after for e in debits) == list(range(7))


def test_concurrent_refunds_apply_once_per_job(ledger):
    ledger.grant("u1", 5)
    for i in range(5):
        ledger.debit("u1", 1, f"job-{i}")

    def _refund(i: int) -> bool:
        try:
            ledger.refund("u1", 1, f"job-{i % 5}", "failed")
        except DuplicateRefund:
            return False
        return True

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(_refund, range(10)))

    assert results.count(True) == 5
    assert ledger.balance("u1") == 5
    entries, _ = ledger.history("u1", limit=50)
    refunds = [e for e in entries if e.type is TransactionType.REFUND]
    assert sorted(e.balance_after for e in refunds) == [1, 2, 3, 4, 5]
