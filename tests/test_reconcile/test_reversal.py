"""Tests for refund/reversal linking."""

from pathlib import Path

import pytest

from mailledger.database.repository import Repository
from mailledger.extractors.base import CandidateTransaction
from mailledger.reconcile.engine import to_ledger_row
from mailledger.reconcile.fingerprint import compute_fingerprint
from mailledger.reconcile.reversal import ReversalLinker

MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "mailledger" / "database" / "migrations"


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


@pytest.fixture
def linker(repo):
    return ReversalLinker(repo)


def _debit(**kw) -> CandidateTransaction:
    defaults = dict(
        external_id="debit1", date="2024-01-10", amount=1200.0,
        description="Amazon purchase", category="Shopping",
        direction="debit", source="amazon", merchant="Amazon",
    )
    defaults.update(kw)
    return CandidateTransaction(**defaults)


def _credit(**kw) -> CandidateTransaction:
    defaults = dict(
        external_id="credit1", date="2024-01-12", amount=1200.0,
        description="Amazon refund processed", category="Refund",
        direction="credit", source="amazon", merchant="Amazon",
    )
    defaults.update(kw)
    return CandidateTransaction(**defaults)


def _store(repo, cand, **kw):
    repo.upsert_transaction(to_ledger_row(cand, compute_fingerprint(cand), **kw))


class TestFindOriginal:
    def test_matches_refund_of_same_merchant(self, repo, linker):
        _store(repo, _debit())
        match = linker.find_original(_credit())
        assert match is not None
        assert match.original_id == "debit1"

    def test_debits_are_never_reversals(self, repo, linker):
        _store(repo, _debit())
        refund_debit = _credit(direction="debit", external_id="d2")
        assert linker.find_original(refund_debit) is None

    def test_requires_refund_vocabulary(self, repo, linker):
        _store(repo, _debit())
        assert linker.find_original(_credit(description="Amazon payment received")) is None

    def test_requires_same_amount(self, repo, linker):
        _store(repo, _debit())
        assert linker.find_original(_credit(amount=1199.0)) is None

    def test_requires_same_merchant(self, repo, linker):
        _store(repo, _debit(merchant="Flipkart", description="Flipkart purchase"))
        assert linker.find_original(_credit()) is None

    def test_window_is_thirty_days(self, repo, linker):
        _store(repo, _debit(date="2023-12-13"))  # 30 days before 2024-01-12
        assert linker.find_original(_credit()) is not None

    def test_outside_window(self, repo, linker):
        _store(repo, _debit(date="2023-12-12"))  # 31 days before
        assert linker.find_original(_credit()) is None

    def test_future_debit_is_ignored(self, repo, linker):
        _store(repo, _debit(date="2024-01-13"))
        assert linker.find_original(_credit()) is None

    def test_already_reversed_debit_is_skipped(self, repo, linker):
        _store(repo, _debit())
        _store(repo, _credit(external_id="older-refund"), reverses="debit1")
        repo.set_reversed_by("debit1", "older-refund")
        assert linker.find_original(_credit(external_id="credit2")) is None

    def test_redelivered_refund_finds_its_own_original(self, repo, linker):
        _store(repo, _debit())
        _store(repo, _credit(), reverses="debit1")
        repo.set_reversed_by("debit1", "credit1")
        match = linker.find_original(_credit())
        assert match is not None and match.original_id == "debit1"

    def test_duplicate_debits_are_skipped(self, repo, linker):
        _store(repo, _debit(), is_duplicate=True, duplicate_of="other")
        assert linker.find_original(_credit()) is None

    def test_most_recent_debit_wins(self, repo, linker):
        _store(repo, _debit(external_id="old", date="2024-01-01"))
        _store(repo, _debit(external_id="new", date="2024-01-11"))
        assert linker.find_original(_credit()).original_id == "new"

    def test_lookback_limits_candidates(self, repo):
        # The only matching merchant is older than the lookback window of 2
        _store(repo, _debit(external_id="match", date="2024-01-01"))
        for i, day in enumerate(("2024-01-09", "2024-01-10", "2024-01-11")):
            _store(repo, _debit(
                external_id=f"other{i}", date=day,
                merchant="Flipkart", description="Flipkart purchase",
            ))
        assert ReversalLinker(repo, lookback=2).find_original(_credit()) is None
        assert ReversalLinker(repo, lookback=5).find_original(_credit()).original_id == "match"

    def test_description_fallback_without_merchants(self, repo, linker):
        _store(repo, _debit(merchant=None, description="Paid to Croma"))
        match = linker.find_original(_credit(merchant=None, description="Refund from Croma"))
        assert match is not None

    def test_salary_credit_has_no_original(self, repo, linker):
        _store(repo, _debit())
        assert linker.find_original(_credit(description="Salary credited", merchant=None)) is None
