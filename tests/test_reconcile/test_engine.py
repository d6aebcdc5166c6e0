"""Tests for the reconciler: outcome decisions and persisted links."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from mailledger.database.queries import find_link_violations, get_balance_summary
from mailledger.database.repository import Repository
from mailledger.extractors.base import CandidateTransaction
from mailledger.reconcile.engine import (
    INSERTED,
    INSERTED_AS_DUPLICATE,
    INSERTED_AS_REVERSAL,
    ReconcileOutcome,
    Reconciler,
)
from mailledger.reconcile.reversal import ReversalMatch

MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "mailledger" / "database" / "migrations"


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


@pytest.fixture
def reconciler(repo):
    return Reconciler(repo)


def _cand(**kw) -> CandidateTransaction:
    defaults = dict(
        external_id="e1", date="2024-01-15", amount=500.0,
        description="Swiggy Order", category="Food",
        direction="debit", source="hdfcbank",
    )
    defaults.update(kw)
    return CandidateTransaction(**defaults)


def _amazon_debit(**kw):
    return _cand(**{
        "external_id": "debit1", "date": "2024-01-10", "amount": 1200.0,
        "description": "Amazon purchase", "category": "Shopping",
        "source": "amazon", "merchant": "Amazon", **kw,
    })


def _amazon_refund(**kw):
    return _cand(**{
        "external_id": "credit1", "date": "2024-01-12", "amount": 1200.0,
        "description": "Amazon refund processed", "category": "Refund",
        "direction": "credit", "source": "amazon", "merchant": "Amazon", **kw,
    })


def _count(repo) -> int:
    return repo.conn.execute("SELECT COUNT(*) FROM transactions").fetchone()[0]


# ── Outcomes ──────────────────────────────────────────────


class TestPlainInsert:
    def test_inserts_row(self, repo, reconciler):
        outcome, persisted = reconciler.reconcile(_cand())
        assert outcome == ReconcileOutcome(INSERTED)
        assert persisted
        row = repo.get_transaction("e1")
        assert row.amount == 500.0
        assert row.fingerprint
        assert not row.is_duplicate
        assert row.reverses is None and row.reversed_by is None

    def test_scenario_c_salary_credit(self, repo, reconciler):
        outcome, _ = reconciler.reconcile(_cand(
            external_id="sal", direction="credit", amount=1200.0,
            description="Salary credited", category="Salary",
        ))
        assert outcome.kind == INSERTED
        assert outcome.related_id is None
        assert repo.get_transaction("sal").reverses is None


class TestDuplicates:
    def test_scenario_a_fuzzy_duplicate_is_stored_flagged(self, repo, reconciler):
        reconciler.reconcile(_cand(external_id="a", description="UPI-1234567890123-Swiggy Order"))
        outcome, persisted = reconciler.reconcile(_cand(
            external_id="b", description="Swiggy Order", source="swiggy",
        ))
        assert outcome == ReconcileOutcome(INSERTED_AS_DUPLICATE, "a")
        assert persisted
        row = repo.get_transaction("b")
        assert row.is_duplicate
        assert row.duplicate_of == "a"
        assert not outcome.is_new

    def test_duplicates_excluded_from_sums(self, repo, reconciler):
        reconciler.reconcile(_cand(external_id="a"))
        reconciler.reconcile(_cand(external_id="b"))
        assert _count(repo) == 2
        assert get_balance_summary(repo.conn)["total_expense"] == 500.0

    def test_duplicate_is_never_a_reversal(self, repo, reconciler):
        reconciler.reconcile(_amazon_debit())
        reconciler.reconcile(_amazon_refund())
        outcome, _ = reconciler.reconcile(_amazon_refund(external_id="credit-copy"))
        assert outcome.kind == INSERTED_AS_DUPLICATE
        copy = repo.get_transaction("credit-copy")
        assert copy.reverses is None
        assert repo.get_transaction("debit1").reversed_by == "credit1"


class TestReversals:
    def test_scenario_b_links_both_sides(self, repo, reconciler):
        reconciler.reconcile(_amazon_debit())
        outcome, persisted = reconciler.reconcile(_amazon_refund())
        assert outcome == ReconcileOutcome(INSERTED_AS_REVERSAL, "debit1")
        assert persisted
        assert outcome.is_new
        assert repo.get_transaction("credit1").reverses == "debit1"
        assert repo.get_transaction("debit1").reversed_by == "credit1"
        assert find_link_violations(repo.conn) == []

    def test_second_refund_does_not_steal_link(self, repo, reconciler):
        reconciler.reconcile(_amazon_debit())
        reconciler.reconcile(_amazon_refund())
        outcome, _ = reconciler.reconcile(_amazon_refund(
            external_id="credit2", date="2024-01-13",
            description="Amazon refund for order",
        ))
        assert outcome.kind == INSERTED
        assert repo.get_transaction("debit1").reversed_by == "credit1"
        assert repo.get_transaction("credit2").reverses is None

    def test_failed_link_falls_back_to_plain_insert(self, repo, caplog):
        linker = MagicMock()
        linker.find_original.return_value = ReversalMatch(
            original=MagicMock(id="missing-debit"),
        )
        reconciler = Reconciler(repo, linker=linker)
        with caplog.at_level("WARNING"):
            outcome, persisted = reconciler.reconcile(_amazon_refund())
        assert outcome.kind == INSERTED
        assert persisted
        assert repo.get_transaction("credit1").reverses is None
        assert "affected no rows" in caplog.text
        assert find_link_violations(repo.conn) == []


# ── Idempotency and invariants ────────────────────────────


class TestIdempotency:
    def test_redelivery_of_plain_insert(self, repo, reconciler):
        first = reconciler.reconcile(_cand())
        second = reconciler.reconcile(_cand())
        assert first == second
        assert _count(repo) == 1

    def test_redelivery_of_original_after_duplicate(self, repo, reconciler):
        reconciler.reconcile(_cand(external_id="a"))
        reconciler.reconcile(_cand(external_id="b"))
        outcome, _ = reconciler.reconcile(_cand(external_id="a"))
        assert outcome.kind == INSERTED
        assert not repo.get_transaction("a").is_duplicate
        assert repo.get_transaction("b").duplicate_of == "a"
        assert _count(repo) == 2

    def test_redelivery_of_reversal(self, repo, reconciler):
        reconciler.reconcile(_amazon_debit())
        first = reconciler.reconcile(_amazon_refund())
        second = reconciler.reconcile(_amazon_refund())
        assert first == second
        assert _count(repo) == 2
        assert repo.get_transaction("debit1").reversed_by == "credit1"
        assert repo.get_transaction("credit1").reverses == "debit1"

    def test_redelivery_of_reversed_debit_keeps_link(self, repo, reconciler):
        reconciler.reconcile(_amazon_debit())
        reconciler.reconcile(_amazon_refund())
        outcome, _ = reconciler.reconcile(_amazon_debit())
        assert outcome.kind == INSERTED
        assert repo.get_transaction("debit1").reversed_by == "credit1"
        assert find_link_violations(repo.conn) == []

    def test_created_at_survives_rewrite(self, repo, reconciler):
        reconciler.reconcile(_cand())
        created = repo.get_transaction("e1").created_at
        reconciler.reconcile(_cand())
        assert repo.get_transaction("e1").created_at == created


class TestInvariants:
    def test_no_self_links_after_mixed_batch(self, repo, reconciler):
        candidates = [
            _amazon_debit(),
            _amazon_refund(),
            _amazon_refund(external_id="credit-copy"),
            _cand(external_id="s1", description="Swiggy Order"),
            _cand(external_id="s2", description="UPI-1234567890123-Swiggy Order", source="x"),
            _cand(external_id="sal", direction="credit", description="Salary credited"),
        ]
        for c in candidates:
            reconciler.reconcile(c)
        for c in candidates:
            reconciler.reconcile(c)

        assert _count(repo) == len(candidates)
        assert find_link_violations(repo.conn) == []
        rows = repo.conn.execute(
            "SELECT id, reverses, reversed_by FROM transactions"
        ).fetchall()
        for r in rows:
            assert r["reverses"] != r["id"]
            assert r["reversed_by"] != r["id"]
