"""Reconciliation: classify a candidate and persist exactly one ledger row.

Decision order:
1. Duplicate (exact or fuzzy): stored with is_duplicate=1 for audit
2. Reversal: stored with reverses=<debit id>, then the debit gets reversed_by
3. Plain insert

Every branch writes by id (upsert), so reconciling the same candidate id
twice converges to a single row and the same outcome. This class is the
only writer of is_duplicate, duplicate_of, reverses and reversed_by.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from mailledger.database.models import LedgerTransaction
from mailledger.database.repository import Repository
from mailledger.extractors.base import CandidateTransaction
from mailledger.reconcile.dedup import DuplicateDetector
from mailledger.reconcile.fingerprint import compute_fingerprint
from mailledger.reconcile.reversal import ReversalLinker

logger = logging.getLogger(__name__)

INSERTED = "inserted"
INSERTED_AS_REVERSAL = "inserted_as_reversal"
INSERTED_AS_DUPLICATE = "inserted_as_duplicate"


@dataclass(frozen=True)
class ReconcileOutcome:
    """What reconciliation decided for one candidate (not persisted)."""
    kind: str  # INSERTED, INSERTED_AS_REVERSAL, INSERTED_AS_DUPLICATE
    related_id: str | None = None  # original debit or the duplicated row

    @property
    def is_new(self) -> bool:
        """True when the row counts towards totals (not a duplicate)."""
        return self.kind != INSERTED_AS_DUPLICATE


def to_ledger_row(
    candidate: CandidateTransaction,
    fingerprint: str,
    is_duplicate: bool = False,
    duplicate_of: str | None = None,
    reverses: str | None = None,
) -> LedgerTransaction:
    return LedgerTransaction(
        id=candidate.id,
        external_id=candidate.external_id,
        date=candidate.date,
        amount=candidate.amount,
        description=candidate.description,
        category=candidate.category,
        direction=candidate.direction,
        source=candidate.source,
        merchant=candidate.merchant,
        origin_email_id=candidate.origin_email_id,
        currency=candidate.currency,
        raw_metadata=candidate.raw_metadata,
        fingerprint=fingerprint,
        is_duplicate=is_duplicate,
        duplicate_of=duplicate_of,
        reverses=reverses,
    )


class Reconciler:
    """Decide and persist the reconciliation outcome of candidate transactions.

    Args:
        repo: Ledger store.
        detector: Duplicate detector (defaults to one over ``repo``).
        linker: Reversal linker (defaults to one over ``repo``).
    """

    def __init__(
        self,
        repo: Repository,
        detector: DuplicateDetector | None = None,
        linker: ReversalLinker | None = None,
    ):
        self.repo = repo
        self.detector = detector or DuplicateDetector(repo)
        self.linker = linker or ReversalLinker(repo)

    def reconcile(
        self, candidate: CandidateTransaction
    ) -> tuple[ReconcileOutcome, bool]:
        """Classify ``candidate`` and write its ledger row.

        Returns (outcome, persisted). The candidate is never dropped:
        duplicates are stored too, flagged so sums can skip them.
        """
        fingerprint = compute_fingerprint(candidate)

        dedup = self.detector.check(candidate, fingerprint)
        if dedup.is_duplicate:
            self.repo.upsert_transaction(to_ledger_row(
                candidate, fingerprint,
                is_duplicate=True, duplicate_of=dedup.matched_id,
            ))
            return ReconcileOutcome(INSERTED_AS_DUPLICATE, dedup.matched_id), True

        match = self.linker.find_original(candidate)
        if match is not None:
            if self._persist_reversal(candidate, fingerprint, match.original_id):
                return ReconcileOutcome(INSERTED_AS_REVERSAL, match.original_id), True
            return ReconcileOutcome(INSERTED), True

        self.repo.upsert_transaction(to_ledger_row(candidate, fingerprint))
        return ReconcileOutcome(INSERTED), True

    def _persist_reversal(
        self, candidate: CandidateTransaction, fingerprint: str, original_id: str
    ) -> bool:
        """Write the reversal row and back-link the original in one transaction.

        If the original can't be linked (missing, or reversed by another
        transaction meanwhile) the row is rewritten as a plain insert and
        False is returned.
        """
        with self.repo.atomic():
            self.repo.upsert_transaction(to_ledger_row(
                candidate, fingerprint, reverses=original_id,
            ))
            updated = self.repo.set_reversed_by(original_id, candidate.id)
            if updated == 0:
                logger.warning(
                    "Reversal link to %s affected no rows; storing %s as a plain"
                    " transaction",
                    original_id, candidate.id,
                )
                self.repo.upsert_transaction(to_ledger_row(candidate, fingerprint))
                return False
        logger.info("Linked reversal: %s reverses %s", candidate.id, original_id)
        return True
