"""Two-tier duplicate detection for candidate transactions.

Tiers (evaluated in order, first match wins):
1. Fingerprint: SHA256(date|amount|normalized_desc|direction|source) exact match
2. Fuzzy: same date+amount+direction with Jaccard token similarity above threshold

A candidate is never compared against its own id, so re-delivering the
same candidate is not reported as a duplicate of itself. Amount equality
is exact on the stored value.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from mailledger.database.models import LedgerTransaction
from mailledger.database.repository import Repository
from mailledger.extractors.base import CandidateTransaction
from mailledger.reconcile.fingerprint import compute_fingerprint
from mailledger.reconcile.text import jaccard_similarity

logger = logging.getLogger(__name__)

DEFAULT_FUZZY_THRESHOLD = 0.8


@dataclass
class DedupResult:
    """Outcome of the duplicate check for a single candidate."""
    status: str  # "new", "exact", "fuzzy"
    matched_txn: LedgerTransaction | None = None
    similarity: float | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.status != "new"

    @property
    def matched_id(self) -> str | None:
        return self.matched_txn.id if self.matched_txn else None


class DuplicateDetector:
    """Run exact and fuzzy duplicate checks against the ledger."""

    def __init__(
        self,
        repo: Repository,
        fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
    ):
        self.repo = repo
        self.fuzzy_threshold = fuzzy_threshold

    # ── Tier 1: Fingerprint ───────────────────────────────

    def check_exact(
        self, candidate: CandidateTransaction, fingerprint: str | None = None
    ) -> LedgerTransaction | None:
        """Return an existing row with the same fingerprint, if any."""
        if fingerprint is None:
            fingerprint = compute_fingerprint(candidate)
        return self.repo.find_by_fingerprint(fingerprint, exclude_id=candidate.id)

    # ── Tier 2: Fuzzy same-day ────────────────────────────

    def check_fuzzy(self, candidate: CandidateTransaction) -> DedupResult:
        """Compare against non-duplicate rows with the same date, amount and direction.

        The first row whose similarity strictly exceeds the threshold wins;
        there is no further ranking.
        """
        same_day = self.repo.find_same_day(
            candidate.date, candidate.amount, candidate.direction,
            exclude_id=candidate.id,
        )
        for existing in same_day:
            score = jaccard_similarity(candidate.description, existing.description)
            if score > self.fuzzy_threshold:
                return DedupResult(
                    status="fuzzy", matched_txn=existing, similarity=score,
                )
        return DedupResult(status="new")

    # ── Full check ────────────────────────────────────────

    def check(
        self, candidate: CandidateTransaction, fingerprint: str | None = None
    ) -> DedupResult:
        existing = self.check_exact(candidate, fingerprint)
        if existing is not None:
            logger.warning(
                "Duplicate detected: %r matches existing transaction %s",
                candidate.description, existing.id,
            )
            return DedupResult(status="exact", matched_txn=existing, similarity=1.0)

        result = self.check_fuzzy(candidate)
        if result.is_duplicate:
            logger.warning(
                "Similar transaction found (%.0f%% match): %r matches %s",
                (result.similarity or 0.0) * 100, candidate.description,
                result.matched_id,
            )
        return result
