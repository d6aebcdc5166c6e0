"""Reversal detection: links an incoming credit to the debit it refunds.

A credit reverses a debit only when all of these hold:
  - same amount, debit dated within the trailing window, not yet reversed
  - the credit's description uses refund/reversal vocabulary
  - the two sides come from the same merchant

Amount and date alone are not enough: two unrelated debits of the same
round amount are common, so the vocabulary gate keeps the linker
conservative.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from mailledger.database.models import LedgerTransaction
from mailledger.database.repository import Repository
from mailledger.extractors.base import CandidateTransaction
from mailledger.reconcile.text import is_refund_related, merchants_match

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 30
DEFAULT_LOOKBACK = 5


@dataclass
class ReversalMatch:
    """The original debit an incoming credit reverses."""
    original: LedgerTransaction

    @property
    def original_id(self) -> str:
        return self.original.id


class ReversalLinker:
    def __init__(
        self,
        repo: Repository,
        window_days: int = DEFAULT_WINDOW_DAYS,
        lookback: int = DEFAULT_LOOKBACK,
    ):
        self.repo = repo
        self.window_days = window_days
        self.lookback = lookback

    def find_original(self, candidate: CandidateTransaction) -> ReversalMatch | None:
        """Return the most recent debit this credit reverses, or None.

        Debits are never reversals; they return None immediately.
        """
        if candidate.direction != "credit":
            return None
        if not is_refund_related(candidate.description):
            return None

        debits = self.repo.find_reversal_candidates(
            amount=candidate.amount,
            date=candidate.date,
            window_days=self.window_days,
            limit=self.lookback,
            exclude_id=candidate.id,
        )
        for debit in debits:
            if merchants_match(
                candidate.merchant, candidate.description,
                debit.merchant, debit.description,
            ):
                logger.info(
                    "Reversal detected: %r reverses %r (%s)",
                    candidate.description, debit.description, debit.id,
                )
                return ReversalMatch(original=debit)
        return None
