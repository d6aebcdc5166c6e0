"""Sync orchestration: mailbox -> extractor -> reconciler -> ledger.

One batch walks the candidate message ids in order:
  list ids → skip processed → fetch → extract → currency filter
  → reconcile → subscription → processed marker → progress

Failures of a single email are isolated (logged, counted, batch goes on);
failures that make the whole batch pointless (mailbox unreachable, store
gone) end it in the ``failed`` state with the typed error attached.
"""

from __future__ import annotations

import enum
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Callable

from mailledger.database.models import Subscription
from mailledger.database.repository import (
    Repository,
    StoreError,
    StoreUnavailableError,
    TransientStoreError,
    classify_store_error,
)
from mailledger.extractors.base import (
    CandidateSubscription,
    CandidateTransaction,
    ExtractionResult,
    RawMessage,
)
from mailledger.gmail.client import MailError, build_search_queries
from mailledger.reconcile.engine import INSERTED_AS_DUPLICATE, INSERTED_AS_REVERSAL, Reconciler

logger = logging.getLogger(__name__)

DEFAULT_DAYS_BACK = 30

ProgressObserver = Callable[[int, int, int], None]


class SyncState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SyncResult:
    """Result of one sync batch."""
    state: SyncState
    total: int = 0
    processed: int = 0          # emails handled, including skipped and failed
    new_transactions: int = 0   # non-duplicate rows written (reversals included)
    duplicates: int = 0
    reversals: int = 0
    skipped: int = 0            # already processed
    failed: int = 0             # left without a marker, retried next sync
    extraction_errors: int = 0
    excluded_currency: int = 0
    subscriptions: int = 0
    error: Exception | None = None
    failed_ids: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state == SyncState.COMPLETED


class SyncOrchestrator:
    """Run sync batches against one mailbox and one ledger.

    Args:
        repo: Ledger store.
        mail: Object with ``list_candidate_message_ids(filters)`` and
            ``fetch_full_message(id)`` (normally a GmailClient).
        extractor: Object with ``extract(RawMessage) -> ExtractionResult``.
        reconciler: Reconciler writing into ``repo``.
        reporting_currency: Only candidates in this currency are stored.
            A ``user_currency`` setting in the store takes precedence.
        default_currency: Assumed currency for candidates that declare none.
        observer: Optional callable (processed, total, new_transactions).
        broad_search: Use the broader query set (LLM extractors).
    """

    def __init__(
        self,
        repo: Repository,
        mail,
        extractor,
        reconciler: Reconciler | None = None,
        reporting_currency: str = "INR",
        default_currency: str = "INR",
        observer: ProgressObserver | None = None,
        broad_search: bool = False,
    ):
        self.repo = repo
        self.mail = mail
        self.extractor = extractor
        self.reconciler = reconciler or Reconciler(repo)
        self.reporting_currency = reporting_currency.upper()
        self.default_currency = default_currency.upper()
        self.observer = observer
        self.broad_search = broad_search
        self.state = SyncState.IDLE
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Request cancellation; honoured before the next email starts."""
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def run(self, full_sync: bool = False, days_back: int = DEFAULT_DAYS_BACK) -> SyncResult:
        """Run one batch. Never raises for mail, store or per-email failures."""
        self.state = SyncState.RUNNING
        result = SyncResult(state=SyncState.RUNNING)
        try:
            self._run_batch(result, full_sync, days_back)
        finally:
            self._cancel.clear()
        self.state = result.state
        return result

    def _run_batch(self, result: SyncResult, full_sync: bool, days_back: int) -> None:
        try:
            self.repo.ping()
            currency = self._effective_currency()
            filters = build_search_queries(days_back, broad=self.broad_search)
            message_ids = self.mail.list_candidate_message_ids(filters)
        except (MailError, StoreError) as e:
            logger.error("Sync could not start: %s", e)
            self._fail(result, e)
            return
        except sqlite3.Error as e:
            self._fail(result, classify_store_error(e))
            return

        result.total = len(message_ids)
        logger.info(
            "Sync started: %d emails, currency %s, full_sync=%s",
            result.total, currency, full_sync,
        )

        for email_id in message_ids:
            if self.cancel_requested:
                logger.info(
                    "Sync cancelled after %d/%d emails", result.processed, result.total,
                )
                result.state = SyncState.CANCELLED
                return

            try:
                self._process_email(result, email_id, full_sync, currency)
            except StoreUnavailableError as e:
                logger.error("Store unavailable, aborting sync at email %s: %s", email_id, e)
                self._fail(result, e)
                return
            except TransientStoreError as e:
                logger.warning("Transient store error on email %s: %s", email_id, e)
                result.failed += 1
                result.failed_ids.append(email_id)
            except Exception:
                # No processed marker, so the email is retried next sync
                logger.exception("Unexpected error processing email %s", email_id)
                result.failed += 1
                result.failed_ids.append(email_id)

            result.processed += 1
            self._report(result)

        try:
            self.repo.record_last_sync()
        except sqlite3.Error as e:
            self._fail(result, classify_store_error(e))
            return

        result.state = SyncState.COMPLETED
        logger.info(
            "Sync completed: %d emails, %d new, %d duplicates, %d reversals,"
            " %d skipped, %d failed",
            result.total, result.new_transactions, result.duplicates,
            result.reversals, result.skipped, result.failed,
        )

    def _effective_currency(self) -> str:
        stored = self.repo.get_setting("user_currency")
        return (stored or self.reporting_currency).upper()

    def _fail(self, result: SyncResult, error: Exception) -> None:
        result.state = SyncState.FAILED
        result.error = error

    def _report(self, result: SyncResult) -> None:
        if self.observer is not None:
            self.observer(result.processed, result.total, result.new_transactions)

    # ── Per-email work ────────────────────────────────────

    def _process_email(
        self, result: SyncResult, email_id: str, full_sync: bool, currency: str
    ) -> None:
        """Handle one email; store errors are raised as StoreError subclasses."""
        try:
            if not full_sync and self.repo.is_email_processed(email_id):
                result.skipped += 1
                return

            try:
                message = self.mail.fetch_full_message(email_id)
            except (StoreError, sqlite3.Error):
                raise
            except Exception:
                # MessageFetchError or anything else the mailbox raises
                logger.exception("Failed to fetch email %s", email_id)
                result.failed += 1
                result.failed_ids.append(email_id)
                return

            extraction = self._extract(result, message)
            if extraction is not None:
                self._store_extraction(result, message, extraction, currency)

            self.repo.mark_email_processed(email_id)
        except sqlite3.Error as e:
            raise classify_store_error(e) from e

    def _extract(self, result: SyncResult, message: RawMessage) -> ExtractionResult | None:
        try:
            return self.extractor.extract(message)
        except Exception:
            # Marked processed anyway so a poisoned email isn't retried forever
            logger.exception("Extraction failed for email %s", message.id)
            result.extraction_errors += 1
            return None

    def _store_extraction(
        self,
        result: SyncResult,
        message: RawMessage,
        extraction: ExtractionResult,
        currency: str,
    ) -> None:
        for candidate in extraction.transactions:
            if not self._currency_matches(candidate, currency):
                result.excluded_currency += 1
                continue
            outcome, _ = self.reconciler.reconcile(candidate)
            if outcome.kind == INSERTED_AS_DUPLICATE:
                result.duplicates += 1
                continue
            if outcome.kind == INSERTED_AS_REVERSAL:
                result.reversals += 1
            result.new_transactions += 1

        sub = extraction.subscription
        if sub is not None:
            if sub.currency.upper() == currency:
                self.repo.upsert_subscription(_to_subscription(sub, message.id))
                result.subscriptions += 1
            else:
                logger.warning(
                    "Skipped %s subscription %r (reporting currency %s)",
                    sub.currency, sub.name, currency,
                )

    def _currency_matches(self, candidate: CandidateTransaction, currency: str) -> bool:
        txn_currency = candidate.currency_or(self.default_currency)
        if txn_currency == currency:
            return True
        logger.warning(
            "Skipped %s transaction (reporting currency %s): %s",
            txn_currency, currency, candidate.description,
        )
        return False


def _to_subscription(sub: CandidateSubscription, email_id: str) -> Subscription:
    return Subscription(
        id=sub.id,
        name=sub.name,
        amount=sub.amount,
        currency=sub.currency.upper(),
        billing_cycle=sub.billing_cycle,
        next_billing_date=sub.next_billing_date,
        category=sub.category,
        email_id=email_id,
        last_detected=date.today().isoformat(),
    )

