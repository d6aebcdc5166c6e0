"""Extractor contract: shared data structures and helper functions.

Extractors turn one RawMessage into zero or more CandidateTransactions and
an optional CandidateSubscription. Implementations only need an
``extract(message)`` method; nothing is inherited.
"""

from __future__ import annotations

import hashlib
import html
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from mailledger.database.models import BILLING_CYCLES, DIRECTIONS


class ExtractionError(Exception):
    """Raised when an extractor cannot process a message (API failure, timeout)."""


@dataclass
class RawMessage:
    """A fetched email reduced to the fields extractors read."""
    id: str
    sender: str = ""
    subject: str = ""
    body: str = ""
    snippet: str = ""
    internal_date: str | None = None  # epoch milliseconds, as Gmail reports it
    thread_id: str | None = None

    @property
    def received_date(self) -> str | None:
        """YYYY-MM-DD (UTC) of the message's internal date, if known."""
        if not self.internal_date:
            return None
        try:
            millis = int(self.internal_date)
        except (TypeError, ValueError):
            return None
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


@dataclass(frozen=True)
class CandidateTransaction:
    """An unreconciled transaction extracted from a single email.

    Immutable once produced. ``amount`` is always positive and rounded to
    two decimals; ``direction`` carries the sign.
    """
    external_id: str
    date: str              # YYYY-MM-DD
    amount: float
    description: str
    category: str
    direction: str         # "credit" or "debit"
    source: str = ""       # short origin tag, e.g. sender domain fragment
    merchant: str | None = None
    origin_email_id: str | None = None
    raw_metadata: dict | None = None
    currency: str | None = None

    def __post_init__(self):
        if self.direction not in DIRECTIONS:
            raise ValueError(f"Unknown direction: {self.direction!r}")
        amount = round(float(self.amount), 2)
        if amount <= 0:
            raise ValueError(f"Amount must be positive, got {self.amount!r}")
        object.__setattr__(self, "amount", amount)

    @property
    def id(self) -> str:
        return self.external_id

    def currency_or(self, default: str) -> str:
        """Declared currency (field, then raw metadata), else ``default``."""
        currency = self.currency
        if not currency and self.raw_metadata:
            currency = self.raw_metadata.get("currency")
        return (currency or default).upper()


@dataclass(frozen=True)
class CandidateSubscription:
    id: str
    name: str
    amount: float
    currency: str
    billing_cycle: str = "monthly"
    category: str = "Subscription"
    next_billing_date: str | None = None

    def __post_init__(self):
        if self.billing_cycle not in BILLING_CYCLES:
            object.__setattr__(self, "billing_cycle", "monthly")


@dataclass
class ExtractionResult:
    transactions: list[CandidateTransaction] = field(default_factory=list)
    subscription: CandidateSubscription | None = None


class Extractor(Protocol):
    def extract(self, message: RawMessage) -> ExtractionResult:
        ...


# ── Helpers ───────────────────────────────────────────────


_SENDER_DOMAIN_RE = re.compile(r"@([^.>\s]+)")
_STYLE_RE = re.compile(r"<style[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
_SCRIPT_RE = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")


def generate_id(text: str) -> str:
    """Stable 16-hex-char id derived from ``text``."""
    return hashlib.md5(text.encode()).hexdigest()[:16]


def source_from_sender(sender: str) -> str:
    """Domain fragment of the sender address: 'alerts@hdfcbank.net' -> 'hdfcbank'."""
    m = _SENDER_DOMAIN_RE.search(sender or "")
    return m.group(1) if m else "Unknown"


def clean_body(text: str, max_length: int | None = None) -> str:
    """Strip HTML markup and entities, collapse whitespace, optionally truncate."""
    text = _STYLE_RE.sub("", text)
    text = _SCRIPT_RE.sub("", text)
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text)
    text = _WHITESPACE_RE.sub(" ", text).strip()
    if max_length is not None:
        text = text[:max_length]
    return text
