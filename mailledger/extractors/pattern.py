"""Regex extractor for bank alerts, receipts and subscription charges.

Works without any API: finds the first amount in subject+body, a date in
the text (falling back to the email's internal date), and classifies the
direction by keyword. Merchant and category come from the
``merchant_categories`` table in extraction.yaml.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timezone

from mailledger.extractors.base import (
    CandidateSubscription,
    CandidateTransaction,
    ExtractionResult,
    RawMessage,
    clean_body,
    generate_id,
    source_from_sender,
)

logger = logging.getLogger(__name__)

# Letter lookbehind keeps "yours 5" or "orders 3" from reading as rupees
_RUPEE = r"(?:(?<![a-z])(?:rs\.?|inr)|₹)"
_NUMBER = r"([\d,]+(?:\.\d{1,2})?)"

# (pattern, currency) in priority order; currency None means "not stated"
_AMOUNT_PATTERNS: list[tuple[re.Pattern, str | None]] = [
    (re.compile(_RUPEE + r"\s*" + _NUMBER, re.IGNORECASE), "INR"),
    (re.compile(r"(?:\$|(?<![a-z])usd)\s*" + _NUMBER, re.IGNORECASE), "USD"),
    (re.compile(_NUMBER + r"\s*" + _RUPEE, re.IGNORECASE), "INR"),
    (re.compile(r"amount[:\s]*" + _RUPEE + r"?\s*" + _NUMBER, re.IGNORECASE), None),
    (re.compile(r"debited[:\s]*" + _RUPEE + r"?\s*" + _NUMBER, re.IGNORECASE), None),
    (re.compile(r"credited[:\s]*" + _RUPEE + r"?\s*" + _NUMBER, re.IGNORECASE), None),
    (re.compile(r"paid[:\s]*" + _RUPEE + r"?\s*" + _NUMBER, re.IGNORECASE), None),
]

_NUMERIC_DATE_RE = re.compile(r"\b(\d{1,2})[-/](\d{1,2})[-/](\d{2,4})\b")
_TEXT_DATE_RE = re.compile(
    r"\b(\d{1,2})\s+(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*,?\s+(\d{2,4})\b",
    re.IGNORECASE,
)
_MONTHS = {
    m: i for i, m in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun",
         "jul", "aug", "sep", "oct", "nov", "dec"], start=1,
    )
}

CREDIT_KEYWORDS = ("credited", "received", "refund", "cashback", "salary", "deposit", "added")
DEBIT_KEYWORDS = ("debited", "spent", "paid", "charged", "withdrawn", "deducted", "purchase")

_RENEWAL_WORDS = ("subscription", "renewal", "auto-renew", "recurring")
_BILLING_SENDER_RE = re.compile(r"(?:noreply@|support@|billing@)([^.]+)", re.IGNORECASE)

# Keyword fallbacks when no merchant table entry matches
_KEYWORD_CATEGORIES = [
    (("salary", "credited to your account"), "Salary"),
    (("refund",), "Refund"),
    (("cashback",), "Cashback"),
    (("dividend",), "Investment"),
    (("interest",), "Interest"),
    (("atm", "cash withdrawal"), "Cash"),
    (("transfer",), "Transfer"),
]

MAX_DESCRIPTION_LENGTH = 200


def parse_amount(text: str) -> tuple[float, str | None] | None:
    """Return (amount, currency) for the first matching amount pattern."""
    for pattern, currency in _AMOUNT_PATTERNS:
        m = pattern.search(text)
        if not m:
            continue
        try:
            amount = float(m.group(1).replace(",", ""))
        except ValueError:
            continue
        if amount > 0:
            return amount, currency
    return None


def _expand_year(year: int) -> int:
    return year + 2000 if year < 100 else year


def parse_date(text: str, fallback: str | None = None) -> str:
    """Find a day-first date in ``text`` as YYYY-MM-DD.

    Falls back to ``fallback`` (the message's received date) and then to
    today's UTC date.
    """
    for m in _NUMERIC_DATE_RE.finditer(text):
        day, month, year = (int(g) for g in m.groups())
        try:
            return date(_expand_year(year), month, day).isoformat()
        except ValueError:
            continue

    for m in _TEXT_DATE_RE.finditer(text):
        day = int(m.group(1))
        month = _MONTHS[m.group(2).lower()[:3]]
        try:
            return date(_expand_year(int(m.group(3))), month, day).isoformat()
        except ValueError:
            continue

    if fallback:
        return fallback
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def detect_direction(text: str) -> str:
    """Credit keywords win over debit keywords; default is debit."""
    lowered = text.lower()
    if any(k in lowered for k in CREDIT_KEYWORDS):
        return "credit"
    if not any(k in lowered for k in DEBIT_KEYWORDS):
        logger.debug("No direction keyword, assuming debit: %.60s", text)
    return "debit"


class PatternExtractor:
    """Regex-based extractor.

    Args:
        merchant_categories: Lowercase merchant keyword -> category.
        subscription_services: Lowercase keyword -> {name, category, cycle}.
    """

    def __init__(
        self,
        merchant_categories: dict[str, str] | None = None,
        subscription_services: dict[str, dict] | None = None,
    ):
        self.merchant_categories = {
            k.lower(): v for k, v in (merchant_categories or {}).items()
        }
        self.subscription_services = {
            k.lower(): v for k, v in (subscription_services or {}).items()
        }

    def extract(self, message: RawMessage) -> ExtractionResult:
        result = ExtractionResult()
        body = clean_body(message.body)
        full_text = f"{message.subject} {body}"

        parsed = parse_amount(full_text)
        if parsed is None or parsed[0] < 1:
            logger.debug("No amount found in message %s", message.id)
            return result
        amount, currency = parsed

        txn_date = parse_date(full_text, message.received_date)
        merchant = self.detect_merchant(full_text, message.sender)
        category = self.detect_category(full_text, merchant)

        result.subscription = self.detect_subscription(
            full_text, message.sender, amount, currency,
        )

        raw_metadata = {
            "email_id": message.id,
            "from": message.sender,
            "subject": message.subject,
            "snippet": message.snippet,
        }
        if currency:
            raw_metadata["currency"] = currency

        description = (message.subject or body)[:MAX_DESCRIPTION_LENGTH]
        if not description.strip():
            description = merchant or "Email transaction"

        result.transactions.append(CandidateTransaction(
            external_id=generate_id(f"{message.id}-{amount}-{txn_date}"),
            date=txn_date,
            amount=amount,
            description=description,
            category=category,
            direction=detect_direction(full_text),
            source=source_from_sender(message.sender),
            merchant=merchant,
            origin_email_id=message.id,
            raw_metadata=raw_metadata,
            currency=currency,
        ))
        return result

    def detect_merchant(self, text: str, sender: str) -> str | None:
        combined = f"{sender} {text}".lower()
        for keyword in self.merchant_categories:
            if keyword in combined:
                return keyword.title()
        return None

    def detect_category(self, text: str, merchant: str | None) -> str:
        lowered = text.lower()
        if merchant:
            lowered_merchant = merchant.lower()
            for keyword, category in self.merchant_categories.items():
                if keyword in lowered_merchant:
                    return category

        for keyword, category in self.merchant_categories.items():
            if keyword in lowered:
                return category

        for keywords, category in _KEYWORD_CATEGORIES:
            if any(k in lowered for k in keywords):
                return category
        return "Other"

    def detect_subscription(
        self,
        text: str,
        sender: str,
        amount: float,
        currency: str | None,
    ) -> CandidateSubscription | None:
        """Known service by keyword, else renewal vocabulary from a billing sender."""
        combined = f"{sender} {text}".lower()

        for keyword, info in self.subscription_services.items():
            if keyword in combined:
                name = info.get("name", keyword.title())
                sub_currency = currency or (
                    "USD" if "$" in combined or "usd" in combined else "INR"
                )
                return CandidateSubscription(
                    id=generate_id(f"{name}-{amount}"),
                    name=name,
                    amount=amount,
                    currency=sub_currency,
                    billing_cycle=info.get("cycle", "monthly"),
                    category=info.get("category", "Subscription"),
                )

        if any(w in combined for w in _RENEWAL_WORDS):
            m = _BILLING_SENDER_RE.search(sender or "")
            if m:
                name = m.group(1).capitalize()
                return CandidateSubscription(
                    id=generate_id(f"{name}-{amount}"),
                    name=name,
                    amount=amount,
                    currency=currency or "INR",
                    billing_cycle="monthly",
                    category="Other",
                )
        return None
