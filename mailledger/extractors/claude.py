"""Claude-backed extractor for arbitrary financial emails.

Uses the same claude_fn callback pattern as the rest of the project:
a callable (system: str, prompt: str) -> str, injected so tests never
reach the network.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date

from mailledger.extractors.base import (
    CandidateSubscription,
    CandidateTransaction,
    ExtractionError,
    ExtractionResult,
    RawMessage,
    clean_body,
    generate_id,
    source_from_sender,
)
from mailledger.extractors.pattern import PatternExtractor

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = [
    "Food & Dining", "Groceries", "Shopping", "Transport", "Travel",
    "Entertainment", "Utilities", "Telecom", "Healthcare", "Education",
    "Investment", "Insurance", "EMI & Loans", "Rent", "Salary", "Freelance",
    "Refund", "Cashback", "Transfer", "Subscription", "Cloud Services",
    "Software", "Other",
]

MAX_BODY_LENGTH = 3000
MAX_DESCRIPTION_LENGTH = 200

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

SYSTEM_PROMPT = (
    "You are a financial email parser. Extract transaction details from "
    "emails accurately. Always respond with valid JSON only."
)


class ClaudeExtractor:
    """Ask Claude whether an email is financial and what it records.

    Args:
        claude_fn: Callable (system: str, prompt: str) -> str.
        categories: Category names offered to the model.
    """

    def __init__(self, claude_fn, categories: list[str] | None = None):
        self.claude_fn = claude_fn
        self.categories = categories or DEFAULT_CATEGORIES

    def build_prompt(self, message: RawMessage, body: str) -> str:
        return (
            "Analyze this email and determine if it contains financial "
            "transaction information.\n\n"
            f"FROM: {message.sender}\n"
            f"SUBJECT: {message.subject}\n"
            f"BODY: {body}\n\n"
            "If this email contains a financial transaction (bank alert, payment "
            "confirmation, receipt, invoice, subscription charge, salary credit, "
            "refund, etc.), return a JSON object:\n"
            "{\n"
            '  "isFinancial": true,\n'
            '  "transaction": {\n'
            '    "amount": <number>,\n'
            '    "currency": "<USD/EUR/GBP/INR/etc>",\n'
            '    "type": "<income/expense/transfer>",\n'
            f'    "category": "<one of: {", ".join(self.categories)}>",\n'
            '    "merchant": "<merchant/company name if identifiable>",\n'
            '    "description": "<brief description of the transaction>",\n'
            '    "date": "<YYYY-MM-DD if mentioned, otherwise null>"\n'
            "  },\n"
            '  "subscription": {\n'
            '    "name": "<service name>",\n'
            '    "amount": <number>,\n'
            '    "currency": "<currency code>",\n'
            '    "billingCycle": "<monthly/yearly/weekly/quarterly>",\n'
            '    "category": "<category>"\n'
            "  }\n"
            "}\n"
            "Only include subscription for recurring charges.\n"
            'If this is NOT a financial email, return {"isFinancial": false}.\n\n'
            "income includes salary, freelance payments, refunds, cashback, "
            "dividends and interest. expense includes purchases, bills, "
            "subscriptions and fees. transfer means money moved between accounts.\n"
            "Return ONLY the JSON object, no other text."
        )

    def extract(self, message: RawMessage) -> ExtractionResult:
        result = ExtractionResult()
        body = clean_body(message.body, max_length=MAX_BODY_LENGTH)
        if not message.subject and not body:
            return result

        try:
            response = self.claude_fn(SYSTEM_PROMPT, self.build_prompt(message, body))
        except Exception as e:
            raise ExtractionError(
                f"Claude extraction failed for message {message.id}: {e}"
            ) from e

        data = _parse_response(response or "")
        if data is None or not data.get("isFinancial"):
            return result

        txn = data.get("transaction")
        if isinstance(txn, dict):
            candidate = self._build_transaction(message, txn)
            if candidate is not None:
                result.transactions.append(candidate)

        sub = data.get("subscription")
        if isinstance(sub, dict) and result.transactions:
            result.subscription = _build_subscription(sub)
        return result

    def _build_transaction(
        self, message: RawMessage, txn: dict
    ) -> CandidateTransaction | None:
        try:
            amount = abs(float(txn.get("amount")))
        except (TypeError, ValueError):
            logger.warning("Claude returned no usable amount for message %s", message.id)
            return None
        if amount <= 0:
            return None

        email_date = message.received_date or ""
        txn_date = _iso_date(txn.get("date"))
        if txn_date is None:
            if txn.get("date"):
                logger.warning(
                    "Ignoring non-ISO date %r for message %s", txn.get("date"), message.id,
                )
            txn_date = email_date
        if not txn_date:
            logger.warning("No date available for message %s", message.id)
            return None

        currency = (_text(txn.get("currency")) or "").upper() or None
        raw_metadata = {
            "email_id": message.id,
            "from": message.sender,
            "subject": message.subject,
            "snippet": message.snippet,
        }
        if currency:
            raw_metadata["currency"] = currency

        description = (
            _text(txn.get("description")) or message.subject[:MAX_DESCRIPTION_LENGTH]
        )
        return CandidateTransaction(
            external_id=generate_id(f"{message.id}-{txn.get('amount')}-{email_date}"),
            date=txn_date,
            amount=amount,
            description=description[:MAX_DESCRIPTION_LENGTH] or "Email transaction",
            category=_text(txn.get("category")) or "Other",
            direction="credit" if txn.get("type") == "income" else "debit",
            source=source_from_sender(message.sender),
            merchant=_text(txn.get("merchant")),
            origin_email_id=message.id,
            raw_metadata=raw_metadata,
            currency=currency,
        )


def _text(value) -> str | None:
    """Model output as a stripped string; numbers are stringified, other types dropped."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        value = str(value)
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _iso_date(value) -> str | None:
    """``value`` if it is a valid YYYY-MM-DD date string, else None."""
    if not isinstance(value, str) or not _ISO_DATE_RE.match(value.strip()):
        return None
    try:
        return date.fromisoformat(value.strip()).isoformat()
    except ValueError:
        return None


def _build_subscription(sub: dict) -> CandidateSubscription | None:
    name = _text(sub.get("name"))
    try:
        amount = float(sub.get("amount"))
    except (TypeError, ValueError):
        return None
    if not name:
        return None
    return CandidateSubscription(
        id=generate_id(f"{name}-{amount}"),
        name=name,
        amount=amount,
        currency=(_text(sub.get("currency")) or "USD").upper(),
        billing_cycle=_text(sub.get("billingCycle")) or "monthly",
        category=_text(sub.get("category")) or "Subscription",
    )


def _parse_response(response: str) -> dict | None:
    """Parse Claude's JSON response, tolerating markdown code fences."""
    text = response.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = [line for line in lines if not line.strip().startswith("```")]
        text = "\n".join(lines)

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.error("Failed to parse Claude extraction response: %s", text[:200])
        return None

    if not isinstance(data, dict):
        logger.error("Claude response is not a dict: %s", type(data))
        return None
    return data


def make_extractor(config, claude_fn=None):
    """Build the extractor selected by ``config.extractor``.

    Falls back to the pattern extractor when Claude is selected but no
    callback is available.
    """
    pattern = PatternExtractor(
        merchant_categories=config.merchant_categories,
        subscription_services=config.subscription_services,
    )
    if config.extractor == "claude":
        if claude_fn is None:
            logger.warning("Claude extractor selected but no API key; using pattern extractor")
            return pattern
        return ClaudeExtractor(claude_fn, categories=config.categories or None)
    return pattern
