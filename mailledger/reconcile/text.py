"""Pure string heuristics used by duplicate and reversal matching.

Nothing here touches the store, so every function can be tested on plain
strings.
"""

from __future__ import annotations

import re

# Leading payment-rail markers such as "UPI-", "NEFT/", "POS ".
_RAIL_PREFIX_RE = re.compile(
    r"^(?:(?:upi|imps|neft|rtgs|atm|pos|ecs|nach)(?:\s+|$))+"
)
# Bank reference numbers and transaction ids.
_REFERENCE_TOKEN_RE = re.compile(r"\b[a-z0-9]{12,}\b")
_SEPARATOR_RE = re.compile(r"[-/]+")
_WHITESPACE_RE = re.compile(r"\s+")

REFUND_KEYWORDS = (
    "refund",
    "reversal",
    "reversed",
    "cashback",
    "return",
    "cancelled",
    "canceled",
    "failed",
    "rejected",
    "credit back",
    "money back",
    "chargeback",
)

_MERCHANT_PREPOSITION_RE = re.compile(
    r"(?:\bto|\bfrom|\bat|@)\s+([a-z0-9\s]+?)(?:\s+(?:upi|ref|txn|id)\b|$)",
    re.IGNORECASE,
)
_KNOWN_MERCHANT_RE = re.compile(
    r"\b(?:amazon|flipkart|swiggy|zomato|uber|ola|netflix|spotify|google|apple)\b",
    re.IGNORECASE,
)

SIGNIFICANT_TOKEN_MIN_LEN = 4
MIN_SHARED_TOKENS = 2


def normalize_description(desc: str | None) -> str:
    """Canonicalize a transaction description for comparison.

    - Lowercase
    - Strip reference/transaction-id tokens (12+ alphanumerics)
    - Treat '-' and '/' as separators
    - Collapse whitespace
    - Strip leading payment-rail prefixes (UPI, IMPS, NEFT, RTGS, ATM, POS, ECS, NACH)

    Idempotent: normalizing a normalized string returns it unchanged.
    """
    if not desc:
        return ""
    desc = desc.lower()
    desc = _REFERENCE_TOKEN_RE.sub("", desc)
    desc = _SEPARATOR_RE.sub(" ", desc)
    desc = _WHITESPACE_RE.sub(" ", desc).strip()
    desc = _RAIL_PREFIX_RE.sub("", desc)
    return desc.strip()


def description_tokens(desc: str | None) -> set[str]:
    """Whitespace token set of the normalized description."""
    normalized = normalize_description(desc)
    return set(normalized.split()) if normalized else set()


def jaccard_similarity(a: str | None, b: str | None) -> float:
    """Token-set Jaccard similarity of two descriptions.

    Empty token sets never match (similarity 0).
    """
    tokens_a = description_tokens(a)
    tokens_b = description_tokens(b)
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def is_refund_related(description: str | None) -> bool:
    """True if the description carries refund/reversal vocabulary."""
    if not description:
        return False
    lower = description.lower()
    return any(keyword in lower for keyword in REFUND_KEYWORDS)


def extract_merchant(description: str | None) -> str | None:
    """Best-effort merchant name from free text.

    Tries "to/from/at/@ <words>" first, then a short list of well-known
    merchants. Returns None when nothing is recognizable.
    """
    if not description:
        return None
    m = _MERCHANT_PREPOSITION_RE.search(description)
    if m:
        merchant = m.group(1).strip()
        if merchant:
            return merchant
    m = _KNOWN_MERCHANT_RE.search(description)
    if m:
        return m.group(0)
    return None


def shared_significant_tokens(a: str | None, b: str | None) -> set[str]:
    """Normalized tokens longer than 3 characters present in both descriptions."""
    tokens_a = {t for t in description_tokens(a) if len(t) >= SIGNIFICANT_TOKEN_MIN_LEN}
    tokens_b = {t for t in description_tokens(b) if len(t) >= SIGNIFICANT_TOKEN_MIN_LEN}
    return tokens_a & tokens_b


def merchants_match(
    merchant_a: str | None,
    description_a: str | None,
    merchant_b: str | None,
    description_b: str | None,
) -> bool:
    """Decide whether two transactions come from the same merchant.

    Order of evidence: explicit merchant fields (when both are set), then
    merchants extracted from the descriptions (when both are found), then
    at least two shared significant description tokens.
    """
    if merchant_a and merchant_b:
        return merchant_a.strip().lower() == merchant_b.strip().lower()

    extracted_a = extract_merchant(description_a)
    extracted_b = extract_merchant(description_b)
    if extracted_a and extracted_b:
        return extracted_a.lower() == extracted_b.lower()

    return len(shared_significant_tokens(description_a, description_b)) >= MIN_SHARED_TOKENS
