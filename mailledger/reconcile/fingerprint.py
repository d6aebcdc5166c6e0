"""Content fingerprint for exact-duplicate detection."""

from __future__ import annotations

import hashlib

from mailledger.extractors.base import CandidateTransaction
from mailledger.reconcile.text import normalize_description


def fingerprint_key(
    date: str,
    amount: float,
    description: str,
    direction: str,
    source: str | None,
) -> str:
    """Pipe-joined key: date|amount|normalized_description|direction|source."""
    return "|".join((
        date.strip(),
        f"{amount:.2f}",
        normalize_description(description),
        direction.strip().lower(),
        (source or "").strip().lower(),
    ))


def compute_fingerprint(candidate: CandidateTransaction) -> str:
    """SHA256 of the candidate's economically relevant fields.

    Insensitive to description casing and whitespace; no salt, so the
    value is stable across processes.
    """
    key = fingerprint_key(
        candidate.date, candidate.amount, candidate.description,
        candidate.direction, candidate.source,
    )
    return hashlib.sha256(key.encode()).hexdigest()
