"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly.
Dates are ISO ``YYYY-MM-DD`` strings; timestamps are ISO-8601 UTC strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

DIRECTIONS = ("credit", "debit")
BILLING_CYCLES = ("monthly", "yearly", "weekly", "quarterly")
SUBSCRIPTION_STATUSES = ("active", "paused", "cancelled")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LedgerTransaction:
    id: str
    date: str
    amount: float
    description: str
    category: str
    direction: str
    fingerprint: str
    external_id: str | None = None
    source: str = ""
    merchant: str | None = None
    origin_email_id: str | None = None
    currency: str | None = None
    raw_metadata: dict | None = None
    is_duplicate: bool = False
    duplicate_of: str | None = None
    reverses: str | None = None
    reversed_by: str | None = None
    created_at: str = field(default_factory=_now)


@dataclass
class ProcessedEmail:
    email_id: str
    processed_at: str = field(default_factory=_now)


@dataclass
class Subscription:
    id: str
    name: str
    amount: float
    currency: str
    billing_cycle: str = "monthly"
    next_billing_date: str | None = None
    category: str | None = None
    status: str = "active"
    email_id: str | None = None
    last_detected: str | None = None
