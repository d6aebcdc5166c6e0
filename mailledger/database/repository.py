"""Repository: ledger storage against SQLite using raw SQL.

All methods take/return dataclass instances from models.py.
Connection management uses a single connection with WAL mode enabled.
Every public write commits on its own unless it runs inside ``atomic()``.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path

from .models import LedgerTransaction, ProcessedEmail, Subscription, _now


class StoreError(Exception):
    """Base class for ledger store failures."""


class TransientStoreError(StoreError):
    """The store is reachable but refused this write (locked, busy).

    Later emails in the same batch can plausibly succeed.
    """


class StoreUnavailableError(StoreError):
    """The store cannot be used at all; the batch must stop."""


_TRANSIENT_MARKERS = ("locked", "busy")


def classify_store_error(exc: sqlite3.Error) -> StoreError:
    """Map a raw sqlite3 error to a transient or fatal store error."""
    message = str(exc).lower()
    if isinstance(exc, sqlite3.OperationalError) and any(
        m in message for m in _TRANSIENT_MARKERS
    ):
        return TransientStoreError(str(exc))
    return StoreUnavailableError(str(exc))


_TXN_COLUMNS = (
    "id", "external_id", "date", "amount", "description", "category",
    "direction", "source", "merchant", "origin_email_id", "currency",
    "raw_metadata", "fingerprint", "is_duplicate", "duplicate_of",
    "reverses", "reversed_by", "created_at",
)

# reversed_by is append-only and created_at keeps the first write.
_TXN_UPSERT_SQL = (
    "INSERT INTO transactions ("
    + ", ".join(_TXN_COLUMNS)
    + ") VALUES ("
    + ",".join("?" * len(_TXN_COLUMNS))
    + ") ON CONFLICT(id) DO UPDATE SET "
    + ", ".join(
        f"{col} = excluded.{col}"
        for col in _TXN_COLUMNS
        if col not in ("id", "reversed_by", "created_at")
    )
    + ", reversed_by = COALESCE(transactions.reversed_by, excluded.reversed_by)"
)


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._atomic_depth = 0

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def ping(self) -> None:
        """Probe the store; raises StoreUnavailableError if it can't be read."""
        try:
            self.conn.execute("SELECT 1 FROM transactions LIMIT 1").fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailableError(str(e)) from e

    # ── Transactions control ────────────────────────────────

    @contextmanager
    def atomic(self):
        """Group several writes into one SQLite transaction.

        Nested calls join the outermost transaction.
        """
        if self._atomic_depth:
            self._atomic_depth += 1
            try:
                yield self
            finally:
                self._atomic_depth -= 1
            return

        self.conn.execute("BEGIN")
        self._atomic_depth = 1
        try:
            yield self
        except Exception:
            self._atomic_depth = 0
            self.conn.rollback()
            raise
        self._atomic_depth = 0
        self.conn.commit()

    def _commit(self):
        if not self._atomic_depth:
            self.conn.commit()

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            "  version INTEGER PRIMARY KEY,"
            "  description TEXT,"
            "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
            ")"
        )
        self.conn.commit()

        row = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current = row[0] or 0

        for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
            version = int(sql_file.name.split("_")[0])
            if version > current:
                try:
                    self.conn.execute("BEGIN")
                    # executescript auto-commits, so we split statements manually
                    sql_text = sql_file.read_text()
                    for statement in sql_text.split(";"):
                        statement = statement.strip()
                        if statement:
                            self.conn.execute(statement)
                    self.conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                        (version, sql_file.stem),
                    )
                    self.conn.commit()
                except Exception:
                    self.conn.rollback()
                    raise

    # ── Ledger transactions ─────────────────────────────────

    def upsert_transaction(self, txn: LedgerTransaction) -> LedgerTransaction:
        """Insert or replace a ledger row by id.

        Re-writing the same id converges to one row. An existing
        ``reversed_by`` link is never cleared.
        """
        self.conn.execute(_TXN_UPSERT_SQL, self._transaction_params(txn))
        self._commit()
        return txn

    def get_transaction(self, txn_id: str) -> LedgerTransaction | None:
        row = self.conn.execute(
            "SELECT * FROM transactions WHERE id = ?", (txn_id,)
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    def find_by_fingerprint(
        self, fingerprint: str, exclude_id: str
    ) -> LedgerTransaction | None:
        """Return the oldest other row sharing this fingerprint.

        Rows already recorded as duplicates of ``exclude_id`` are skipped so
        re-delivering an original never turns it into a copy of its own
        duplicate.
        """
        row = self.conn.execute(
            "SELECT * FROM transactions"
            " WHERE fingerprint = ? AND id != ?"
            "   AND (duplicate_of IS NULL OR duplicate_of != ?)"
            " ORDER BY is_duplicate ASC, rowid ASC LIMIT 1",
            (fingerprint, exclude_id, exclude_id),
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    def find_same_day(
        self, date: str, amount: float, direction: str, exclude_id: str
    ) -> list[LedgerTransaction]:
        """Non-duplicate rows with the same date, amount and direction."""
        rows = self.conn.execute(
            "SELECT * FROM transactions"
            " WHERE date = ? AND amount = ? AND direction = ?"
            "   AND id != ? AND is_duplicate = 0"
            " ORDER BY rowid",
            (date, amount, direction, exclude_id),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def find_reversal_candidates(
        self,
        amount: float,
        date: str,
        window_days: int,
        limit: int,
        exclude_id: str,
    ) -> list[LedgerTransaction]:
        """Unreversed debits of this amount dated within [date - window, date].

        Most recent first. A debit already linked to ``exclude_id`` is kept
        so a re-delivered refund finds its original again.
        """
        rows = self.conn.execute(
            "SELECT * FROM transactions"
            " WHERE direction = 'debit'"
            "   AND amount = ?"
            "   AND (reversed_by IS NULL OR reversed_by = ?)"
            "   AND is_duplicate = 0"
            "   AND date >= date(?, ?)"
            "   AND date <= ?"
            "   AND id != ?"
            " ORDER BY date DESC, rowid DESC"
            " LIMIT ?",
            (amount, exclude_id, date, f"-{int(window_days)} days",
             date, exclude_id, limit),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def set_reversed_by(self, original_id: str, reversal_id: str) -> int:
        """Link ``original_id`` to the transaction that reverses it.

        Returns the number of rows updated: 0 if the original is missing,
        already reversed by someone else, or the ids are the same.
        """
        cur = self.conn.execute(
            "UPDATE transactions SET reversed_by = ?"
            " WHERE id = ? AND id != ?"
            "   AND (reversed_by IS NULL OR reversed_by = ?)",
            (reversal_id, original_id, reversal_id, reversal_id),
        )
        self._commit()
        return cur.rowcount

    def list_transactions(
        self,
        date_from: str | None = None,
        date_to: str | None = None,
        category: str | None = None,
        direction: str | None = None,
        limit: int | None = None,
        include_duplicates: bool = True,
    ) -> list[LedgerTransaction]:
        sql = "SELECT * FROM transactions WHERE 1 = 1"
        params: list = []
        if date_from:
            sql += " AND date >= ?"
            params.append(date_from)
        if date_to:
            sql += " AND date <= ?"
            params.append(date_to)
        if category:
            sql += " AND category = ?"
            params.append(category)
        if direction:
            sql += " AND direction = ?"
            params.append(direction)
        if not include_duplicates:
            sql += " AND is_duplicate = 0"
        sql += " ORDER BY date DESC, rowid DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    # ── Processed emails ────────────────────────────────────

    def is_email_processed(self, email_id: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM processed_emails WHERE email_id = ?", (email_id,)
        ).fetchone()
        return row is not None

    def mark_email_processed(self, email_id: str) -> ProcessedEmail:
        """Insert the processed marker. Existing markers are left untouched."""
        marker = ProcessedEmail(email_id=email_id)
        self.conn.execute(
            "INSERT OR IGNORE INTO processed_emails (email_id, processed_at)"
            " VALUES (?, ?)",
            (marker.email_id, marker.processed_at),
        )
        self._commit()
        return marker

    def get_processed_email(self, email_id: str) -> ProcessedEmail | None:
        row = self.conn.execute(
            "SELECT email_id, processed_at FROM processed_emails"
            " WHERE email_id = ?",
            (email_id,),
        ).fetchone()
        if row is None:
            return None
        return ProcessedEmail(
            email_id=row["email_id"], processed_at=row["processed_at"],
        )

    # ── Subscriptions ───────────────────────────────────────

    def upsert_subscription(self, sub: Subscription) -> Subscription:
        self.conn.execute(
            "INSERT INTO subscriptions"
            " (id, name, amount, currency, billing_cycle, next_billing_date,"
            "  category, status, email_id, last_detected)"
            " VALUES (?,?,?,?,?,?,?,?,?,?)"
            " ON CONFLICT(id) DO UPDATE SET"
            "  name = excluded.name,"
            "  amount = excluded.amount,"
            "  currency = excluded.currency,"
            "  billing_cycle = excluded.billing_cycle,"
            "  next_billing_date = excluded.next_billing_date,"
            "  category = excluded.category,"
            "  status = excluded.status,"
            "  email_id = excluded.email_id,"
            "  last_detected = excluded.last_detected,"
            "  updated_at = CURRENT_TIMESTAMP",
            (sub.id, sub.name, sub.amount, sub.currency, sub.billing_cycle,
             sub.next_billing_date, sub.category, sub.status,
             sub.email_id, sub.last_detected),
        )
        self._commit()
        return sub

    def get_subscription(self, sub_id: str) -> Subscription | None:
        row = self.conn.execute(
            "SELECT * FROM subscriptions WHERE id = ?", (sub_id,)
        ).fetchone()
        return self._row_to_subscription(row) if row else None

    def list_subscriptions(self) -> list[Subscription]:
        rows = self.conn.execute(
            "SELECT * FROM subscriptions"
            " ORDER BY next_billing_date IS NULL, next_billing_date, name"
        ).fetchall()
        return [self._row_to_subscription(r) for r in rows]

    # ── Settings ────────────────────────────────────────────

    def get_setting(self, key: str, default=None):
        row = self.conn.execute(
            "SELECT value FROM settings WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return default
        return json.loads(row["value"])

    def set_setting(self, key: str, value) -> None:
        self.conn.execute(
            "INSERT INTO settings (key, value, updated_at)"
            " VALUES (?, ?, CURRENT_TIMESTAMP)"
            " ON CONFLICT(key) DO UPDATE SET"
            "  value = excluded.value, updated_at = CURRENT_TIMESTAMP",
            (key, json.dumps(value)),
        )
        self._commit()

    def record_last_sync(self, when: str | None = None) -> str:
        when = when or _now()
        self.set_setting("last_sync", when)
        return when

    def get_last_sync(self) -> str | None:
        return self.get_setting("last_sync")

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _transaction_params(txn: LedgerTransaction) -> tuple:
        raw = json.dumps(txn.raw_metadata) if txn.raw_metadata is not None else None
        return (
            txn.id, txn.external_id, txn.date, txn.amount, txn.description,
            txn.category, txn.direction, txn.source, txn.merchant,
            txn.origin_email_id, txn.currency, raw, txn.fingerprint,
            1 if txn.is_duplicate else 0, txn.duplicate_of,
            txn.reverses, txn.reversed_by, txn.created_at,
        )

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> LedgerTransaction:
        raw = row["raw_metadata"]
        return LedgerTransaction(
            id=row["id"], external_id=row["external_id"],
            date=row["date"], amount=row["amount"],
            description=row["description"], category=row["category"],
            direction=row["direction"], source=row["source"],
            merchant=row["merchant"],
            origin_email_id=row["origin_email_id"],
            currency=row["currency"],
            raw_metadata=json.loads(raw) if raw else None,
            fingerprint=row["fingerprint"],
            is_duplicate=bool(row["is_duplicate"]),
            duplicate_of=row["duplicate_of"],
            reverses=row["reverses"], reversed_by=row["reversed_by"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_subscription(row: sqlite3.Row) -> Subscription:
        return Subscription(
            id=row["id"], name=row["name"], amount=row["amount"],
            currency=row["currency"], billing_cycle=row["billing_cycle"],
            next_billing_date=row["next_billing_date"],
            category=row["category"], status=row["status"],
            email_id=row["email_id"], last_detected=row["last_detected"],
        )
