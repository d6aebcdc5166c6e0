"""Reporting queries over the ledger.

Duplicates stay in the ledger for audit but every sum here filters them
out with ``is_duplicate = 0``.
"""

from __future__ import annotations

import sqlite3


def get_balance_summary(conn: sqlite3.Connection) -> dict:
    """Total income, expense and their difference across non-duplicate rows."""
    row = conn.execute(
        "SELECT"
        "  COALESCE(SUM(CASE WHEN direction = 'credit' THEN amount ELSE 0 END), 0)"
        "    AS total_income,"
        "  COALESCE(SUM(CASE WHEN direction = 'debit' THEN amount ELSE 0 END), 0)"
        "    AS total_expense"
        " FROM transactions"
        " WHERE is_duplicate = 0"
    ).fetchone()
    summary = dict(row)
    summary["balance"] = round(summary["total_income"] - summary["total_expense"], 2)
    return summary


def _category_totals(
    conn: sqlite3.Connection,
    direction: str,
    start_date: str | None,
    end_date: str | None,
) -> list[dict]:
    sql = (
        "SELECT category, SUM(amount) AS total, COUNT(*) AS count"
        " FROM transactions"
        " WHERE direction = ? AND is_duplicate = 0"
    )
    params: list = [direction]
    if start_date:
        sql += " AND date >= ?"
        params.append(start_date)
    if end_date:
        sql += " AND date <= ?"
        params.append(end_date)
    sql += " GROUP BY category ORDER BY total DESC"
    return [dict(r) for r in conn.execute(sql, params).fetchall()]


def get_spending_by_category(
    conn: sqlite3.Connection,
    start_date: str | None = None,
    end_date: str | None = None,
) -> list[dict]:
    return _category_totals(conn, "debit", start_date, end_date)


def get_income_summary(
    conn: sqlite3.Connection,
    start_date: str | None = None,
    end_date: str | None = None,
) -> list[dict]:
    return _category_totals(conn, "credit", start_date, end_date)


def get_monthly_spending(conn: sqlite3.Connection, year: int) -> list[dict]:
    """Debit totals per month ('01'..'12') for a calendar year."""
    rows = conn.execute(
        "SELECT strftime('%m', date) AS month, SUM(amount) AS total"
        " FROM transactions"
        " WHERE direction = 'debit' AND is_duplicate = 0"
        "   AND strftime('%Y', date) = ?"
        " GROUP BY month"
        " ORDER BY month ASC",
        (str(year),),
    ).fetchall()
    return [dict(r) for r in rows]


def get_status_counts(conn: sqlite3.Connection) -> dict:
    """Counts for the `mailledger status` command."""
    row = conn.execute(
        "SELECT"
        "  (SELECT COUNT(*) FROM transactions) AS total_txns,"
        "  (SELECT COUNT(*) FROM transactions WHERE is_duplicate = 1) AS duplicates,"
        "  (SELECT COUNT(*) FROM transactions WHERE reverses IS NOT NULL) AS reversals,"
        "  (SELECT COUNT(*) FROM processed_emails) AS processed_emails,"
        "  (SELECT COUNT(*) FROM subscriptions) AS subscriptions"
    ).fetchone()
    return dict(row)


def find_link_violations(conn: sqlite3.Connection) -> list[dict]:
    """Rows whose reversal links are asymmetric or self-referencing.

    An empty list means every ``reversed_by`` has a matching ``reverses``
    on the other side and vice versa.
    """
    rows = conn.execute(
        "SELECT t.id, 'self_link' AS problem FROM transactions t"
        " WHERE t.reverses = t.id OR t.reversed_by = t.id"
        " UNION ALL"
        " SELECT t.id, 'reversed_by_without_reverses' FROM transactions t"
        " WHERE t.reversed_by IS NOT NULL AND NOT EXISTS ("
        "   SELECT 1 FROM transactions r"
        "   WHERE r.id = t.reversed_by AND r.reverses = t.id"
        " )"
        " UNION ALL"
        " SELECT t.id, 'reverses_without_reversed_by' FROM transactions t"
        " WHERE t.reverses IS NOT NULL AND NOT EXISTS ("
        "   SELECT 1 FROM transactions o"
        "   WHERE o.id = t.reverses AND o.reversed_by = t.id"
        " )"
        " UNION ALL"
        " SELECT t.id, 'duplicate_and_reversal' FROM transactions t"
        " WHERE t.is_duplicate = 1 AND t.reverses IS NOT NULL"
    ).fetchall()
    return [{"id": r[0], "problem": r[1]} for r in rows]
