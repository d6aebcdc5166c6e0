"""Tests for schema migration system."""

import sqlite3
from pathlib import Path

import pytest

from mailledger.database.repository import Repository

MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "mailledger" / "database" / "migrations"


@pytest.fixture
def repo():
    r = Repository(":memory:")
    yield r
    r.close()


class TestMigrationApply:
    def test_creates_all_tables(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)
        tables = {
            row[0]
            for row in repo.conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        expected = {
            "schema_version", "transactions", "processed_emails",
            "settings", "subscriptions",
        }
        assert expected.issubset(tables)

    def test_tracks_version(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)
        row = repo.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        assert row[0] == 2

    def test_idempotent(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)
        repo.apply_migrations(MIGRATIONS_DIR)
        row = repo.conn.execute(
            "SELECT COUNT(*) FROM schema_version"
        ).fetchone()
        assert row[0] == 2

    def test_creates_indexes(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)
        indexes = {
            row[0]
            for row in repo.conn.execute(
                "SELECT name FROM sqlite_master WHERE type='index'"
            ).fetchall()
        }
        assert {
            "idx_txn_fingerprint", "idx_txn_date_amount_dir",
            "idx_txn_reversal_lookup", "idx_processed_email_id",
            "idx_subscriptions_status",
        }.issubset(indexes)

    def test_failed_migration_is_retried(self, repo, tmp_path):
        (tmp_path / "001_ok.sql").write_text("CREATE TABLE a (id INTEGER)")
        (tmp_path / "002_bad.sql").write_text("CREATE TABLE b (id INTEGER); NOT SQL")
        with pytest.raises(sqlite3.OperationalError):
            repo.apply_migrations(tmp_path)
        row = repo.conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        assert row[0] == 1


class TestSchemaConstraints:
    def _insert(self, repo, **kw):
        row = dict(
            id="t1", date="2024-01-01", amount=10.0, description="x",
            category="Other", direction="debit", fingerprint="fp",
            created_at="2024-01-01T00:00:00",
        )
        row.update(kw)
        cols = ", ".join(row)
        marks = ", ".join("?" * len(row))
        repo.conn.execute(f"INSERT INTO transactions ({cols}) VALUES ({marks})", tuple(row.values()))

    def test_rejects_non_positive_amount(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)
        with pytest.raises(sqlite3.IntegrityError):
            self._insert(repo, amount=0)

    def test_rejects_unknown_direction(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)
        with pytest.raises(sqlite3.IntegrityError):
            self._insert(repo, direction="sideways")

    @pytest.mark.parametrize("column", ["reverses", "reversed_by", "duplicate_of"])
    def test_rejects_self_links(self, repo, column):
        repo.apply_migrations(MIGRATIONS_DIR)
        with pytest.raises(sqlite3.IntegrityError):
            self._insert(repo, **{column: "t1"})
