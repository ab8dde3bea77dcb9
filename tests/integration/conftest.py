"""Integration test fixtures.

Applies the migrations against an ephemeral PostgreSQL database provided
by pytest-postgresql before each integration test.
"""

from __future__ import annotations

import csv
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

from account_etl.storage import StorageClient

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_account_contacts.sql",
]

CSV_HEADERS = ["account_id", "feature_value", "emails", "phone_numbers"]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return a psycopg connection with schema applied, plus its DSN.

    Each test gets a fresh schema via function scope so tests are isolated.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            sql = migration.read_text(encoding="utf-8")
            conn.execute(sql)
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture
def storage(db_conn):
    _, dsn = db_conn
    with StorageClient(dsn, max_size=2, open_timeout=10.0) as client:
        yield client


# ---------------------------------------------------------------------------
# CSV + table fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def account_row():
    """Build one CSV row dict; kit becomes a hex-encoded 'kit.<kit>' feature value."""
    def _build(account_id: int | str, kit: int | None = None, **overrides) -> dict[str, str]:
        row = {
            "account_id": str(account_id),
            "feature_value": f"kit.{kit}".encode().hex() if kit is not None else "",
            "emails": f"user{account_id}@example.com",
            "phone_numbers": f"1810965{account_id}",
        }
        row.update(overrides)
        return row

    return _build


@pytest.fixture
def accounts_csv(tmp_path):
    """Write rows to tmp_path/accounts.csv and return its path."""
    def _write(rows: list[dict[str, str]], headers: list[str] = CSV_HEADERS) -> Path:
        path = tmp_path / "accounts.csv"
        with path.open("w", newline="", encoding="utf-8") as fh:
            writer = csv.DictWriter(fh, fieldnames=headers)
            writer.writeheader()
            for row in rows:
                writer.writerow({h: row.get(h, "") for h in headers})
        return path

    return _write


@pytest.fixture
def fetch_contacts(db_conn):
    """Return {account_id: (emails, phone_numbers, extensions, created_by, updated_at)}."""
    conn, _ = db_conn

    def _fetch() -> dict[int, tuple]:
        rows = conn.execute(
            """
            SELECT account_id, emails, phone_numbers, extensions, created_by, updated_at
            FROM customer.account_contacts
            ORDER BY account_id
            """
        ).fetchall()
        return {row[0]: row[1:] for row in rows}

    return _fetch
