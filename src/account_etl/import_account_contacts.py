"""account_etl.import_account_contacts

CLI entrypoint for the account contacts migration.

Reads an account export CSV (account_id, emails, phone_numbers,
feature_value|extensions), derives the extension id from the hex-encoded
feature value, and upserts one customer.account_contacts row per account_id.

Modes (--mode):
  procedural  map rows in Python and upsert them (default)
  sql         stage the CSV in a temp table and transform in PostgreSQL

Write strategy (procedural): up to BATCH_THRESHOLD records are upserted one
statement at a time inside a single transaction, each under its own
savepoint, so a bad record is skipped and reported.  Larger files are
upserted with multi-row statements in one all-or-nothing transaction.

Usage:
    DB_HOST=db.internal DB_NAME=crm DB_USER=etl DB_PASSWORD=... \\
    python -m account_etl.import_account_contacts \\
        --csv-path MoveAccount.csv \\
        --rejects-path artifacts/rejects/account_contacts_rejects.csv
"""

from __future__ import annotations

import json
import logging
import signal
import sys
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

import click
import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from account_etl.config import (
    BATCH_CHUNK_SIZE,
    BATCH_THRESHOLD,
    CREATED_BY_MARKER,
    DEFAULT_DB_HOST,
    DEFAULT_DB_NAME,
    DEFAULT_DB_PASSWORD,
    DEFAULT_DB_PORT,
    DEFAULT_DB_USER,
    DEFAULT_SAMPLE_SIZE,
    POOL_OPEN_TIMEOUT_SECONDS,
    TARGET_SCHEMA,
    TARGET_TABLE,
    DbSettings,
)
from account_etl.feature_value import extract_extension_ids
from account_etl.normalize import (
    clean_extension_value,
    parse_account_id,
    text_or_empty,
)
from account_etl.shared import (
    AccountContact,
    MissingHeadersError,
    RecordParseError,
    RejectWriter,
    RunCounters,
    SourceRecord,
    iter_source_records,
    write_run_report,
)
from account_etl.storage import StorageClient

log = logging.getLogger(__name__)

WRITE_MODE_PER_ROW = "per_row"
WRITE_MODE_BATCH = "batch"

TARGET = sql.Identifier(TARGET_SCHEMA, TARGET_TABLE)
UPSERT_COLUMNS = ("account_id", "emails", "phone_numbers", "extensions", "created_by")


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------

def map_source_record(record: SourceRecord, counters: RunCounters) -> AccountContact:
    """Map one CSV row to its target record.

    The stored extension is the first id decoded from the feature value;
    further ids in the same cell are counted as discarded.
    """
    account_id = parse_account_id(record.account_id)
    if account_id is None:
        raise RecordParseError("invalid_account_id", repr(record.account_id))

    extension_ids = extract_extension_ids(clean_extension_value(record.feature_value))
    counters.extension_ids_extracted += len(extension_ids)
    if not extension_ids:
        counters.rows_without_extension += 1
        extensions = None
    else:
        extensions = extension_ids[0]
        if len(extension_ids) > 1:
            counters.extension_ids_discarded += len(extension_ids) - 1
            log.warning(
                "account_id %s: %d extension ids in feature_value, keeping %s",
                account_id, len(extension_ids), extensions,
            )

    return AccountContact(
        account_id=account_id,
        emails=text_or_empty(record.emails),
        phone_numbers=text_or_empty(record.phone_numbers),
        extensions=extensions,
        created_by=CREATED_BY_MARKER,
    )


def select_write_mode(record_count: int, threshold: int = BATCH_THRESHOLD) -> str:
    return WRITE_MODE_BATCH if record_count > threshold else WRITE_MODE_PER_ROW


# ---------------------------------------------------------------------------
# DB helpers: upsert
# ---------------------------------------------------------------------------

def _upsert_statement(row_count: int) -> sql.Composed:
    row = sql.SQL("({})").format(
        sql.SQL(", ").join([sql.Placeholder()] * len(UPSERT_COLUMNS))
    )
    return sql.SQL(
        """
        INSERT INTO {table} ({columns})
        VALUES {rows}
        ON CONFLICT (account_id) DO UPDATE SET
          emails = EXCLUDED.emails,
          phone_numbers = EXCLUDED.phone_numbers,
          extensions = EXCLUDED.extensions,
          created_by = EXCLUDED.created_by,
          updated_at = CURRENT_TIMESTAMP
        """
    ).format(
        table=TARGET,
        columns=sql.SQL(", ").join(map(sql.Identifier, UPSERT_COLUMNS)),
        rows=sql.SQL(", ").join([row] * row_count),
    )


_SINGLE_UPSERT = _upsert_statement(1)


def upsert_account_contact(conn: psycopg.Connection, contact: AccountContact) -> None:
    """Insert or fully overwrite one account contact. Caller manages transaction."""
    conn.execute(_SINGLE_UPSERT, contact.as_params())


def upsert_account_contacts_batch(
    conn: psycopg.Connection,
    contacts: list[AccountContact],
    chunk_size: int = BATCH_CHUNK_SIZE,
) -> int:
    """Upsert contacts with multi-row statements. Caller manages transaction.

    account_ids must be unique within contacts; one statement cannot
    update the same row twice.
    """
    written = 0
    for start in range(0, len(contacts), chunk_size):
        chunk = contacts[start:start + chunk_size]
        params = [p for contact in chunk for p in contact.as_params()]
        conn.execute(_upsert_statement(len(chunk)), params)
        written += len(chunk)
    return written


def latest_by_account_id(contacts: list[AccountContact]) -> list[AccountContact]:
    """Collapse repeated account_ids, keeping the last occurrence."""
    latest: dict[int, AccountContact] = {}
    for contact in contacts:
        latest.pop(contact.account_id, None)
        latest[contact.account_id] = contact
    return list(latest.values())


# ---------------------------------------------------------------------------
# DB helpers: verification
# ---------------------------------------------------------------------------

def count_account_contacts(conn: psycopg.Connection) -> int:
    row = conn.execute(
        sql.SQL("SELECT count(*) FROM {table}").format(table=TARGET)
    ).fetchone()
    return int(row[0])


def sample_account_contacts(
    conn: psycopg.Connection,
    limit: int = DEFAULT_SAMPLE_SIZE,
) -> list[dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            sql.SQL("SELECT * FROM {table} ORDER BY account_id LIMIT %s").format(
                table=TARGET
            ),
            (limit,),
        )
        return cur.fetchall()


def verify_account_contacts(
    storage: StorageClient,
    run_id: str,
    counters: RunCounters,
    sample_size: int,
) -> None:
    """Print the table row count and a small sample for the operator."""
    with storage.connection() as conn:
        total = count_account_contacts(conn)
        sample = sample_account_contacts(conn, sample_size)
    counters.table_row_count = total

    click.echo(f"[{run_id}] Verification: {total} rows in {TARGET_SCHEMA}.{TARGET_TABLE}")
    for row in sample:
        click.echo(f"[{run_id}]   {json.dumps(row, default=str)}")


def _verify_or_exit(
    storage: StorageClient,
    run_id: str,
    counters: RunCounters,
    sample_size: int,
) -> None:
    try:
        verify_account_contacts(storage, run_id, counters, sample_size)
    except psycopg.OperationalError:
        raise
    except psycopg.Error as exc:
        click.echo(f"[{run_id}] FATAL: verification read-back failed: {exc}", err=True)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Pre-scan
# ---------------------------------------------------------------------------

def _prescan(
    csv_file: Path,
    run_id: str,
    counters: RunCounters,
    rejects: RejectWriter,
) -> list[tuple[SourceRecord, AccountContact]]:
    mapped: list[tuple[SourceRecord, AccountContact]] = []
    seen: set[int] = set()
    try:
        for record in iter_source_records(csv_file):
            counters.rows_read += 1
            try:
                contact = map_source_record(record, counters)
            except RecordParseError as exc:
                rejects.write(record.raw, str(exc))
                counters.rows_rejected += 1
                counters.warnings.append(f"row {record.row_number}: {exc}")
                continue
            if contact.account_id in seen:
                counters.duplicate_account_ids += 1
            seen.add(contact.account_id)
            mapped.append((record, contact))
    except MissingHeadersError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    click.echo(
        f"[{run_id}] Pre-scan: {counters.rows_read} rows read, "
        f"{counters.rows_rejected} rejected, {len(mapped)} valid"
    )
    return mapped


# ---------------------------------------------------------------------------
# Per-row run
# ---------------------------------------------------------------------------

def _run_per_row(
    conn: psycopg.Connection,
    mapped: list[tuple[SourceRecord, AccountContact]],
    run_id: str,
    counters: RunCounters,
    rejects: RejectWriter,
    dry_run: bool,
) -> None:
    with conn.transaction(force_rollback=dry_run):
        for record, contact in mapped:
            try:
                with conn.transaction():
                    upsert_account_contact(conn, contact)
            except psycopg.Error as exc:
                if conn.broken:
                    raise
                click.echo(
                    f"[{run_id}] Error upserting account_id {contact.account_id}: {exc}",
                    err=True,
                )
                rejects.write(record.raw, f"db_error: {exc}")
                counters.rows_rejected += 1
                counters.db_phase_errors += 1
                counters.warnings.append(
                    f"row {record.row_number} account_id={contact.account_id} "
                    f"{type(exc).__name__}: {exc}"
                )
                continue
            counters.rows_upserted += 1

    click.echo(
        f"[{run_id}] Per-row upsert: {counters.rows_upserted} succeeded, "
        f"{counters.db_phase_errors} errors"
    )


# ---------------------------------------------------------------------------
# Batch run
# ---------------------------------------------------------------------------

def _run_batch(
    conn: psycopg.Connection,
    mapped: list[tuple[SourceRecord, AccountContact]],
    run_id: str,
    counters: RunCounters,
    dry_run: bool,
) -> None:
    contacts = latest_by_account_id([contact for _, contact in mapped])
    with conn.transaction(force_rollback=dry_run):
        written = upsert_account_contacts_batch(conn, contacts)
    counters.rows_upserted += written
    click.echo(f"[{run_id}] Batch upsert: {written} records")


# ---------------------------------------------------------------------------
# Procedural pipeline
# ---------------------------------------------------------------------------

def _run_procedural(
    run_id: str,
    storage: StorageClient,
    counters: RunCounters,
    rejects: RejectWriter,
    mapped: list[tuple[SourceRecord, AccountContact]],
    dry_run: bool,
    batch_threshold: int = BATCH_THRESHOLD,
) -> None:
    # Decided on rows read, so prescan rejects do not change the strategy.
    write_mode = select_write_mode(counters.rows_read, batch_threshold)
    counters.write_mode = write_mode

    if write_mode == WRITE_MODE_BATCH:
        click.echo(f"[{run_id}] Using batch upsert for {len(mapped)} records")
        try:
            with storage.connection() as conn:
                _run_batch(conn, mapped, run_id, counters, dry_run)
        except psycopg.Error as exc:
            click.echo(
                f"[{run_id}] FATAL: batch upsert failed, all changes rolled back: {exc}",
                err=True,
            )
            sys.exit(1)
    else:
        click.echo(f"[{run_id}] Using per-row upsert for {len(mapped)} records")
        try:
            with storage.connection() as conn:
                _run_per_row(conn, mapped, run_id, counters, rejects, dry_run)
        except psycopg.Error as exc:
            click.echo(f"[{run_id}] FATAL: run failed with DB error: {exc}", err=True)
            sys.exit(1)

    if dry_run:
        click.echo(f"[{run_id}] [dry-run] All changes rolled back.")


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

def _exit_on_signal(signum: int, frame: Any) -> None:
    # SystemExit unwinds through StorageClient.__exit__, closing the pool.
    raise SystemExit(128 + signum)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="procedural",
    type=click.Choice(["procedural", "sql"]),
    show_default=True,
    help="Load mode",
)
@click.option("--csv-path", required=True, type=click.Path(), help="Input account export CSV")
@click.option("--db-dsn", default=None, envvar="DB_DSN", help="PostgreSQL DSN; overrides the --db-* settings")
@click.option("--db-host", default=DEFAULT_DB_HOST, envvar="DB_HOST", show_default=True)
@click.option("--db-port", default=DEFAULT_DB_PORT, envvar="DB_PORT", type=int, show_default=True)
@click.option("--db-name", default=DEFAULT_DB_NAME, envvar="DB_NAME", show_default=True)
@click.option("--db-user", default=DEFAULT_DB_USER, envvar="DB_USER", show_default=True)
@click.option("--db-password", default=DEFAULT_DB_PASSWORD, envvar="DB_PASSWORD")
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/account_contacts_rejects.csv",
    show_default=True,
)
@click.option(
    "--report-dir",
    default="./artifacts/reports",
    type=click.Path(),
    show_default=True,
    help="Directory for the JSON run report",
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--sample-size",
    default=DEFAULT_SAMPLE_SIZE,
    type=int,
    show_default=True,
    help="Rows printed by the verification read-back",
)
@click.option(
    "--pool-open-timeout",
    default=POOL_OPEN_TIMEOUT_SECONDS,
    type=float,
    show_default=True,
    help="Seconds to wait for the first database connection",
)
@click.option("--verbose", is_flag=True, default=False, help="Log every extracted and skipped feature value")
def main(
    mode: str,
    csv_path: str,
    db_dsn: str | None,
    db_host: str,
    db_port: int,
    db_name: str,
    db_user: str,
    db_password: str,
    dry_run: bool,
    rejects_path: str,
    report_dir: str,
    run_id: str | None,
    sample_size: int,
    pool_open_timeout: float,
    verbose: bool,
) -> None:
    """Load account contacts from a CSV export into customer.account_contacts."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    signal.signal(signal.SIGTERM, _exit_on_signal)

    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    counters = RunCounters()
    rejects = RejectWriter(Path(rejects_path))
    settings = DbSettings(
        host=db_host,
        port=db_port,
        dbname=db_name,
        user=db_user,
        password=db_password,
        dsn=db_dsn,
    )

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    csv_file = Path(csv_path)
    if not csv_file.is_file():
        click.echo(f"[{run_id}] FATAL: CSV file not found: {csv_file}", err=True)
        sys.exit(1)

    try:
        if mode == "sql":
            from account_etl.import_account_contacts_sql import (
                _run_sql_load,
                validate_csv_headers,
            )
            validate_csv_headers(csv_file, run_id)
            with StorageClient(settings.conninfo(), open_timeout=pool_open_timeout) as storage:
                _run_sql_load(run_id, storage, counters, csv_file, dry_run)
                _verify_or_exit(storage, run_id, counters, sample_size)
        else:
            mapped = _prescan(csv_file, run_id, counters, rejects)
            if not mapped:
                click.echo(f"[{run_id}] No records found in CSV file")
            else:
                with StorageClient(settings.conninfo(), open_timeout=pool_open_timeout) as storage:
                    _run_procedural(run_id, storage, counters, rejects, mapped, dry_run)
                    _verify_or_exit(storage, run_id, counters, sample_size)
    except psycopg.OperationalError as exc:
        click.echo(
            f"[{run_id}] FATAL: cannot reach database ({settings.describe()}): {exc}",
            err=True,
        )
        sys.exit(1)
    finally:
        rejects.close()

    report_path = write_run_report(
        run_id, started_at, mode, dry_run,
        {"csv_path": str(csv_file), "rejects_path": rejects_path},
        counters,
        report_dir=Path(report_dir),
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    click.echo(
        f"[{run_id}] Done: {counters.rows_read} rows read, "
        f"{counters.rows_rejected} rejected, "
        f"{counters.rows_upserted} upserted, "
        f"{counters.db_phase_errors} DB errors, "
        f"{counters.extension_ids_extracted} extension ids extracted"
    )


if __name__ == "__main__":
    main()
