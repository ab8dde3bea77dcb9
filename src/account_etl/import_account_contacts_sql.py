"""account_etl.import_account_contacts_sql

SQL-native load of the account contacts CSV (--mode sql).

The CSV rows are streamed into a temporary staging table with COPY, and
the transform runs in PostgreSQL:

    extensions = (pg_temp.extract_extension_ids(
                     pg_temp.clean_extension_value(feature_value)))[1]

The helper functions live in the session's pg_temp schema, so no schema
objects are created.  The whole load is one transaction; any failure
(for example a non-numeric account_id) rolls everything back.
"""

from __future__ import annotations

import csv
import logging
import sys
from pathlib import Path

import click
import psycopg
from psycopg import sql

from account_etl.config import CREATED_BY_MARKER, TARGET_SCHEMA, TARGET_TABLE
from account_etl.shared import REQUIRED_HEADERS, RunCounters, iter_source_records
from account_etl.storage import StorageClient

log = logging.getLogger(__name__)

STAGING_TABLE = "account_contacts_staging"

# ---------------------------------------------------------------------------
# pg_temp helper functions
# ---------------------------------------------------------------------------

CLEAN_EXTENSION_VALUE_FN = r"""
CREATE OR REPLACE FUNCTION pg_temp.clean_extension_value(raw text)
RETURNS text
LANGUAGE plpgsql
AS $fn$
DECLARE
    cleaned text := btrim(raw, E' \t\n\r\f\x0B');
    item text;
BEGIN
    IF cleaned IS NULL OR cleaned = '' THEN
        RETURN NULL;
    END IF;
    IF left(cleaned, 1) = '[' AND right(cleaned, 1) = ']' THEN
        BEGIN
            FOR item IN SELECT json_array_elements_text(cleaned::json) LOOP
                IF item IS NOT NULL AND btrim(item, E' \t\n\r\f\x0B') <> '' THEN
                    RETURN regexp_replace(btrim(item, E' \t\n\r\f\x0B'), '^"|"$', '', 'g');
                END IF;
            END LOOP;
        EXCEPTION WHEN others THEN
            RAISE NOTICE 'Failed to parse JSON extension value: %', cleaned;
        END;
    END IF;
    RETURN cleaned;
END
$fn$
"""

EXTRACT_EXTENSION_IDS_FN = r"""
CREATE OR REPLACE FUNCTION pg_temp.extract_extension_ids(feature_value text)
RETURNS integer[]
LANGUAGE plpgsql
AS $fn$
DECLARE
    token text;
    ids integer[] := ARRAY[]::integer[];
BEGIN
    IF feature_value IS NULL OR feature_value = '' THEN
        RETURN ids;
    END IF;
    FOREACH token IN ARRAY regexp_split_to_array(feature_value, E'[,;|\n\t]') LOOP
        token := btrim(token, E' \t\n\r\f\x0B');
        CONTINUE WHEN token = '';
        IF left(token, 1) = '+' THEN
            RAISE NOTICE 'Skipping feature_value % - starts with +', token;
            CONTINUE;
        END IF;
        BEGIN
            ids := ids || SPLIT_PART(CONVERT_FROM(DECODE(token, 'hex'), 'UTF8'), '.', 2)::INTEGER;
        EXCEPTION WHEN others THEN
            RAISE NOTICE 'Error decoding feature_value %: %', token, SQLERRM;
        END;
    END LOOP;
    RETURN ids;
END
$fn$
"""


def create_extract_functions(conn: psycopg.Connection) -> None:
    """Create the pg_temp helpers on this connection's session."""
    conn.execute(CLEAN_EXTENSION_VALUE_FN)
    conn.execute(EXTRACT_EXTENSION_IDS_FN)


def sql_extract_extension_ids(conn: psycopg.Connection, feature_value: str | None) -> list[int]:
    """Run the SQL extractor on one value. create_extract_functions() first."""
    row = conn.execute(
        "SELECT pg_temp.extract_extension_ids(pg_temp.clean_extension_value(%s::text))",
        (feature_value,),
    ).fetchone()
    return list(row[0])


# ---------------------------------------------------------------------------
# Staging + transform statements
# ---------------------------------------------------------------------------

_CREATE_STAGING = sql.SQL(
    """
    CREATE TEMP TABLE {staging} (
        row_no        integer NOT NULL,
        account_id    text,
        feature_value text,
        emails        text,
        phone_numbers text
    ) ON COMMIT DROP
    """
).format(staging=sql.Identifier(STAGING_TABLE))

_COPY_STAGING = sql.SQL(
    "COPY {staging} (row_no, account_id, feature_value, emails, phone_numbers) FROM STDIN"
).format(staging=sql.Identifier(STAGING_TABLE))

_STAGING_STATS = sql.SQL(
    """
    SELECT
      count(*) - count(DISTINCT btrim(account_id)),
      coalesce(sum(cardinality(ids)), 0),
      coalesce(sum(greatest(cardinality(ids) - 1, 0)), 0),
      count(*) FILTER (WHERE cardinality(ids) = 0)
    FROM (
      SELECT account_id,
             pg_temp.extract_extension_ids(pg_temp.clean_extension_value(feature_value)) AS ids
      FROM {staging}
    ) AS s
    """
).format(staging=sql.Identifier(STAGING_TABLE))

_INSERT_FROM_STAGING = sql.SQL(
    """
    INSERT INTO {table} (account_id, emails, phone_numbers, extensions, created_by)
    SELECT DISTINCT ON (s.account_id)
      s.account_id,
      s.emails,
      s.phone_numbers,
      (pg_temp.extract_extension_ids(pg_temp.clean_extension_value(s.feature_value)))[1],
      %s
    FROM (
      SELECT row_no,
             btrim(account_id)::INTEGER AS account_id,
             coalesce(emails, '') AS emails,
             coalesce(phone_numbers, '') AS phone_numbers,
             feature_value
      FROM {staging}
    ) AS s
    ORDER BY s.account_id, s.row_no DESC
    ON CONFLICT (account_id) DO UPDATE SET
      extensions = EXCLUDED.extensions,
      emails = EXCLUDED.emails,
      phone_numbers = EXCLUDED.phone_numbers,
      created_by = EXCLUDED.created_by,
      updated_at = CURRENT_TIMESTAMP
    """
).format(
    table=sql.Identifier(TARGET_SCHEMA, TARGET_TABLE),
    staging=sql.Identifier(STAGING_TABLE),
)


# ---------------------------------------------------------------------------
# Header-only pre-scan
# ---------------------------------------------------------------------------

def validate_csv_headers(csv_path: Path, run_id: str) -> None:
    """Open the file just far enough to read the header row and validate it."""
    with csv_path.open(encoding="utf-8-sig", newline="") as fh:
        reader = csv.DictReader(fh)
        header_set = {k.strip() for k in (reader.fieldnames or [])}
        missing = REQUIRED_HEADERS - header_set
        if missing:
            click.echo(
                f"[{run_id}] FATAL: {csv_path.name} missing required headers: "
                f"{sorted(missing)}",
                err=True,
            )
            sys.exit(1)


# ---------------------------------------------------------------------------
# DB phase
# ---------------------------------------------------------------------------

def _copy_to_staging(conn: psycopg.Connection, csv_path: Path) -> int:
    rows = 0
    with conn.cursor() as cur:
        with cur.copy(_COPY_STAGING) as copy:
            for record in iter_source_records(csv_path):
                copy.write_row((
                    record.row_number,
                    record.account_id,
                    record.feature_value,
                    record.emails,
                    record.phone_numbers,
                ))
                rows += 1
    return rows


def _log_notice(diag: psycopg.errors.Diagnostic) -> None:
    log.info("%s", diag.message_primary)


def load_from_staging(
    conn: psycopg.Connection,
    csv_path: Path,
    counters: RunCounters,
) -> None:
    """Stage csv_path and upsert it. Caller manages transaction."""
    create_extract_functions(conn)
    conn.execute(_CREATE_STAGING)
    counters.rows_read += _copy_to_staging(conn, csv_path)

    duplicates, extracted, discarded, without = conn.execute(_STAGING_STATS).fetchone()
    counters.duplicate_account_ids += int(duplicates)
    counters.extension_ids_extracted += int(extracted)
    counters.extension_ids_discarded += int(discarded)
    counters.rows_without_extension += int(without)

    cur = conn.execute(_INSERT_FROM_STAGING, (CREATED_BY_MARKER,))
    counters.rows_upserted += cur.rowcount


def _run_sql_load(
    run_id: str,
    storage: StorageClient,
    counters: RunCounters,
    csv_path: Path,
    dry_run: bool,
) -> None:
    counters.write_mode = "sql"
    try:
        with storage.connection() as conn:
            conn.add_notice_handler(_log_notice)
            try:
                with conn.transaction(force_rollback=dry_run):
                    load_from_staging(conn, csv_path, counters)
            finally:
                conn.remove_notice_handler(_log_notice)
    except psycopg.Error as exc:
        click.echo(
            f"[{run_id}] FATAL: SQL load failed, all changes rolled back: {exc}",
            err=True,
        )
        sys.exit(1)

    click.echo(
        f"[{run_id}] SQL load: {counters.rows_read} rows staged, "
        f"{counters.rows_upserted} upserted"
    )
    if dry_run:
        click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
