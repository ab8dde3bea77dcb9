"""account_etl.shared

Shared utilities used by both the procedural and the SQL load modes.
Includes the record types, RejectWriter, RunCounters, CSV header
handling, and report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from account_etl.config import CREATED_BY_MARKER

# ---------------------------------------------------------------------------
# CSV columns
# ---------------------------------------------------------------------------

ACCOUNT_ID_HEADER = "account_id"
EMAILS_HEADER = "emails"
PHONE_NUMBERS_HEADER = "phone_numbers"
# Exports name the feature value column either way; the first one present wins.
FEATURE_VALUE_HEADERS = ("feature_value", "extensions")

REQUIRED_HEADERS = {ACCOUNT_ID_HEADER}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RecordParseError(ValueError):
    """Raised when a source row cannot be mapped to an account contact."""

    def __init__(self, reason: str, detail: str = "") -> None:
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason


class MissingHeadersError(Exception):
    """Raised when the input CSV lacks a required column."""

    def __init__(self, missing: set[str]) -> None:
        super().__init__(f"missing headers after trim: {sorted(missing)}")
        self.missing = missing


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class SourceRecord:
    """One input row, before mapping."""

    row_number: int
    account_id: str | None
    emails: str | None
    phone_numbers: str | None
    feature_value: str | None
    raw: dict[str, str] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class AccountContact:
    """One target row; account_id is the upsert key."""

    account_id: int
    emails: str
    phone_numbers: str
    extensions: int | None
    created_by: str = CREATED_BY_MARKER

    def as_params(self) -> tuple[Any, ...]:
        return (
            self.account_id,
            self.emails,
            self.phone_numbers,
            self.extensions,
            self.created_by,
        )


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    @property
    def path(self) -> Path:
        return self._path

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    rows_read: int = 0
    rows_rejected: int = 0
    rows_upserted: int = 0
    db_phase_errors: int = 0
    extension_ids_extracted: int = 0
    extension_ids_discarded: int = 0
    rows_without_extension: int = 0
    duplicate_account_ids: int = 0
    write_mode: str | None = None
    table_row_count: int | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# CSV reading
# ---------------------------------------------------------------------------

def normalize_headers(raw: dict[str, str]) -> dict[str, str]:
    """Return a new dict with header keys whitespace-stripped."""
    return {k.strip(): v for k, v in raw.items() if k is not None}


def resolve_feature_value_header(headers: set[str]) -> str | None:
    for name in FEATURE_VALUE_HEADERS:
        if name in headers:
            return name
    return None


def iter_source_records(csv_path: Path) -> Iterator[SourceRecord]:
    """Yield one SourceRecord per data row of csv_path.

    Raises MissingHeadersError before yielding anything when a required
    column is absent.
    """
    with csv_path.open(encoding="utf-8-sig", newline="") as fh:
        reader = csv.DictReader(fh)
        headers = {k.strip() for k in (reader.fieldnames or [])}
        missing = REQUIRED_HEADERS - headers
        if missing:
            raise MissingHeadersError(missing)
        feature_header = resolve_feature_value_header(headers)

        for idx, raw_row in enumerate(reader, start=1):
            row = normalize_headers(raw_row)
            yield SourceRecord(
                row_number=idx,
                account_id=row.get(ACCOUNT_ID_HEADER),
                emails=row.get(EMAILS_HEADER),
                phone_numbers=row.get(PHONE_NUMBERS_HEADER),
                feature_value=row.get(feature_header) if feature_header else None,
                raw=row,
            )


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: RunCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
