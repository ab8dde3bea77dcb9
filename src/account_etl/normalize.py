"""Normalization functions for account contacts CSV ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import json
import logging
import re

from account_etl.config import ASCII_WHITESPACE

log = logging.getLogger(__name__)

_INTEGER_RE = re.compile(r"[+-]?[0-9]+")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing ASCII whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip(ASCII_WHITESPACE)
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: text_or_empty
# ---------------------------------------------------------------------------

def text_or_empty(value: str | None) -> str:
    """Return the value verbatim, or '' when absent."""
    return value if value else ""


# ---------------------------------------------------------------------------
# Rule 3: parse_account_id
# ---------------------------------------------------------------------------

def parse_account_id(value: str | None) -> int | None:
    """Parse a base-10 account id, returning None on failure.

    Range is not checked here; the target column enforces it.
    """
    v = trim(value)
    if v is None or not _INTEGER_RE.fullmatch(v):
        return None
    return int(v)


# ---------------------------------------------------------------------------
# Rule 4: clean_extension_value
# ---------------------------------------------------------------------------

def clean_extension_value(value: str | None) -> str | None:
    """Unwrap a JSON-array cell to its first non-empty element.

    Some exports store the feature value as '["4865...", ""]'.  The first
    element with non-blank text wins, minus one surrounding pair of double
    quotes.  Anything else (including a malformed array) is returned
    trimmed.
    """
    v = trim(value)
    if v is None:
        return None
    if not (v.startswith("[") and v.endswith("]")):
        return v
    try:
        parsed = json.loads(v)
    except json.JSONDecodeError:
        log.warning("Failed to parse JSON extension value: %s", v)
        return v
    for item in parsed:
        if item is None:
            continue
        text = item if isinstance(item, str) else json.dumps(item)
        text = text.strip(ASCII_WHITESPACE)
        if text:
            return text.removeprefix('"').removesuffix('"')
    return v
