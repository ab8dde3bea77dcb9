"""account_etl.feature_value

Extraction of extension (device kit) ids from hex-encoded feature values.

A feature value cell holds one or more tokens separated by any of
FEATURE_VALUE_DELIMITERS.  Each token is the hex encoding of a UTF-8 string
such as 'Hello.442'; the extension id is the integer after the first '.'.

The decode rule is the one PostgreSQL applies in

    SPLIT_PART(CONVERT_FROM(DECODE(token, 'hex'), 'UTF8'), '.', 2)::INTEGER

and the SQL loader (import_account_contacts_sql) runs exactly that
expression, so every check below mirrors a PostgreSQL input rule:
DECODE accepts pairs of hex digits separated by blanks, CONVERT_FROM
rejects invalid UTF-8 and NUL bytes, and ::INTEGER accepts an optionally
signed, blank-padded decimal in the int4 range.
"""

from __future__ import annotations

import logging
import re

from account_etl.config import ASCII_WHITESPACE, FEATURE_VALUE_DELIMITERS

log = logging.getLogger(__name__)

# Characters trimmed from each token (matches the SQL btrim set).
TOKEN_WHITESPACE = ASCII_WHITESPACE

SKIP_PREFIX = "+"

INT4_MIN = -(2**31)
INT4_MAX = 2**31 - 1

_HEX_TOKEN_RE = re.compile(r"(?:[ \r]*[0-9A-Fa-f]{2})*[ \r]*")
_INT4_TEXT_RE = re.compile(r"[ \t\n\r\f\v]*([+-]?[0-9]+)[ \t\n\r\f\v]*")


class FeatureValueDecodeError(ValueError):
    """Raised when a token is not hex-encoded UTF-8 text."""


# ---------------------------------------------------------------------------
# Token helpers
# ---------------------------------------------------------------------------

def split_feature_value(
    value: str,
    delimiters: tuple[str, ...] = FEATURE_VALUE_DELIMITERS,
) -> list[str]:
    """Cascading split: each delimiter is applied to every prior fragment."""
    fragments = [value]
    for delimiter in delimiters:
        fragments = [part for fragment in fragments for part in fragment.split(delimiter)]
    return fragments


def decode_feature_token(token: str) -> str:
    """Decode a hex token to text, raising FeatureValueDecodeError."""
    if not _HEX_TOKEN_RE.fullmatch(token):
        raise FeatureValueDecodeError(f"invalid hexadecimal data: {token!r}")
    raw = bytes.fromhex(token)
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise FeatureValueDecodeError(f"invalid UTF-8 byte sequence: {exc.reason}") from exc
    if "\x00" in text:
        raise FeatureValueDecodeError("invalid UTF-8 byte sequence: 0x00")
    return text


def parse_int4(value: str) -> int | None:
    """Parse text the way PostgreSQL casts it to integer, or None."""
    m = _INT4_TEXT_RE.fullmatch(value)
    if not m:
        return None
    number = int(m.group(1))
    if number < INT4_MIN or number > INT4_MAX:
        return None
    return number


def extension_id_from_token(token: str) -> int | None:
    """Return the extension id encoded in one hex token, or None.

    Raises FeatureValueDecodeError when the token is not decodable.
    """
    decoded = decode_feature_token(token)
    parts = decoded.split(".")
    if len(parts) < 2:
        return None
    return parse_int4(parts[1])


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def extract_extension_ids(
    feature_value: str | None,
    delimiters: tuple[str, ...] = FEATURE_VALUE_DELIMITERS,
) -> list[int]:
    """Return the extension ids in a feature value cell, in token order.

    Empty tokens are ignored.  Tokens starting with '+' use a different
    encoding and are skipped.  Undecodable tokens and tokens without a
    numeric second segment are skipped.  Duplicates are kept.
    """
    if not feature_value:
        return []

    extracted: list[int] = []
    for fragment in split_feature_value(feature_value, delimiters):
        token = fragment.strip(TOKEN_WHITESPACE)
        if not token:
            continue

        if token.startswith(SKIP_PREFIX):
            log.info("Skipping feature_value %r - starts with %r", token, SKIP_PREFIX)
            continue

        try:
            extension_id = extension_id_from_token(token)
        except FeatureValueDecodeError as exc:
            log.warning("Error decoding feature_value %r: %s", token, exc)
            continue

        if extension_id is None:
            log.debug("No extension id in feature_value %r", token)
            continue

        log.debug("Extracted extension id %s from %r", extension_id, token)
        extracted.append(extension_id)

    return extracted
