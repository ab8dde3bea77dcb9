"""Unit tests for account_etl.feature_value."""

from __future__ import annotations

import logging

import pytest

from account_etl.feature_value import (
    FeatureValueDecodeError,
    decode_feature_token,
    extension_id_from_token,
    extract_extension_ids,
    parse_int4,
    split_feature_value,
)


# ---------------------------------------------------------------------------
# split_feature_value
# ---------------------------------------------------------------------------

class TestSplitFeatureValue:
    def test_single_value(self):
        assert split_feature_value("abcd") == ["abcd"]

    def test_each_delimiter(self):
        for delimiter in (",", ";", "|", "\n", "\t"):
            assert split_feature_value(f"aa{delimiter}bb") == ["aa", "bb"]

    def test_mixed_delimiters_keep_order(self):
        assert split_feature_value("a;b,c|d\te\nf") == ["a", "b", "c", "d", "e", "f"]

    def test_adjacent_delimiters_yield_empty_fragments(self):
        assert split_feature_value("a,,b") == ["a", "", "b"]

    def test_custom_delimiters(self):
        assert split_feature_value("a/b,c", delimiters=("/",)) == ["a", "b,c"]


# ---------------------------------------------------------------------------
# decode_feature_token
# ---------------------------------------------------------------------------

class TestDecodeFeatureToken:
    def test_decodes_hex_utf8(self):
        assert decode_feature_token("48656c6c6f2e343432") == "Hello.442"

    def test_uppercase_hex(self):
        assert decode_feature_token("48656C6C6F") == "Hello"

    def test_blank_between_pairs(self):
        assert decode_feature_token("4865 6c6c") == "Hell"

    def test_odd_length_rejected(self):
        with pytest.raises(FeatureValueDecodeError):
            decode_feature_token("486")

    def test_non_hex_rejected(self):
        with pytest.raises(FeatureValueDecodeError):
            decode_feature_token("zz")

    def test_invalid_utf8_rejected(self):
        with pytest.raises(FeatureValueDecodeError):
            decode_feature_token("ff2e3432")

    def test_nul_byte_rejected(self):
        with pytest.raises(FeatureValueDecodeError):
            decode_feature_token("002e3432")


# ---------------------------------------------------------------------------
# parse_int4
# ---------------------------------------------------------------------------

class TestParseInt4:
    def test_plain(self):
        assert parse_int4("442") == 442

    def test_signed(self):
        assert parse_int4("-7") == -7
        assert parse_int4("+7") == 7

    def test_surrounding_blanks(self):
        assert parse_int4("  12 ") == 12

    def test_leading_zeros(self):
        assert parse_int4("0042") == 42

    def test_empty(self):
        assert parse_int4("") is None

    def test_trailing_garbage(self):
        assert parse_int4("442abc") is None

    def test_decimal_point(self):
        assert parse_int4("4.2") is None

    def test_underscore_rejected(self):
        assert parse_int4("1_000") is None

    def test_int4_bounds(self):
        assert parse_int4("2147483647") == 2147483647
        assert parse_int4("-2147483648") == -2147483648
        assert parse_int4("2147483648") is None


# ---------------------------------------------------------------------------
# extension_id_from_token
# ---------------------------------------------------------------------------

class TestExtensionIdFromToken:
    def test_second_segment(self):
        assert extension_id_from_token(b"kit.297247088".hex()) == 297247088

    def test_ignores_later_segments(self):
        assert extension_id_from_token(b"a.15.99".hex()) == 15

    def test_no_dot(self):
        assert extension_id_from_token(b"Hello".hex()) is None

    def test_empty_second_segment(self):
        assert extension_id_from_token(b"Hello.".hex()) is None

    def test_leading_dot(self):
        assert extension_id_from_token(b".8".hex()) == 8

    def test_non_numeric_second_segment(self):
        assert extension_id_from_token(b"Hello.world".hex()) is None


# ---------------------------------------------------------------------------
# extract_extension_ids
# ---------------------------------------------------------------------------

class TestExtractExtensionIds:
    def test_none(self):
        assert extract_extension_ids(None) == []

    def test_empty(self):
        assert extract_extension_ids("") == []

    def test_whitespace_only(self):
        assert extract_extension_ids("  \t \n ") == []

    def test_hello_example(self):
        assert extract_extension_ids("48656c6c6f2e343432") == [442]

    def test_plus_prefix_skipped(self):
        assert extract_extension_ids("+4865") == []

    def test_plus_prefix_skipped_even_if_decodable(self):
        assert extract_extension_ids("+" + b"kit.5".hex()) == []

    def test_no_segment_and_plus_token(self):
        assert extract_extension_ids("48,+39") == []

    def test_multiple_tokens_mixed_delimiters(self):
        value = f"{b'a.1'.hex()}; {b'b.2'.hex()} | {b'c.3'.hex()}\n{b'd.4'.hex()}\t{b'e.5'.hex()}"
        assert extract_extension_ids(value) == [1, 2, 3, 4, 5]

    def test_invalid_token_does_not_stop_others(self):
        value = f"zz,{b'a.10'.hex()},486,{b'nodot'.hex()},{b'b.20'.hex()}"
        assert extract_extension_ids(value) == [10, 20]

    def test_duplicates_kept(self):
        token = b"kit.7".hex()
        assert extract_extension_ids(f"{token},{token}") == [7, 7]

    def test_tokens_trimmed(self):
        assert extract_extension_ids(f"  {b'kit.9'.hex()}  ") == [9]

    def test_non_breaking_space_not_trimmed(self):
        assert extract_extension_ids("\u00a0" + b"kit.9".hex()) == []

    def test_vertical_tab_and_form_feed_trimmed(self):
        assert extract_extension_ids("\v" + b"kit.9".hex() + "\f") == [9]

    def test_logs_plus_skip(self, caplog):
        with caplog.at_level(logging.INFO, logger="account_etl.feature_value"):
            extract_extension_ids("+15551234567")
        assert "starts with" in caplog.text

    def test_logs_decode_failure(self, caplog):
        with caplog.at_level(logging.WARNING, logger="account_etl.feature_value"):
            assert extract_extension_ids("nothex") == []
        assert "Error decoding feature_value" in caplog.text
