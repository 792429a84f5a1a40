"""
Identifier normalization tests.

Covers:
    - drawing number spellings collapsing to one canonical value
    - leading zero handling, lone zero segments
    - idempotence over a varied corpus
    - size / commodity code / stencil normalization
    - total on None, numbers, empty strings
"""

import pytest

from pipetrack.services.normalizer import (
    normalize_code,
    normalize_identifier,
    normalize_size,
    normalize_stencil,
)

CORPUS = [
    " p-0001 ", "P--0-0-1", "P_001", "P 001", "P.001", "p/001",
    "DWG-10045-A", "dwg 10045 a", "ISO-00-120-B", "0", "00", "0-0",
    "P-0", "A0001B", "1.5", "  ", "", "X--Y", "W-001-00", "12-0-A",
    "W-1-0-5", "1-00-0-5",
]


class TestNormalizeIdentifier:
    @pytest.mark.parametrize("raw", [" p-0001 ", "P--0-0-1", "P-001", "P_001", "P 001", "p.0001"])
    def test_spellings_collapse(self, raw):
        assert normalize_identifier(raw) == "P-1"

    def test_mixed_segments_kept_verbatim(self):
        assert normalize_identifier("a0001b") == "A0001B"
        assert normalize_identifier("dwg 10045 a") == "DWG-10045-A"

    def test_lone_zero_segment_is_kept(self):
        assert normalize_identifier("P-0") == "P-0"
        assert normalize_identifier("0") == "0"
        assert normalize_identifier("000") == "0"

    def test_zero_run_before_number_disappears(self):
        assert normalize_identifier("W-0-7") == "W-7"
        assert normalize_identifier("12-0-A") == "12-0-A"
        assert normalize_identifier("ISO-00-120-B") == "ISO-120-B"

    def test_zero_inside_a_number_run_is_kept(self):
        assert normalize_identifier("W-1-0-5") == "W-1-0-5"
        assert normalize_identifier("W-1-0-5") != normalize_identifier("W-1-5")
        assert normalize_identifier("1-00-0-5") == "1-0-0-5"

    def test_empty_and_none(self):
        assert normalize_identifier(None) == ""
        assert normalize_identifier("   ") == ""
        assert normalize_identifier("--__") == ""

    def test_numeric_cells(self):
        assert normalize_identifier(1001.0) == "1001"
        assert normalize_identifier(7) == "7"
        assert normalize_identifier(1.5) == "1-5"

    @pytest.mark.parametrize("raw", CORPUS)
    def test_idempotent(self, raw):
        once = normalize_identifier(raw)
        assert normalize_identifier(once) == once


class TestNormalizeSize:
    def test_quotes_and_spaces_removed(self):
        assert normalize_size('2"') == "2"
        assert normalize_size(" 3 in ") == "3IN"

    def test_fraction(self):
        assert normalize_size("1/2") == "1X2"

    def test_missing_size(self):
        assert normalize_size(None) == "NOSIZE"
        assert normalize_size("  ") == "NOSIZE"

    def test_excel_float(self):
        assert normalize_size(2.0) == "2"


class TestNormalizeCodes:
    def test_code_whitespace_collapsed(self):
        assert normalize_code("  vgt  2 150 ") == "VGT 2 150"
        assert normalize_code(None) == ""

    def test_stencil(self):
        assert normalize_stencil(" k 07 ") == "K07"
        assert normalize_stencil("k-07") == "K-07"
