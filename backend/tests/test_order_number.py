"""
Tests for order number extraction from transfer descriptions.
"""

import pytest

from reconciliation.order_number import (
    OrderNumberExtractor,
    REFERENCE_PATTERNS,
    extract_order_number,
    order_number_extractor,
)


class TestExtraction:

    @pytest.mark.parametrize("description,expected", [
        ("DAT MON ORD20240115000123 0901234567", "ORD20240115000123"),
        ("ORD20240115000123", "ORD20240115000123"),
        ("thanh toan ord20240115000123", "ORD20240115000123"),
        ("MBVCB.123456.dat mon ban520240115000042.CT tu 0123", "BAN520240115000042"),
        ("DAT MON BAN12-20240115-000007", "BAN12-20240115-000007"),
        ("ORD-20240115-000123 chuyen khoan", "ORD-20240115-000123"),
        ("thanh toan DHAB12CD34", "DHAB12CD34"),
        ("ORDERX1Y2Z3 ck", "ORDERX1Y2Z3"),
        ("ck TK20240115000001 xong", "TK20240115000001"),
        ("ref 12345678901", "12345678901"),
    ])
    def test_known_formats(self, description, expected):
        assert extract_order_number(description) == expected

    @pytest.mark.parametrize("description", [
        "chuyen tien sinh nhat",
        "",
        None,
        "   ",
        "1234567",
    ])
    def test_unrecognised_descriptions(self, description):
        assert extract_order_number(description) is None

    def test_result_is_upper_cased(self):
        assert extract_order_number("ban320240115000001") == "BAN320240115000001"

    def test_table_reference_wins_over_digits(self):
        order_number, pattern = order_number_extractor.extract_with_pattern(
            "0901234567 DAT MON BAN520240115000042"
        )
        assert order_number == "BAN520240115000042"
        assert pattern == "table"

    def test_first_order_number_wins(self):
        assert extract_order_number(
            "ORD20240115000001 ORD20240115000002"
        ) == "ORD20240115000001"

    def test_pattern_name_reported(self):
        assert order_number_extractor.extract_with_pattern("ORD-20240115-000123") == (
            "ORD-20240115-000123", "order_dashed"
        )
        assert order_number_extractor.extract_with_pattern("no reference") == (None, None)

    def test_non_string_input(self):
        assert order_number_extractor.extract(12345678) is None

    def test_custom_pattern_table(self):
        extractor = OrderNumberExtractor(patterns=REFERENCE_PATTERNS[-1:])
        assert extractor.extract("ORD20240115000123 99999999") == "99999999"
