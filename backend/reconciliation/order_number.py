"""
Order Number Extraction

Bank transfer memos are free text typed by customers or generated by their
banking app, e.g.

    "DAT MON ORD20240115000123 0901234567"
    "MBVCB.123456.dat mon ban520240115000042.CT tu 0123..."
    "ORD-20240115-000123 chuyen khoan"

The extractor runs an ordered cascade of tagged patterns and returns the
first hit, upper-cased. Order matters: specific formats come before the
generic catch-alls, so reordering the table changes behavior.
"""

import re
from dataclasses import dataclass
from typing import Optional, Pattern, Tuple


@dataclass(frozen=True)
class ReferencePattern:
    """A named pattern; when it has a group, group 1 is the order number."""
    name: str
    regex: Pattern

    def search(self, text: str) -> Optional[str]:
        match = self.regex.search(text)
        if not match:
            return None
        if match.groups() and match.group(1):
            return match.group(1)
        return match.group(0)


def _p(name: str, pattern: str) -> ReferencePattern:
    return ReferencePattern(name=name, regex=re.compile(pattern, re.IGNORECASE))


# First match wins
REFERENCE_PATTERNS: Tuple[ReferencePattern, ...] = (
    # Table payments: BAN<table><yyyymmdd><seq>
    _p("table", r"BAN\d+\d{8}\d{6}"),
    _p("table_phrase", r"DAT\s+MON\s+(BAN\d+\d{8}\d{6})"),
    _p("table_dashed", r"BAN\d+-\d{8}-\d{6}"),
    _p("table_dashed_phrase", r"DAT\s+MON\s+(BAN\d+-\d{8}-\d{6})"),
    # Orders: ORD<yyyymmdd><seq>
    _p("order", r"ORD\d{8}\d{6}"),
    _p("order_phrase", r"DAT\s+MON\s+(ORD\d{8}\d{6})"),
    # Legacy dashed orders: ORD-<yyyymmdd>-<seq>
    _p("order_dashed", r"ORD-\d{8}-\d{6}"),
    _p("order_dashed_phrase", r"DAT\s+MON\s+(ORD-\d{8}-\d{6})"),
    # Legacy short codes
    _p("legacy_dh", r"DH[A-Z0-9]{6,}"),
    _p("legacy_order", r"ORDER[A-Z0-9]{6,}"),
    # Catch-alls
    _p("prefixed_digits", r"\b[A-Z]{2,3}\d{8}\d{6}\b"),
    _p("prefixed_digits_dashed", r"\b[A-Z]{2,3}-\d{8}-\d{6}\b"),
    _p("digits", r"\b\d{8,}\b"),
)


class OrderNumberExtractor:
    """
    Pulls an order number out of a transfer description.

    Never raises: an unrecognisable description yields None.
    """

    def __init__(self, patterns: Tuple[ReferencePattern, ...] = REFERENCE_PATTERNS):
        self.patterns = patterns

    def extract_with_pattern(self, description: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        """Return (order_number, pattern name), or (None, None)."""
        if not description or not isinstance(description, str):
            return None, None

        for pattern in self.patterns:
            found = pattern.search(description)
            if found:
                return found.upper(), pattern.name

        return None, None

    def extract(self, description: Optional[str]) -> Optional[str]:
        order_number, _ = self.extract_with_pattern(description)
        return order_number


# Global instance
order_number_extractor = OrderNumberExtractor()


def extract_order_number(description: Optional[str]) -> Optional[str]:
    return order_number_extractor.extract(description)
