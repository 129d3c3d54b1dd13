"""
Matching Rules Module
"""

from .casso_rules import (
    TransactionMatcher, MatchResult, MatchAttempt, MatchFailure, AMOUNT_TOLERANCE, casso_rules
)

__all__ = [
    "TransactionMatcher", "MatchResult", "MatchAttempt", "MatchFailure", "AMOUNT_TOLERANCE", "casso_rules"
]
