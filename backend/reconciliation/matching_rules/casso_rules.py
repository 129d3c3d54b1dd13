"""
Casso Matching Rules

Decides whether a bank transfer pays a given order. Three checks run in
order and the first failure short-circuits:

1. An order number can be extracted from the transfer description
2. The extracted number equals the order's number
3. The transferred amount is within AMOUNT_TOLERANCE of the order total

The tolerance absorbs bank-side rounding and small fees; it is a
constant here, not a per-order setting.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from reconciliation.order_number import OrderNumberExtractor, order_number_extractor

# VND
AMOUNT_TOLERANCE = 1000


class MatchFailure(str, Enum):
    NO_REFERENCE = "no_reference"
    ORDER_NUMBER_MISMATCH = "order_number_mismatch"
    AMOUNT_MISMATCH = "amount_mismatch"


@dataclass
class MatchAttempt:
    """
    Diagnostic record of one matching decision.

    Logged and copied into the ledger note; never used to gate processing.
    """
    transaction_id: str
    order_number_extracted: Optional[str]
    order_number_expected: Optional[str]
    amount_delta: Optional[int]
    outcome: str
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "order_number_extracted": self.order_number_extracted,
            "order_number_expected": self.order_number_expected,
            "amount_delta": self.amount_delta,
            "outcome": self.outcome,
            "reason": self.reason,
        }


@dataclass
class MatchResult:
    matched: bool
    reason: Optional[str]
    failure: Optional[MatchFailure]
    attempt: MatchAttempt = field(repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matched": self.matched,
            "reason": self.reason,
            "failure": self.failure.value if self.failure else None,
            "attempt": self.attempt.to_dict(),
        }


class TransactionMatcher:
    """
    Matching rules for Casso bank transfers against restaurant orders.
    """

    def __init__(
        self,
        extractor: Optional[OrderNumberExtractor] = None,
        amount_tolerance: int = AMOUNT_TOLERANCE,
    ):
        self.extractor = extractor or order_number_extractor
        self.amount_tolerance = amount_tolerance

    def match(self, transaction, order, expected_total: Optional[int] = None) -> MatchResult:
        """
        Match a transaction against an order.

        Args:
            transaction: Object with id, amount and description
            order: Object with order_number and total
            expected_total: Amount to check against; defaults to order.total

        Returns:
            MatchResult with an operator-facing reason on failure
        """
        expected_total = order.total if expected_total is None else expected_total
        extracted = self.extractor.extract(transaction.description)

        if extracted is None:
            return self._fail(
                transaction, order, extracted, None,
                MatchFailure.NO_REFERENCE,
                "No order reference found in the transfer description",
            )

        if extracted != (order.order_number or "").upper():
            return self._fail(
                transaction, order, extracted, None,
                MatchFailure.ORDER_NUMBER_MISMATCH,
                f"Order number mismatch: transfer references {extracted}, expected {order.order_number}",
            )

        delta = int(transaction.amount) - int(expected_total)
        if abs(delta) > self.amount_tolerance:
            return self._fail(
                transaction, order, extracted, delta,
                MatchFailure.AMOUNT_MISMATCH,
                f"Amount mismatch: transferred {int(transaction.amount)} VND, order total is {int(expected_total)} VND",
            )

        attempt = MatchAttempt(
            transaction_id=str(transaction.id),
            order_number_extracted=extracted,
            order_number_expected=order.order_number,
            amount_delta=delta,
            outcome="matched",
        )
        return MatchResult(matched=True, reason=None, failure=None, attempt=attempt)

    def _fail(
        self,
        transaction,
        order,
        extracted: Optional[str],
        delta: Optional[int],
        failure: MatchFailure,
        reason: str,
    ) -> MatchResult:
        attempt = MatchAttempt(
            transaction_id=str(transaction.id),
            order_number_extracted=extracted,
            order_number_expected=getattr(order, "order_number", None),
            amount_delta=delta,
            outcome=failure.value,
            reason=reason,
        )
        return MatchResult(matched=False, reason=reason, failure=failure, attempt=attempt)


# Global instance
casso_rules = TransactionMatcher()
