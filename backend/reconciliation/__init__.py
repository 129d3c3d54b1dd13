"""
Payment Reconciliation Module

Settles bank-transfer orders from Casso transaction notifications:
- Order number extraction from free-text transfer descriptions
- Amount and order number matching with a fixed tolerance
- Guarded, idempotent AwaitingPayment → Paid transition
- Webhook receiver and background poller
- Operator queue and manual matching
- Audit trail for all operations
"""

from reconciliation.order_number import OrderNumberExtractor, order_number_extractor, extract_order_number
from reconciliation.casso_models import CassoTransaction, parse_transactions
from reconciliation.matching_rules.casso_rules import (
    TransactionMatcher,
    MatchResult,
    MatchAttempt,
    AMOUNT_TOLERANCE,
    casso_rules
)
from reconciliation.services.reconciliation_service import (
    ReconciliationCoordinator,
    ReconciliationOutcome,
    ReconciliationResult,
)

__all__ = [
    # Extraction
    'OrderNumberExtractor',
    'order_number_extractor',
    'extract_order_number',
    # Transactions
    'CassoTransaction',
    'parse_transactions',
    # Matching Rules
    'TransactionMatcher',
    'MatchResult',
    'MatchAttempt',
    'AMOUNT_TOLERANCE',
    'casso_rules',
    # Coordinator
    'ReconciliationCoordinator',
    'ReconciliationOutcome',
    'ReconciliationResult',
]
