from .connection import (
    get_db, get_engine, get_session_factory, build_engine, build_session_factory,
    init_db, dispose_engine, Base
)

# Import models to ensure they are registered with Base
from .order_models import (
    OrderDB, OrderStatus, PaymentStatus, PaymentMethod, DeliveryType, MembershipTier,
    AWAITING_PAYMENT_STATUSES
)
from .payment_models import (
    CassoTransactionDB, ProcessedTransactionDB, MatchStatus
)

__all__ = [
    'get_db', 'get_engine', 'get_session_factory', 'build_engine', 'build_session_factory',
    'init_db', 'dispose_engine', 'Base',
    # Order models
    'OrderDB', 'OrderStatus', 'PaymentStatus', 'PaymentMethod', 'DeliveryType', 'MembershipTier',
    'AWAITING_PAYMENT_STATUSES',
    # Payment reconciliation models
    'CassoTransactionDB', 'ProcessedTransactionDB', 'MatchStatus',
]
