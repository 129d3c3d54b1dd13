"""
Restaurant Payments Core - Payment Reconciliation Models

Tables:
- casso_transactions: every distinct bank transfer Casso has reported,
  with its latest match verdict (operator queue and admin listing)
- processed_transactions: idempotency record; one row per transaction
  that settled an order, written in the same database transaction as the
  guarded order update
"""

from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, Text, BigInteger, Boolean, DateTime, Index, JSON
)

from database.connection import Base
from database.order_models import generate_uuid, utc_now


class MatchStatus(str, PyEnum):
    """Latest verdict for a ledger row"""
    PENDING = "pending"
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    ERROR = "error"


class CassoTransactionDB(Base):
    """
    Ledger of gateway transactions.

    Informational only: processing is gated by processed_transactions and
    the guarded order update, never by this table.
    """
    __tablename__ = "casso_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    casso_id = Column(String(100), nullable=False, unique=True, index=True)
    tid = Column(String(100), nullable=True)

    amount = Column(BigInteger, nullable=False)
    description = Column(Text, nullable=False, default="")
    when = Column(DateTime(timezone=True), nullable=True, index=True)
    bank_sub_acc_id = Column(String(100), nullable=True)
    cusum_balance = Column(BigInteger, nullable=True)

    # Match verdict
    order_id = Column(String(36), nullable=True, index=True)
    order_number = Column(String(40), nullable=True, index=True)
    match_status = Column(String(20), nullable=False, default=MatchStatus.PENDING.value, index=True)
    match_note = Column(Text, nullable=True)
    matched_at = Column(DateTime(timezone=True), nullable=True)

    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processed_by = Column(String(100), nullable=True)

    raw_data = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_casso_transactions_status_when', 'match_status', 'when'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "casso_id": self.casso_id,
            "tid": self.tid,
            "amount": self.amount,
            "description": self.description,
            "when": self.when.isoformat() if self.when else None,
            "bank_sub_acc_id": self.bank_sub_acc_id,
            "order_id": self.order_id,
            "order_number": self.order_number,
            "match_status": self.match_status,
            "match_note": self.match_note,
            "matched_at": self.matched_at.isoformat() if self.matched_at else None,
            "processed": self.processed,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "processed_by": self.processed_by,
        }


class ProcessedTransactionDB(Base):
    """
    Idempotency record.

    transaction_id (primary key): a transfer settles at most one order.
    order_id (unique): an order is settled by at most one transfer.
    """
    __tablename__ = "processed_transactions"

    transaction_id = Column(String(100), primary_key=True)
    order_id = Column(String(36), nullable=False, unique=True)
    order_number = Column(String(40), nullable=False)
    amount = Column(BigInteger, nullable=False)
    processed_by = Column(String(100), nullable=False, default="system")
    processed_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
