"""
Payment Repository - Database Access for Reconciliation

Owns every statement that touches order payment state. The order row is
only ever moved to "paid" through settle_order(), a conditional UPDATE
whose WHERE clause is the AwaitingPayment guard; rowcount tells the caller
whether it won. The idempotency row is inserted in the same transaction,
so either both land or neither does.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging

from sqlalchemy import select, update, func, case, or_
from sqlalchemy.ext.asyncio import AsyncSession

from database.order_models import (
    OrderDB, OrderStatus, PaymentStatus, AWAITING_PAYMENT_STATUSES, utc_now
)
from database.payment_models import (
    CassoTransactionDB, ProcessedTransactionDB, MatchStatus
)
from reconciliation.casso_models import CassoTransaction

logger = logging.getLogger(__name__)


class PaymentRepository:
    """Repository for order payment state, the transaction ledger and the idempotency table"""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ==================== ORDERS ====================

    async def get_order(self, order_id: str) -> Optional[OrderDB]:
        result = await self.session.execute(
            select(OrderDB).where(OrderDB.id == order_id)
        )
        return result.scalar_one_or_none()

    async def get_order_by_number(self, order_number: str) -> Optional[OrderDB]:
        result = await self.session.execute(
            select(OrderDB).where(OrderDB.order_number == order_number.upper())
        )
        return result.scalar_one_or_none()

    async def get_payment_state(self, order_id: str) -> Optional[Tuple[str, Optional[str]]]:
        """Column-level (payment_status, payment_transaction_id) read"""
        result = await self.session.execute(
            select(OrderDB.payment_status, OrderDB.payment_transaction_id)
            .where(OrderDB.id == order_id)
        )
        row = result.one_or_none()
        return (row[0], row[1]) if row else None

    async def settle_order(
        self,
        order: OrderDB,
        transaction_id: str,
        paid_at: datetime,
        loyalty_points: int,
    ) -> bool:
        """
        Guarded AwaitingPayment → Paid transition.

        Returns:
            True if this call moved the order to paid, False if the order
            was no longer awaiting payment
        """
        settled_status = OrderStatus.COMPLETED.value if order.is_table_payment else OrderStatus.CONFIRMED.value

        result = await self.session.execute(
            update(OrderDB)
            .where(
                OrderDB.id == order.id,
                OrderDB.payment_status.in_(AWAITING_PAYMENT_STATUSES),
            )
            .values(
                payment_status=PaymentStatus.PAID.value,
                payment_transaction_id=transaction_id,
                paid_at=paid_at,
                loyalty_points_awarded=loyalty_points,
                status=case(
                    (OrderDB.status == OrderStatus.PENDING.value, settled_status),
                    else_=OrderDB.status,
                ),
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def settle_table_originals(
        self,
        order: OrderDB,
        transaction_id: str,
        paid_at: datetime,
    ) -> int:
        """Mark the dine-in orders bundled into a table payment as paid and completed"""
        original_ids = [str(i) for i in (order.original_order_ids or [])]
        if not order.is_table_payment or not original_ids:
            return 0

        result = await self.session.execute(
            update(OrderDB)
            .where(
                OrderDB.id.in_(original_ids),
                OrderDB.payment_status.in_(AWAITING_PAYMENT_STATUSES),
            )
            .values(
                payment_status=PaymentStatus.PAID.value,
                payment_transaction_id=transaction_id,
                paid_at=paid_at,
                status=case(
                    (
                        OrderDB.status.in_([OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value]),
                        OrderStatus.COMPLETED.value,
                    ),
                    else_=OrderDB.status,
                ),
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Table payment {order.order_number} settled {result.rowcount} original orders")
        return result.rowcount

    # ==================== IDEMPOTENCY ====================

    async def get_processed(self, transaction_id: str) -> Optional[ProcessedTransactionDB]:
        result = await self.session.execute(
            select(ProcessedTransactionDB).where(ProcessedTransactionDB.transaction_id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def record_processed(
        self,
        transaction_id: str,
        order: OrderDB,
        amount: int,
        processed_by: str,
    ) -> ProcessedTransactionDB:
        """
        Insert the idempotency row.

        Raises IntegrityError at flush when the transaction (or the order)
        has already been used.
        """
        processed = ProcessedTransactionDB(
            transaction_id=transaction_id,
            order_id=order.id,
            order_number=order.order_number,
            amount=amount,
            processed_by=processed_by,
            processed_at=utc_now(),
        )
        self.session.add(processed)
        await self.session.flush()
        return processed

    # ==================== LEDGER ====================

    async def get_ledger_entry(self, casso_id: str) -> Optional[CassoTransactionDB]:
        result = await self.session.execute(
            select(CassoTransactionDB).where(CassoTransactionDB.casso_id == casso_id)
        )
        return result.scalar_one_or_none()

    async def add_ledger_entry(self, transaction: CassoTransaction) -> CassoTransactionDB:
        entry = CassoTransactionDB(
            casso_id=transaction.id,
            tid=transaction.tid,
            amount=transaction.amount,
            description=transaction.description,
            when=transaction.when,
            bank_sub_acc_id=transaction.bank_sub_acc_id,
            cusum_balance=transaction.cusum_balance,
            match_status=MatchStatus.PENDING.value,
            raw_data=transaction.raw or None,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def update_ledger_entry(self, casso_id: str, only_unsettled: bool = False, **updates) -> bool:
        """
        Update one ledger row.

        With only_unsettled, a row already marked matched is left alone, so a
        stale rejection cannot pull a settled transfer back into the queue.
        """
        updates["updated_at"] = utc_now()
        stmt = update(CassoTransactionDB).where(CassoTransactionDB.casso_id == casso_id)
        if only_unsettled:
            stmt = stmt.where(CassoTransactionDB.match_status != MatchStatus.MATCHED.value)
        result = await self.session.execute(
            stmt.values(**updates).execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def mark_ledger_matched(
        self,
        casso_id: str,
        order: OrderDB,
        processed_by: str,
        note: str,
    ) -> bool:
        now = utc_now()
        return await self.update_ledger_entry(
            casso_id,
            order_id=order.id,
            order_number=order.order_number,
            match_status=MatchStatus.MATCHED.value,
            match_note=note,
            matched_at=now,
            processed=True,
            processed_at=now,
            processed_by=processed_by,
        )

    async def list_ledger(
        self,
        match_status: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[CassoTransactionDB], int]:
        """Paginated ledger listing, newest transfer first"""
        conditions = []
        if match_status:
            conditions.append(CassoTransactionDB.match_status == match_status)
        if start:
            conditions.append(CassoTransactionDB.when >= start)
        if end:
            conditions.append(CassoTransactionDB.when <= end)

        count_query = select(func.count()).select_from(CassoTransactionDB).where(*conditions)
        total = (await self.session.execute(count_query)).scalar_one()

        query = (
            select(CassoTransactionDB)
            .where(*conditions)
            .order_by(CassoTransactionDB.when.desc(), CassoTransactionDB.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all()), total

    async def list_unmatched(self, limit: int = 100) -> List[CassoTransactionDB]:
        """Operator queue: transfers that could not be settled automatically"""
        result = await self.session.execute(
            select(CassoTransactionDB)
            .where(or_(
                CassoTransactionDB.match_status == MatchStatus.UNMATCHED.value,
                CassoTransactionDB.match_status == MatchStatus.ERROR.value,
            ))
            .order_by(CassoTransactionDB.when.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def ledger_stats(self) -> Dict[str, Any]:
        result = await self.session.execute(
            select(CassoTransactionDB.match_status, func.count())
            .group_by(CassoTransactionDB.match_status)
        )
        counts = {status: count for status, count in result.all()}
        return {
            "total": sum(counts.values()),
            "by_status": counts,
        }
