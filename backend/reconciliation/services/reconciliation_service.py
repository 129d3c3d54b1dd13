"""
Reconciliation Service - Casso Payment Reconciliation

Core business logic for settling bank-transfer orders:
- Deduplicating re-delivered transactions
- Extracting the order number from the transfer description
- Verifying the stored order pricing against a fresh computation
- Matching amount and order number
- Guarded AwaitingPayment → Paid transition with an idempotency record
- Operator manual matching for rejected transfers
- Realtime notifications after commit
- Audit logging

Each operation opens its own session from the injected session factory,
so concurrent webhook deliveries, poll cycles and manual matches never
share a transaction. Correctness under concurrency comes from the
conditional UPDATE and the idempotency table, not from in-process locks.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker

from database.order_models import OrderDB
from database.payment_models import CassoTransactionDB, MatchStatus
from pricing.pricing_engine import PricingEngine, calculate_loyalty_points
from reconciliation.casso_models import CassoTransaction
from reconciliation.clients.notification_gateway import NotificationGateway, LoggingNotificationGateway
from reconciliation.errors import OrderNotFound, TransactionNotFound
from reconciliation.matching_rules.casso_rules import (
    TransactionMatcher, MatchAttempt, MatchFailure, casso_rules
)
from reconciliation.order_number import OrderNumberExtractor, order_number_extractor
from reconciliation.services.payment_repository import PaymentRepository
from sentry_integration import capture_exception

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
STAFF_ROOMS = ("role_admin", "role_cashier", "role_manager")

# One retry on a transient write failure
MAX_WRITE_ATTEMPTS = 2


class ReconciliationOutcome(str, Enum):
    PAID = "paid"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"
    NO_REFERENCE = "no_reference"
    ORDER_NOT_FOUND = "order_not_found"
    ORDER_NUMBER_MISMATCH = "order_number_mismatch"
    AMOUNT_MISMATCH = "amount_mismatch"
    PRICING_MISMATCH = "pricing_mismatch"
    ERROR = "error"


_FAILURE_OUTCOMES = {
    MatchFailure.NO_REFERENCE: ReconciliationOutcome.NO_REFERENCE,
    MatchFailure.ORDER_NUMBER_MISMATCH: ReconciliationOutcome.ORDER_NUMBER_MISMATCH,
    MatchFailure.AMOUNT_MISMATCH: ReconciliationOutcome.AMOUNT_MISMATCH,
}


@dataclass(frozen=True)
class OrderRef:
    """Attributes of an order captured before a transaction may expire the instance."""
    id: str
    order_number: str
    customer_id: Optional[str]
    customer_name: Optional[str]
    total: int
    is_table_payment: bool

    @classmethod
    def of(cls, order: OrderDB) -> "OrderRef":
        return cls(
            id=order.id,
            order_number=order.order_number,
            customer_id=order.customer_id,
            customer_name=order.customer_name,
            total=order.total,
            is_table_payment=bool(order.is_table_payment),
        )


@dataclass
class ReconciliationResult:
    """Result of reconciling one transaction."""
    transaction_id: str
    outcome: ReconciliationOutcome
    order_number: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[int] = None
    message: Optional[str] = None
    attempt: Optional[MatchAttempt] = None

    @property
    def already_settled(self) -> bool:
        return self.outcome == ReconciliationOutcome.DUPLICATE

    @property
    def settled(self) -> bool:
        return self.outcome in (ReconciliationOutcome.PAID, ReconciliationOutcome.DUPLICATE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "outcome": self.outcome.value,
            "order_number": self.order_number,
            "order_id": self.order_id,
            "amount": self.amount,
            "message": self.message,
            "already_settled": self.already_settled,
        }


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    TRANSACTION_RECEIVED = "reconciliation.transaction_received"
    DUPLICATE_DELIVERY = "reconciliation.duplicate_delivery"
    MATCH_REJECTED = "reconciliation.match_rejected"
    PRICING_MISMATCH = "reconciliation.pricing_mismatch"
    PAYMENT_SETTLED = "reconciliation.payment_settled"
    PAYMENT_CONFLICT = "reconciliation.payment_conflict"
    MANUAL_MATCH = "reconciliation.manual_match"
    WRITE_FAILED = "reconciliation.write_failed"


def log_reconciliation_event(
    event_type: str,
    transaction_id: str,
    details: Dict[str, Any],
    order_number: Optional[str] = None,
    actor: str = SYSTEM_ACTOR
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "transaction_id": transaction_id,
        "order_number": order_number,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


def ledger_to_transaction(entry: CassoTransactionDB) -> CassoTransaction:
    return CassoTransaction(
        id=entry.casso_id,
        tid=entry.tid,
        amount=entry.amount,
        description=entry.description or "",
        when=entry.when or entry.created_at or datetime.now(timezone.utc),
        bank_sub_acc_id=entry.bank_sub_acc_id,
        cusum_balance=entry.cusum_balance,
        raw=entry.raw_data or {},
    )


class ReconciliationCoordinator:
    """
    Orchestrates payment reconciliation.

    Usage:
        coordinator = ReconciliationCoordinator(get_session_factory(), notifier=notifier)
        result = await coordinator.ingest(transaction)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        pricing_engine: Optional[PricingEngine] = None,
        matcher: Optional[TransactionMatcher] = None,
        extractor: Optional[OrderNumberExtractor] = None,
        notifier: Optional[NotificationGateway] = None,
        gateway=None,
    ):
        self.session_factory = session_factory
        self.pricing_engine = pricing_engine or PricingEngine()
        self.matcher = matcher or casso_rules
        self.extractor = extractor or order_number_extractor
        self.notifier = notifier or LoggingNotificationGateway()
        self.gateway = gateway

    # ==================== AUTOMATIC PATH ====================

    async def ingest(self, transaction: CassoTransaction) -> ReconciliationResult:
        """
        Reconcile one gateway transaction.

        Safe to call any number of times with the same transaction; only
        the first successful call settles the order.
        """
        last_error: Optional[OperationalError] = None

        for attempt in range(MAX_WRITE_ATTEMPTS):
            try:
                return await self._ingest_once(transaction)
            except OperationalError as e:
                last_error = e
                logger.warning(
                    f"Transient write failure for transaction {transaction.id} "
                    f"(attempt {attempt + 1}/{MAX_WRITE_ATTEMPTS}): {e}"
                )

        return await self._record_write_failure(transaction, last_error)

    async def ingest_batch(self, transactions: List[CassoTransaction]) -> List[ReconciliationResult]:
        """Reconcile transactions one after another; one failure does not stop the batch."""
        results = []
        for transaction in transactions:
            try:
                results.append(await self.ingest(transaction))
            except Exception as e:
                logger.exception(f"Unexpected error reconciling transaction {transaction.id}")
                capture_exception(e, transaction_id=transaction.id)
                results.append(ReconciliationResult(
                    transaction_id=transaction.id,
                    outcome=ReconciliationOutcome.ERROR,
                    amount=transaction.amount,
                    message=str(e)[:200],
                ))
        return results

    async def _ingest_once(self, transaction: CassoTransaction) -> ReconciliationResult:
        async with self.session_factory() as session:
            repo = PaymentRepository(session)

            processed = await repo.get_processed(transaction.id)
            if processed is not None:
                log_reconciliation_event(
                    ReconciliationAuditEvent.DUPLICATE_DELIVERY,
                    transaction.id,
                    {"order_id": processed.order_id},
                    order_number=processed.order_number,
                )
                return ReconciliationResult(
                    transaction_id=transaction.id,
                    outcome=ReconciliationOutcome.DUPLICATE,
                    order_number=processed.order_number,
                    order_id=processed.order_id,
                    amount=processed.amount,
                    message=f"Transaction already settled order {processed.order_number}",
                )

            await self._ensure_ledger_entry(session, repo, transaction)

            order_number = self.extractor.extract(transaction.description)
            if order_number is None:
                reason = "No order reference found in the transfer description"
                return await self._reject(
                    session, repo, transaction, ReconciliationOutcome.NO_REFERENCE, reason,
                    attempt=MatchAttempt(
                        transaction_id=transaction.id,
                        order_number_extracted=None,
                        order_number_expected=None,
                        amount_delta=None,
                        outcome=MatchFailure.NO_REFERENCE.value,
                        reason=reason,
                    ),
                )

            order = await repo.get_order_by_number(order_number)
            if order is None:
                return await self._reject(
                    session, repo, transaction, ReconciliationOutcome.ORDER_NOT_FOUND,
                    f"Order {order_number} not found",
                    order_number=order_number,
                )

            if not order.is_awaiting_payment:
                return await self._already_settled(session, repo, OrderRef.of(order), transaction)

            check = self.pricing_engine.verify_order_pricing(order)
            if not check.consistent:
                log_reconciliation_event(
                    ReconciliationAuditEvent.PRICING_MISMATCH,
                    transaction.id,
                    check.to_dict(),
                    order_number=order.order_number,
                )
                fields = ", ".join(sorted(check.differences))
                return await self._reject(
                    session, repo, transaction, ReconciliationOutcome.PRICING_MISMATCH,
                    f"Stored pricing for order {order.order_number} does not match a recomputation ({fields}); "
                    f"expected total {check.expected.total} VND",
                    order=order,
                )

            match = self.matcher.match(transaction, order)
            if not match.matched:
                return await self._reject(
                    session, repo, transaction, _FAILURE_OUTCOMES[match.failure], match.reason,
                    order=order, attempt=match.attempt,
                )

            return await self._settle(
                session, repo, order, transaction,
                processed_by=SYSTEM_ACTOR,
                note=f"Matched to order {order.order_number}",
                attempt=match.attempt,
            )

    # ==================== MANUAL PATH ====================

    async def manual_match(
        self,
        transaction_id: str,
        operator_id: str,
        order_number: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Operator override: settle an order with a transaction the automatic
        path rejected. Extraction, amount and pricing checks are skipped;
        the guarded transition and idempotency record are not.

        Raises:
            OrderNotFound: no order with that id or number
            TransactionNotFound: transaction unknown to the ledger and the gateway
        """
        if not order_number and not order_id:
            raise ValueError("order_number or order_id is required")

        for attempt in range(MAX_WRITE_ATTEMPTS):
            try:
                return await self._manual_match_once(transaction_id, operator_id, order_number, order_id)
            except OperationalError as e:
                if attempt + 1 >= MAX_WRITE_ATTEMPTS:
                    raise
                logger.warning(f"Transient write failure during manual match of {transaction_id}: {e}")

    async def _manual_match_once(
        self,
        transaction_id: str,
        operator_id: str,
        order_number: Optional[str],
        order_id: Optional[str],
    ) -> ReconciliationResult:
        async with self.session_factory() as session:
            repo = PaymentRepository(session)

            if order_id:
                order = await repo.get_order(order_id)
            else:
                order = await repo.get_order_by_number(order_number)
            if order is None:
                raise OrderNotFound(f"Order {order_id or order_number} not found")

            ref = OrderRef.of(order)

            processed = await repo.get_processed(transaction_id)
            if processed is not None:
                if processed.order_id == ref.id:
                    return self._duplicate_result(transaction_id, ref, processed.amount)
                return self._conflict_result(
                    transaction_id, ref, processed.amount,
                    f"Transaction already settled order {processed.order_number}",
                )

            entry = await repo.get_ledger_entry(transaction_id)
            if entry is not None:
                transaction = ledger_to_transaction(entry)
            else:
                transaction = await self.gateway.get_transaction(transaction_id) if self.gateway else None
                if transaction is None:
                    raise TransactionNotFound(f"Transaction {transaction_id} not found")
                await self._ensure_ledger_entry(session, repo, transaction)

            log_reconciliation_event(
                ReconciliationAuditEvent.MANUAL_MATCH,
                transaction_id,
                {"order_id": ref.id, "amount": transaction.amount, "order_total": ref.total},
                order_number=ref.order_number,
                actor=operator_id,
            )

            if not order.is_awaiting_payment:
                return await self._already_settled(session, repo, ref, transaction)

            return await self._settle(
                session, repo, order, transaction,
                processed_by=operator_id,
                note=f"Manually matched to order {ref.order_number} by {operator_id}",
            )

    # ==================== SETTLEMENT ====================

    async def _settle(
        self,
        session,
        repo: PaymentRepository,
        order: OrderDB,
        transaction: CassoTransaction,
        processed_by: str,
        note: str,
        attempt: Optional[MatchAttempt] = None,
    ) -> ReconciliationResult:
        """Guarded transition, idempotency row and ledger verdict in one database transaction."""
        ref = OrderRef.of(order)
        paid_at = transaction.when
        points = calculate_loyalty_points(ref.total)

        try:
            won = await repo.settle_order(order, transaction.id, paid_at, points)
            if not won:
                await session.rollback()
                return await self._already_settled(session, repo, ref, transaction)

            await repo.record_processed(transaction.id, order, transaction.amount, processed_by)
            await repo.settle_table_originals(order, transaction.id, paid_at)
            await repo.mark_ledger_matched(transaction.id, order, processed_by, note)
            await session.commit()

        except IntegrityError:
            await session.rollback()
            return await self._already_settled(session, repo, ref, transaction)

        log_reconciliation_event(
            ReconciliationAuditEvent.PAYMENT_SETTLED,
            transaction.id,
            {
                "order_id": ref.id,
                "amount": transaction.amount,
                "loyalty_points": points,
                "table_payment": ref.is_table_payment,
                "match": attempt.to_dict() if attempt else None,
            },
            order_number=ref.order_number,
            actor=processed_by,
        )

        self._notify_settled(ref, transaction)

        return ReconciliationResult(
            transaction_id=transaction.id,
            outcome=ReconciliationOutcome.PAID,
            order_number=ref.order_number,
            order_id=ref.id,
            amount=transaction.amount,
            message="Payment confirmed",
            attempt=attempt,
        )

    async def _already_settled(
        self,
        session,
        repo: PaymentRepository,
        ref: OrderRef,
        transaction: CassoTransaction,
    ) -> ReconciliationResult:
        """Classify a lost guard: same transaction → DUPLICATE, anything else → CONFLICT."""
        state = await repo.get_payment_state(ref.id)
        paid_by = state[1] if state else None

        if paid_by == transaction.id:
            return self._duplicate_result(transaction.id, ref, transaction.amount)

        processed = await repo.get_processed(transaction.id)
        if processed is not None:
            if processed.order_id == ref.id:
                return self._duplicate_result(transaction.id, ref, transaction.amount)
            return self._conflict_result(
                transaction.id, ref, transaction.amount,
                f"Transaction already settled order {processed.order_number}",
            )

        if paid_by:
            message = f"Order {ref.order_number} was already paid by transaction {paid_by}"
        else:
            message = f"Order {ref.order_number} is not awaiting payment"

        await repo.update_ledger_entry(
            transaction.id,
            only_unsettled=True,
            order_id=ref.id,
            order_number=ref.order_number,
            match_status=MatchStatus.UNMATCHED.value,
            match_note=message,
        )
        await session.commit()

        return self._conflict_result(transaction.id, ref, transaction.amount, message)

    def _duplicate_result(self, transaction_id: str, ref: OrderRef, amount: Optional[int]) -> ReconciliationResult:
        log_reconciliation_event(
            ReconciliationAuditEvent.DUPLICATE_DELIVERY,
            transaction_id,
            {"order_id": ref.id},
            order_number=ref.order_number,
        )
        return ReconciliationResult(
            transaction_id=transaction_id,
            outcome=ReconciliationOutcome.DUPLICATE,
            order_number=ref.order_number,
            order_id=ref.id,
            amount=amount,
            message=f"Transaction already settled order {ref.order_number}",
        )

    def _conflict_result(
        self, transaction_id: str, ref: OrderRef, amount: Optional[int], message: str
    ) -> ReconciliationResult:
        log_reconciliation_event(
            ReconciliationAuditEvent.PAYMENT_CONFLICT,
            transaction_id,
            {"order_id": ref.id, "reason": message},
            order_number=ref.order_number,
        )
        return ReconciliationResult(
            transaction_id=transaction_id,
            outcome=ReconciliationOutcome.CONFLICT,
            order_number=ref.order_number,
            order_id=ref.id,
            amount=amount,
            message=message,
        )

    async def _reject(
        self,
        session,
        repo: PaymentRepository,
        transaction: CassoTransaction,
        outcome: ReconciliationOutcome,
        reason: str,
        order: Optional[OrderDB] = None,
        order_number: Optional[str] = None,
        attempt: Optional[MatchAttempt] = None,
    ) -> ReconciliationResult:
        """Record the verdict on the ledger for the operator queue; the order is untouched."""
        order_number = order.order_number if order is not None else order_number
        order_id = order.id if order is not None else None

        await repo.update_ledger_entry(
            transaction.id,
            only_unsettled=True,
            order_id=order_id,
            order_number=order_number,
            match_status=MatchStatus.UNMATCHED.value,
            match_note=reason,
        )
        await session.commit()

        log_reconciliation_event(
            ReconciliationAuditEvent.MATCH_REJECTED,
            transaction.id,
            {
                "outcome": outcome.value,
                "reason": reason,
                "amount": transaction.amount,
                "match": attempt.to_dict() if attempt else None,
            },
            order_number=order_number,
        )

        return ReconciliationResult(
            transaction_id=transaction.id,
            outcome=outcome,
            order_number=order_number,
            order_id=order_id,
            amount=transaction.amount,
            message=reason,
            attempt=attempt,
        )

    async def _ensure_ledger_entry(self, session, repo: PaymentRepository, transaction: CassoTransaction):
        entry = await repo.get_ledger_entry(transaction.id)
        if entry is not None:
            return entry

        try:
            entry = await repo.add_ledger_entry(transaction)
            await session.commit()
        except IntegrityError:
            # A concurrent delivery of the same transaction recorded it first
            await session.rollback()
            entry = await repo.get_ledger_entry(transaction.id)

        log_reconciliation_event(
            ReconciliationAuditEvent.TRANSACTION_RECEIVED,
            transaction.id,
            {"amount": transaction.amount, "description": transaction.description},
        )
        return entry

    async def _record_write_failure(
        self, transaction: CassoTransaction, error: Optional[Exception]
    ) -> ReconciliationResult:
        message = f"Database write failed: {str(error)[:150]}"
        log_reconciliation_event(
            ReconciliationAuditEvent.WRITE_FAILED,
            transaction.id,
            {"error": str(error)[:200]},
        )

        try:
            async with self.session_factory() as session:
                repo = PaymentRepository(session)
                await repo.update_ledger_entry(
                    transaction.id,
                    only_unsettled=True,
                    match_status=MatchStatus.ERROR.value,
                    match_note=message,
                )
                await session.commit()
        except OperationalError as e:
            logger.error(f"Could not record write failure for transaction {transaction.id}: {e}")

        return ReconciliationResult(
            transaction_id=transaction.id,
            outcome=ReconciliationOutcome.ERROR,
            amount=transaction.amount,
            message=message,
        )

    # ==================== NOTIFICATIONS ====================

    def _notify_settled(self, ref: OrderRef, transaction: CassoTransaction) -> None:
        if ref.customer_id:
            self.notifier.notify(
                f"user_{ref.customer_id}",
                "payment_confirmed",
                {
                    "type": "payment_confirmed",
                    "order_id": ref.id,
                    "order_number": ref.order_number,
                    "amount": transaction.amount,
                    "transaction_id": transaction.id,
                    "message": f"Payment for order {ref.order_number} has been confirmed",
                },
            )

        staff_payload = {
            "type": "payment_received",
            "order_id": ref.id,
            "order_number": ref.order_number,
            "amount": transaction.amount,
            "customer_name": ref.customer_name,
            "message": f"Received {transaction.amount:,} VND for order {ref.order_number}",
        }
        for room in STAFF_ROOMS:
            self.notifier.notify(room, "payment_received", staff_payload)

    # ==================== OPERATOR VIEWS ====================

    async def payment_status(self, order_number: str) -> Dict[str, Any]:
        """Read-only payment state for the customer checkout page."""
        async with self.session_factory() as session:
            repo = PaymentRepository(session)
            order = await repo.get_order_by_number(order_number)
            if order is None:
                raise OrderNotFound(f"Order {order_number} not found")

            transaction = None
            if order.payment_transaction_id:
                entry = await repo.get_ledger_entry(order.payment_transaction_id)
                transaction = entry.to_dict() if entry else {"casso_id": order.payment_transaction_id}

            return {
                "order_number": order.order_number,
                "paid": order.is_paid,
                "payment_status": order.payment_status,
                "paid_at": order.paid_at.isoformat() if order.paid_at else None,
                "amount": order.total,
                "transaction": transaction,
            }

    async def payment_instructions(self, order_number: str) -> Dict[str, Any]:
        """Bank account, amount and the exact memo the customer should type."""
        async with self.session_factory() as session:
            repo = PaymentRepository(session)
            order = await repo.get_order_by_number(order_number)
            if order is None:
                raise OrderNotFound(f"Order {order_number} not found")
            ref = OrderRef.of(order)
            phone = order.customer_phone or ""
            paid = order.is_paid

        bank_account = await self.gateway.get_bank_account() if self.gateway else None
        if not bank_account:
            raise ValueError("No bank account is linked to the payment gateway")

        transfer_content = f"{ref.order_number} {phone}".strip()
        return {
            "order_number": ref.order_number,
            "paid": paid,
            "amount": ref.total,
            "transfer_content": transfer_content,
            "bank_name": bank_account.get("bank_name"),
            "account_number": bank_account.get("account_number"),
            "account_name": bank_account.get("account_name"),
        }

    async def list_transactions(
        self,
        match_status: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Dict[str, Any]:
        async with self.session_factory() as session:
            repo = PaymentRepository(session)
            entries, total = await repo.list_ledger(match_status, start, end, page, limit)

        return {
            "transactions": [e.to_dict() for e in entries],
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "pages": (total + limit - 1) // limit if limit else 0,
            },
        }

    async def unmatched_queue(self, limit: int = 100) -> List[Dict[str, Any]]:
        async with self.session_factory() as session:
            repo = PaymentRepository(session)
            entries = await repo.list_unmatched(limit)
        return [e.to_dict() for e in entries]

    async def ledger_stats(self) -> Dict[str, Any]:
        async with self.session_factory() as session:
            return await PaymentRepository(session).ledger_stats()
