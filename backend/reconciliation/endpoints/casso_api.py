"""
Casso Payment API Endpoints

REST API for bank-transfer payment reconciliation:
- POST /api/casso/webhook - Casso transaction push (shared-secret auth)
- GET /api/casso/payment-status/{order_number} - Customer-facing paid/unpaid check
- GET /api/casso/payment-instructions/{order_number} - Bank account and transfer memo
- GET /api/casso/transactions - Transaction ledger (operator)
- GET /api/casso/transactions/unmatched - Operator queue of rejected transfers
- POST /api/casso/transactions/{transaction_id}/match - Manual match (operator)
- POST /api/casso/sync - Run one poll cycle now (operator)
- GET /api/casso/status - Module status
"""

import logging
import secrets
from datetime import date, datetime, time, timezone
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Header, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from config import Settings, get_settings
from database.payment_models import MatchStatus
from middleware.internal_auth import Operator, require_operator
from reconciliation.casso_models import parse_transactions
from reconciliation.dependencies import get_coordinator, get_poller
from reconciliation.errors import (
    AuthenticationFailure,
    MalformedPayload,
    OrderNotFound,
    TransactionNotFound,
    UpstreamUnavailable,
    WebhookTokenNotConfigured,
)
from reconciliation.services.reconciliation_service import ReconciliationCoordinator
from reconciliation.workers.casso_poller import CassoPoller
from sentry_integration import capture_message

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/casso", tags=["Casso Payments"])


# ==================== Request/Response Models ====================

class ManualMatchRequest(BaseModel):
    """Request to settle an order with a specific transaction."""
    model_config = ConfigDict(populate_by_name=True)

    order_number: Optional[str] = Field(default=None, alias="orderNumber", description="Order number to settle")
    order_id: Optional[str] = Field(default=None, alias="orderId", description="Order id to settle")


class SyncRequest(BaseModel):
    """Request to poll Casso now."""
    from_date: Optional[date] = Field(default=None, description="First day to fetch (default: yesterday)")
    to_date: Optional[date] = Field(default=None, description="Last day to fetch (default: today)")


class ReconciliationResultResponse(BaseModel):
    transaction_id: str
    outcome: str
    order_number: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[int] = None
    message: Optional[str] = None
    already_settled: bool = False


class WebhookResponse(BaseModel):
    success: bool
    message: str
    results: List[ReconciliationResultResponse]


class PaymentStatusResponse(BaseModel):
    order_number: str
    paid: bool
    payment_status: str
    paid_at: Optional[str] = None
    amount: int
    transaction: Optional[dict] = None


class PaymentInstructionsResponse(BaseModel):
    order_number: str
    paid: bool
    amount: int
    transfer_content: str
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None


# ==================== Webhook Authentication ====================

def verify_webhook_token(provided: Optional[str], settings: Settings) -> bool:
    """
    Check the shared secret Casso sends with every push.

    Exact equality, compared in constant time.

    Raises:
        AuthenticationFailure: token missing or wrong
        WebhookTokenNotConfigured: no token configured in production
    """
    expected = settings.CASSO_WEBHOOK_TOKEN

    if not expected:
        if settings.is_production:
            raise WebhookTokenNotConfigured("CASSO_WEBHOOK_TOKEN is not configured")
        logger.warning("CASSO_WEBHOOK_TOKEN not configured - accepting unauthenticated webhook")
        return True

    if not provided:
        raise AuthenticationFailure("Missing webhook token")

    if not secrets.compare_digest(provided.encode(), expected.encode()):
        raise AuthenticationFailure("Invalid webhook token")

    return True


# ==================== Endpoints ====================

@router.post("/webhook", response_model=WebhookResponse, summary="Casso transaction webhook")
async def casso_webhook(
    request: Request,
    secure_token: Optional[str] = Header(None, alias="secure-token"),
    casso_signature: Optional[str] = Header(None, alias="x-casso-signature"),
    settings: Settings = Depends(get_settings),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    """
    Receive transactions pushed by Casso.

    The whole batch is authenticated and parsed before any transaction is
    processed. Match outcomes never change the status code: Casso only
    needs to know the delivery was accepted.
    """
    try:
        verify_webhook_token(secure_token or casso_signature, settings)
    except WebhookTokenNotConfigured as e:
        logger.error(str(e))
        raise HTTPException(status_code=503, detail="Webhook authentication not configured")
    except AuthenticationFailure as e:
        client_host = request.client.host if request.client else "unknown"
        logger.warning(f"Rejected Casso webhook from {client_host}: {e}")
        capture_message(
            "Casso webhook rejected: bad secret",
            level="warning",
            client_host=client_host,
        )
        raise HTTPException(status_code=401, detail="Invalid webhook token")

    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Body must be valid JSON")

    try:
        transactions = parse_transactions(body)
    except MalformedPayload as e:
        logger.warning(f"Malformed Casso webhook: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"Casso webhook received {len(transactions)} transaction(s)")

    results = await coordinator.ingest_batch(transactions)

    return WebhookResponse(
        success=True,
        message="Webhook processed",
        results=[ReconciliationResultResponse(**r.to_dict()) for r in results],
    )


@router.get("/payment-status/{order_number}", response_model=PaymentStatusResponse, summary="Order payment status")
async def get_payment_status(
    order_number: str,
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    """
    Read-only payment state, polled by the checkout page.
    """
    try:
        status = await coordinator.payment_status(order_number)
        return PaymentStatusResponse(**status)

    except OrderNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to get payment status for {order_number}: {e}")
        raise HTTPException(status_code=500, detail="Failed to get payment status")


@router.get(
    "/payment-instructions/{order_number}",
    response_model=PaymentInstructionsResponse,
    summary="Bank transfer instructions",
)
async def get_payment_instructions(
    order_number: str,
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    """
    Bank account, amount and the exact transfer memo for an order.
    """
    try:
        instructions = await coordinator.payment_instructions(order_number)
        return PaymentInstructionsResponse(**instructions)

    except OrderNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except UpstreamUnavailable as e:
        logger.error(f"Casso unavailable while building instructions for {order_number}: {e}")
        raise HTTPException(status_code=503, detail="Payment gateway unavailable")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to build payment instructions for {order_number}: {e}")
        raise HTTPException(status_code=500, detail="Failed to get payment instructions")


@router.get("/transactions", summary="List Casso transactions")
async def list_transactions(
    match_status: Optional[str] = Query(None, description="pending, matched, unmatched or error"),
    start_date: Optional[date] = Query(None, description="First transfer day (inclusive)"),
    end_date: Optional[date] = Query(None, description="Last transfer day (inclusive)"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    operator: Operator = Depends(require_operator),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    """
    Paginated transaction ledger, newest first.

    Requires internal API key authentication.
    """
    try:
        if match_status is not None:
            try:
                MatchStatus(match_status)
            except ValueError:
                raise HTTPException(
                    status_code=400,
                    detail=f"Invalid match_status. Valid values: {[s.value for s in MatchStatus]}"
                )

        start = datetime.combine(start_date, time.min, tzinfo=timezone.utc) if start_date else None
        end = datetime.combine(end_date, time.max, tzinfo=timezone.utc) if end_date else None

        return await coordinator.list_transactions(
            match_status=match_status,
            start=start,
            end=end,
            page=page,
            limit=limit,
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to list Casso transactions: {e}")
        raise HTTPException(status_code=500, detail="Failed to list transactions")


@router.get("/transactions/unmatched", summary="Unmatched transaction queue")
async def list_unmatched_transactions(
    limit: int = Query(100, ge=1, le=500),
    operator: Operator = Depends(require_operator),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    """
    Transfers the automatic path rejected, waiting for an operator.

    Requires internal API key authentication.
    """
    try:
        items = await coordinator.unmatched_queue(limit=limit)
        return {"transactions": items, "count": len(items)}
    except Exception as e:
        logger.error(f"Failed to load unmatched queue: {e}")
        raise HTTPException(status_code=500, detail="Failed to load unmatched transactions")


@router.post(
    "/transactions/{transaction_id}/match",
    response_model=ReconciliationResultResponse,
    summary="Manually match a transaction",
)
async def manual_match(
    transaction_id: str,
    request: ManualMatchRequest,
    operator: Operator = Depends(require_operator),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    """
    Settle an order with a transaction the automatic path rejected.

    Amount and description checks are skipped; an order that is already
    paid is never overwritten (outcome "conflict", or "duplicate" with
    already_settled=true when this transaction settled it).

    Requires internal API key authentication; X-Operator-Id is recorded.
    """
    try:
        if not request.order_number and not request.order_id:
            raise HTTPException(status_code=400, detail="orderNumber or orderId is required")

        result = await coordinator.manual_match(
            transaction_id=transaction_id,
            operator_id=operator.operator_id,
            order_number=request.order_number,
            order_id=request.order_id,
        )
        return ReconciliationResultResponse(**result.to_dict())

    except HTTPException:
        raise
    except (OrderNotFound, TransactionNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except UpstreamUnavailable as e:
        logger.error(f"Casso unavailable during manual match of {transaction_id}: {e}")
        raise HTTPException(status_code=503, detail="Payment gateway unavailable")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Manual match of {transaction_id} failed: {e}")
        raise HTTPException(status_code=500, detail="Manual match failed")


@router.post("/sync", summary="Poll Casso now")
async def sync_transactions(
    request: Optional[SyncRequest] = None,
    operator: Operator = Depends(require_operator),
    poller: CassoPoller = Depends(get_poller),
):
    """
    Run one poll cycle immediately.

    Requires internal API key authentication.
    """
    request = request or SyncRequest()
    try:
        logger.info(f"Manual Casso sync requested by {operator.operator_id}")
        return await poller.process_once(from_date=request.from_date, to_date=request.to_date)
    except Exception as e:
        logger.error(f"Casso sync failed: {e}")
        raise HTTPException(status_code=500, detail="Sync failed")


@router.get("/status", summary="Module status")
async def get_module_status(
    settings: Settings = Depends(get_settings),
    poller: CassoPoller = Depends(get_poller),
):
    """
    Get Casso module status.

    Returns configuration and availability information.
    """
    return {
        "module": "casso",
        "status": "operational",
        "version": "1.0.0",
        "features": {
            "webhook": True,
            "webhook_auth": bool(settings.CASSO_WEBHOOK_TOKEN),
            "api_client": settings.casso_configured,
            "polling": settings.CASSO_POLL_ENABLED,
            "realtime_notifications": bool(settings.NOTIFICATION_URL),
        },
        "amount_tolerance": settings.AMOUNT_TOLERANCE,
        "last_poll": poller.last_run,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
