"""
Casso API Client

Read-only client for the Casso v2 REST API:
- GET /transactions        paginated transaction history (used by the poller)
- GET /transactions/{id}   single transaction (used by manual matching)
- GET /userInfo            linked bank accounts (used for payment instructions)

Every request carries a bounded timeout. Network failures, timeouts and
non-success responses surface as UpstreamUnavailable so callers can retry.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

import httpx

from config import get_settings
from reconciliation.casso_models import CassoTransaction
from reconciliation.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

# Casso rejects larger pages
MAX_PAGE_SIZE = 100


class CassoClient:
    """
    Client for the Casso gateway.

    Usage:
        client = CassoClient()
        transactions = await client.list_transactions(from_date=date.today())
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.CASSO_API_KEY
        self.base_url = (base_url or settings.CASSO_API_BASE).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.CASSO_TIMEOUT_SECONDS
        self._transport = transport

        if not self.api_key:
            logger.warning("CASSO_API_KEY not configured - Casso API calls will fail")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"apikey {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        if not self.is_configured:
            raise UpstreamUnavailable("Casso API key is not configured")

        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                return await client.get(url, headers=self._headers(), params=params)
        except httpx.TimeoutException as e:
            logger.error(f"Casso request timed out: GET {path}")
            raise UpstreamUnavailable(f"Casso request timed out: GET {path}") from e
        except httpx.RequestError as e:
            logger.error(f"Casso request failed: GET {path}: {e}")
            raise UpstreamUnavailable(f"Casso request failed: {str(e)[:100]}") from e

    @staticmethod
    def _payload(response: httpx.Response, path: str) -> Dict[str, Any]:
        if response.status_code != 200:
            logger.error(f"Casso returned {response.status_code} for {path}: {response.text[:200]}")
            raise UpstreamUnavailable(
                f"Casso returned {response.status_code} for {path}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as e:
            raise UpstreamUnavailable(f"Casso returned invalid JSON for {path}") from e

        if body.get("error", 0) != 0:
            raise UpstreamUnavailable(f"Casso error for {path}: {body.get('message', 'unknown')}")

        return body.get("data") or {}

    async def list_transactions(
        self,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        page: int = 1,
        page_size: int = MAX_PAGE_SIZE,
    ) -> List[CassoTransaction]:
        """
        Fetch a page of transactions, newest first.

        Entries that do not parse are skipped with a warning.
        """
        params: Dict[str, Any] = {
            "page": page,
            "pageSize": min(page_size, MAX_PAGE_SIZE),
            "sort": "DESC",
        }
        if from_date:
            params["fromDate"] = from_date.strftime("%d/%m/%Y")
        if to_date:
            params["toDate"] = to_date.strftime("%d/%m/%Y")

        response = await self._get("/transactions", params=params)
        data = self._payload(response, "/transactions")

        transactions = []
        for record in data.get("records", []):
            try:
                transactions.append(CassoTransaction.from_payload(record))
            except ValueError as e:
                logger.warning(f"Skipping unparseable Casso record {record.get('id')}: {e}")

        logger.info(f"Fetched {len(transactions)} transactions from Casso (page {page})")
        return transactions

    async def get_transaction(self, transaction_id: str) -> Optional[CassoTransaction]:
        """Fetch one transaction; None when Casso does not know the id."""
        path = f"/transactions/{transaction_id}"
        response = await self._get(path)

        if response.status_code == 404:
            return None

        data = self._payload(response, path)
        if not data:
            return None

        return CassoTransaction.from_payload(data)

    async def get_user_info(self) -> Dict[str, Any]:
        response = await self._get("/userInfo")
        return self._payload(response, "/userInfo")

    async def get_bank_account(self) -> Optional[Dict[str, Any]]:
        """First linked bank account, in the shape shown to customers."""
        info = await self.get_user_info()
        accounts = info.get("bankAccs") or []
        if not accounts:
            return None

        account = accounts[0]
        return {
            "bank_name": account.get("bank_name"),
            "account_number": account.get("bank_acc_no"),
            "account_name": account.get("bank_acc_name"),
        }
