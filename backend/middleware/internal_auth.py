"""
Operator authentication for the back-office payment endpoints.

Cashier dashboards, admin tools and ops scripts send a shared API key;
the key admits the caller and X-Operator-Id names the staff member whose
action is recorded (processed_by on manual matches). Several keys may be
configured at once through INTERNAL_API_KEYS so keys can be rotated
without downtime.

    @router.post("/transactions/{transaction_id}/match")
    async def manual_match(transaction_id: str, operator: Operator = Depends(require_operator)):
        ...

Headers:
    X-Internal-Api-Key: <api_key>
    X-Operator-Id: <staff user id>
    X-Service-Name: <calling tool> (optional, for logging)
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Iterable, Optional, Set

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from config import get_settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Internal-Api-Key"
OPERATOR_ID_HEADER = "X-Operator-Id"
SERVICE_NAME_HEADER = "X-Service-Name"


@dataclass
class Operator:
    """An authenticated back-office caller."""
    operator_id: str
    service_name: str
    key_suffix: str


def get_valid_api_keys() -> Set[str]:
    return get_settings().operator_api_keys


def validate_internal_key(api_key: Optional[str], valid_keys: Optional[Iterable[str]] = None) -> bool:
    """True when `api_key` equals one of the configured keys (constant time)."""
    if not api_key:
        return False

    keys = get_valid_api_keys() if valid_keys is None else valid_keys
    candidate = api_key.encode()
    matched = False
    for key in keys:
        # no early exit: every configured key is compared
        matched |= secrets.compare_digest(candidate, key.encode())
    return matched


def _reject(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "ApiKey"},
    )


api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


async def require_operator(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header),
) -> Operator:
    """
    FastAPI dependency for operator-only routes.

    Raises:
        HTTPException: 401 if the key is missing or not configured
    """
    service_name = request.headers.get(SERVICE_NAME_HEADER, "unknown")

    if not api_key:
        logger.warning(f"Operator request without API key (service={service_name})")
        raise _reject("Missing internal API key")

    if not get_valid_api_keys():
        logger.error("Operator request rejected: no INTERNAL_API_KEY configured")
        raise _reject("Invalid internal API key")

    if not validate_internal_key(api_key):
        logger.warning(f"Operator request with invalid API key (service={service_name}, key=...{api_key[-4:]})")
        raise _reject("Invalid internal API key")

    return Operator(
        operator_id=request.headers.get(OPERATOR_ID_HEADER) or f"service:{service_name}",
        service_name=service_name,
        key_suffix=api_key[-4:],
    )
