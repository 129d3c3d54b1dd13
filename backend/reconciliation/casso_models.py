"""
Casso Transaction Models

Parsed representation of the transactions Casso reports, either pushed to
the webhook or returned by GET /transactions.

Casso payload (per transaction):
    {
        "id": 123456,
        "tid": "FT24015XXXXX",
        "description": "DAT MON ORD20240115000123 0901234567",
        "amount": 246000,
        "cusum_balance": 12500000,
        "when": "2024-01-15 10:30:00",
        "bank_sub_acc_id": "0123456789"
    }
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from reconciliation.errors import MalformedPayload

# Casso reports bank time (Vietnam, UTC+7) without an offset
BANK_TIMEZONE = timezone(timedelta(hours=7))


class CassoTransaction(BaseModel):
    """Immutable once parsed."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    tid: Optional[str] = None
    amount: int
    description: str
    when: datetime
    bank_sub_acc_id: Optional[str] = None
    cusum_balance: Optional[int] = None
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    @field_validator("id", "tid", "bank_sub_acc_id", mode="before")
    @classmethod
    def _coerce_identifier(cls, value):
        if value is None or isinstance(value, bool):
            return value
        if isinstance(value, (int, str)):
            return str(value)
        return value

    @field_validator("when", mode="before")
    @classmethod
    def _parse_when(cls, value):
        if isinstance(value, str):
            value = datetime.fromisoformat(value.strip().replace(" ", "T", 1))
        if isinstance(value, datetime) and value.tzinfo is None:
            value = value.replace(tzinfo=BANK_TIMEZONE)
        return value

    @field_validator("id")
    @classmethod
    def _non_empty_id(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("transaction id must not be empty")
        return value

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "CassoTransaction":
        return cls.model_validate({**data, "raw": dict(data)})


def parse_transactions(body: Any) -> List[CassoTransaction]:
    """
    Parse a webhook body into transactions.

    Accepts {"error": 0, "data": [...]} or a single transaction object. The
    whole batch is validated before anything is returned, so a single bad
    entry rejects the delivery.

    Raises:
        MalformedPayload: body is not a recognisable transaction payload
    """
    if not isinstance(body, dict):
        raise MalformedPayload("Webhook body must be a JSON object")

    if "data" in body:
        entries = body["data"]
        if isinstance(entries, dict):
            entries = [entries]
        if not isinstance(entries, list):
            raise MalformedPayload("'data' must be a list of transactions")
    else:
        entries = [body]

    transactions = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise MalformedPayload(f"Transaction #{index} is not an object")
        try:
            transactions.append(CassoTransaction.from_payload(entry))
        except (ValidationError, ValueError, TypeError) as e:
            raise MalformedPayload(f"Transaction #{index} is invalid: {e}") from e

    return transactions
