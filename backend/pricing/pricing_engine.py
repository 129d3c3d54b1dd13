"""
Pricing Engine - Order Total Calculation

Computes the price breakdown of an order from its line items, delivery type,
membership tier and an optional coupon. The total it produces is the amount
a customer is told to transfer, and it is recomputed at reconciliation time
to confirm that the stored order total has not drifted.

All amounts are whole VND. Intermediate products use Decimal and round
half-up, so 0.5 always rounds away from zero regardless of platform.

Formula:
    subtotal            = Σ price × quantity
    tax                 = round(subtotal × tax_rate)
    delivery_fee        = flat fee for "delivery", waived at the free-delivery
                          threshold and for gold/platinum members
    membership_discount = round(subtotal × tier rate)
    coupon_discount     = percentage: round(subtotal × value / 100)
                          fixed:      min(value, subtotal)
                          any other type: 0
    total               = max(0, subtotal + tax + delivery_fee
                                 − membership_discount − coupon_discount)
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


# ==================== CONSTANTS ====================

DEFAULT_TAX_RATE = Decimal("0.08")
DEFAULT_FREE_DELIVERY_THRESHOLD = 500000
DEFAULT_DELIVERY_FEE = 30000

# Membership discount applied to the subtotal
TIER_DISCOUNT_RATES: Dict[str, Decimal] = {
    "bronze": Decimal("0"),
    "silver": Decimal("0.05"),
    "gold": Decimal("0.10"),
    "platinum": Decimal("0.15"),
}

# Tiers that never pay a delivery fee
FREE_DELIVERY_TIERS = frozenset({"gold", "platinum"})

# One loyalty point per 10,000 VND paid
LOYALTY_POINT_VALUE = 10000


class CouponType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


# ==================== DATA TYPES ====================

@dataclass(frozen=True)
class PricingConfig:
    """Pricing constants, passed explicitly so callers never read globals."""
    tax_rate: Decimal = DEFAULT_TAX_RATE
    free_delivery_threshold: int = DEFAULT_FREE_DELIVERY_THRESHOLD
    delivery_fee: int = DEFAULT_DELIVERY_FEE

    @classmethod
    def from_settings(cls, settings) -> "PricingConfig":
        return cls(
            tax_rate=Decimal(str(settings.TAX_RATE)),
            free_delivery_threshold=int(settings.FREE_DELIVERY_THRESHOLD),
            delivery_fee=int(settings.DEFAULT_DELIVERY_FEE),
        )


@dataclass(frozen=True)
class LineItem:
    price: int
    quantity: int
    name: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LineItem":
        return cls(
            price=int(data.get("price", 0)),
            quantity=int(data.get("quantity", 0)),
            name=str(data.get("name", "")),
        )


@dataclass(frozen=True)
class Coupon:
    code: str
    discount_type: str
    discount_value: int
    min_order_value: int = 0
    usage_limit: Optional[int] = None
    used_count: int = 0
    is_active: bool = True
    expiry_date: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Coupon":
        expiry = data.get("expiry_date")
        if isinstance(expiry, str):
            expiry = datetime.fromisoformat(expiry)
        return cls(
            code=str(data.get("code", "")),
            discount_type=str(data.get("discount_type") or ""),
            discount_value=int(data.get("discount_value", 0)),
            min_order_value=int(data.get("min_order_value") or 0),
            usage_limit=data.get("usage_limit"),
            used_count=int(data.get("used_count") or 0),
            is_active=bool(data.get("is_active", True)),
            expiry_date=expiry,
        )


@dataclass(frozen=True)
class Pricing:
    subtotal: int
    tax: int
    delivery_fee: int
    membership_discount: int
    coupon_discount: int
    total: int

    @property
    def discount(self) -> int:
        return self.membership_discount + self.coupon_discount

    def to_dict(self) -> Dict[str, int]:
        data = asdict(self)
        data["discount"] = self.discount
        return data


@dataclass
class PricingCheck:
    """Result of comparing a stored breakdown with a fresh computation"""
    consistent: bool
    expected: Pricing
    differences: Dict[str, Dict[str, int]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consistent": self.consistent,
            "expected": self.expected.to_dict(),
            "differences": self.differences,
        }


# ==================== HELPERS ====================

def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; they are stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def validate_coupon(coupon: Optional[Coupon], subtotal: int, as_of: Optional[datetime] = None) -> bool:
    """
    Check whether a coupon applies to an order.

    A coupon is valid when it is active, not expired at `as_of`, the
    subtotal meets its minimum and it has not reached its usage limit.
    A missing or zero limit means unlimited.
    """
    if coupon is None or not coupon.is_active:
        return False

    if coupon.expiry_date is not None:
        as_of = _as_utc(as_of) if as_of else datetime.now(timezone.utc)
        if as_of > _as_utc(coupon.expiry_date):
            return False

    if coupon.min_order_value and subtotal < coupon.min_order_value:
        return False

    if coupon.usage_limit and coupon.used_count >= coupon.usage_limit:
        return False

    return True


def calculate_loyalty_points(total: int) -> int:
    """Points earned for a settled order: one per 10,000 VND."""
    return max(0, int(total)) // LOYALTY_POINT_VALUE


# ==================== PRICING ENGINE ====================

class PricingEngine:
    """
    Pure pricing calculator.

    Usage:
        engine = PricingEngine(PricingConfig.from_settings(settings))
        pricing = engine.compute_pricing(items, "delivery", "silver", coupon)
    """

    def __init__(self, config: Optional[PricingConfig] = None):
        self.config = config or PricingConfig()

    def compute_subtotal(self, items: Iterable[LineItem]) -> int:
        return sum(item.price * item.quantity for item in items)

    def compute_delivery_fee(self, subtotal: int, delivery_type: str, customer_tier: str) -> int:
        if delivery_type != "delivery":
            return 0
        if subtotal >= self.config.free_delivery_threshold:
            return 0
        if customer_tier in FREE_DELIVERY_TIERS:
            return 0
        return self.config.delivery_fee

    def compute_coupon_discount(self, coupon: Optional[Coupon], subtotal: int, as_of: Optional[datetime] = None) -> int:
        if not validate_coupon(coupon, subtotal, as_of):
            return 0

        if coupon.discount_type == CouponType.PERCENTAGE.value:
            return round_half_up(Decimal(subtotal) * Decimal(coupon.discount_value) / Decimal(100))
        if coupon.discount_type == CouponType.FIXED.value:
            return min(coupon.discount_value, subtotal)

        # unknown coupon types carry no discount
        return 0

    def compute_pricing(
        self,
        items: Iterable[LineItem],
        delivery_type: str,
        customer_tier: str,
        coupon: Optional[Coupon] = None,
        as_of: Optional[datetime] = None,
    ) -> Pricing:
        items = list(items)
        subtotal = self.compute_subtotal(items)

        tax = round_half_up(Decimal(subtotal) * self.config.tax_rate)
        delivery_fee = self.compute_delivery_fee(subtotal, delivery_type, customer_tier)

        tier_rate = TIER_DISCOUNT_RATES.get(customer_tier, Decimal("0"))
        membership_discount = round_half_up(Decimal(subtotal) * tier_rate)

        coupon_discount = self.compute_coupon_discount(coupon, subtotal, as_of)

        total = max(0, subtotal + tax + delivery_fee - membership_discount - coupon_discount)

        return Pricing(
            subtotal=subtotal,
            tax=tax,
            delivery_fee=delivery_fee,
            membership_discount=membership_discount,
            coupon_discount=coupon_discount,
            total=total,
        )

    def price_order(self, order) -> Pricing:
        """Recompute an order's pricing from the inputs captured at checkout."""
        items: List[LineItem] = [LineItem.from_dict(i) for i in (order.items or [])]
        coupon = Coupon.from_dict(order.coupon) if order.coupon else None
        return self.compute_pricing(
            items,
            order.delivery_type,
            order.customer_tier,
            coupon=coupon,
            as_of=order.created_at,
        )

    def verify_order_pricing(self, order) -> PricingCheck:
        """
        Compare an order's stored breakdown with a fresh computation.

        Any differing field makes the order unsafe to settle automatically.
        """
        expected = self.price_order(order)
        stored = order.pricing_dict()

        differences = {}
        for field_name, expected_value in expected.to_dict().items():
            if stored.get(field_name) != expected_value:
                differences[field_name] = {
                    "stored": stored.get(field_name),
                    "expected": expected_value,
                }

        if differences:
            logger.warning(
                f"Stored pricing differs from recomputation for order {order.order_number}",
                extra={"order_number": order.order_number, "differences": differences},
            )

        return PricingCheck(
            consistent=not differences,
            expected=expected,
            differences=differences,
        )
