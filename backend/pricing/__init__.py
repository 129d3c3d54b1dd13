"""
Pricing Module

Pure order pricing: subtotal, tax, delivery fee, membership and coupon
discounts, and loyalty points.
"""

from .pricing_engine import (
    PricingEngine,
    PricingConfig,
    Pricing,
    PricingCheck,
    LineItem,
    Coupon,
    CouponType,
    validate_coupon,
    calculate_loyalty_points,
    round_half_up,
    TIER_DISCOUNT_RATES,
)

__all__ = [
    "PricingEngine",
    "PricingConfig",
    "Pricing",
    "PricingCheck",
    "LineItem",
    "Coupon",
    "CouponType",
    "validate_coupon",
    "calculate_loyalty_points",
    "round_half_up",
    "TIER_DISCOUNT_RATES",
]
