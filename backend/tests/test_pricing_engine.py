"""
Tests for the order pricing engine.

Covers:
- Subtotal, tax, delivery fee and membership discount
- Coupon validity and discount calculation
- Loyalty points
- Verification of stored order pricing
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from pricing.pricing_engine import (
    Coupon,
    LineItem,
    Pricing,
    PricingConfig,
    PricingEngine,
    calculate_loyalty_points,
    round_half_up,
    validate_coupon,
)


@pytest.fixture
def engine():
    return PricingEngine()


def items(*pairs):
    return [LineItem(price=price, quantity=quantity) for price, quantity in pairs]


# ==================== BREAKDOWN ====================

class TestPricingBreakdown:

    def test_standard_delivery_order(self, engine):
        pricing = engine.compute_pricing(items((100000, 2)), "delivery", "bronze")

        assert pricing == Pricing(
            subtotal=200000,
            tax=16000,
            delivery_fee=30000,
            membership_discount=0,
            coupon_discount=0,
            total=246000,
        )

    def test_pickup_has_no_delivery_fee(self, engine):
        pricing = engine.compute_pricing(items((100000, 2)), "pickup", "bronze")
        assert pricing.delivery_fee == 0
        assert pricing.total == 216000

    def test_dine_in_has_no_delivery_fee(self, engine):
        pricing = engine.compute_pricing(items((50000, 1)), "dine_in", "bronze")
        assert pricing.delivery_fee == 0

    @pytest.mark.parametrize("tier,discount", [
        ("bronze", 0),
        ("silver", 10000),
        ("gold", 20000),
        ("platinum", 30000),
    ])
    def test_membership_discount(self, engine, tier, discount):
        pricing = engine.compute_pricing(items((100000, 2)), "pickup", tier)
        assert pricing.membership_discount == discount
        assert pricing.total == 216000 - discount

    def test_unknown_tier_gets_no_discount(self, engine):
        pricing = engine.compute_pricing(items((100000, 1)), "pickup", "diamond")
        assert pricing.membership_discount == 0

    def test_free_delivery_at_threshold(self, engine):
        pricing = engine.compute_pricing(items((250000, 2)), "delivery", "bronze")
        assert pricing.subtotal == 500000
        assert pricing.delivery_fee == 0

    def test_delivery_fee_just_below_threshold(self, engine):
        pricing = engine.compute_pricing(items((499999, 1)), "delivery", "bronze")
        assert pricing.delivery_fee == 30000

    @pytest.mark.parametrize("tier", ["gold", "platinum"])
    def test_free_delivery_for_top_tiers(self, engine, tier):
        pricing = engine.compute_pricing(items((100000, 1)), "delivery", tier)
        assert pricing.delivery_fee == 0

    def test_silver_still_pays_delivery(self, engine):
        pricing = engine.compute_pricing(items((100000, 1)), "delivery", "silver")
        assert pricing.delivery_fee == 30000

    def test_tax_rounds_half_up(self, engine):
        # 8% of 6,250 is 500 exactly; 8% of 6,256 is 500.48
        assert engine.compute_pricing(items((6250, 1)), "pickup", "bronze").tax == 500
        assert engine.compute_pricing(items((6256, 1)), "pickup", "bronze").tax == 500
        # 8% of 6,257 is 500.56
        assert engine.compute_pricing(items((6257, 1)), "pickup", "bronze").tax == 501

    def test_empty_order(self, engine):
        pricing = engine.compute_pricing([], "pickup", "bronze")
        assert pricing.total == 0

    def test_multiple_line_items(self, engine):
        pricing = engine.compute_pricing(items((45000, 3), (20000, 2), (15000, 1)), "pickup", "bronze")
        assert pricing.subtotal == 190000

    def test_discount_is_sum_of_discounts(self):
        pricing = Pricing(100, 8, 0, 5, 10, 93)
        assert pricing.discount == 15
        assert pricing.to_dict()["discount"] == 15

    def test_custom_config(self):
        engine = PricingEngine(PricingConfig(tax_rate=Decimal("0.10"), free_delivery_threshold=100000, delivery_fee=15000))
        pricing = engine.compute_pricing(items((50000, 1)), "delivery", "bronze")
        assert pricing.tax == 5000
        assert pricing.delivery_fee == 15000

    def test_config_from_settings(self):
        settings = SimpleNamespace(TAX_RATE=0.1, FREE_DELIVERY_THRESHOLD=400000, DEFAULT_DELIVERY_FEE=20000)
        config = PricingConfig.from_settings(settings)
        assert config.tax_rate == Decimal("0.1")
        assert config.free_delivery_threshold == 400000
        assert config.delivery_fee == 20000

    def test_line_item_from_dict(self):
        item = LineItem.from_dict({"name": "Com tam", "price": "35000", "quantity": 2})
        assert item == LineItem(price=35000, quantity=2, name="Com tam")


# ==================== COUPONS ====================

class TestCoupons:
    NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

    def coupon(self, **overrides):
        data = dict(code="GIAM10", discount_type="percentage", discount_value=10)
        data.update(overrides)
        return Coupon(**data)

    def test_percentage_coupon(self, engine):
        pricing = engine.compute_pricing(items((100000, 2)), "pickup", "bronze", coupon=self.coupon(), as_of=self.NOW)
        assert pricing.coupon_discount == 20000
        assert pricing.total == 196000

    def test_percentage_coupon_rounds_half_up(self, engine):
        # 15% of 10,010 is 1,501.5
        coupon = self.coupon(discount_value=15)
        assert engine.compute_coupon_discount(coupon, 10010, self.NOW) == 1502

    def test_fixed_coupon(self, engine):
        coupon = self.coupon(discount_type="fixed", discount_value=50000)
        assert engine.compute_coupon_discount(coupon, 200000, self.NOW) == 50000

    def test_fixed_coupon_capped_at_subtotal(self, engine):
        coupon = self.coupon(discount_type="fixed", discount_value=50000)
        assert engine.compute_coupon_discount(coupon, 30000, self.NOW) == 30000

    def test_total_never_negative(self, engine):
        coupon = self.coupon(discount_type="fixed", discount_value=1000000)
        pricing = engine.compute_pricing(items((10000, 1)), "pickup", "platinum", coupon=coupon, as_of=self.NOW)
        assert pricing.total >= 0

    def test_coupon_and_membership_stack(self, engine):
        pricing = engine.compute_pricing(
            items((100000, 2)), "pickup", "silver", coupon=self.coupon(), as_of=self.NOW
        )
        assert pricing.membership_discount == 10000
        assert pricing.coupon_discount == 20000
        assert pricing.total == 200000 + 16000 - 30000

    def test_expired_coupon(self):
        coupon = self.coupon(expiry_date=self.NOW - timedelta(days=1))
        assert validate_coupon(coupon, 200000, self.NOW) is False

    def test_coupon_valid_until_expiry(self):
        coupon = self.coupon(expiry_date=self.NOW + timedelta(hours=1))
        assert validate_coupon(coupon, 200000, self.NOW) is True

    def test_naive_expiry_treated_as_utc(self):
        coupon = self.coupon(expiry_date=datetime(2024, 1, 15, 11, 0))
        assert validate_coupon(coupon, 200000, self.NOW) is False

    def test_minimum_order_value(self):
        coupon = self.coupon(min_order_value=300000)
        assert validate_coupon(coupon, 299999, self.NOW) is False
        assert validate_coupon(coupon, 300000, self.NOW) is True

    def test_usage_limit_reached(self):
        assert validate_coupon(self.coupon(usage_limit=5, used_count=5), 200000, self.NOW) is False
        assert validate_coupon(self.coupon(usage_limit=5, used_count=4), 200000, self.NOW) is True

    def test_zero_usage_limit_is_unlimited(self):
        assert validate_coupon(self.coupon(usage_limit=0, used_count=100), 200000, self.NOW) is True

    def test_inactive_coupon(self):
        assert validate_coupon(self.coupon(is_active=False), 200000, self.NOW) is False

    def test_no_coupon(self, engine):
        assert validate_coupon(None, 200000) is False
        assert engine.compute_coupon_discount(None, 200000) == 0

    def test_invalid_coupon_gives_no_discount(self, engine):
        coupon = self.coupon(is_active=False)
        pricing = engine.compute_pricing(items((100000, 2)), "pickup", "bronze", coupon=coupon, as_of=self.NOW)
        assert pricing.coupon_discount == 0

    def test_coupon_from_dict_parses_expiry(self):
        coupon = Coupon.from_dict({
            "code": "TET2024",
            "discount_type": "fixed",
            "discount_value": 20000,
            "expiry_date": "2024-02-15T00:00:00+00:00",
        })
        assert coupon.expiry_date == datetime(2024, 2, 15, tzinfo=timezone.utc)
        assert coupon.min_order_value == 0

    def test_unknown_coupon_type_gives_no_discount(self, engine):
        coupon = self.coupon(code="FREESHIP", discount_type="freeship", discount_value=30000)
        pricing = engine.compute_pricing(items((100000, 2)), "pickup", "bronze", coupon=coupon, as_of=self.NOW)
        assert pricing.coupon_discount == 0
        assert pricing.total == 216000

    def test_coupon_from_dict_without_type_gives_no_discount(self, engine):
        coupon = Coupon.from_dict({"code": "GIAM20K", "discount_value": 20000})
        assert coupon.discount_type == ""
        assert engine.compute_coupon_discount(coupon, 200000, as_of=self.NOW) == 0


# ==================== HELPERS ====================

class TestHelpers:

    @pytest.mark.parametrize("value,expected", [
        ("0.5", 1),
        ("1.5", 2),
        ("2.5", 3),
        ("2.49", 2),
        ("100.0", 100),
    ])
    def test_round_half_up(self, value, expected):
        assert round_half_up(Decimal(value)) == expected

    @pytest.mark.parametrize("total,points", [
        (0, 0),
        (9999, 0),
        (10000, 1),
        (246000, 24),
        (-5000, 0),
    ])
    def test_loyalty_points(self, total, points):
        assert calculate_loyalty_points(total) == points


# ==================== VERIFICATION ====================

class TestVerifyOrderPricing:

    def make_order(self, engine, **overrides):
        order_items = [{"name": "Pho", "price": 100000, "quantity": 2}]
        pricing = engine.compute_pricing([LineItem.from_dict(i) for i in order_items], "delivery", "silver")
        stored = pricing.to_dict()
        stored.update(overrides)

        return SimpleNamespace(
            order_number="ORD20240115000001",
            items=order_items,
            delivery_type="delivery",
            customer_tier="silver",
            coupon=None,
            created_at=datetime(2024, 1, 15, 10, 0),
            pricing_dict=lambda: stored,
        )

    def test_consistent_order(self, engine):
        check = engine.verify_order_pricing(self.make_order(engine))
        assert check.consistent is True
        assert check.differences == {}

    def test_tampered_total(self, engine):
        check = engine.verify_order_pricing(self.make_order(engine, total=1000))
        assert check.consistent is False
        assert check.differences["total"] == {"stored": 1000, "expected": 236000}

    def test_stale_discount(self, engine):
        check = engine.verify_order_pricing(self.make_order(engine, membership_discount=0, discount=0))
        assert check.consistent is False
        assert set(check.differences) == {"membership_discount", "discount"}

    def test_coupon_checked_as_of_order_creation(self, engine):
        order = self.make_order(engine)
        order.coupon = {
            "code": "OLD",
            "discount_type": "fixed",
            "discount_value": 20000,
            "expiry_date": "2024-01-16T00:00:00+00:00",
        }
        expected = engine.price_order(order)
        assert expected.coupon_discount == 20000
