"""
Shared fixtures for the promotion engine tests
"""

from datetime import datetime, timedelta, timezone

import pytest

from promotion_engine.audit import InMemoryAuditSink
from promotion_engine.config import PromotionEngineConfig
from promotion_engine.core import PromotionEngine
from promotion_engine.ledger import InMemoryUsageLedger
from promotion_engine.models import (
    ApplyCampaignsRequest,
    Campaign,
    CampaignRule,
    Cart,
    CartItem,
    Coordinates,
    Coupon,
    Customer,
    Location,
    Money,
    RequestContext,
)
from promotion_engine.stores import InMemoryCampaignStore, InMemoryCouponStore

# Tuesday, 12:00 in Istanbul
NOW = datetime(2025, 6, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def customer():
    return Customer(
        id="cust-1",
        role="customer",
        email="ayse@example.com",
        registration_date=NOW - timedelta(days=400),
        total_orders=5,
        segment="regular",
        location=Location(
            city="Istanbul",
            district="Kadikoy",
            coordinates=Coordinates(latitude=40.9900, longitude=29.0300),
        ),
    )


@pytest.fixture
def make_cart():
    """Build a cart from (product_id, category_id, amount, tags) tuples"""
    def _make_cart(items=None, delivery_fee=500, currency="TRY", location=None):
        if items is None:
            items = [
                ("p-phone", "electronics", 6000, ["new"]),
                ("p-book", "books", 4000, ["sale"]),
            ]
        cart_items = [
            CartItem(
                product_id=product_id,
                quantity=1,
                unit_price=Money(amount=amount, currency=currency),
                total_price=Money(amount=amount, currency=currency),
                tags=tags,
                category_id=category_id,
            )
            for product_id, category_id, amount, tags in items
        ]
        subtotal = sum(amount for _, _, amount, _ in items)
        return Cart(
            id="cart-1",
            customer_id="cust-1",
            items=cart_items,
            subtotal=Money(amount=subtotal, currency=currency),
            delivery_fee=Money(amount=delivery_fee, currency=currency),
            total_amount=Money(amount=subtotal + delivery_fee, currency=currency),
            location=location,
        )
    return _make_cart


@pytest.fixture
def cart(make_cart):
    """Subtotal 10000, delivery 500, total 10500"""
    return make_cart()


@pytest.fixture
def make_campaign():
    def _make_campaign(campaign_id="camp-a", effects=None, conditions=None, rule_overrides=None, **overrides):
        rule = CampaignRule(
            id=f"{campaign_id}-rule",
            name="Default rule",
            conditions=conditions or [],
            effects=effects if effects is not None else [
                {"type": "percentage_discount", "value": 20, "target": "cart_total",
                 "metadata": {"max_discount_amount": 2000}},
            ],
            **(rule_overrides or {}),
        )
        fields = dict(
            id=campaign_id,
            name=f"Campaign {campaign_id}",
            status="active",
            rules=[rule],
            valid_from=NOW - timedelta(days=30),
            valid_until=NOW + timedelta(days=30),
            priority=100,
            created_at=NOW - timedelta(days=60),
        )
        fields.update(overrides)
        return Campaign(**fields)
    return _make_campaign


@pytest.fixture
def make_coupon():
    def _make_coupon(code="SAVE500", **overrides):
        fields = dict(
            id=f"coupon-{code.lower()}",
            code=code,
            discount_type="flat_amount",
            discount_value=500,
            min_order_amount=Money(amount=5000),
            usage_limit=100,
            valid_from=NOW - timedelta(days=1),
            valid_until=NOW + timedelta(days=30),
            created_at=NOW - timedelta(days=1),
        )
        fields.update(overrides)
        return Coupon(**fields)
    return _make_coupon


@pytest.fixture
def make_request(customer, cart):
    def _make_request(coupon_codes=None, request_cart=None, request_customer=None, timestamp=NOW):
        return ApplyCampaignsRequest(
            customer=request_customer or customer,
            cart=request_cart or cart,
            coupon_codes=coupon_codes or [],
            context=RequestContext(timestamp=timestamp, session_id="sess-1", order_id="order-1"),
        )
    return _make_request


@pytest.fixture
def make_engine():
    """Engine wired to in-memory collaborators and a fixed clock"""
    def _make_engine(campaigns=None, coupons=None, ledger=None, audit_sink=None,
                     monotonic=None, **config_overrides):
        config = PromotionEngineConfig(log_level="WARNING", **config_overrides)
        kwargs = {}
        if monotonic is not None:
            kwargs['monotonic'] = monotonic
        return PromotionEngine(
            config=config,
            campaign_store=InMemoryCampaignStore(campaigns or []),
            coupon_store=InMemoryCouponStore(coupons or []),
            ledger=ledger or InMemoryUsageLedger(),
            audit_sink=audit_sink or InMemoryAuditSink(),
            clock=lambda: NOW,
            **kwargs,
        )
    return _make_engine
