"""
Tests for rule condition evaluation
"""

from datetime import timedelta
from types import SimpleNamespace

import pytest

from promotion_engine.condition_evaluator import ConditionEvaluator, EvaluationContext, haversine_meters
from promotion_engine.models import (
    CampaignRule,
    CartTotalCondition,
    CustomerSegmentCondition,
    Location,
    LocationCondition,
    OrderCountCondition,
    ProductCategoriesCondition,
    ProductTagsCondition,
    TimeCondition,
    UserRoleCondition,
)


@pytest.fixture
def evaluator():
    return ConditionEvaluator(timezone_name="Europe/Istanbul")


@pytest.fixture
def context(customer, cart, now):
    return EvaluationContext(customer=customer, cart=cart, now=now)


def test_user_role_operators(evaluator, context):
    """equals / in / not_in against the customer's role"""
    assert evaluator.evaluate(UserRoleCondition(type="user_role", operator="equals", value="customer"), context)
    assert evaluator.evaluate(
        UserRoleCondition(type="user_role", operator="in", value=["customer", "seller"]), context
    )
    assert not evaluator.evaluate(
        UserRoleCondition(type="user_role", operator="not_in", value=["customer"]), context
    )


def test_string_conditions_fail_closed_on_unsupported_operator(evaluator, context):
    condition = CustomerSegmentCondition(type="customer_segment", operator="greater_than", value="new")
    assert not evaluator.evaluate(condition, context), "Ordering operators on strings must not match"

    condition = CustomerSegmentCondition(type="customer_segment", operator="in", value="regular")
    assert not evaluator.evaluate(condition, context), "in needs a list payload"


def test_location_prefers_delivery_location(evaluator, customer, make_cart, now):
    cart = make_cart(location=Location(city="Ankara"))
    context = EvaluationContext(customer=customer, cart=cart, now=now)

    assert evaluator.evaluate(LocationCondition(type="location", operator="equals", value="Ankara"), context)
    assert not evaluator.evaluate(
        LocationCondition(type="location", operator="equals", value="Istanbul"), context
    )


def test_location_district_and_country(evaluator, context):
    assert evaluator.evaluate(
        LocationCondition(type="location", operator="in", field="district", value=["Kadikoy", "Besiktas"]),
        context,
    )
    assert evaluator.evaluate(
        LocationCondition(type="location", operator="equals", field="country", value="TR"), context
    )


def test_location_geo_radius(evaluator, context):
    """Customer sits about 5 km from the centre point"""
    inside = LocationCondition(
        type="location", operator="in", field="coordinates",
        value={"latitude": 41.0082, "longitude": 28.9784, "radius_meters": 10000},
    )
    outside = LocationCondition(
        type="location", operator="in", field="coordinates",
        value={"latitude": 41.0082, "longitude": 28.9784, "radius_meters": 1000},
    )
    assert evaluator.evaluate(inside, context)
    assert not evaluator.evaluate(outside, context)


def test_location_missing_fails_closed(evaluator, customer, cart, now):
    context = EvaluationContext(customer=customer.model_copy(update={"location": None}), cart=cart, now=now)
    assert not evaluator.evaluate(
        LocationCondition(type="location", operator="not_equals", value="Izmir"), context
    )


def test_time_hour_and_day_of_week_use_local_time(evaluator, context):
    """09:00 UTC on a Tuesday is 12:00 in Istanbul"""
    assert evaluator.evaluate(TimeCondition(type="time", operator="between", field="hour", value=[11, 13]), context)
    assert not evaluator.evaluate(
        TimeCondition(type="time", operator="between", field="hour", value=[8, 10]), context
    )
    assert evaluator.evaluate(TimeCondition(type="time", operator="equals", field="day_of_week", value=2), context)
    assert not evaluator.evaluate(
        TimeCondition(type="time", operator="in", field="day_of_week", value=[0, 6]), context
    )


def test_day_of_week_counts_sunday_as_zero(evaluator, customer, cart, now):
    """Sunday 2025-06-15 20:30 UTC is still Sunday, 23:30 in Istanbul"""
    sunday = EvaluationContext(customer=customer, cart=cart, now=now.replace(day=15, hour=20, minute=30))
    weekend = TimeCondition(type="time", operator="in", field="day_of_week", value=[0, 6])

    assert evaluator.evaluate(weekend, sunday)
    assert evaluator.evaluate(TimeCondition(type="time", operator="equals", field="day_of_week", value=0), sunday)
    assert not evaluator.evaluate(
        TimeCondition(type="time", operator="equals", field="day_of_week", value=7), sunday
    )

    saturday_night_utc = EvaluationContext(customer=customer, cart=cart, now=now.replace(day=14, hour=22))
    assert evaluator.evaluate(
        TimeCondition(type="time", operator="equals", field="day_of_week", value=0), saturday_night_utc
    ), "22:00 UTC on Saturday is already Sunday in Istanbul"


def test_time_instant_window(evaluator, context, now):
    condition = TimeCondition(
        type="time", operator="between", value=[now - timedelta(hours=1), now + timedelta(hours=1)]
    )
    assert evaluator.evaluate(condition, context)

    condition = TimeCondition(type="time", operator="greater_than", value=now + timedelta(days=1))
    assert not evaluator.evaluate(condition, context)


def test_instant_accepts_iso_strings(evaluator, context):
    condition = TimeCondition.model_validate({
        "type": "time", "operator": "between",
        "value": ["2025-06-01T00:00:00Z", "2025-06-30T23:59:59Z"],
    })
    assert evaluator.evaluate(condition, context)


def test_cart_total_uses_total_amount(evaluator, context):
    """Total amount is 10500 (subtotal 10000 + delivery 500)"""
    assert evaluator.evaluate(CartTotalCondition(type="cart_total", operator="greater_equal", value=10500), context)
    assert not evaluator.evaluate(CartTotalCondition(type="cart_total", operator="greater_than", value=10500), context)
    assert evaluator.evaluate(CartTotalCondition(type="cart_total", operator="between", value=[10000, 11000]), context)


def test_between_needs_two_bounds(evaluator, context):
    assert not evaluator.evaluate(CartTotalCondition(type="cart_total", operator="between", value=[10000]), context)
    assert not evaluator.evaluate(CartTotalCondition(type="cart_total", operator="between", value=10000), context)


def test_order_count(evaluator, context):
    first_order = OrderCountCondition(type="order_count", operator="equals", value=0)
    assert not evaluator.evaluate(first_order, context)
    assert evaluator.evaluate(OrderCountCondition(type="order_count", operator="less_than", value=10), context)


def test_product_tags_any_and_all(customer, cart, now):
    context = EvaluationContext(customer=customer, cart=cart, now=now)
    condition = ProductTagsCondition(type="product_tags", operator="contains", value="sale")

    assert ConditionEvaluator(product_match_mode="any").evaluate(condition, context)
    assert not ConditionEvaluator(product_match_mode="all").evaluate(condition, context), \
        "Only one of two items is tagged 'sale'"


def test_product_categories(evaluator, context):
    assert evaluator.evaluate(
        ProductCategoriesCondition(type="product_categories", operator="in", value=["books", "toys"]), context
    )
    assert evaluator.evaluate(
        ProductCategoriesCondition(type="product_categories", operator="not_in", value=["grocery"]), context
    )


def test_all_mode_on_empty_cart_fails(customer, make_cart, now):
    context = EvaluationContext(customer=customer, cart=make_cart(items=[]), now=now)
    condition = ProductCategoriesCondition(type="product_categories", operator="not_in", value=["grocery"])
    assert not ConditionEvaluator(product_match_mode="all").evaluate(condition, context)


def test_unknown_condition_type_fails_closed(evaluator, context):
    assert not evaluator.evaluate(SimpleNamespace(type="weather", operator="equals", value="sunny"), context)


def test_rule_requires_all_conditions(evaluator, context):
    rule = CampaignRule(
        id="r1",
        conditions=[
            {"type": "user_role", "operator": "equals", "value": "customer"},
            {"type": "cart_total", "operator": "greater_than", "value": 50000},
        ],
    )
    assert not evaluator.evaluate_rule(rule, context)

    rule = CampaignRule(id="r2", conditions=[])
    assert evaluator.evaluate_rule(rule, context), "A rule without conditions always matches"


def test_rule_window(evaluator, context, now):
    rule = CampaignRule(id="r1", valid_from=now + timedelta(hours=1))
    assert not evaluator.evaluate_rule(rule, context)

    rule = CampaignRule(id="r2", valid_until=now - timedelta(hours=1))
    assert not evaluator.evaluate_rule(rule, context)


def test_haversine_istanbul_ankara():
    distance = haversine_meters(41.0082, 28.9784, 39.9334, 32.8597)
    assert 340_000 < distance < 360_000
