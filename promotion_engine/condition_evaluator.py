"""
Condition evaluation for campaign rules

Each condition type has one evaluator function, looked up in a type-keyed
dispatch table. Operator/payload combinations that make no sense for a
condition type fail closed: the condition simply does not match.
"""

import math
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from dateutil import tz
from loguru import logger
from pydantic import BaseModel, ConfigDict

from .models import Cart, CampaignRule, Customer, GeoArea, Location

EARTH_RADIUS_METERS = 6371000

SCALAR_COMPARISONS: Dict[str, Callable[[Any, Any], bool]] = {
    'equals': lambda actual, expected: actual == expected,
    'not_equals': lambda actual, expected: actual != expected,
    'greater_than': lambda actual, expected: actual > expected,
    'less_than': lambda actual, expected: actual < expected,
    'greater_equal': lambda actual, expected: actual >= expected,
    'less_equal': lambda actual, expected: actual <= expected,
}

ORDERING_OPERATORS = {'greater_than', 'less_than', 'greater_equal', 'less_equal'}


class EvaluationContext(BaseModel):
    """Immutable snapshot a rule is evaluated against"""

    model_config = ConfigDict(frozen=True)

    customer: Customer
    cart: Cart
    now: datetime


class ConditionEvaluator:
    """
    Evaluates typed rule conditions against a customer/cart/time context
    """

    def __init__(self, timezone_name: str = "Europe/Istanbul", product_match_mode: str = "any"):
        """
        Initialize condition evaluator

        Args:
            timezone_name: Timezone used for hour and day_of_week conditions
            product_match_mode: "any" (one cart item qualifies) or "all" (every item must)
        """
        self.logger = logger
        self.local_tz = tz.gettz(timezone_name) or tz.UTC
        self.product_match_mode = product_match_mode

        self._evaluators: Dict[str, Callable[[Any, EvaluationContext], bool]] = {
            'user_role': self._evaluate_user_role,
            'customer_segment': self._evaluate_customer_segment,
            'location': self._evaluate_location,
            'time': self._evaluate_time,
            'cart_total': self._evaluate_cart_total,
            'order_count': self._evaluate_order_count,
            'product_tags': self._evaluate_product_tags,
            'product_categories': self._evaluate_product_categories,
        }

    def evaluate(self, condition: Any, context: EvaluationContext) -> bool:
        """
        Evaluate a single condition

        Args:
            condition: Typed condition model
            context: Evaluation context

        Returns:
            True when the condition holds; False on mismatch or misconfiguration
        """
        evaluator = self._evaluators.get(getattr(condition, 'type', None))
        if evaluator is None:
            self.logger.warning(f"Unknown condition type: {getattr(condition, 'type', None)}")
            return False

        try:
            return evaluator(condition, context)
        except Exception as e:
            self.logger.warning(
                f"Condition {condition.type}/{condition.operator} failed closed: {str(e)}"
            )
            return False

    def evaluate_rule(self, rule: CampaignRule, context: EvaluationContext) -> bool:
        """A rule matches when it is inside its own window and all conditions hold"""
        if rule.valid_from and context.now < rule.valid_from:
            self.logger.debug(f"Rule {rule.id} not yet valid")
            return False
        if rule.valid_until and context.now > rule.valid_until:
            self.logger.debug(f"Rule {rule.id} expired")
            return False

        for condition in rule.conditions:
            if not self.evaluate(condition, context):
                self.logger.debug(f"Rule {rule.id}: {condition.type} condition not met")
                return False
        return True

    # --- per-type evaluators -------------------------------------------

    def _evaluate_user_role(self, condition, context: EvaluationContext) -> bool:
        return self._compare_scalar(context.customer.role, condition.operator, condition.value)

    def _evaluate_customer_segment(self, condition, context: EvaluationContext) -> bool:
        return self._compare_scalar(context.customer.segment, condition.operator, condition.value)

    def _evaluate_location(self, condition, context: EvaluationContext) -> bool:
        location = self._resolve_location(context)
        if location is None:
            return False

        if condition.field == 'coordinates':
            return self._evaluate_geo(location, condition.operator, condition.value)

        if isinstance(condition.value, GeoArea):
            return False

        actual = getattr(location, condition.field)
        if actual is None:
            return False
        return self._compare_scalar(actual, condition.operator, condition.value)

    def _evaluate_time(self, condition, context: EvaluationContext) -> bool:
        if condition.field == 'instant':
            return self._compare_instant(context.now, condition.operator, condition.value)

        local_now = context.now.astimezone(self.local_tz)
        if condition.field == 'hour':
            actual = local_now.hour
        else:
            actual = local_now.isoweekday() % 7
        return self._compare_integer(actual, condition.operator, condition.value)

    def _evaluate_cart_total(self, condition, context: EvaluationContext) -> bool:
        return self._compare_integer(context.cart.total_amount.amount, condition.operator, condition.value)

    def _evaluate_order_count(self, condition, context: EvaluationContext) -> bool:
        return self._compare_integer(context.customer.total_orders, condition.operator, condition.value)

    def _evaluate_product_tags(self, condition, context: EvaluationContext) -> bool:
        item_sets = [set(item.tags) for item in context.cart.items]
        return self._compare_items(item_sets, condition.operator, condition.value)

    def _evaluate_product_categories(self, condition, context: EvaluationContext) -> bool:
        item_sets = [{item.category_id} for item in context.cart.items]
        return self._compare_items(item_sets, condition.operator, condition.value)

    # --- operator helpers ----------------------------------------------

    def _compare_scalar(self, actual: str, operator: str, expected: Any) -> bool:
        """String equality/membership; ordering operators are unsupported"""
        if operator in ('in', 'not_in'):
            if not isinstance(expected, list):
                return self._unsupported(operator, expected)
            return (actual in expected) == (operator == 'in')

        if not isinstance(expected, str):
            return self._unsupported(operator, expected)
        if operator == 'contains':
            return expected in actual
        if operator in ('equals', 'not_equals'):
            return SCALAR_COMPARISONS[operator](actual, expected)
        return self._unsupported(operator, expected)

    def _compare_integer(self, actual: int, operator: str, expected: Any) -> bool:
        if operator in ('in', 'not_in'):
            if not isinstance(expected, list):
                return self._unsupported(operator, expected)
            return (actual in expected) == (operator == 'in')

        if operator == 'between':
            if not isinstance(expected, list) or len(expected) != 2:
                return self._unsupported(operator, expected)
            low, high = expected
            return low <= actual <= high

        if operator in SCALAR_COMPARISONS and isinstance(expected, int) and not isinstance(expected, bool):
            return SCALAR_COMPARISONS[operator](actual, expected)
        return self._unsupported(operator, expected)

    def _compare_instant(self, now: datetime, operator: str, expected: Any) -> bool:
        if operator == 'between':
            if not isinstance(expected, list) or len(expected) != 2:
                return self._unsupported(operator, expected)
            if not all(isinstance(v, datetime) for v in expected):
                return self._unsupported(operator, expected)
            start, end = expected
            return start <= now <= end

        if operator in SCALAR_COMPARISONS and isinstance(expected, datetime):
            return SCALAR_COMPARISONS[operator](now, expected)
        return self._unsupported(operator, expected)

    def _compare_items(self, item_sets: List[Set[str]], operator: str, expected: Any) -> bool:
        """
        Compare per-item value sets. In "any" mode the union of all items is
        compared once; in "all" mode every item must satisfy the operator.
        """
        if self.product_match_mode == 'all':
            if not item_sets:
                return False
            return all(self._compare_collection(values, operator, expected) for values in item_sets)

        union: Set[str] = set()
        for values in item_sets:
            union.update(values)
        return self._compare_collection(union, operator, expected)

    def _compare_collection(self, actual: Set[str], operator: str, expected: Any) -> bool:
        expected_values = self._as_string_set(expected)
        if expected_values is None:
            return self._unsupported(operator, expected)

        if operator in ('contains', 'in'):
            return bool(actual & expected_values)
        if operator == 'not_in':
            return not (actual & expected_values)
        if operator == 'equals':
            return actual == expected_values
        if operator == 'not_equals':
            return actual != expected_values
        return self._unsupported(operator, expected)

    def _unsupported(self, operator: str, expected: Any) -> bool:
        self.logger.warning(f"Unsupported operator {operator} for payload {expected!r}, failing closed")
        return False

    @staticmethod
    def _as_string_set(expected: Any) -> Optional[Set[str]]:
        if isinstance(expected, str):
            return {expected}
        if isinstance(expected, list) and all(isinstance(v, str) for v in expected):
            return set(expected)
        return None

    # --- location helpers ----------------------------------------------

    @staticmethod
    def _resolve_location(context: EvaluationContext) -> Optional[Location]:
        """Delivery location wins over the customer's registered location"""
        return context.cart.location or context.customer.location

    def _evaluate_geo(self, location: Location, operator: str, area: Any) -> bool:
        if not isinstance(area, GeoArea) or location.coordinates is None:
            return False
        if operator not in ('in', 'not_in', 'contains'):
            return False

        distance = haversine_meters(
            location.coordinates.latitude, location.coordinates.longitude,
            area.latitude, area.longitude
        )
        inside = distance <= area.radius_meters
        return not inside if operator == 'not_in' else inside


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in meters"""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(math.sqrt(a))


def iter_condition_types(rules: Iterable[CampaignRule]) -> Set[str]:
    """Condition types used by a set of rules, for loader diagnostics"""
    return {condition.type for rule in rules for condition in rule.conditions}
