"""
Coupon code validation

Checks run in a fixed order and the first failure is the reported reason:
existence/activity, validity window, global usage, user restrictions,
minimum order amount, product/category applicability.
"""

from datetime import datetime
from typing import List, Optional, Union

from loguru import logger

from .ledger import UsageLedger, coupon_key
from .models import (
    Cart,
    Coupon,
    Customer,
    EffectMetadata,
    ExclusionReason,
    FlatDiscountEffect,
    FreeDeliveryEffect,
    PercentageDiscountEffect,
)
from .stores import CouponStore


class CouponValidator:
    """
    Validates supplied coupon codes against their own limits and restrictions
    """

    def __init__(self, coupon_store: CouponStore, ledger: Optional[UsageLedger] = None):
        """
        Initialize coupon validator

        Args:
            coupon_store: Store the codes are looked up in
            ledger: Live usage counters; the coupon snapshot is used when absent
        """
        self.logger = logger
        self.coupon_store = coupon_store
        self.ledger = ledger

    def validate(self, code: str, customer: Customer, cart: Cart,
                 now: datetime) -> Union[Coupon, ExclusionReason]:
        """
        Validate a coupon code for a customer and cart

        Returns:
            The coupon when every check passes, otherwise the first failing reason
        """
        coupon = self.coupon_store.get_by_code(code)
        if coupon is None:
            return self._reject(code, ExclusionReason.NOT_FOUND)
        if not coupon.is_active:
            return self._reject(code, ExclusionReason.INACTIVE)

        if now < coupon.valid_from:
            return self._reject(code, ExclusionReason.NOT_YET_VALID)
        if now > coupon.valid_until:
            return self._reject(code, ExclusionReason.EXPIRED)

        if self._usage_count(coupon) >= coupon.usage_limit:
            return self._reject(code, ExclusionReason.USAGE_LIMIT_REACHED)

        reason = self._check_user_restrictions(coupon, customer)
        if reason is not None:
            return self._reject(code, reason)

        if coupon.min_order_amount is not None and cart.subtotal.amount < coupon.min_order_amount.amount:
            return self._reject(code, ExclusionReason.MIN_ORDER_NOT_MET)

        reason = self._check_applicability(coupon, cart)
        if reason is not None:
            return self._reject(code, reason)

        self.logger.debug(f"Coupon {coupon.code} validated")
        return coupon

    def _usage_count(self, coupon: Coupon) -> int:
        if self.ledger is None:
            return coupon.usage_count
        counter = self.ledger.get_counter(coupon_key(coupon.code))
        return max(coupon.usage_count, counter.usage) if counter else coupon.usage_count

    def _check_user_restrictions(self, coupon: Coupon, customer: Customer) -> Optional[ExclusionReason]:
        # Generated coupons belong to the customer they were issued to
        if coupon.customer_id is not None and coupon.customer_id != customer.id:
            return ExclusionReason.CUSTOMER_NOT_ALLOWED

        restrictions = coupon.user_restrictions
        if restrictions is None:
            return None

        if restrictions.roles is not None and customer.role not in restrictions.roles:
            return ExclusionReason.ROLE_NOT_ALLOWED
        if restrictions.segments is not None and customer.segment not in restrictions.segments:
            return ExclusionReason.SEGMENT_NOT_ALLOWED
        if restrictions.cities is not None:
            city = customer.location.city if customer.location else None
            allowed = {c.casefold() for c in restrictions.cities}
            if city is None or city.casefold() not in allowed:
                return ExclusionReason.CITY_NOT_ALLOWED
        if restrictions.max_usage_per_user is not None and self.ledger is not None:
            used = self.ledger.get_user_usage(coupon_key(coupon.code), customer.id)
            if used >= restrictions.max_usage_per_user:
                return ExclusionReason.PER_USER_LIMIT_REACHED
        return None

    @staticmethod
    def _check_applicability(coupon: Coupon, cart: Cart) -> Optional[ExclusionReason]:
        product_ids = {item.product_id for item in cart.items}
        category_ids = {item.category_id for item in cart.items}

        if coupon.applicable_products or coupon.applicable_categories:
            matches_product = bool(product_ids & set(coupon.applicable_products or []))
            matches_category = bool(category_ids & set(coupon.applicable_categories or []))
            if not (matches_product or matches_category):
                return ExclusionReason.NO_APPLICABLE_ITEMS

        if product_ids & set(coupon.excluded_products or []):
            return ExclusionReason.EXCLUDED_PRODUCT_IN_CART
        if category_ids & set(coupon.excluded_categories or []):
            return ExclusionReason.EXCLUDED_PRODUCT_IN_CART
        return None

    def _reject(self, code: str, reason: ExclusionReason) -> ExclusionReason:
        self.logger.debug(f"Coupon {code} rejected: {reason.value}")
        return reason


def coupon_effects(coupon: Coupon) -> List:
    """
    Effect a validated coupon contributes. Restricted coupons discount only
    the products (or categories) they are restricted to.
    """
    if coupon.discount_type == 'free_delivery':
        return [FreeDeliveryEffect(type='free_delivery')]

    if coupon.applicable_products:
        target = {'target': 'specific_products', 'product_ids': list(coupon.applicable_products)}
    elif coupon.applicable_categories:
        target = {'target': 'category', 'category_ids': list(coupon.applicable_categories)}
    else:
        target = {'target': 'cart_total'}

    if coupon.discount_type == 'percentage':
        max_discount = coupon.max_discount_amount.amount if coupon.max_discount_amount else None
        return [PercentageDiscountEffect(
            type='percentage_discount',
            value=min(coupon.discount_value, 100),
            metadata=EffectMetadata(max_discount_amount=max_discount),
            **target,
        )]

    value = coupon.discount_value
    if coupon.max_discount_amount is not None:
        value = min(value, coupon.max_discount_amount.amount)
    return [FlatDiscountEffect(type='flat_discount', value=value, **target)]
