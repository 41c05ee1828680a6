"""
Effect calculation for matched rules and validated coupons

All arithmetic is integer arithmetic in minor currency units. Effects are
applied to a ``RunningCart`` so that each one discounts what earlier ones
left behind.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from .models import Cart, CouponIntent, MonetaryAdjustment


class RunningCart:
    """
    Remaining amount per cart line plus the remaining delivery fee
    """

    def __init__(self, cart: Cart):
        self.cart = cart
        if cart.items:
            self.line_amounts = [item.total_price.amount for item in cart.items]
        else:
            # Carts without line detail are treated as one line holding the subtotal
            self.line_amounts = [cart.subtotal.amount]
        self.delivery_fee = cart.delivery_fee.amount

    @property
    def items_total(self) -> int:
        return sum(self.line_amounts)

    def copy(self) -> "RunningCart":
        clone = RunningCart.__new__(RunningCart)
        clone.cart = self.cart
        clone.line_amounts = list(self.line_amounts)
        clone.delivery_fee = self.delivery_fee
        return clone

    def target_lines(self, target: str, product_ids: List[str], category_ids: List[str]) -> List[int]:
        """Indexes of the lines an effect target refers to"""
        if target == 'cart_total':
            return list(range(len(self.line_amounts)))
        if target == 'specific_products':
            wanted = set(product_ids)
            return [i for i, item in enumerate(self.cart.items) if item.product_id in wanted]
        if target == 'category':
            wanted = set(category_ids)
            return [i for i, item in enumerate(self.cart.items) if item.category_id in wanted]
        return []

    def lines_total(self, indexes: List[int]) -> int:
        return sum(self.line_amounts[i] for i in indexes)

    def allocate(self, amount: int, indexes: List[int]) -> Dict[int, int]:
        """Spread a discount over the given lines in cart order"""
        allocations = {}
        remaining = amount
        for i in indexes:
            if remaining <= 0:
                break
            share = min(remaining, self.line_amounts[i])
            if share > 0:
                allocations[i] = share
                remaining -= share
        return allocations

    def commit(self, adjustment: MonetaryAdjustment) -> None:
        for index, share in adjustment.line_allocations.items():
            self.line_amounts[index] -= share
        self.delivery_fee -= adjustment.delivery_amount


class EffectCalculator:
    """
    Turns rule effects into concrete monetary adjustments
    """

    def __init__(self, default_coupon_expiry_days: int = 30):
        """
        Initialize effect calculator

        Args:
            default_coupon_expiry_days: Validity of generated coupons when the effect sets none
        """
        self.logger = logger
        self.default_coupon_expiry_days = default_coupon_expiry_days

        self._calculators: Dict[str, Callable[..., MonetaryAdjustment]] = {
            'percentage_discount': self._apply_percentage_discount,
            'flat_discount': self._apply_flat_discount,
            'free_delivery': self._apply_free_delivery,
            'generate_coupon': self._apply_generate_coupon,
            'loyalty_points': self._apply_loyalty_points,
        }

    def apply(self, effect: Any, running_cart: RunningCart, now: Optional[datetime] = None) -> MonetaryAdjustment:
        """
        Compute the adjustment of one effect without mutating the running cart

        Args:
            effect: Typed effect model
            running_cart: Cart state left by previously applied effects
            now: Reference time for generated coupon validity

        Returns:
            MonetaryAdjustment for the effect
        """
        calculator = self._calculators.get(effect.type)
        if calculator is None:
            self.logger.warning(f"Unknown effect type: {effect.type}")
            return MonetaryAdjustment(effect_type=str(effect.type))

        return calculator(effect, running_cart, now or datetime.now(timezone.utc))

    def apply_all(self, effects: List[Any], running_cart: RunningCart,
                  now: Optional[datetime] = None) -> Tuple[List[MonetaryAdjustment], RunningCart]:
        """
        Apply a rule's effects in order on a scratch copy of the running cart

        Returns:
            The adjustments and the cart state after all of them
        """
        scratch = running_cart.copy()
        adjustments = []
        for effect in effects:
            adjustment = self.apply(effect, scratch, now)
            scratch.commit(adjustment)
            adjustments.append(adjustment)
        return adjustments, scratch

    # --- per-type calculators ------------------------------------------

    def _apply_percentage_discount(self, effect, running_cart: RunningCart, now: datetime) -> MonetaryAdjustment:
        if effect.target == 'delivery_fee':
            target_amount = running_cart.delivery_fee
        else:
            indexes = running_cart.target_lines(effect.target, effect.product_ids, effect.category_ids)
            target_amount = running_cart.lines_total(indexes)

        amount = target_amount * effect.value // 100
        if effect.metadata.max_discount_amount is not None:
            amount = min(amount, effect.metadata.max_discount_amount)
        amount = min(amount, target_amount)

        self.logger.debug(f"percentage_discount {effect.value}% of {target_amount} -> {amount}")
        return self._targeted_adjustment(effect, running_cart, amount)

    def _apply_flat_discount(self, effect, running_cart: RunningCart, now: datetime) -> MonetaryAdjustment:
        if effect.target == 'delivery_fee':
            target_amount = running_cart.delivery_fee
        else:
            indexes = running_cart.target_lines(effect.target, effect.product_ids, effect.category_ids)
            target_amount = running_cart.lines_total(indexes)

        amount = min(effect.value, target_amount)
        self.logger.debug(f"flat_discount {effect.value} on {target_amount} -> {amount}")
        return self._targeted_adjustment(effect, running_cart, amount)

    def _apply_free_delivery(self, effect, running_cart: RunningCart, now: datetime) -> MonetaryAdjustment:
        return MonetaryAdjustment(effect_type='free_delivery', delivery_amount=running_cart.delivery_fee)

    def _apply_generate_coupon(self, effect, running_cart: RunningCart, now: datetime) -> MonetaryAdjustment:
        valid_days = effect.metadata.valid_days or self.default_coupon_expiry_days
        intent = CouponIntent(
            discount_type=effect.metadata.discount_type or 'percentage',
            discount_value=effect.value,
            valid_until=now + timedelta(days=valid_days),
            prefix=effect.metadata.prefix,
        )
        return MonetaryAdjustment(effect_type='generate_coupon', coupon_intent=intent)

    def _apply_loyalty_points(self, effect, running_cart: RunningCart, now: datetime) -> MonetaryAdjustment:
        return MonetaryAdjustment(effect_type='loyalty_points', loyalty_points=effect.value)

    def _targeted_adjustment(self, effect, running_cart: RunningCart, amount: int) -> MonetaryAdjustment:
        if effect.target == 'delivery_fee':
            return MonetaryAdjustment(effect_type=effect.type, delivery_amount=amount)

        indexes = running_cart.target_lines(effect.target, effect.product_ids, effect.category_ids)
        allocations = running_cart.allocate(amount, indexes)
        return MonetaryAdjustment(
            effect_type=effect.type,
            items_amount=sum(allocations.values()),
            line_allocations=allocations,
        )
