"""
Generation of coupons: single customer-attributed coupons from
``generate_coupon`` effects and batched coupon pools for campaigns

Codes come from ``secrets`` and are only handed out once the coupon store
accepted them under its uniqueness constraint; a collision draws a new code.
"""

import secrets
import string
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from loguru import logger

from .exceptions import InfrastructureError
from .models import Coupon, CouponIntent, CouponPoolTemplate, UserRestrictions
from .stores import CouponStore

CODE_ALPHABET = string.ascii_uppercase + string.digits


class CouponGenerator:
    """
    Issues uniquely-coded coupons
    """

    def __init__(self, coupon_store: CouponStore, code_length: int = 8, prefix: str = "CB",
                 max_attempts: int = 5, code_factory: Optional[Callable[[str], str]] = None,
                 batch_size: int = 100):
        """
        Initialize coupon generator

        Args:
            coupon_store: Store enforcing code uniqueness
            code_length: Length of the random part of a code
            prefix: Default code prefix
            max_attempts: Collisions tolerated before giving up
            code_factory: Replaces the random code source, receives the prefix
            batch_size: Coupons inserted per store call when generating a pool
        """
        self.logger = logger
        self.coupon_store = coupon_store
        self.code_length = code_length
        self.prefix = prefix
        self.max_attempts = max_attempts
        self.code_factory = code_factory or self._random_code
        self.batch_size = batch_size

    def generate(self, intent: CouponIntent, customer_id: str, issued_by: Optional[str],
                 now: datetime) -> Coupon:
        """
        Create and store a single-use coupon for a customer

        Args:
            intent: Coupon to issue
            customer_id: Customer the coupon is bound to
            issued_by: Campaign whose effect issued the coupon
            now: Start of the validity window

        Raises:
            InfrastructureError: When no unique code could be stored
        """
        prefix = (intent.prefix or self.prefix).upper()

        for attempt in range(1, self.max_attempts + 1):
            coupon = Coupon(
                id=str(uuid.uuid4()),
                code=self.code_factory(prefix),
                discount_type=intent.discount_type,
                discount_value=intent.discount_value,
                usage_limit=1,
                valid_from=now,
                valid_until=intent.valid_until,
                user_restrictions=UserRestrictions(max_usage_per_user=1),
                customer_id=customer_id,
                issued_by=issued_by,
                created_at=now,
            )
            if self.coupon_store.insert_unique(coupon):
                self.logger.info(f"Generated coupon {coupon.code} for customer {customer_id}")
                return coupon
            self.logger.warning(f"Coupon code collision on {coupon.code} (attempt {attempt})")

        raise InfrastructureError(f"Could not allocate a unique coupon code after {self.max_attempts} attempts")

    def generate_pool(self, campaign_id: str, size: int, template: CouponPoolTemplate,
                      now: datetime) -> List[Coupon]:
        """
        Generate a pool of unassigned coupons belonging to a campaign

        Redemptions of pool coupons count against the campaign's usage
        limits and budget.

        Returns:
            The stored coupons, in generation order

        Raises:
            InfrastructureError: When a batch keeps colliding with existing codes
        """
        prefix = (template.prefix or self.prefix).upper()
        valid_until = now + timedelta(days=template.valid_days)
        self.logger.info(f"Generating pool of {size} coupons for campaign {campaign_id}")

        def pool_coupon() -> Coupon:
            return Coupon(
                id=str(uuid.uuid4()),
                code=self.code_factory(prefix),
                campaign_id=campaign_id,
                discount_type=template.discount_type,
                discount_value=template.discount_value,
                usage_limit=template.usage_limit,
                valid_from=now,
                valid_until=valid_until,
                created_at=now,
            )

        generated: List[Coupon] = []
        for start in range(0, size, self.batch_size):
            batch = [pool_coupon() for _ in range(min(self.batch_size, size - start))]
            for attempt in range(1, self.max_attempts + 1):
                rejected = self.coupon_store.insert_batch(batch)
                rejected_ids = {coupon.id for coupon in rejected}
                generated.extend(coupon for coupon in batch if coupon.id not in rejected_ids)
                if not rejected:
                    break
                self.logger.warning(f"{len(rejected)} pool code collisions (attempt {attempt})")
                batch = [pool_coupon() for _ in rejected]
            else:
                raise InfrastructureError(
                    f"Could not allocate unique pool codes after {self.max_attempts} attempts"
                )
            self.logger.debug(f"Pool {campaign_id}: {len(generated)}/{size} coupons stored")

        self.logger.info(f"Generated {len(generated)} pool coupons for campaign {campaign_id}")
        return generated

    def _random_code(self, prefix: str) -> str:
        return prefix + ''.join(secrets.choice(CODE_ALPHABET) for _ in range(self.code_length))
