"""
Campaign coupon pools: generation, hand-out, integrity report and cleanup
"""

from datetime import datetime
from typing import List, Optional

from loguru import logger

from .coupon_generator import CouponGenerator
from .ledger import UsageLedger, coupon_key
from .models import Coupon, CouponPoolStats, CouponPoolTemplate
from .stores import CouponStore


class CouponPool:
    """
    Pre-generated coupons of a campaign, handed out one per request
    """

    def __init__(self, coupon_store: CouponStore, generator: CouponGenerator,
                 ledger: Optional[UsageLedger] = None):
        """
        Initialize coupon pool

        Args:
            coupon_store: Store holding the pool coupons
            generator: Generator used to fill pools
            ledger: Live usage counters; the coupon snapshot is used when absent
        """
        self.logger = logger
        self.coupon_store = coupon_store
        self.generator = generator
        self.ledger = ledger

    def generate_pool(self, campaign_id: str, size: int, template: CouponPoolTemplate,
                      now: datetime) -> List[str]:
        """Generate ``size`` coupons for a campaign and return their codes"""
        coupons = self.generator.generate_pool(campaign_id, size, template, now)
        return [coupon.code for coupon in coupons]

    def get_available_coupon(self, campaign_id: str, customer_id: str,
                             now: datetime) -> Optional[Coupon]:
        """
        Bind the oldest unassigned, usable pool coupon to a customer

        Returns:
            The bound coupon, or None when the pool is exhausted
        """
        for coupon in self.coupon_store.coupons_for_campaign(campaign_id):
            if coupon.customer_id is not None or not self._is_available(coupon, now):
                continue
            # Another request may bind the same coupon first; try the next one
            if self.coupon_store.assign_to_customer(coupon.code, customer_id):
                self.logger.info(f"Handed out pool coupon {coupon.code} of {campaign_id} to {customer_id}")
                return coupon.model_copy(update={'customer_id': customer_id})

        self.logger.warning(f"Coupon pool of campaign {campaign_id} is exhausted")
        return None

    def validate_pool_integrity(self, campaign_id: str, now: datetime) -> CouponPoolStats:
        """Count total, used, available and expired coupons of a pool"""
        stats = CouponPoolStats(campaign_id=campaign_id)
        for coupon in self.coupon_store.coupons_for_campaign(campaign_id):
            stats.total_coupons += 1
            used = self._usage_count(coupon) >= coupon.usage_limit
            if used:
                stats.used_coupons += 1
            if coupon.valid_until < now:
                stats.expired_coupons += 1
            elif not used and coupon.is_active:
                stats.available_coupons += 1

        self.logger.debug(
            f"Pool {campaign_id}: {stats.total_coupons} total, {stats.used_coupons} used, "
            f"{stats.available_coupons} available, {stats.expired_coupons} expired"
        )
        return stats

    def cleanup_expired_coupons(self, now: datetime) -> int:
        """Deactivate expired coupons; returns how many were deactivated"""
        count = self.coupon_store.deactivate_expired(now)
        self.logger.info(f"Deactivated {count} expired coupons")
        return count

    def _is_available(self, coupon: Coupon, now: datetime) -> bool:
        return (
            coupon.is_active
            and coupon.valid_from <= now <= coupon.valid_until
            and self._usage_count(coupon) < coupon.usage_limit
        )

    def _usage_count(self, coupon: Coupon) -> int:
        if self.ledger is None:
            return coupon.usage_count
        counter = self.ledger.get_counter(coupon_key(coupon.code))
        return max(coupon.usage_count, counter.usage) if counter else coupon.usage_count
