"""
Promotion Engine

Evaluates campaigns and coupon codes against a customer/cart snapshot and
produces a discount decision with conflict resolution, budget and usage
enforcement and an audit trail.
"""

__version__ = "1.0.0"
__author__ = "Promotion Engine Team"

from .core import PromotionEngine
from .coupon_pool import CouponPool
from .models import ApplyCampaignsRequest, ApplyCampaignsResponse, Campaign, Coupon
from .exceptions import PromotionEngineError, ValidationError, InfrastructureError, ConfigurationError

__all__ = [
    "PromotionEngine",
    "CouponPool",
    "ApplyCampaignsRequest",
    "ApplyCampaignsResponse",
    "Campaign",
    "Coupon",
    "PromotionEngineError",
    "ValidationError",
    "InfrastructureError",
    "ConfigurationError"
]
