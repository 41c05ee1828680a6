"""
Custom exceptions for the Promotion Engine
"""

from typing import Any, Dict, List, Optional


class PromotionEngineError(Exception):
    """Base exception for all promotion engine errors"""
    pass


class ValidationError(PromotionEngineError):
    """Raised when request data validation fails"""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


class InfrastructureError(PromotionEngineError):
    """Raised when a campaign/coupon store, ledger or audit sink is unavailable"""
    pass


class ConfigurationError(PromotionEngineError):
    """Raised when engine configuration is invalid"""
    pass
