"""
Configuration management for the Promotion Engine
"""

import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from dateutil import tz
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ConfigurationError


class PromotionEngineConfig(BaseModel):
    """Configuration model for the Promotion Engine"""

    model_config = ConfigDict(validate_assignment=True)

    # Logging settings
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[str] = Field(default=None, description="Log file path, console only when unset")
    log_rotation: str = Field(default="10 MB", description="Log rotation size")
    log_retention: str = Field(default="30 days", description="Log retention period")

    # Money and time settings
    default_currency: str = Field(default="TRY", min_length=3, max_length=3, description="ISO currency code")
    timezone: str = Field(default="Europe/Istanbul", description="Timezone for hour/day_of_week conditions")

    # Request settings
    request_deadline_ms: int = Field(default=2000, description="Overall request deadline in milliseconds")

    # Conflict resolution policy
    tie_break_policy: Literal["oldest_first", "newest_first"] = Field(
        default="oldest_first", description="Tie-break for candidates with equal priority"
    )
    coupon_priority: int = Field(default=1, ge=1, le=1000, description="Rank of coupons not linked to a campaign")
    coupons_stack_with_campaigns: bool = Field(
        default=True, description="When false every coupon is treated as exclusive"
    )
    product_match_mode: Literal["any", "all"] = Field(
        default="any", description="Whether product_tags/product_categories need any or all cart items"
    )

    # Coupon generation settings
    default_coupon_expiry_days: int = Field(default=30, description="Validity of generated coupons")
    coupon_code_length: int = Field(default=8, description="Random part length of generated codes")
    coupon_code_prefix: str = Field(default="CB", description="Prefix of generated codes")
    coupon_code_max_attempts: int = Field(default=5, description="Collision retries for generated codes")
    coupon_pool_batch_size: int = Field(default=100, description="Coupons inserted per batch when filling a pool")

    # Storage settings
    campaigns_dir: str = Field(default="campaigns", description="Directory containing campaign JSON files")
    database_url: Optional[str] = Field(default=None, description="SQLAlchemy URL for the SQL ledger")


class ConfigManager:
    """Configuration manager for the Promotion Engine"""

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize configuration manager

        Args:
            config_file: Path to configuration file
        """
        self.config_file = config_file or "promotion_engine_config.json"
        self._config = None
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from file or environment"""
        try:
            if Path(self.config_file).exists():
                with open(self.config_file, 'r', encoding='utf-8') as f:
                    config_data = json.load(f)
                self._config = PromotionEngineConfig(**config_data)
            else:
                self._config = PromotionEngineConfig(**self.get_environment_config())

        except Exception as e:
            logger.warning(f"Failed to load configuration: {e}")
            self._config = PromotionEngineConfig()

    def get_config(self) -> PromotionEngineConfig:
        """Get current configuration"""
        return self._config

    def update_config(self, **kwargs) -> None:
        """Update configuration with new values"""
        for key, value in kwargs.items():
            if key not in PromotionEngineConfig.model_fields:
                raise ConfigurationError(f"Unknown configuration key: {key}")
            try:
                setattr(self._config, key, value)
            except PydanticValidationError as e:
                raise ConfigurationError(f"Invalid value for {key}: {e}")

    def save_config(self) -> None:
        """Save current configuration to file"""
        try:
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump(self._config.model_dump(), f, indent=2)
        except OSError as e:
            logger.warning(f"Failed to save configuration: {e}")

    def reset_to_defaults(self) -> None:
        """Reset configuration to defaults"""
        self._config = PromotionEngineConfig()

    def validate_config(self) -> Dict[str, Any]:
        """Validate current configuration"""
        return validate_config(self._config)

    def get_environment_config(self) -> Dict[str, str]:
        """Get configuration from environment variables"""
        env_config = {}

        for field_name in PromotionEngineConfig.model_fields:
            env_var_name = f"PROMOTION_ENGINE_{field_name.upper()}"
            env_value = os.getenv(env_var_name)

            if env_value is not None:
                env_config[field_name] = env_value

        return env_config


def validate_config(config: PromotionEngineConfig) -> Dict[str, Any]:
    """Check values pydantic cannot check on its own"""
    validation_results = {
        'valid': True,
        'warnings': [],
        'errors': []
    }

    valid_log_levels = ['TRACE', 'DEBUG', 'INFO', 'SUCCESS', 'WARNING', 'ERROR', 'CRITICAL']
    if config.log_level.upper() not in valid_log_levels:
        validation_results['errors'].append(f"Invalid log level: {config.log_level}")

    if tz.gettz(config.timezone) is None:
        validation_results['errors'].append(f"Unknown timezone: {config.timezone}")

    if config.request_deadline_ms <= 0:
        validation_results['errors'].append("request_deadline_ms must be positive")

    if config.default_coupon_expiry_days <= 0:
        validation_results['errors'].append("default_coupon_expiry_days must be positive")

    if config.coupon_code_length < 6:
        validation_results['errors'].append("coupon_code_length must be at least 6")

    if config.coupon_code_max_attempts <= 0:
        validation_results['errors'].append("coupon_code_max_attempts must be positive")

    if config.coupon_pool_batch_size <= 0:
        validation_results['errors'].append("coupon_pool_batch_size must be positive")

    if not Path(config.campaigns_dir).exists():
        validation_results['warnings'].append(f"Campaigns directory does not exist: {config.campaigns_dir}")

    validation_results['valid'] = not validation_results['errors']
    return validation_results


def configure_logging(config: PromotionEngineConfig) -> None:
    """Install the console sink and, when configured, a rotating file sink"""
    logger.remove()
    logger.add(
        sys.stderr,
        level=config.log_level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level}</level> | {message}"
    )
    if config.log_file:
        logger.add(
            config.log_file,
            level=config.log_level.upper(),
            rotation=config.log_rotation,
            retention=config.log_retention,
        )


# Global configuration instance
config_manager = ConfigManager()


def get_config() -> PromotionEngineConfig:
    """Get the global configuration instance"""
    return config_manager.get_config()


def update_config(**kwargs) -> None:
    """Update the global configuration"""
    config_manager.update_config(**kwargs)
