"""
Tests for configuration loading, validation and logging setup
"""

import json

import pytest
from loguru import logger

from promotion_engine.config import ConfigManager, PromotionEngineConfig, configure_logging, validate_config
from promotion_engine.exceptions import ConfigurationError


def test_defaults():
    config = PromotionEngineConfig()
    assert config.default_currency == "TRY"
    assert config.tie_break_policy == "oldest_first"
    assert config.coupon_priority == 1
    assert config.coupons_stack_with_campaigns is True
    assert config.product_match_mode == "any"


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("PROMOTION_ENGINE_REQUEST_DEADLINE_MS", "500")
    monkeypatch.setenv("PROMOTION_ENGINE_COUPONS_STACK_WITH_CAMPAIGNS", "false")
    monkeypatch.setenv("PROMOTION_ENGINE_TIE_BREAK_POLICY", "newest_first")

    config = ConfigManager(config_file=str(tmp_path / "missing.json")).get_config()

    assert config.request_deadline_ms == 500
    assert config.coupons_stack_with_campaigns is False
    assert config.tie_break_policy == "newest_first"


def test_file_round_trip(tmp_path):
    config_file = tmp_path / "promotion_engine_config.json"
    manager = ConfigManager(config_file=str(config_file))
    manager.update_config(coupon_code_prefix="WB", product_match_mode="all")
    manager.save_config()

    assert json.loads(config_file.read_text())["coupon_code_prefix"] == "WB"
    reloaded = ConfigManager(config_file=str(config_file)).get_config()
    assert reloaded.product_match_mode == "all"


def test_update_rejects_unknown_and_invalid_values(tmp_path):
    manager = ConfigManager(config_file=str(tmp_path / "missing.json"))

    with pytest.raises(ConfigurationError):
        manager.update_config(discount_everything=True)
    with pytest.raises(ConfigurationError):
        manager.update_config(tie_break_policy="random")


def test_reset_to_defaults(tmp_path):
    manager = ConfigManager(config_file=str(tmp_path / "missing.json"))
    manager.update_config(coupon_priority=50)
    manager.reset_to_defaults()
    assert manager.get_config().coupon_priority == 1


def test_validate_config(tmp_path):
    config = PromotionEngineConfig(
        timezone="Mars/Olympus_Mons",
        log_level="LOUD",
        request_deadline_ms=0,
        campaigns_dir=str(tmp_path / "nowhere"),
    )
    result = validate_config(config)

    assert not result['valid']
    assert any("timezone" in error for error in result['errors'])
    assert any("log level" in error for error in result['errors'])
    assert any("request_deadline_ms" in error for error in result['errors'])
    assert result['warnings'], "Missing campaigns directory is a warning"


def test_valid_config(tmp_path):
    result = validate_config(PromotionEngineConfig(campaigns_dir=str(tmp_path)))
    assert result == {'valid': True, 'warnings': [], 'errors': []}


def test_configure_logging_file_sink(tmp_path):
    log_file = tmp_path / "engine.log"
    configure_logging(PromotionEngineConfig(log_level="DEBUG", log_file=str(log_file)))

    logger.debug("file sink check")
    logger.remove()

    assert "file sink check" in log_file.read_text()
