"""TOML config loading, profile overlays and settings accessors."""

from decimal import Decimal
from pathlib import Path

import pytest
from pydantic import ValidationError

from lendcore.config import Settings, configure_logging, get_settings, load_config

DEFAULT_TOML = """
[storage]
db_path = "data/test.duckdb"

[ledger]
custody_address = "rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe"
confirm_timeout_sec = 5

[lending]
repay_buffer_rate = "0.003"
liquidation_batch_limit = 25

[logging]
level = "debug"
format = "json"

[[markets]]
market_id = "XRP-RLUSD"
collateral_currency = "XRP"
debt_currency = "RLUSD"
debt_issuer = "rQhWct2fv4Vc4KRjRgMrxa8xPN9Zx9iLKV"
max_ltv_ratio = "0.7"
liquidation_ltv_ratio = "0.8"
base_interest_rate = "0.05"
"""

DEV_TOML = """
[storage]
db_path = "data/dev.duckdb"

[lending]
max_price_age_sec = 120
"""


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    (tmp_path / "default.toml").write_text(DEFAULT_TOML)
    (tmp_path / "dev.toml").write_text(DEV_TOML)
    return tmp_path


def test_default_settings(config_dir):
    settings = get_settings(config_dir=config_dir)
    assert settings.db_path == "data/test.duckdb"
    assert settings.custody_address == "rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe"
    assert settings.confirm_timeout_sec == 5.0
    assert settings.repay_buffer_rate == Decimal("0.003")
    assert settings.repay_decimals == 6
    assert settings.liquidation_batch_limit == 25
    assert settings.max_price_age_sec == 0
    assert settings.logging_level == "DEBUG"
    assert settings.logging_format == "json"


def test_profile_overlay_merges_sections(config_dir):
    settings = get_settings("dev", config_dir)
    assert settings.db_path == "data/dev.duckdb"
    assert settings.max_price_age_sec == 120
    # untouched keys of an overlaid section survive
    assert settings.repay_buffer_rate == Decimal("0.003")


def test_missing_profile_falls_back_to_default(config_dir):
    assert load_config("nope", config_dir) == load_config(None, config_dir)


def test_missing_config_dir_gives_defaults(tmp_path):
    settings = get_settings(config_dir=tmp_path)
    assert settings.db_path == "data/lendcore.duckdb"
    assert settings.market_configs == []


def test_market_configs(config_dir):
    (market,) = get_settings(config_dir=config_dir).market_configs
    assert market.market_id == "XRP-RLUSD"
    assert market.collateral.issuer is None
    assert market.debt.issuer == "rQhWct2fv4Vc4KRjRgMrxa8xPN9Zx9iLKV"
    assert market.max_ltv_ratio == Decimal("0.7")
    assert market.liquidation_penalty == Decimal("0.05")
    assert market.vault_id is None


def test_bad_market_thresholds_rejected():
    settings = Settings(
        markets=[
            {
                "market_id": "BAD",
                "collateral_currency": "XRP",
                "debt_currency": "RLUSD",
                "max_ltv_ratio": "0.9",
                "liquidation_ltv_ratio": "0.8",
            }
        ]
    )
    with pytest.raises(ValidationError):
        settings.market_configs


def test_configure_logging_accepts_both_formats(config_dir):
    configure_logging(get_settings(config_dir=config_dir))
    configure_logging(Settings())
