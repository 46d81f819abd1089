"""TOML config loading and profiles."""

from __future__ import annotations

import logging
import tomllib
from decimal import Decimal
from pathlib import Path
from typing import Any

from lendcore.models import Asset, Market

# Default config search path (project root or cwd)
_CONFIG_DIR = Path(__file__).resolve().parent.parent.parent.parent / "config"


def _load_toml(path: Path) -> dict[str, Any]:
    with open(path, "rb") as f:
        return tomllib.load(f)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base. Override values take precedence."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _find_config_dir(config_dir: Path | None = None) -> Path:
    if config_dir is not None:
        return config_dir
    cwd_config = Path.cwd() / "config"
    if cwd_config.exists():
        return cwd_config
    return _CONFIG_DIR


def load_config(profile: str | None = None, config_dir: Path | None = None) -> dict[str, Any]:
    """Load merged config from default.toml and optional profile overlay."""
    directory = _find_config_dir(config_dir)
    default_path = directory / "default.toml"
    if not default_path.exists():
        return {}
    base = _load_toml(default_path)
    if profile:
        profile_path = directory / f"{profile}.toml"
        if profile_path.exists():
            base = _deep_merge(base, _load_toml(profile_path))
    return base


def get_settings(profile: str | None = None, config_dir: Path | None = None) -> Settings:
    """Return Settings instance from merged config."""
    return Settings.from_dict(load_config(profile, config_dir))


def _decimal(value: Any, default: str) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal(default)


def market_from_config(raw: dict[str, Any]) -> Market:
    """Build a Market from one [[markets]] table. Raises pydantic.ValidationError on bad ratios."""
    return Market(
        market_id=raw["market_id"],
        name=raw.get("name", ""),
        collateral=Asset(currency=raw["collateral_currency"], issuer=raw.get("collateral_issuer")),
        debt=Asset(currency=raw["debt_currency"], issuer=raw.get("debt_issuer")),
        max_ltv_ratio=_decimal(raw.get("max_ltv_ratio"), "0.5"),
        liquidation_ltv_ratio=_decimal(raw.get("liquidation_ltv_ratio"), "0.75"),
        base_interest_rate=_decimal(raw.get("base_interest_rate"), "0.05"),
        liquidation_penalty=_decimal(raw.get("liquidation_penalty"), "0.05"),
        reserve_factor=_decimal(raw.get("reserve_factor"), "0.1"),
        min_collateral_amount=_decimal(raw.get("min_collateral_amount"), "0"),
        min_borrow_amount=_decimal(raw.get("min_borrow_amount"), "0"),
        min_supply_amount=_decimal(raw.get("min_supply_amount"), "5"),
        vault_id=raw.get("vault_id"),
        vault_scale=int(raw.get("vault_scale", 6)),
        active=bool(raw.get("active", True)),
    )


class Settings:
    """Application settings from TOML config."""

    def __init__(
        self,
        *,
        storage: dict[str, Any] | None = None,
        ledger: dict[str, Any] | None = None,
        lending: dict[str, Any] | None = None,
        api: dict[str, Any] | None = None,
        logging: dict[str, Any] | None = None,
        markets: list[dict[str, Any]] | None = None,
    ):
        self.storage = storage or {}
        self.ledger = ledger or {}
        self.lending = lending or {}
        self.api = api or {}
        self.logging = logging or {}
        self.markets = markets or []

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Settings:
        return cls(
            storage=raw.get("storage"),
            ledger=raw.get("ledger"),
            lending=raw.get("lending"),
            api=raw.get("api"),
            logging=raw.get("logging"),
            markets=raw.get("markets"),
        )

    # Convenience accessors with defaults
    @property
    def db_path(self) -> str:
        return self.storage.get("db_path", "data/lendcore.duckdb")

    @property
    def rpc_url(self) -> str:
        return self.ledger.get("rpc_url", "https://s.altnet.rippletest.net:51234")

    @property
    def signer_url(self) -> str:
        return self.ledger.get("signer_url", "http://127.0.0.1:8100/sign")

    @property
    def custody_address(self) -> str:
        return self.ledger.get("custody_address", "")

    @property
    def request_timeout_sec(self) -> float:
        return float(self.ledger.get("request_timeout_sec", 10.0))

    @property
    def confirm_timeout_sec(self) -> float:
        return float(self.ledger.get("confirm_timeout_sec", 20.0))

    @property
    def poll_interval_sec(self) -> float:
        return float(self.ledger.get("poll_interval_sec", 1.0))

    @property
    def repay_buffer_rate(self) -> Decimal:
        return _decimal(self.lending.get("repay_buffer_rate"), "0.002")

    @property
    def repay_decimals(self) -> int:
        return int(self.lending.get("repay_decimals", 6))

    @property
    def loan_term_months(self) -> int:
        return int(self.lending.get("loan_term_months", 3))

    @property
    def liquidation_batch_limit(self) -> int:
        return int(self.lending.get("liquidation_batch_limit", 10))

    @property
    def max_price_age_sec(self) -> int:
        return int(self.lending.get("max_price_age_sec", 0))

    @property
    def api_host(self) -> str:
        return self.api.get("host", "127.0.0.1")

    @property
    def api_port(self) -> int:
        return int(self.api.get("port", 8000))

    @property
    def market_configs(self) -> list[Market]:
        return [market_from_config(m) for m in self.markets]

    @property
    def logging_level(self) -> str:
        return self.logging.get("level", "INFO").upper()

    @property
    def logging_format(self) -> str:
        return self.logging.get("format", "console")

    @property
    def logging_level_num(self) -> int:
        return getattr(logging, self.logging_level, logging.INFO)


def configure_logging(settings: Settings) -> None:
    """Configure structlog with settings. Call once at application entry."""
    import structlog

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.logging_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(settings.logging_level_num),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
