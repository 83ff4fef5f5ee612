"""
============================================================================
ChangeWLD Exchange - Configuration
============================================================================

Reliability Level: L5 High
Decimal Integrity: Margin and amounts are parsed as decimal.Decimal
Traceability: Configuration loading is logged without secrets

This module provides configuration management for the exchange backend:
- Environment variable parsing with type safety (.env via python-dotenv)
- Default values for optional configuration
- Validation of ranges (margin in [0, 1), positive limits and TTLs)
- Fail-closed startup on invalid configuration (CFG-001)

ENVIRONMENT VARIABLES:
    - PORT: Listening port (default: 4000)
    - SPREAD: Margin fraction retained by the operator (default: 0.25)
    - OPERATOR_PIN: Admin PIN exchanged for a session token (default: unset)
    - SESSION_SECRET: HMAC key for admin session tokens (>= 32 chars)
    - SESSION_TTL_SECONDS: Admin session lifetime (default: 28800)
    - WALLET_DESTINO: Payout wallet receiving WLD transfers
    - DAILY_ORDER_LIMIT: Orders per identity per business day (default: 3)
    - MIN_AMOUNT_WLD: Minimum WLD per order (default: 1)
    - RATE_TTL_SEC: Rate cache TTL in seconds (default: 60)
    - FALLBACK_WLD_USD / FALLBACK_USD_COP: Per-leg fallbacks (empty disables)
    - UPSTREAM_TIMEOUT_SECONDS: Timeout for every outbound call (default: 5)
    - BUSINESS_UTC_OFFSET_HOURS: Business timezone offset (default: -5)
    - ALLOWED_BANKS: Comma-separated payout rails
    - ALLOWED_ORIGINS: Comma-separated CORS origins (default: *)
    - SIMULATION_MODE: Synthesize references on paid (default: false)
    - STRICT_TRANSITIONS: Enforce the transition table (default: true)
    - REQUIRE_RECORDED_IDENTITY: Only accept identities verified here
    - APP_ID, WORLD_ID_ACTION, WORLD_ID_API_BASE: World ID verifier
    - WORLDCHAIN_RPC_URL, WLD_TOKEN_ADDRESS: World Chain oracle
    - DATABASE_URL: SQLAlchemy URL, "memory" for in-process stores
    - RATE_PROVIDER: "split" (Binance + ER-API) or "coingecko"
    - TRANSFER_WATCH_INTERVAL_SECONDS: 0 disables the transfer watcher

ERROR CODES:
    - CFG-001: Configuration invalid

============================================================================
"""

from decimal import Decimal, InvalidOperation
from typing import Optional, List, Tuple
from dataclasses import dataclass, field
import logging
import os
import secrets

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ExchangeConfigErrorCode:
    """Configuration error codes for audit logging."""
    CONFIG_INVALID = "CFG-001"


# =============================================================================
# Default Values
# =============================================================================

DEFAULT_PORT = 4000
DEFAULT_MARGIN = Decimal("0.25")
DEFAULT_SESSION_TTL_SECONDS = 8 * 3600
DEFAULT_DAILY_ORDER_LIMIT = 3
DEFAULT_MIN_AMOUNT_SOURCE = Decimal("1")
DEFAULT_RATE_TTL_SECONDS = 60
DEFAULT_FALLBACK_SOURCE_USD = Decimal("0.699")
DEFAULT_FALLBACK_TARGET_PER_USD = Decimal("3719")
DEFAULT_UPSTREAM_TIMEOUT_SECONDS = 5.0
DEFAULT_BUSINESS_UTC_OFFSET_HOURS = -5
DEFAULT_ALLOWED_BANKS = ("Nequi", "Llave Bre-B")
DEFAULT_WORLD_ID_API_BASE = "https://developer.worldcoin.org"
DEFAULT_WORLD_ID_ACTION = "verify-human"
DEFAULT_WORLDCHAIN_RPC_URL = "https://worldchain-mainnet.g.alchemy.com/public"
DEFAULT_WLD_TOKEN_ADDRESS = "0x2cFc85d8E48F8EAB294be644d9E25C3030863003"
DEFAULT_DATABASE_URL = "sqlite:///./changewld.db"
DEFAULT_RATE_PROVIDER = "split"
DEFAULT_TRANSFER_WATCH_INTERVAL_SECONDS = 30

# Plausible ranges; a feed value outside them is treated as a failed leg
PLAUSIBLE_SOURCE_USD = (Decimal("0.01"), Decimal("100"))
PLAUSIBLE_TARGET_PER_USD = (Decimal("1000"), Decimal("10000"))

MIN_SESSION_SECRET_LENGTH = 32
RATE_PROVIDERS = ("split", "coingecko")


# =============================================================================
# Configuration Validation Exception
# =============================================================================

class ConfigurationError(Exception):
    """Raised at startup when configuration is invalid."""

    def __init__(self, message: str, error_code: str = ExchangeConfigErrorCode.CONFIG_INVALID):
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{error_code}] {message}")


# =============================================================================
# Environment Parsing Helpers
# =============================================================================

def _env_str(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.lower().strip() in ("true", "1", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(
            f"[EXCHANGE-CONFIG] Invalid {name} value: {raw}, using default: {default}"
        )
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, str(default))
    try:
        return float(raw.strip())
    except ValueError:
        logger.warning(
            f"[EXCHANGE-CONFIG] Invalid {name} value: {raw}, using default: {default}"
        )
        return default


def _env_decimal(name: str, default: Optional[Decimal]) -> Optional[Decimal]:
    """Parse a Decimal. An explicitly empty variable yields None."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    if not raw.strip():
        return None
    try:
        value = Decimal(raw.strip())
    except InvalidOperation:
        logger.warning(
            f"[EXCHANGE-CONFIG] Invalid {name} value: {raw}, using default: {default}"
        )
        return default
    if not value.is_finite():
        logger.warning(
            f"[EXCHANGE-CONFIG] Non-finite {name} value: {raw}, using default: {default}"
        )
        return default
    return value


def _env_decimal_or_default(name: str, default: Decimal) -> Decimal:
    value = _env_decimal(name, default)
    return default if value is None else value


def _env_list(name: str, default: Tuple[str, ...]) -> List[str]:
    raw = os.environ.get(name, "")
    if not raw.strip():
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# =============================================================================
# ExchangeConfig Class
# =============================================================================

@dataclass
class ExchangeConfig:
    """
    Exchange backend configuration.

    ============================================================================
    CONFIGURATION PARAMETERS:
    ============================================================================
    - margin: Fraction of the gross rate retained, in [0, 1)
    - daily_order_limit: Orders per identity per business day
    - rate_ttl_seconds: Rate cache TTL and background refresh interval
    - simulation_mode: Synthesize a reference when marking paid without one
    - strict_transitions: Reject transitions outside the table unless forced
    ============================================================================

    Reliability Level: L5 High
    Input Constraints: See validate()
    Side Effects: None
    """

    port: int = DEFAULT_PORT
    margin: Decimal = DEFAULT_MARGIN
    admin_pin: str = ""
    session_secret: str = ""
    session_ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS
    payout_wallet: str = ""
    daily_order_limit: int = DEFAULT_DAILY_ORDER_LIMIT
    min_amount_source: Decimal = DEFAULT_MIN_AMOUNT_SOURCE
    rate_ttl_seconds: int = DEFAULT_RATE_TTL_SECONDS
    fallback_source_usd: Optional[Decimal] = DEFAULT_FALLBACK_SOURCE_USD
    fallback_target_per_usd: Optional[Decimal] = DEFAULT_FALLBACK_TARGET_PER_USD
    upstream_timeout_seconds: float = DEFAULT_UPSTREAM_TIMEOUT_SECONDS
    business_utc_offset_hours: int = DEFAULT_BUSINESS_UTC_OFFSET_HOURS
    allowed_banks: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_BANKS))
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])
    simulation_mode: bool = False
    strict_transitions: bool = True
    require_recorded_identity: bool = False
    app_id: str = ""
    world_id_action: str = DEFAULT_WORLD_ID_ACTION
    world_id_api_base: str = DEFAULT_WORLD_ID_API_BASE
    worldchain_rpc_url: str = DEFAULT_WORLDCHAIN_RPC_URL
    wld_token_address: str = DEFAULT_WLD_TOKEN_ADDRESS
    database_url: str = DEFAULT_DATABASE_URL
    rate_provider: str = DEFAULT_RATE_PROVIDER
    transfer_watch_interval_seconds: int = DEFAULT_TRANSFER_WATCH_INTERVAL_SECONDS

    def __post_init__(self) -> None:
        if not isinstance(self.margin, Decimal):
            self.margin = Decimal(str(self.margin))
        if not isinstance(self.min_amount_source, Decimal):
            self.min_amount_source = Decimal(str(self.min_amount_source))
        if not self.session_secret:
            self.session_secret = secrets.token_hex(32)
            logger.warning(
                "[EXCHANGE-CONFIG] SESSION_SECRET not set, generated an ephemeral "
                "key | admin sessions will not survive a restart"
            )

    def validate(self) -> None:
        """
        Validate configuration ranges.

        Raises:
            ConfigurationError: If any value is out of range (CFG-001)
        """
        errors: List[str] = []

        if not (Decimal("0") <= self.margin < Decimal("1")):
            errors.append(f"SPREAD must be in [0, 1), got: {self.margin}")

        if self.daily_order_limit <= 0:
            errors.append(
                f"DAILY_ORDER_LIMIT must be positive, got: {self.daily_order_limit}"
            )

        if self.min_amount_source <= Decimal("0"):
            errors.append(
                f"MIN_AMOUNT_WLD must be positive, got: {self.min_amount_source}"
            )

        if self.rate_ttl_seconds <= 0:
            errors.append(f"RATE_TTL_SEC must be positive, got: {self.rate_ttl_seconds}")

        if self.session_ttl_seconds <= 0:
            errors.append(
                f"SESSION_TTL_SECONDS must be positive, got: {self.session_ttl_seconds}"
            )

        if len(self.session_secret) < MIN_SESSION_SECRET_LENGTH:
            errors.append(
                f"SESSION_SECRET must be at least {MIN_SESSION_SECRET_LENGTH} characters"
            )

        if self.upstream_timeout_seconds <= 0:
            errors.append(
                f"UPSTREAM_TIMEOUT_SECONDS must be positive, got: {self.upstream_timeout_seconds}"
            )

        if not (-12 <= self.business_utc_offset_hours <= 14):
            errors.append(
                f"BUSINESS_UTC_OFFSET_HOURS must be in [-12, 14], "
                f"got: {self.business_utc_offset_hours}"
            )

        if not self.allowed_banks:
            errors.append("ALLOWED_BANKS must list at least one bank")

        if self.rate_provider not in RATE_PROVIDERS:
            errors.append(
                f"RATE_PROVIDER must be one of {RATE_PROVIDERS}, got: {self.rate_provider}"
            )

        if self.transfer_watch_interval_seconds < 0:
            errors.append(
                "TRANSFER_WATCH_INTERVAL_SECONDS must be non-negative, "
                f"got: {self.transfer_watch_interval_seconds}"
            )

        for name, value in (
            ("FALLBACK_WLD_USD", self.fallback_source_usd),
            ("FALLBACK_USD_COP", self.fallback_target_per_usd),
        ):
            if value is not None and value <= Decimal("0"):
                errors.append(f"{name} must be positive, got: {value}")

        if errors:
            error_msg = "Exchange configuration validation failed: " + "; ".join(errors)
            logger.error(f"[{ExchangeConfigErrorCode.CONFIG_INVALID}] {error_msg}")
            raise ConfigurationError(error_msg)

        if not self.admin_pin:
            logger.warning("[EXCHANGE-CONFIG] OPERATOR_PIN not set | admin login disabled")

        logger.info(
            f"[EXCHANGE-CONFIG] Configuration validated | "
            f"margin={self.margin} | "
            f"daily_order_limit={self.daily_order_limit} | "
            f"rate_ttl_seconds={self.rate_ttl_seconds} | "
            f"simulation_mode={self.simulation_mode} | "
            f"strict_transitions={self.strict_transitions}"
        )

    @property
    def uses_database(self) -> bool:
        return self.database_url.lower() != "memory"

    @classmethod
    def from_environment(cls, validate: bool = True) -> "ExchangeConfig":
        """
        Load configuration from environment variables.

        Args:
            validate: Whether to validate configuration after loading

        Returns:
            ExchangeConfig instance with values from environment

        Raises:
            ConfigurationError: If validation is requested and fails
        """
        config = cls(
            port=_env_int("PORT", DEFAULT_PORT),
            margin=_env_decimal_or_default("SPREAD", DEFAULT_MARGIN),
            admin_pin=_env_str("OPERATOR_PIN"),
            session_secret=_env_str("SESSION_SECRET"),
            session_ttl_seconds=_env_int("SESSION_TTL_SECONDS", DEFAULT_SESSION_TTL_SECONDS),
            payout_wallet=_env_str("WALLET_DESTINO"),
            daily_order_limit=_env_int("DAILY_ORDER_LIMIT", DEFAULT_DAILY_ORDER_LIMIT),
            min_amount_source=_env_decimal_or_default("MIN_AMOUNT_WLD", DEFAULT_MIN_AMOUNT_SOURCE),
            rate_ttl_seconds=_env_int("RATE_TTL_SEC", DEFAULT_RATE_TTL_SECONDS),
            fallback_source_usd=_env_decimal("FALLBACK_WLD_USD", DEFAULT_FALLBACK_SOURCE_USD),
            fallback_target_per_usd=_env_decimal(
                "FALLBACK_USD_COP", DEFAULT_FALLBACK_TARGET_PER_USD
            ),
            upstream_timeout_seconds=_env_float(
                "UPSTREAM_TIMEOUT_SECONDS", DEFAULT_UPSTREAM_TIMEOUT_SECONDS
            ),
            business_utc_offset_hours=_env_int(
                "BUSINESS_UTC_OFFSET_HOURS", DEFAULT_BUSINESS_UTC_OFFSET_HOURS
            ),
            allowed_banks=_env_list("ALLOWED_BANKS", DEFAULT_ALLOWED_BANKS),
            allowed_origins=_env_list("ALLOWED_ORIGINS", ("*",)),
            simulation_mode=_env_bool("SIMULATION_MODE", False),
            strict_transitions=_env_bool("STRICT_TRANSITIONS", True),
            require_recorded_identity=_env_bool("REQUIRE_RECORDED_IDENTITY", False),
            app_id=_env_str("APP_ID"),
            world_id_action=_env_str("WORLD_ID_ACTION", DEFAULT_WORLD_ID_ACTION),
            world_id_api_base=_env_str("WORLD_ID_API_BASE", DEFAULT_WORLD_ID_API_BASE),
            worldchain_rpc_url=_env_str("WORLDCHAIN_RPC_URL", DEFAULT_WORLDCHAIN_RPC_URL),
            wld_token_address=_env_str("WLD_TOKEN_ADDRESS", DEFAULT_WLD_TOKEN_ADDRESS),
            database_url=_env_str("DATABASE_URL", DEFAULT_DATABASE_URL),
            rate_provider=_env_str("RATE_PROVIDER", DEFAULT_RATE_PROVIDER).lower(),
            transfer_watch_interval_seconds=_env_int(
                "TRANSFER_WATCH_INTERVAL_SECONDS", DEFAULT_TRANSFER_WATCH_INTERVAL_SECONDS
            ),
        )

        logger.info(
            f"[EXCHANGE-CONFIG] Loading configuration from environment | "
            f"PORT={config.port} | "
            f"SPREAD={config.margin} | "
            f"RATE_PROVIDER={config.rate_provider} | "
            f"DATABASE={'sql' if config.uses_database else 'memory'} | "
            f"ALLOWED_BANKS={','.join(config.allowed_banks)}"
        )

        if validate:
            config.validate()

        return config

    def to_dict(self) -> dict:
        """Configuration as a dictionary, secrets redacted."""
        return {
            "port": self.port,
            "margin": str(self.margin),
            "admin_pin_configured": bool(self.admin_pin),
            "session_ttl_seconds": self.session_ttl_seconds,
            "payout_wallet": self.payout_wallet,
            "daily_order_limit": self.daily_order_limit,
            "min_amount_source": str(self.min_amount_source),
            "rate_ttl_seconds": self.rate_ttl_seconds,
            "fallback_source_usd": (
                str(self.fallback_source_usd) if self.fallback_source_usd is not None else None
            ),
            "fallback_target_per_usd": (
                str(self.fallback_target_per_usd)
                if self.fallback_target_per_usd is not None else None
            ),
            "upstream_timeout_seconds": self.upstream_timeout_seconds,
            "business_utc_offset_hours": self.business_utc_offset_hours,
            "allowed_banks": list(self.allowed_banks),
            "simulation_mode": self.simulation_mode,
            "strict_transitions": self.strict_transitions,
            "require_recorded_identity": self.require_recorded_identity,
            "rate_provider": self.rate_provider,
        }


# =============================================================================
# Module-Level Configuration Instance
# =============================================================================

_config_instance: Optional[ExchangeConfig] = None


def get_exchange_config(validate: bool = True) -> ExchangeConfig:
    """Return the process-wide configuration, loading it on first access."""
    global _config_instance

    if _config_instance is None:
        _config_instance = ExchangeConfig.from_environment(validate=validate)

    return _config_instance


def reset_exchange_config() -> None:
    """Clear the process-wide configuration. Used by tests."""
    global _config_instance
    _config_instance = None
    logger.debug("[EXCHANGE-CONFIG] Configuration instance reset")


__all__ = [
    "ExchangeConfig",
    "ConfigurationError",
    "ExchangeConfigErrorCode",
    "DEFAULT_MARGIN",
    "DEFAULT_DAILY_ORDER_LIMIT",
    "DEFAULT_RATE_TTL_SECONDS",
    "DEFAULT_FALLBACK_SOURCE_USD",
    "DEFAULT_FALLBACK_TARGET_PER_USD",
    "DEFAULT_BUSINESS_UTC_OFFSET_HOURS",
    "DEFAULT_ALLOWED_BANKS",
    "PLAUSIBLE_SOURCE_USD",
    "PLAUSIBLE_TARGET_PER_USD",
    "get_exchange_config",
    "reset_exchange_config",
]
