from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings

from polarbridge.core.types import Rate, Ratio


class LoanTier(BaseModel):
    """Preset loan terms (short / standard / long)."""
    model_config = ConfigDict(frozen=True)

    name: str
    duration_days: int = Field(..., gt=0)
    interest_rate_apy: Rate
    max_ltv: Rate


def _default_rates() -> dict[int, Decimal]:
    return {
        7: Decimal("0.12"),
        14: Decimal("0.10"),
        30: Decimal("0.08"),
        60: Decimal("0.07"),
        90: Decimal("0.06"),
        180: Decimal("0.055"),
    }


def _default_tiers() -> dict[str, LoanTier]:
    return {
        "short": LoanTier(name="Short Term", duration_days=7, interest_rate_apy="0.12", max_ltv="0.70"),
        "standard": LoanTier(name="Standard", duration_days=30, interest_rate_apy="0.08", max_ltv="0.75"),
        "long": LoanTier(name="Long Term", duration_days=90, interest_rate_apy="0.06", max_ltv="0.65"),
    }


class LendingPolicy(BaseModel):
    """
    Lending protocol parameters.

    Pure data: every behaviour derived from these values lives in
    polarbridge.services.lending_math.
    """
    model_config = ConfigDict(frozen=True)

    # LTV
    max_ltv: Rate = Decimal("0.75")
    liquidation_threshold: Rate = Decimal("0.85")
    min_borrow: Decimal = Decimal("50")

    # Collateral value bounds, in whole borrowed-asset units
    min_collateral_value: Decimal = Decimal("100")
    max_collateral_value: Decimal = Decimal("1000000")

    # Interest
    base_apy: Rate = Decimal("0.08")
    rates_by_duration: dict[int, Rate] = Field(default_factory=_default_rates)
    tiers: dict[str, LoanTier] = Field(default_factory=_default_tiers)

    # Health factor bands
    min_health_factor: Ratio = Decimal("1.0")
    warning_health_factor: Ratio = Decimal("1.2")
    safe_health_factor: Ratio = Decimal("1.5")

    # Liquidation
    liquidation_penalty: Rate = Decimal("0.10")
    protocol_share: Rate = Decimal("0.70")
    liquidator_share: Rate = Decimal("0.30")

    # Deadlines & late fees
    default_duration_days: int = 30
    min_duration_days: int = 7
    max_duration_days: int = 180
    late_fee_per_day: Rate = Decimal("0.02")
    max_late_days: int = 7
    grace_period_days: int = 3
    # Days before the deadline on which accrual logs a repayment reminder
    warning_days: tuple[int, ...] = (7, 3, 1)

    # Schedules
    accrual_interval_seconds: float = 3600.0
    liquidation_scan_interval_seconds: float = 300.0

    @model_validator(mode="after")
    def _shares_sum_to_one(self) -> "LendingPolicy":
        if self.protocol_share + self.liquidator_share != Decimal("1"):
            raise ValueError(
                "protocol_share + liquidator_share must equal 1, got "
                f"{self.protocol_share} + {self.liquidator_share}"
            )
        if self.min_duration_days > self.max_duration_days:
            raise ValueError("min_duration_days exceeds max_duration_days")
        if self.min_collateral_value > self.max_collateral_value:
            raise ValueError("min_collateral_value exceeds max_collateral_value")
        return self


class Settings(BaseSettings):
    """Application settings."""

    # App
    APP_NAME: str = "POLAR BRIDGE"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database (unset -> in-memory store)
    DATABASE_URL: Optional[str] = None

    # Chains
    SOURCE_CHAIN: str = "stellar"
    DESTINATION_CHAIN: str = "polkadot"
    SOURCE_GATEWAY_URL: str = "http://localhost:8101"
    DESTINATION_GATEWAY_URL: str = "http://localhost:8102"
    GATEWAY_API_KEY: Optional[str] = None
    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    VAULT_ADDRESS: str = ""
    POOL_ADDRESS: str = ""
    TREASURY_ADDRESS: str = ""
    LIQUIDATOR_ADDRESS: Optional[str] = None

    # Assets
    COLLATERAL_ASSET: str = "XLM"
    BORROWED_ASSET: str = "PINR"
    ASSET_SCALES: dict[str, int] = {"XLM": 10_000_000, "PINR": 1_000_000}

    # Price oracle
    ORACLE_BASE_URL: str = "https://api.coingecko.com/api/v3"
    ORACLE_ASSET_IDS: dict[str, str] = {"XLM": "stellar"}
    QUOTE_CURRENCY: str = "inr"
    STATIC_PRICES: Optional[dict[str, Decimal]] = None
    PRICE_CACHE_TTL_SECONDS: float = 60.0

    # Watcher
    WATCH_INTERVAL_SECONDS: float = 5.0
    WATCH_PAGE_SIZE: int = 20
    SEEN_CACHE_SIZE: int = 1000

    # Settlement
    SETTLEMENT_MAX_ATTEMPTS: int = 5
    SETTLEMENT_BACKOFF_BASE_SECONDS: float = 2.0
    SETTLEMENT_BACKOFF_MAX_SECONDS: float = 300.0
    SETTLEMENT_RETRY_INTERVAL_SECONDS: float = 15.0
    FINALITY_POLL_SECONDS: float = 1.0
    FINALITY_TIMEOUT_SECONDS: float = 30.0

    # Lending protocol
    LENDING: LendingPolicy = LendingPolicy()

    class Config:
        env_file = ".env"
        env_nested_delimiter = "__"
        extra = "ignore"

    def scale_for(self, asset: str) -> int:
        try:
            return self.ASSET_SCALES[asset]
        except KeyError:
            raise ValueError(f"No unit scale configured for asset {asset}")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
