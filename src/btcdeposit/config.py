"""
Configuration management using pydantic-settings.

Provider tables are per network and injected into each component so tests can
point them at mock endpoints.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from btcdeposit.constants import (
    DEFAULT_FEE_RATE,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SIGNING_MESSAGE,
    DEFAULT_TARGET_BLOCKS,
    MAX_FEE_RATE,
    MIN_BLOCK_CONFIRMATIONS,
    MIN_DEPOSIT_SATS,
    STANDARD_DUST_LIMIT,
)
from btcdeposit.errors import ConfigurationError
from btcdeposit.models import NetworkType


class ProviderEndpoints(BaseModel):
    """Esplora-compatible endpoints for one network."""

    primary: str
    fallback: str | None = None
    explorer: str

    def api_urls(self) -> list[str]:
        urls = [self.primary]
        if self.fallback:
            urls.append(self.fallback)
        return [url.rstrip("/") for url in urls]


def default_providers() -> dict[NetworkType, ProviderEndpoints]:
    return {
        NetworkType.TESTNET: ProviderEndpoints(
            primary="https://mempool.space/testnet/api",
            fallback="https://blockstream.info/testnet/api",
            explorer="https://mempool.space/testnet/tx/",
        ),
        NetworkType.MAINNET: ProviderEndpoints(
            primary="https://blockstream.info/api",
            fallback="https://mempool.space/api",
            explorer="https://mempool.space/tx/",
        ),
        NetworkType.REGTEST: ProviderEndpoints(
            primary="http://127.0.0.1:3002",
            fallback="http://127.0.0.1:3003",
            explorer="http://127.0.0.1:5000/tx/",
        ),
    }


def default_bridge_addresses() -> dict[NetworkType, str]:
    return {
        NetworkType.TESTNET: "tb1ppsy8j80jtns42rkpdsfcv25qfschqejxmk6datkvu236eekr4fms06wnz0",
        NetworkType.MAINNET: "",
        NetworkType.REGTEST: "",
    }


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="BTC_DEPOSIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    network: NetworkType = NetworkType.TESTNET

    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0)

    max_fee_rate: int = Field(default=MAX_FEE_RATE, ge=1, description="Max sat/vB accepted")
    default_fee_rate: int = Field(
        default=DEFAULT_FEE_RATE, ge=1, description="sat/vB used when estimation fails"
    )
    target_confirmation_blocks: int = Field(default=DEFAULT_TARGET_BLOCKS, ge=1)

    min_confirmations: int = Field(default=MIN_BLOCK_CONFIRMATIONS, ge=1)
    dust_threshold: int = Field(default=STANDARD_DUST_LIMIT, ge=0)
    min_deposit_sats: int = Field(default=MIN_DEPOSIT_SATS, ge=1)

    signing_message: str = DEFAULT_SIGNING_MESSAGE

    providers: dict[NetworkType, ProviderEndpoints] = Field(default_factory=default_providers)
    bridge_addresses: dict[NetworkType, str] = Field(default_factory=default_bridge_addresses)

    log_level: str = "INFO"

    @model_validator(mode="after")
    def check_fee_bounds(self) -> Settings:
        if self.default_fee_rate > self.max_fee_rate:
            raise ValueError(
                f"default_fee_rate ({self.default_fee_rate}) exceeds "
                f"max_fee_rate ({self.max_fee_rate})"
            )
        return self

    def endpoints(self, network: NetworkType) -> ProviderEndpoints:
        try:
            return self.providers[network]
        except KeyError:
            raise ConfigurationError(f"No providers configured for {network.value}") from None

    def bridge_address(self, network: NetworkType) -> str:
        address = self.bridge_addresses.get(network, "")
        if not address:
            raise ConfigurationError(f"No bridge address configured for {network.value}")
        return address


def get_settings() -> Settings:
    return Settings()
