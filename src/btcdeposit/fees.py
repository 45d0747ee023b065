"""
Fee rate estimation from the providers' fee recommendation endpoint.
"""

from __future__ import annotations

import math

import httpx
from loguru import logger

from btcdeposit.config import Settings
from btcdeposit.constants import (
    FEE_BUCKET_ECONOMY,
    FEE_BUCKET_FASTEST,
    FEE_BUCKET_HALF_HOUR,
    FEE_BUCKET_HOUR,
)
from btcdeposit.errors import ProviderError, ProviderUnavailableError
from btcdeposit.models import FeeQuote, NetworkType
from btcdeposit.providers import EsploraProvider, providers_for, with_fallback


def fee_bucket_for_target(target_blocks: int) -> str:
    """Map a confirmation target to a /v1/fees/recommended bucket."""
    if target_blocks <= 1:
        return FEE_BUCKET_FASTEST
    elif target_blocks <= 3:
        return FEE_BUCKET_HALF_HOUR
    elif target_blocks <= 6:
        return FEE_BUCKET_HOUR
    return FEE_BUCKET_ECONOMY


class FeeEstimator:
    """
    Fetches a fee rate for a confirmation target.

    Estimation never blocks a deposit: when every provider fails or reports a
    rate above ``settings.max_fee_rate``, the configured default is returned.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient):
        self.settings = settings
        self.client = client

    def _accept(self, value: object) -> int | None:
        if isinstance(value, bool) or not isinstance(value, int | float):
            return None
        if not math.isfinite(value) or value <= 0 or value > self.settings.max_fee_rate:
            return None
        return math.ceil(value)

    async def estimate_fee_rate(
        self, network: NetworkType | None = None, target_blocks: int | None = None
    ) -> FeeQuote:
        network = network or self.settings.network
        if target_blocks is None:
            target_blocks = self.settings.target_confirmation_blocks
        bucket = fee_bucket_for_target(target_blocks)

        async def fetch(provider: EsploraProvider) -> FeeQuote:
            fees = await provider.get_recommended_fees()
            value = fees.get(bucket)
            rate = self._accept(value)
            if rate is None:
                raise ProviderError(
                    provider.base_url,
                    f"Fee rate {value!r} ({bucket}) is unusable "
                    f"(max {self.settings.max_fee_rate} sat/vB)",
                )
            logger.info(f"Fee rate ({bucket}) from {provider.base_url}: {rate} sat/vB")
            return FeeQuote(sats_per_vbyte=rate, source=provider.base_url, bucket=bucket)

        try:
            return await with_fallback(
                providers_for(network, self.settings, self.client), fetch, "estimate fee rate"
            )
        except ProviderUnavailableError:
            logger.info(f"Using default fee rate {self.settings.default_fee_rate} sat/vB")
            return FeeQuote(
                sats_per_vbyte=self.settings.default_fee_rate, source="default", bucket=bucket
            )
