"""
Transaction broadcast through the configured providers.
"""

from __future__ import annotations

import httpx
from loguru import logger

from btcdeposit.config import Settings
from btcdeposit.errors import BroadcastFailedError, ProviderError, ProviderUnavailableError
from btcdeposit.explorer import explorer_url
from btcdeposit.models import BroadcastResult, NetworkType
from btcdeposit.providers import EsploraProvider, providers_for, with_fallback


class Broadcaster:
    """
    Submits a signed transaction to the primary provider, then the fallback.

    Repeated calls resubmit; there is no deduplication.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient):
        self.settings = settings
        self.client = client

    async def broadcast(
        self, raw_tx: bytes | str, network: NetworkType | None = None
    ) -> BroadcastResult:
        """
        Broadcast ``raw_tx`` (bytes or hex).

        Raises:
            BroadcastFailedError: If every provider rejected or failed the submission
        """
        network = network or self.settings.network
        tx_hex = raw_tx.hex() if isinstance(raw_tx, bytes) else raw_tx.strip()

        async def submit(provider: EsploraProvider) -> tuple[str, str]:
            txid = await provider.post_transaction(tx_hex)
            if not txid:
                raise ProviderError(provider.base_url, "empty transaction id in broadcast response")
            return txid, provider.base_url

        try:
            txid, provider_url = await with_fallback(
                providers_for(network, self.settings, self.client), submit, "broadcast transaction"
            )
        except ProviderUnavailableError as e:
            raise BroadcastFailedError(str(e), e.failures) from e

        url = explorer_url(txid, network, self.settings)
        logger.info(f"Broadcast {txid} via {provider_url}: {url}")
        return BroadcastResult(transaction_id=txid, explorer_url=url, provider=provider_url)
